"""Configuration for the approval workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the engine and its CLI.

    Environment variables:
    - LOG_LEVEL                               (optional)
    - WORKFLOW_STATE_PATH                     (optional)
    - WORKFLOW_DEFINITIONS_PATH               (optional)
    - WORKFLOW_DIRECTORY_FILE                 (optional)
    - WORKFLOW_STORE_BACKEND                  (optional, json|memory)
    - WORKFLOW_ALLOW_CANCEL_AFTER_APPROVAL    (optional)
    - WORKFLOW_EVENT_WEBHOOK_URL              (optional)
    - WORKFLOW_EVENT_WEBHOOK_TIMEOUT_SECONDS  (optional)
    - WORKFLOW_EVENT_WEBHOOK_RETRIES          (optional)

    Notes:
        Tests can point at a different env file with
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("workflow_state"),
        validation_alias="WORKFLOW_STATE_PATH",
        description="Directory holding one JSON document per flow instance",
    )
    definitions_path: Path = Field(
        default=Path("definitions"),
        validation_alias="WORKFLOW_DEFINITIONS_PATH",
        description="Directory holding flow definitions as <definition_id>.json",
    )
    directory_file: Path = Field(
        default=Path("directory.json"),
        validation_alias="WORKFLOW_DIRECTORY_FILE",
        description="User/org directory document used to resolve assignees",
    )
    store_backend: Literal["json", "memory"] = Field(
        default="json",
        validation_alias="WORKFLOW_STORE_BACKEND",
        description="Instance store backend",
    )

    allow_cancel_after_approval: bool = Field(
        default=True,
        validation_alias="WORKFLOW_ALLOW_CANCEL_AFTER_APPROVAL",
        description="Whether an initiator may withdraw a flow once a task has been decided",
    )

    event_webhook_url: str = Field(
        default="",
        validation_alias="WORKFLOW_EVENT_WEBHOOK_URL",
        description="Business callback URL that receives workflow events (disabled when empty)",
    )
    event_webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias="WORKFLOW_EVENT_WEBHOOK_TIMEOUT_SECONDS",
        description="HTTP timeout for webhook delivery",
    )
    event_webhook_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        validation_alias="WORKFLOW_EVENT_WEBHOOK_RETRIES",
        description="Extra delivery attempts after a failed webhook call",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_webhook_url(self) -> EngineSettings:
        url = self.event_webhook_url.strip()
        if url and not url.startswith(("http://", "https://")):
            raise ValueError("WORKFLOW_EVENT_WEBHOOK_URL must be an http(s) URL")
        return self

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.event_webhook_url.strip())
