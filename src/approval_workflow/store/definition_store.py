"""Flow definition repositories.

The engine only ever reads definitions. Authoring and publishing happen
elsewhere; the JSON store simply reads whatever documents are on disk.

A definition id names its latest version. Earlier versions stay loadable by
number so that running instances keep the graph they started on.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from approval_workflow.engine.workflow.definitions import DefinitionRecord, DefinitionStatus
from approval_workflow.engine.workflow.errors import DefinitionNotFoundError

logger = logging.getLogger(__name__)


class DefinitionRepository(Protocol):
    def load_definition(
        self, definition_id: str, version: int | None = None
    ) -> DefinitionRecord | None: ...


def read_definition_file(path: Path) -> DefinitionRecord:
    """Parse one definition document.

    Raises:
        ValueError: the file is not valid JSON or not a valid definition.
    """

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"{path}: invalid JSON ({e})") from e
    try:
        return DefinitionRecord.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"{path}: invalid flow definition\n{e}") from e


class InMemoryDefinitionStore:
    def __init__(self, records: Iterable[DefinitionRecord] = ()) -> None:
        self._lock = threading.Lock()
        self._versions: dict[str, dict[int, DefinitionRecord]] = {}
        for record in records:
            self.add(record)

    def add(self, record: DefinitionRecord) -> None:
        with self._lock:
            versions = self._versions.setdefault(record.id, {})
            versions[record.version] = record.model_copy(deep=True)

    def set_status(self, definition_id: str, status: DefinitionStatus) -> DefinitionRecord:
        """Change the status of the latest version."""

        with self._lock:
            record = self._latest(definition_id)
            if record is None:
                raise DefinitionNotFoundError(definition_id)
            updated = record.model_copy(update={"status": status})
            self._versions[definition_id][record.version] = updated
            return updated

    def load_definition(
        self, definition_id: str, version: int | None = None
    ) -> DefinitionRecord | None:
        with self._lock:
            if version is None:
                record = self._latest(definition_id)
            else:
                record = self._versions.get(definition_id, {}).get(version)
        return None if record is None else record.model_copy(deep=True)

    def _latest(self, definition_id: str) -> DefinitionRecord | None:
        versions = self._versions.get(definition_id)
        if not versions:
            return None
        return versions[max(versions)]


@dataclass
class JsonDefinitionStore:
    """Definitions stored as JSON files under `root`.

    `<definition_id>.json` holds the latest version. Every saved version is also
    kept as `versions/<definition_id>.v<version>.json`.
    """

    root: Path

    def path_for(self, definition_id: str, version: int | None = None) -> Path:
        if version is None:
            return self.root / f"{definition_id}.json"
        return self.root / "versions" / f"{definition_id}.v{version}.json"

    def load_definition(
        self, definition_id: str, version: int | None = None
    ) -> DefinitionRecord | None:
        if version is not None:
            archived = self._read(self.path_for(definition_id, version), definition_id)
            if archived is not None:
                return archived
        record = self._read(self.path_for(definition_id), definition_id)
        if record is None or (version is not None and record.version != version):
            return None
        return record

    def _read(self, path: Path, definition_id: str) -> DefinitionRecord | None:
        if not path.exists():
            return None
        record = read_definition_file(path)
        if record.id != definition_id:
            logger.warning(
                "Definition id does not match its file name",
                extra={"path": str(path), "definition_id": record.id},
            )
            return None
        return record

    def list_definitions(self) -> list[DefinitionRecord]:
        if not self.root.exists():
            return []
        return [read_definition_file(p) for p in sorted(self.root.glob("*.json"))]

    def save_definition(self, record: DefinitionRecord) -> Path:
        """Write `record` as the latest version and archive it by version number."""

        body = json.dumps(record.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
        archive = self.path_for(record.id, record.version)
        archive.parent.mkdir(parents=True, exist_ok=True)
        archive.write_text(body, encoding="utf-8")
        path = self.path_for(record.id)
        path.write_text(body, encoding="utf-8")
        return path
