"""Wire the engine's collaborators together from settings."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from approval_workflow.directory import StaticDirectory
from approval_workflow.engine.config import EngineSettings
from approval_workflow.engine.workflow.assignees import AssigneeResolver, Directory
from approval_workflow.engine.workflow.copies import CopyRecordService
from approval_workflow.engine.workflow.events import (
    EventOutbox,
    EventSink,
    LoggingEventSink,
    WebhookEventSink,
)
from approval_workflow.engine.workflow.executor import ProcessExecutor
from approval_workflow.engine.workflow.graph import GraphCache
from approval_workflow.engine.workflow.queries import WorkflowQueries
from approval_workflow.store.definition_store import DefinitionRepository, JsonDefinitionStore
from approval_workflow.store.instance_store import (
    InMemoryInstanceStore,
    InstanceStore,
    JsonInstanceStore,
)

logger = logging.getLogger(__name__)


@dataclass
class WorkflowRuntime:
    executor: ProcessExecutor
    queries: WorkflowQueries
    copies: CopyRecordService
    outbox: EventOutbox
    definitions: DefinitionRepository
    store: InstanceStore

    def close(self) -> None:
        self.outbox.flush()
        self.outbox.stop()


def build_sinks(settings: EngineSettings) -> list[EventSink]:
    sinks: list[EventSink] = [LoggingEventSink()]
    if settings.webhook_enabled:
        sinks.append(
            WebhookEventSink(
                url=settings.event_webhook_url,
                timeout_seconds=settings.event_webhook_timeout_seconds,
                retries=settings.event_webhook_retries,
            )
        )
    return sinks


def build_runtime(
    settings: EngineSettings,
    *,
    directory: Directory | None = None,
    definitions: DefinitionRepository | None = None,
    store: InstanceStore | None = None,
    sinks: Sequence[EventSink] | None = None,
    asynchronous_events: bool = True,
) -> WorkflowRuntime:
    """Build an engine from settings; any collaborator can be passed in instead."""

    if directory is None:
        directory = StaticDirectory.from_file(settings.directory_file)
    if definitions is None:
        definitions = JsonDefinitionStore(settings.definitions_path)
    if store is None:
        if settings.store_backend == "memory":
            store = InMemoryInstanceStore()
        else:
            store = JsonInstanceStore(settings.state_path)

    outbox = EventOutbox(
        build_sinks(settings) if sinks is None else sinks, asynchronous=asynchronous_events
    )
    outbox.start()

    graphs = GraphCache()
    executor = ProcessExecutor(
        definitions=definitions,
        store=store,
        resolver=AssigneeResolver(directory),
        outbox=outbox,
        graphs=graphs,
        allow_cancel_after_approval=settings.allow_cancel_after_approval,
    )
    logger.debug(
        "Workflow runtime built",
        extra={"store_backend": settings.store_backend, "webhook": settings.webhook_enabled},
    )
    return WorkflowRuntime(
        executor=executor,
        queries=WorkflowQueries(store=store, definitions=definitions, graphs=graphs),
        copies=CopyRecordService(store=store),
        outbox=outbox,
        definitions=definitions,
        store=store,
    )
