"""Outbound workflow events.

The executor emits events only after a transition has been persisted. Events
are handed to an :class:`EventOutbox`, which delivers them to the configured
sinks from a background worker. Delivery is best-effort: a failing sink is
logged and never rolls back the transition that produced the event.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

import requests

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    FLOW_STARTED = "flow_started"
    NODE_ACTIVATED = "node_activated"
    TASK_CREATED = "task_created"
    TASK_APPROVED = "task_approved"
    TASK_REJECTED = "task_rejected"
    TASK_TRANSFERRED = "task_transferred"
    TASK_COUNTERSIGNED = "task_countersigned"
    TASK_URGED = "task_urged"
    CC_CREATED = "cc_created"
    FLOW_COMPLETED = "flow_completed"
    FLOW_REJECTED = "flow_rejected"
    FLOW_CANCELLED = "flow_cancelled"
    FLOW_TERMINATED = "flow_terminated"


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    """A fact about a committed transition, for notification and audit collaborators."""

    type: EventType
    instance_id: str
    payload: dict[str, object]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_json(self) -> dict[str, object]:
        return {
            "eventType": self.type.value,
            "flowInstanceId": self.instance_id,
            "timestamp": self.occurred_at.isoformat(),
            **self.payload,
        }


class EventSink(Protocol):
    def publish(self, event: WorkflowEvent) -> None: ...


class LoggingEventSink:
    """Write every event to the log (the default audit trail)."""

    def __init__(self, logger_name: str = "approval_workflow.events") -> None:
        self._logger = logging.getLogger(logger_name)

    def publish(self, event: WorkflowEvent) -> None:
        self._logger.info(
            "Workflow event",
            extra={"event_type": event.type.value, "instance_id": event.instance_id},
        )


class WebhookEventSink:
    """POST each event as JSON to a business callback URL."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 10.0,
        retries: int = 3,
        retry_interval_seconds: float = 1.0,
        headers: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if not url.strip():
            raise ValueError("Webhook URL is required")
        self._url = url.strip()
        self._timeout = timeout_seconds
        self._retries = max(0, retries)
        self._retry_interval = retry_interval_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Content-Type": "application/json", "User-Agent": "approval-workflow"}
        )
        if headers:
            self._session.headers.update(headers)

    def publish(self, event: WorkflowEvent) -> None:
        body = event.to_json()
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self._session.post(self._url, json=body, timeout=self._timeout)
                resp.raise_for_status()
                return
            except requests.RequestException:
                if attempt > self._retries:
                    raise
                logger.warning(
                    "Webhook delivery failed; retrying",
                    extra={
                        "event_type": event.type.value,
                        "instance_id": event.instance_id,
                        "attempt": attempt,
                    },
                )
                time.sleep(self._retry_interval * attempt)

    def close(self) -> None:
        self._session.close()


_STOP = object()


class EventOutbox:
    """Queue of committed events drained by a daemon worker thread.

    With ``asynchronous=False`` events are delivered inline by `dispatch`, which
    is convenient for tests and for the CLI.
    """

    def __init__(self, sinks: Sequence[EventSink], *, asynchronous: bool = True) -> None:
        self._sinks = list(sinks)
        self._asynchronous = asynchronous
        self._queue: queue.Queue[object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def start(self) -> None:
        if not self._asynchronous:
            return
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="workflow-event-outbox", daemon=True
            )
            self._thread.start()

    def dispatch(self, events: Sequence[WorkflowEvent]) -> None:
        if not events:
            return
        if not self._asynchronous:
            for event in events:
                self._deliver(event)
            return
        self.start()
        for event in events:
            self._queue.put(event)

    def flush(self) -> None:
        """Block until every queued event has been handed to the sinks."""

        if self._asynchronous:
            self._queue.join()

    def stop(self, timeout: float | None = 5.0) -> None:
        thread = self._thread
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                assert isinstance(item, WorkflowEvent)
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: WorkflowEvent) -> None:
        for sink in self._sinks:
            try:
                sink.publish(event)
            except Exception:
                logger.exception(
                    "Event delivery failed",
                    extra={
                        "event_type": event.type.value,
                        "instance_id": event.instance_id,
                        "sink": type(sink).__name__,
                    },
                )
