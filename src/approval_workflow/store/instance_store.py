"""Persistence of flow instances together with their tasks and copy records.

A save is atomic per instance: the instance, its changed tasks and its new copy
records are written together or not at all. Loads always return fresh copies,
so callers may mutate what they get back without affecting stored state.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from approval_workflow.engine.workflow.errors import InstanceNotFoundError
from approval_workflow.engine.workflow.models import (
    CopyRecord,
    FlowInstance,
    InstanceStatus,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)


class InstanceStore(Protocol):
    def save(
        self,
        instance: FlowInstance,
        tasks: Sequence[Task] = (),
        copy_records: Sequence[CopyRecord] = (),
    ) -> None: ...

    def load(self, instance_id: str) -> FlowInstance: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(self, instance_id: str) -> list[Task]: ...

    def find_tasks(
        self, *, assignee_id: str | None = None, status: TaskStatus | None = None
    ) -> list[Task]: ...

    def list_instances(
        self, *, initiator_id: str | None = None, status: InstanceStatus | None = None
    ) -> list[FlowInstance]: ...

    def get_copy_record(self, record_id: str) -> CopyRecord | None: ...

    def list_copy_records(self, instance_id: str) -> list[CopyRecord]: ...

    def find_copy_records(
        self, *, recipient_id: str, is_read: bool | None = None
    ) -> list[CopyRecord]: ...

    def save_copy_records(self, records: Sequence[CopyRecord]) -> None: ...


class InstanceDocument(BaseModel):
    """Everything persisted for one instance."""

    instance: FlowInstance
    tasks: list[Task] = Field(default_factory=list)
    copy_records: list[CopyRecord] = Field(default_factory=list)

    def upsert(self, tasks: Sequence[Task], copy_records: Sequence[CopyRecord]) -> None:
        task_index = {t.id: i for i, t in enumerate(self.tasks)}
        for task in tasks:
            idx = task_index.get(task.id)
            if idx is None:
                task_index[task.id] = len(self.tasks)
                self.tasks.append(task)
            else:
                self.tasks[idx] = task

        copy_index = {c.id: i for i, c in enumerate(self.copy_records)}
        for record in copy_records:
            idx = copy_index.get(record.id)
            if idx is None:
                copy_index[record.id] = len(self.copy_records)
                self.copy_records.append(record)
            else:
                self.copy_records[idx] = record


def _task_matches(task: Task, assignee_id: str | None, status: TaskStatus | None) -> bool:
    if assignee_id is not None and task.assignee_id != assignee_id:
        return False
    return status is None or task.status == status


def _instance_matches(
    instance: FlowInstance, initiator_id: str | None, status: InstanceStatus | None
) -> bool:
    if initiator_id is not None and instance.initiator_id != initiator_id:
        return False
    return status is None or instance.status == status


def _copy_matches(record: CopyRecord, recipient_id: str, is_read: bool | None) -> bool:
    if record.recipient_id != recipient_id:
        return False
    return is_read is None or record.is_read == is_read


class _DocumentStore(ABC):
    """Query logic shared by the concrete stores, written against `_documents()`."""

    _lock: threading.Lock

    @abstractmethod
    def _documents(self) -> Iterator[InstanceDocument]: ...

    @abstractmethod
    def _read(self, instance_id: str) -> InstanceDocument | None: ...

    @abstractmethod
    def _write(self, doc: InstanceDocument) -> None: ...

    def save(
        self,
        instance: FlowInstance,
        tasks: Sequence[Task] = (),
        copy_records: Sequence[CopyRecord] = (),
    ) -> None:
        with self._lock:
            doc = self._read(instance.id)
            if doc is None:
                doc = InstanceDocument(instance=instance.model_copy(deep=True))
            else:
                doc.instance = instance.model_copy(deep=True)
            doc.upsert(
                [t.model_copy(deep=True) for t in tasks],
                [c.model_copy(deep=True) for c in copy_records],
            )
            self._write(doc)

    def load(self, instance_id: str) -> FlowInstance:
        with self._lock:
            doc = self._read(instance_id)
        if doc is None:
            raise InstanceNotFoundError(instance_id)
        return doc.instance.model_copy(deep=True)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            for doc in self._documents():
                for task in doc.tasks:
                    if task.id == task_id:
                        return task.model_copy(deep=True)
        return None

    def list_tasks(self, instance_id: str) -> list[Task]:
        with self._lock:
            doc = self._read(instance_id)
        if doc is None:
            return []
        return [t.model_copy(deep=True) for t in doc.tasks]

    def find_tasks(
        self, *, assignee_id: str | None = None, status: TaskStatus | None = None
    ) -> list[Task]:
        with self._lock:
            found = [
                t.model_copy(deep=True)
                for doc in self._documents()
                for t in doc.tasks
                if _task_matches(t, assignee_id, status)
            ]
        return sorted(found, key=lambda t: t.created_at, reverse=True)

    def list_instances(
        self, *, initiator_id: str | None = None, status: InstanceStatus | None = None
    ) -> list[FlowInstance]:
        with self._lock:
            found = [
                doc.instance.model_copy(deep=True)
                for doc in self._documents()
                if _instance_matches(doc.instance, initiator_id, status)
            ]
        return sorted(found, key=lambda i: i.start_time, reverse=True)

    def get_copy_record(self, record_id: str) -> CopyRecord | None:
        with self._lock:
            for doc in self._documents():
                for record in doc.copy_records:
                    if record.id == record_id:
                        return record.model_copy(deep=True)
        return None

    def list_copy_records(self, instance_id: str) -> list[CopyRecord]:
        with self._lock:
            doc = self._read(instance_id)
        if doc is None:
            return []
        return [c.model_copy(deep=True) for c in doc.copy_records]

    def find_copy_records(
        self, *, recipient_id: str, is_read: bool | None = None
    ) -> list[CopyRecord]:
        with self._lock:
            found = [
                c.model_copy(deep=True)
                for doc in self._documents()
                for c in doc.copy_records
                if _copy_matches(c, recipient_id, is_read)
            ]
        return sorted(found, key=lambda c: c.created_at, reverse=True)

    def save_copy_records(self, records: Sequence[CopyRecord]) -> None:
        by_instance: dict[str, list[CopyRecord]] = {}
        for record in records:
            by_instance.setdefault(record.flow_instance_id, []).append(record.model_copy(deep=True))
        with self._lock:
            for instance_id, group in by_instance.items():
                doc = self._read(instance_id)
                if doc is None:
                    raise InstanceNotFoundError(instance_id)
                doc.upsert((), group)
                self._write(doc)


class InMemoryInstanceStore(_DocumentStore):
    """Process-local store, used by tests and by the `memory` backend."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._docs: dict[str, InstanceDocument] = {}

    def _documents(self) -> Iterator[InstanceDocument]:
        return iter(list(self._docs.values()))

    def _read(self, instance_id: str) -> InstanceDocument | None:
        doc = self._docs.get(instance_id)
        return None if doc is None else doc.model_copy(deep=True)

    def _write(self, doc: InstanceDocument) -> None:
        self._docs[doc.instance.id] = doc.model_copy(deep=True)


@dataclass
class JsonInstanceStore(_DocumentStore):
    """One JSON document per instance under `root`.

    Documents are written to a temporary file and moved into place with
    `os.replace`, so a crash never leaves a half-written instance behind.
    """

    root: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _path(self, instance_id: str) -> Path:
        return self.root / f"{instance_id}.json"

    def _documents(self) -> Iterator[InstanceDocument]:
        if not self.root.exists():
            return
        for path in sorted(self.root.glob("*.json")):
            doc = self._load_path(path)
            if doc is not None:
                yield doc

    def _read(self, instance_id: str) -> InstanceDocument | None:
        path = self._path(instance_id)
        if not path.exists():
            return None
        return self._load_path(path)

    def _load_path(self, path: Path) -> InstanceDocument | None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Skipping unreadable instance document", extra={"path": str(path)})
            return None
        return InstanceDocument.model_validate(raw)

    def _write(self, doc: InstanceDocument) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        target = self._path(doc.instance.id)
        text = json.dumps(doc.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
