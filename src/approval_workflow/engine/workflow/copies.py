from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from approval_workflow.store.instance_store import InstanceStore

from .errors import CopyRecordNotFoundError
from .models import CopyRecord, utc_now

logger = logging.getLogger(__name__)


class CopyRecordService:
    """CC inbox operations. Read flags are the only thing recipients can change."""

    def __init__(
        self, *, store: InstanceStore, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()

    def list_copies(self, user_id: str, *, is_read: bool | None = None) -> list[CopyRecord]:
        return self._store.find_copy_records(recipient_id=user_id, is_read=is_read)

    def unread_count(self, user_id: str) -> int:
        return len(self._store.find_copy_records(recipient_id=user_id, is_read=False))

    def mark_read(self, record_id: str, user_id: str) -> CopyRecord:
        """Mark one copy as read. Marking an already read copy is a no-op."""

        with self._lock:
            record = self._store.get_copy_record(record_id)
            # Someone else's copy is reported as missing rather than forbidden.
            if record is None or record.recipient_id != user_id:
                raise CopyRecordNotFoundError(record_id)
            if record.is_read:
                return record
            record.is_read = True
            record.read_time = self._clock()
            self._store.save_copy_records([record])
        logger.debug("Copy marked read", extra={"record_id": record_id, "user_id": user_id})
        return record

    def mark_all_read(self, user_id: str) -> int:
        with self._lock:
            unread = self._store.find_copy_records(recipient_id=user_id, is_read=False)
            now = self._clock()
            for record in unread:
                record.is_read = True
                record.read_time = now
            if unread:
                self._store.save_copy_records(unread)
        logger.info("Copies marked read", extra={"user_id": user_id, "count": len(unread)})
        return len(unread)
