from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class _Slot:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class InstanceLocks:
    """One mutex per flow instance id.

    Mutations of a single instance are serialized. Different instances never
    contend. Slots are dropped when nobody holds or waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.get(instance_id)
            if slot is None:
                slot = self._slots[instance_id] = _Slot()
            slot.holders += 1
        slot.lock.acquire()
        try:
            yield
        finally:
            slot.lock.release()
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    self._slots.pop(instance_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)
