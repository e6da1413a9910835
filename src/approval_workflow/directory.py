"""A static user/org directory loaded from a JSON document.

Example document::

    {
      "users": [
        {"id": "alice", "roles": ["finance"], "department_id": "ops", "manager_id": "bob"},
        {"id": "bob", "active": false}
      ],
      "departments": [{"id": "ops", "leader_id": "carol"}],
      "administrators": ["root"]
    }
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel, Field


class DirectoryUser(BaseModel):
    id: str
    name: str = ""
    active: bool = True
    roles: list[str] = Field(default_factory=list)
    department_id: str | None = None
    manager_id: str | None = None


class DirectoryDepartment(BaseModel):
    id: str
    name: str = ""
    leader_id: str | None = None


class DirectoryDocument(BaseModel):
    users: list[DirectoryUser] = Field(default_factory=list)
    departments: list[DirectoryDepartment] = Field(default_factory=list)
    administrators: list[str] = Field(default_factory=list)


class StaticDirectory:
    def __init__(self, document: DirectoryDocument | None = None) -> None:
        doc = document or DirectoryDocument()
        self._users = {u.id: u for u in doc.users}
        self._departments = {d.id: d for d in doc.departments}
        self._administrators = list(doc.administrators)

    @classmethod
    def from_file(cls, path: Path) -> StaticDirectory:
        """Load a directory document. A missing file yields an empty directory."""

        if not path.exists():
            return cls()
        raw = json.loads(path.read_text(encoding="utf-8"))
        return cls(DirectoryDocument.model_validate(raw))

    def _is_active(self, user_id: str) -> bool:
        user = self._users.get(user_id)
        return user is not None and user.active

    def active_users(self, user_ids: Sequence[str]) -> list[str]:
        return [u for u in user_ids if self._is_active(u)]

    def users_with_roles(self, role_ids: Sequence[str]) -> list[str]:
        wanted = set(role_ids)
        return [u.id for u in self._users.values() if u.active and wanted & set(u.roles)]

    def department_of(self, user_id: str) -> str | None:
        user = self._users.get(user_id)
        return None if user is None else user.department_id

    def department_leader(self, department_id: str) -> str | None:
        department = self._departments.get(department_id)
        return None if department is None else department.leader_id

    def manager_of(self, user_id: str) -> str | None:
        user = self._users.get(user_id)
        return None if user is None else user.manager_id

    def administrators(self) -> list[str]:
        return [u for u in self._administrators if self._is_active(u)]
