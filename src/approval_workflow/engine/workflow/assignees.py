from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Protocol

from .definitions import AssigneeType, AssignRule
from .models import FlowInstance

logger = logging.getLogger(__name__)


class Directory(Protocol):
    """The user/org directory collaborator.

    Implementations may block on I/O. Unknown or disabled users are simply
    left out of the results.
    """

    def active_users(self, user_ids: Sequence[str]) -> list[str]: ...

    def users_with_roles(self, role_ids: Sequence[str]) -> list[str]: ...

    def department_of(self, user_id: str) -> str | None: ...

    def department_leader(self, department_id: str) -> str | None: ...

    def manager_of(self, user_id: str) -> str | None: ...

    def administrators(self) -> list[str]: ...


def _dedupe(user_ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for user_id in user_ids:
        if user_id and user_id not in seen:
            seen.add(user_id)
            out.append(user_id)
    return out


class AssigneeResolver:
    """Turn a node's assignment rule into concrete user ids for one instance."""

    def __init__(self, directory: Directory) -> None:
        self._directory = directory

    def resolve(self, rule: AssignRule, instance: FlowInstance) -> list[str]:
        if rule.type == AssigneeType.SPECIFIC_USER:
            users = self._directory.active_users(list(rule.user_ids))
        elif rule.type == AssigneeType.ROLE:
            users = self._directory.users_with_roles(list(rule.role_ids)) if rule.role_ids else []
        elif rule.type == AssigneeType.DEPT_LEADER:
            users = self._department_leader_of(instance.initiator_id)
        elif rule.type == AssigneeType.INITIATOR_LEADER:
            manager = self._directory.manager_of(instance.initiator_id)
            if manager is not None:
                users = self._directory.active_users([manager])
            else:
                users = self._department_leader_of(instance.initiator_id)
        elif rule.type == AssigneeType.FORM_FIELD:
            users = self._from_form_field(rule.field_name or "", instance)
        else:
            logger.warning("Unknown assignee rule type", extra={"rule_type": str(rule.type)})
            users = []

        resolved = _dedupe(users)
        logger.debug(
            "Assignees resolved",
            extra={
                "instance_id": instance.id,
                "rule_type": rule.type.value,
                "assignees": resolved,
            },
        )
        return resolved

    def administrators(self) -> list[str]:
        return _dedupe(self._directory.administrators())

    def known_users(self, user_ids: Sequence[str]) -> list[str]:
        """The subset of `user_ids` that exist and are active."""

        return _dedupe(self._directory.active_users(list(user_ids)))

    def _department_leader_of(self, user_id: str) -> list[str]:
        department = self._directory.department_of(user_id)
        if department is None:
            return []
        leader = self._directory.department_leader(department)
        if leader is None:
            return []
        return self._directory.active_users([leader])

    def _from_form_field(self, field_name: str, instance: FlowInstance) -> list[str]:
        value = instance.form_data.get(field_name)
        if value is None or value == "":
            return []
        raw = value if isinstance(value, list) else [value]
        return self._directory.active_users([str(v) for v in raw if v is not None])
