"""Unit tests for assignee resolution against the static directory."""

from __future__ import annotations

import json
from pathlib import Path

from approval_workflow.directory import StaticDirectory
from approval_workflow.engine.workflow.assignees import AssigneeResolver
from approval_workflow.engine.workflow.definitions import AssignRule
from approval_workflow.engine.workflow.models import FlowInstance


def _instance(initiator: str = "alice", **form: object) -> FlowInstance:
    return FlowInstance(
        instance_no="WF20240501ABCDEF",
        definition_id="leave",
        definition_version=1,
        initiator_id=initiator,
        form_data=dict(form),
    )


def _rule(**fields: object) -> AssignRule:
    return AssignRule.model_validate(fields)


def test_specific_users_drop_inactive_and_duplicates(directory: StaticDirectory) -> None:
    resolver = AssigneeResolver(directory)
    rule = _rule(type="SPECIFIC_USER", user_ids=["bob", "ghost", "bob", "nobody", "carol"])

    assert resolver.resolve(rule, _instance()) == ["bob", "carol"]


def test_role_returns_active_members(directory: StaticDirectory) -> None:
    resolver = AssigneeResolver(directory)

    assert resolver.resolve(_rule(type="ROLE", role_ids=["finance"]), _instance()) == [
        "carol",
        "dave",
    ]
    assert resolver.resolve(_rule(type="ROLE"), _instance()) == []


def test_dept_leader_of_initiator(directory: StaticDirectory) -> None:
    resolver = AssigneeResolver(directory)

    assert resolver.resolve(_rule(type="DEPT_LEADER"), _instance("alice")) == ["lead"]
    assert resolver.resolve(_rule(type="DEPT_LEADER"), _instance("erin")) == []


def test_initiator_leader_prefers_manager(directory: StaticDirectory) -> None:
    resolver = AssigneeResolver(directory)

    assert resolver.resolve(_rule(type="INITIATOR_LEADER"), _instance("alice")) == ["mgr"]
    # bob has no manager, so his department leader is used.
    assert resolver.resolve(_rule(type="INITIATOR_LEADER"), _instance("bob")) == ["lead"]
    assert resolver.resolve(_rule(type="INITIATOR_LEADER"), _instance("frank")) == []


def test_form_field_accepts_single_value_or_list(directory: StaticDirectory) -> None:
    resolver = AssigneeResolver(directory)
    rule = _rule(type="FORM_FIELD", field_name="approvers")

    assert resolver.resolve(rule, _instance(approvers="dave")) == ["dave"]
    assert resolver.resolve(rule, _instance(approvers=["erin", "ghost", "frank"])) == [
        "erin",
        "frank",
    ]
    assert resolver.resolve(rule, _instance(approvers="")) == []
    assert resolver.resolve(rule, _instance()) == []


def test_administrators_and_known_users(directory: StaticDirectory) -> None:
    resolver = AssigneeResolver(directory)

    assert resolver.administrators() == ["admin"]
    assert resolver.known_users(["ghost", "erin", "erin", "nobody"]) == ["erin"]


def test_directory_from_file(tmp_path: Path) -> None:
    path = tmp_path / "directory.json"
    path.write_text(
        json.dumps(
            {
                "users": [{"id": "root"}, {"id": "old", "active": False}],
                "administrators": ["root", "old"],
            }
        ),
        encoding="utf-8",
    )

    directory = StaticDirectory.from_file(path)

    assert directory.active_users(["root", "old"]) == ["root"]
    assert directory.administrators() == ["root"]
    assert StaticDirectory.from_file(tmp_path / "missing.json").active_users(["root"]) == []
