#!/usr/bin/env python3
"""Programmatic approval flow example.

This drives the engine components directly:

* load settings from `.env`
* register a two-step leave definition in memory
* start a flow and approve it step by step
* print the per-node progress

Instances are kept in memory; nothing is written to disk.
"""

from __future__ import annotations

import argparse
from typing import Sequence

from approval_workflow.directory import DirectoryDocument, StaticDirectory
from approval_workflow.engine.config import EngineSettings
from approval_workflow.engine.logging import configure_logging
from approval_workflow.engine.runtime import build_runtime
from approval_workflow.engine.workflow.definitions import DefinitionRecord
from approval_workflow.store.definition_store import InMemoryDefinitionStore
from approval_workflow.store.instance_store import InMemoryInstanceStore

LEAVE = {
    "id": "leave",
    "name": "Leave request",
    "status": "PUBLISHED",
    "nodes": [
        {"id": "start", "type": "START"},
        {
            "id": "manager",
            "type": "APPROVAL",
            "name": "Manager",
            "assign_rule": {"type": "INITIATOR_LEADER"},
        },
        {"id": "check", "type": "CONDITION"},
        {
            "id": "hr",
            "type": "APPROVAL",
            "name": "HR",
            "assign_rule": {"type": "ROLE", "role_ids": ["hr"]},
            "cc_rule": {"type": "INITIATOR_LEADER"},
        },
        {"id": "end", "type": "END"},
    ],
    "edges": [
        {"source": "start", "target": "manager"},
        {"source": "manager", "target": "check"},
        {
            "source": "check",
            "target": "hr",
            "condition": {"field": "days", "operator": "gt", "value": 3},
        },
        {"source": "check", "target": "end"},
        {"source": "hr", "target": "end"},
    ],
}

DIRECTORY = {
    "users": [
        {"id": "alice", "department_id": "ops", "manager_id": "mike"},
        {"id": "mike", "department_id": "ops"},
        {"id": "hannah", "roles": ["hr"]},
    ],
    "departments": [{"id": "ops", "leader_id": "mike"}],
}


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a leave request through approval.")
    parser.add_argument("--days", type=int, default=5, help="Requested leave days")
    parser.add_argument("--initiator", default="alice", help="Initiating user id")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    runtime = build_runtime(
        settings,
        directory=StaticDirectory(DirectoryDocument.model_validate(DIRECTORY)),
        definitions=InMemoryDefinitionStore([DefinitionRecord.model_validate(LEAVE)]),
        store=InMemoryInstanceStore(),
        asynchronous_events=False,
    )
    try:
        instance = runtime.executor.start_flow(
            "leave", initiator_id=args.initiator, form_data={"days": args.days}
        )
        print(f"Started {instance.instance_no}")

        while True:
            pending = runtime.queries.get_instance(instance.id).pending_tasks
            if not pending:
                break
            for task in pending:
                runtime.executor.approve(task.id, comment="Looks fine")
                print(f"{task.assignee_id} approved {task.node_name}")

        for node in runtime.queries.get_progress(instance.id):
            print(f"  {node.status:<9} {node.node_name}")
        final = runtime.queries.get_instance(instance.id).instance
        print(f"Final status: {final.status.value}")
    finally:
        runtime.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
