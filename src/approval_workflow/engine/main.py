"""CLI entrypoint for the approval workflow engine.

Exit codes:
    0  success
    1  unexpected failure
    2  configuration or validation error
    3  idempotency conflict (the task was already handled)
    4  invalid state or permission
    5  not found
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from approval_workflow import __version__
from approval_workflow.engine.config import EngineSettings
from approval_workflow.engine.logging import configure_logging
from approval_workflow.engine.runtime import WorkflowRuntime, build_runtime
from approval_workflow.engine.workflow.errors import (
    ConditionEvaluationError,
    CopyRecordNotFoundError,
    DefinitionNotFoundError,
    DefinitionNotPublishedError,
    IllegalTransitionError,
    InstanceNotFoundError,
    InvalidGraphError,
    InvalidStateError,
    InvalidTaskOperationError,
    PermissionDeniedError,
    TaskAlreadyCompletedError,
    TaskNotFoundError,
)
from approval_workflow.engine.workflow.graph import validate_definition
from approval_workflow.store.definition_store import read_definition_file

logger = logging.getLogger(__name__)


def _parse_users(value: str) -> list[str]:
    parts = [p.strip() for p in value.split(",")]
    return [p for p in parts if p]


def _load_form(args: argparse.Namespace) -> dict[str, Any]:
    if args.form_file:
        text = Path(args.form_file).read_text(encoding="utf-8")
    elif args.form:
        text = args.form
    else:
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Form data must be a JSON object")
    return data


def _print_json(value: BaseModel | list[BaseModel] | dict[str, Any]) -> None:
    if isinstance(value, BaseModel):
        payload: Any = value.model_dump(mode="json")
    elif isinstance(value, list):
        payload = [v.model_dump(mode="json") for v in value]
    else:
        payload = value
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _add_task_args(parser: argparse.ArgumentParser, *, operator_required: bool = False) -> None:
    parser.add_argument("--task", dest="task_id", required=True, help="Task id")
    parser.add_argument(
        "--operator",
        required=operator_required,
        default=None,
        help="User performing the action (checked against the task assignee)",
    )
    parser.add_argument("--comment", default=None, help="Optional comment")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="approval-workflow",
        description="Run approval flows defined as process graphs",
    )
    parser.add_argument("--version", action="version", version=f"approval-workflow {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser(
        "validate-definition", help="Check a flow definition file for graph problems"
    )
    validate.add_argument("--file", required=True, help="Path to a definition JSON document")

    start = subparsers.add_parser("start-flow", help="Start a flow instance")
    start.add_argument("--definition", dest="definition_id", required=True, help="Definition id")
    start.add_argument("--initiator", required=True, help="Initiating user id")
    start.add_argument("--title", default=None, help="Instance title")
    start.add_argument("--business-key", default=None, help="Business reference for callbacks")
    form = start.add_mutually_exclusive_group()
    form.add_argument("--form", default=None, help="Form data as a JSON object")
    form.add_argument("--form-file", default=None, help="Path to a JSON file with form data")

    approve = subparsers.add_parser("approve", help="Approve a pending task")
    _add_task_args(approve)

    reject = subparsers.add_parser("reject", help="Reject a pending task")
    _add_task_args(reject)

    transfer = subparsers.add_parser("transfer", help="Hand a pending task to another user")
    _add_task_args(transfer)
    transfer.add_argument("--to", dest="to_user", required=True, help="Receiving user id")

    countersign = subparsers.add_parser(
        "countersign", help="Add approvers to a pending task's node"
    )
    _add_task_args(countersign)
    countersign.add_argument(
        "--users", required=True, help="Comma-separated user ids to add, e.g. 'alice,bob'"
    )

    urge = subparsers.add_parser("urge", help="Remind the assignee of a pending task")
    _add_task_args(urge, operator_required=True)

    cancel = subparsers.add_parser("cancel", help="Withdraw a running instance (initiator only)")
    cancel.add_argument("--instance", dest="instance_id", required=True, help="Instance id")
    cancel.add_argument("--operator", required=True, help="Initiating user id")
    cancel.add_argument("--reason", default=None, help="Optional reason")

    terminate = subparsers.add_parser("terminate", help="Administratively end an instance")
    terminate.add_argument("--instance", dest="instance_id", required=True, help="Instance id")
    terminate.add_argument("--operator", default=None, help="Administrator user id")
    terminate.add_argument("--reason", default=None, help="Optional reason")

    show = subparsers.add_parser("show-instance", help="Print an instance with tasks and copies")
    show.add_argument("--instance", dest="instance_id", required=True, help="Instance id")

    progress = subparsers.add_parser("progress", help="Print per-node progress of an instance")
    progress.add_argument("--instance", dest="instance_id", required=True, help="Instance id")

    pending = subparsers.add_parser("pending-tasks", help="List a user's pending tasks")
    pending.add_argument("--user", required=True, help="Assignee user id")

    copies = subparsers.add_parser("copies", help="List a user's CC copies")
    copies.add_argument("--user", required=True, help="Recipient user id")
    copies.add_argument("--unread", action="store_true", help="Only unread copies")

    mark_read = subparsers.add_parser("mark-read", help="Mark CC copies as read")
    mark_read.add_argument("--user", required=True, help="Recipient user id")
    target = mark_read.add_mutually_exclusive_group(required=True)
    target.add_argument("--record", dest="record_id", default=None, help="Copy record id")
    target.add_argument("--all", dest="all_records", action="store_true", help="Every copy")

    return parser


def _validate_definition(path: Path) -> int:
    try:
        record = read_definition_file(path)
    except (OSError, ValueError) as e:
        print(str(e), file=sys.stderr)
        return 2
    problems = validate_definition(record)
    if problems:
        print(f"Definition {record.id!r} is invalid:", file=sys.stderr)
        for problem in problems:
            print(f"  - {problem}", file=sys.stderr)
        return 2
    print(f"Definition {record.id!r} (version {record.version}) is valid")
    return 0


def _run(args: argparse.Namespace, runtime: WorkflowRuntime) -> int:
    executor = runtime.executor

    if args.command == "start-flow":
        instance = executor.start_flow(
            args.definition_id,
            initiator_id=args.initiator,
            form_data=_load_form(args),
            title=args.title,
            business_key=args.business_key,
        )
        print(f"Started {instance.instance_no} ({instance.id}): {instance.status.value}")
        return 0

    if args.command in ("approve", "reject"):
        handler = executor.approve if args.command == "approve" else executor.reject
        completion = handler(args.task_id, comment=args.comment, operator_id=args.operator)
        task = completion.task
        decision = task.result.value if task.result else "-"
        outcome = completion.node_outcome.value if completion.node_outcome else "open"
        print(
            f"Task {task.task_no}: {decision}; node {outcome}; "
            f"instance {completion.instance.status.value}"
        )
        return 0

    if args.command == "transfer":
        completion = executor.transfer(
            args.task_id, args.to_user, comment=args.comment, operator_id=args.operator
        )
        print(f"Task {completion.task.task_no} transferred to {completion.task.assignee_id}")
        return 0

    if args.command == "countersign":
        users = _parse_users(args.users)
        completion = executor.countersign(
            args.task_id, users, comment=args.comment, operator_id=args.operator
        )
        print(f"Task {completion.task.task_no} countersigned with {', '.join(users)}")
        return 0

    if args.command == "urge":
        task = executor.urge(args.task_id, operator_id=args.operator, comment=args.comment)
        print(f"Urged {task.assignee_id} on task {task.task_no}")
        return 0

    if args.command == "cancel":
        instance = executor.cancel(args.instance_id, operator_id=args.operator, reason=args.reason)
        print(f"Instance {instance.instance_no}: {instance.status.value}")
        return 0

    if args.command == "terminate":
        instance = executor.terminate(
            args.instance_id, operator_id=args.operator, reason=args.reason
        )
        print(f"Instance {instance.instance_no}: {instance.status.value}")
        return 0

    if args.command == "show-instance":
        _print_json(runtime.queries.get_instance(args.instance_id))
        return 0

    if args.command == "progress":
        for node in runtime.queries.get_progress(args.instance_id):
            result = f" ({node.result.value})" if node.result else ""
            print(f"{node.status:<9} {node.node_type:<9} {node.node_name}{result}")
        return 0

    if args.command == "pending-tasks":
        _print_json(runtime.queries.pending_tasks(args.user))
        return 0

    if args.command == "copies":
        _print_json(runtime.copies.list_copies(args.user, is_read=False if args.unread else None))
        return 0

    if args.command == "mark-read":
        if args.all_records:
            count = runtime.copies.mark_all_read(args.user)
            print(f"Marked {count} copies as read")
        else:
            record = runtime.copies.mark_read(args.record_id, args.user)
            read_at = record.read_time.isoformat() if record.read_time else "-"
            print(f"Copy {record.id} read at {read_at}")
        return 0

    logger.error("Unknown command", extra={"command": args.command})
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    if args.command == "validate-definition":
        return _validate_definition(Path(args.file))

    runtime = build_runtime(settings, asynchronous_events=False)
    try:
        return _run(args, runtime)

    except TaskAlreadyCompletedError as e:
        logger.warning(str(e), extra={"task_id": e.task.id, "status": e.task.status.value})
        print(str(e), file=sys.stderr)
        return 3

    except (
        InvalidStateError,
        PermissionDeniedError,
        IllegalTransitionError,
        DefinitionNotPublishedError,
        InvalidTaskOperationError,
    ) as e:
        print(str(e), file=sys.stderr)
        return 4

    except (
        InstanceNotFoundError,
        TaskNotFoundError,
        CopyRecordNotFoundError,
        DefinitionNotFoundError,
    ) as e:
        print(str(e), file=sys.stderr)
        return 5

    except (InvalidGraphError, ConditionEvaluationError, ValueError) as e:
        print(str(e), file=sys.stderr)
        return 2

    except Exception:
        logger.exception("Command failed")
        return 1

    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
