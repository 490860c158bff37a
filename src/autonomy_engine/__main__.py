"""Entry point for `python -m autonomy_engine` and the `autonomy` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from autonomy_engine.goals import GoalStore
from autonomy_engine.inbox import OperatorInbox
from autonomy_engine.llm import ChatModelProposer
from autonomy_engine.models import ApprovalRequest, Goal, WorkLogEntry, WorkLogStatus
from autonomy_engine.runtime import build_runtime
from autonomy_engine.settings import RuntimeSettings
from autonomy_engine.state_store import EngineStateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autonomy", description="Run and operate the autonomy engine")
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=None,
        help="Base directory for relative state store paths (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Run the supervised engine until interrupted")
    commands.add_parser("status", help="Show the last persisted supervisor snapshot")

    goals = commands.add_parser("goals", help="Inspect or add goals")
    goal_commands = goals.add_subparsers(dest="goal_command", required=True)
    goal_commands.add_parser("list", help="List goals")
    add = goal_commands.add_parser("add", help="Queue a new goal for the engine")
    add.add_argument("title")
    add.add_argument("--priority", type=float, default=5.0)
    add.add_argument("--category", default="general")
    add.add_argument("--description", default="")
    add.add_argument("--activate", action="store_true", help="Make this the active goal")

    approvals = commands.add_parser("approvals", help="Inspect and resolve pending approvals")
    approval_commands = approvals.add_subparsers(dest="approval_command", required=True)
    approval_commands.add_parser("list", help="List pending approvals")
    approve = approval_commands.add_parser("approve", help="Approve a pending action")
    approve.add_argument("approval_id")
    reject = approval_commands.add_parser("reject", help="Reject a pending action")
    reject.add_argument("approval_id")
    reject.add_argument("--reason", default=None)

    log = commands.add_parser("log", help="Show recent work log entries")
    log.add_argument("--limit", type=int, default=20)
    log.add_argument("--source", default=None, help="Only entries from this source, e.g. dispatcher")
    log.add_argument("--status", choices=[status.value for status in WorkLogStatus], default=None)
    return parser


def _open_store(settings: RuntimeSettings, repo_root: Path) -> EngineStateStore:
    return EngineStateStore(settings.state_store_path(repo_root))


def _run(settings: RuntimeSettings, repo_root: Path) -> int:
    runtime = build_runtime(settings, ChatModelProposer.from_settings(settings), repo_root=repo_root)
    try:
        asyncio.run(runtime.run_forever())
    except KeyboardInterrupt:
        logging.info("Interrupted; engine stopped")
    return 0


def _status(store: EngineStateStore) -> int:
    record = store.read_supervisor()
    if record is None:
        print("no supervisor snapshot yet")
        return 0
    print(record.model_dump_json(indent=2))
    return 0


def _goals(args: argparse.Namespace, store: EngineStateStore) -> int:
    if args.goal_command == "list":
        for goal in GoalStore(store.goals).list():
            print(f"{goal.id}  [{goal.status.value:9}] p={goal.priority:<4g} {goal.progress:4.0%}  {goal.title}")
        return 0
    goal = Goal(title=args.title, priority=args.priority, category=args.category, description=args.description)
    command = OperatorInbox(store.inbox).add_goal(goal, auto_activate=args.activate)
    print(f"queued {command.command_id}: add goal {goal.id}")
    return 0


def _approvals(args: argparse.Namespace, store: EngineStateStore) -> int:
    if args.approval_command == "list":
        for payload in store.approvals.snapshot().values():
            request = ApprovalRequest.model_validate(payload)
            print(
                f"{request.approval_id}  {request.action.type:<12} expires {request.expires_at.isoformat()}  "
                f"{request.action.title}"
            )
        return 0
    if args.approval_id not in store.approvals.snapshot():
        logging.error("No pending approval with id %s", args.approval_id)
        return 1
    inbox = OperatorInbox(store.inbox)
    if args.approval_command == "approve":
        command = inbox.approve(args.approval_id)
    else:
        command = inbox.reject(args.approval_id, args.reason)
    print(f"queued {command.command_id}: {command.kind} {args.approval_id}")
    return 0


def _log(args: argparse.Namespace, store: EngineStateStore) -> int:
    entries = [WorkLogEntry.model_validate(record.payload) for record in store.work_log.live_records()]
    if args.source:
        entries = [entry for entry in entries if entry.source == args.source]
    if args.status:
        entries = [entry for entry in entries if entry.status.value == args.status]
    for entry in entries[-args.limit:] if args.limit > 0 else []:
        action = f" [{entry.action_id}]" if entry.action_id else ""
        print(f"{entry.timestamp.isoformat()} {entry.status.value:<7} {entry.source}: {entry.message}{action}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo_root = (args.repo_root or Path.cwd()).resolve()

    try:
        settings = RuntimeSettings.from_env(repo_root / ".env")
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.command == "run":
        try:
            return _run(settings, repo_root)
        except Exception as exc:  # noqa: BLE001
            logging.exception("Engine failed: %s", exc)
            return 1

    store = _open_store(settings, repo_root)
    try:
        if args.command == "status":
            return _status(store)
        if args.command == "goals":
            return _goals(args, store)
        if args.command == "approvals":
            return _approvals(args, store)
        return _log(args, store)
    except (OSError, ValueError) as exc:
        logging.error("Command failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
