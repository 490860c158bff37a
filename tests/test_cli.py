from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from autonomy_engine.__main__ import main
from autonomy_engine.goals import GoalStore
from autonomy_engine.inbox import OperatorInbox
from autonomy_engine.models import ApprovalRequest, Goal, WorkLogStatus
from autonomy_engine.state_store import EngineStateStore
from autonomy_engine.work_log import WorkLog

from conftest import T0, make_action


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("AUTONOMY_STATE_STORE_ROOT", "state")
    monkeypatch.delenv("AUTONOMY_EXECUTOR_CHAIN", raising=False)
    return tmp_path


def _store(repo: Path) -> EngineStateStore:
    return EngineStateStore(repo / "state")


def _run(repo: Path, *args: str) -> int:
    return main(["--repo-root", str(repo), *args])


def test_goals_add_queues_inbox_command(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(repo, "goals", "add", "Run a 10k", "--priority", "8", "--category", "health", "--activate") == 0
    assert "add goal" in capsys.readouterr().out

    commands = OperatorInbox(_store(repo).inbox).pending()
    assert len(commands) == 1
    assert commands[0].kind == "add_goal"
    assert commands[0].goal.title == "Run a 10k"
    assert commands[0].goal.priority == 8
    assert commands[0].auto_activate


def test_goals_list_prints_stored_goals(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    GoalStore(_store(repo).goals).put(Goal(title="Learn to juggle", priority=2))
    assert _run(repo, "goals", "list") == 0
    assert "Learn to juggle" in capsys.readouterr().out


def test_approve_unknown_id_fails(repo: Path) -> None:
    assert _run(repo, "approvals", "approve", "approval-missing") == 1
    assert OperatorInbox(_store(repo).inbox).pending() == []


def test_approve_and_reject_known_ids(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = _store(repo)
    requests = [
        ApprovalRequest(action=make_action(title, "execute"), created_at=T0, expires_at=T0 + timedelta(days=1))
        for title in ("Send invoice", "Cancel gym")
    ]
    for request in requests:
        store.approvals.put(request.approval_id, request.model_dump(mode="json"))

    assert _run(repo, "approvals", "list") == 0
    listing = capsys.readouterr().out
    assert "Send invoice" in listing and "Cancel gym" in listing

    assert _run(repo, "approvals", "approve", requests[0].approval_id) == 0
    assert _run(repo, "approvals", "reject", requests[1].approval_id, "--reason", "still going") == 0

    commands = OperatorInbox(store.inbox).pending()
    assert [(command.kind, command.approval_id) for command in commands] == [
        ("approve", requests[0].approval_id),
        ("reject", requests[1].approval_id),
    ]
    assert commands[1].reason == "still going"


def test_log_shows_most_recent_entries(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    work_log = WorkLog(_store(repo).work_log)
    work_log.append("engine", "first entry", WorkLogStatus.INFO)
    work_log.append("dispatcher", "Completed: second entry", WorkLogStatus.SUCCESS, action_id="action-1")

    assert _run(repo, "log", "--limit", "1") == 0
    out = capsys.readouterr().out
    assert "Completed: second entry [action-1]" in out
    assert "first entry" not in out


def test_log_filters_by_source_and_status(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    work_log = WorkLog(_store(repo).work_log)
    work_log.append("engine", "cycle started", WorkLogStatus.INFO)
    work_log.append("dispatcher", "Failed: upload", WorkLogStatus.ERROR, action_id="action-1")
    work_log.append("dispatcher", "Completed: backup", WorkLogStatus.SUCCESS, action_id="action-2")

    assert _run(repo, "log", "--source", "dispatcher") == 0
    out = capsys.readouterr().out
    assert "Failed: upload" in out and "Completed: backup" in out
    assert "cycle started" not in out

    assert _run(repo, "log", "--source", "dispatcher", "--status", "error") == 0
    out = capsys.readouterr().out
    assert "Failed: upload" in out
    assert "Completed: backup" not in out


def test_status_before_first_run(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(repo, "status") == 0
    assert "no supervisor snapshot yet" in capsys.readouterr().out


def test_invalid_configuration_exits_nonzero(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTONOMY_EXECUTOR_CHAIN", "cli,cli")
    assert _run(repo, "status") == 1
