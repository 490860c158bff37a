from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from autonomy_engine.events import EventBus
from autonomy_engine.executors import ExecutorChain
from autonomy_engine.models import Action, EngineEvent, ExecutionResult, Goal
from autonomy_engine.runtime import EngineRuntime, build_runtime
from autonomy_engine.settings import RuntimeSettings
from autonomy_engine.state_store import EngineStateStore
from autonomy_engine.utils import new_id
from autonomy_engine.work_log import WorkLog

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


HANG = object()


class FakeExecutor:
    """Scripted executor: each call consumes the next outcome.

    An outcome is an ExecutionResult, an exception instance to raise, or
    ``HANG`` to block until cancelled.
    """

    def __init__(self, name: str, outcomes: list[Any] | None = None, *, ready: bool = True) -> None:
        self.name = name
        self.outcomes = list(outcomes or [])
        self.ready = ready
        self.calls: list[str] = []
        self.cancel_calls = 0
        self.started = asyncio.Event()

    def is_ready(self) -> bool:
        return self.ready

    async def execute(self, action: Action, deadline: datetime) -> ExecutionResult:
        self.calls.append(action.id)
        self.started.set()
        outcome = self.outcomes.pop(0) if self.outcomes else ExecutionResult(success=True, output="ok")
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def cancel(self) -> None:
        self.cancel_calls += 1


class FakeProposer:
    """Returns scripted batches; the last batch repeats once the script runs out."""

    def __init__(self, action_batches: list[list[Action]] | None = None, goal_batches: list[list[Goal]] | None = None):
        self.action_batches = list(action_batches or [[]])
        self.goal_batches = list(goal_batches or [[]])
        self.propose_calls: list[str] = []
        self.goal_calls = 0
        self.error: Exception | None = None

    async def propose(self, goal: Goal, context: dict[str, Any]) -> list[Action]:
        self.propose_calls.append(goal.id)
        if self.error is not None:
            raise self.error
        batch = self.action_batches.pop(0) if len(self.action_batches) > 1 else self.action_batches[0]
        return [template.model_copy(deep=True, update={"id": new_id("action"), "goal_id": goal.id}) for template in batch]

    async def propose_goals(self, context: dict[str, Any]) -> list[Goal]:
        self.goal_calls += 1
        batch = self.goal_batches.pop(0) if len(self.goal_batches) > 1 else self.goal_batches[0]
        return [goal.model_copy(deep=True) for goal in batch]


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: list[EngineEvent] = []
        bus.subscribe(self.events.append)

    def names(self) -> list[str]:
        return [event.name for event in self.events]

    def named(self, name: str) -> list[EngineEvent]:
        return [event for event in self.events if event.name == name]


def make_action(title: str = "Summarize findings", action_type: str = "research", **kwargs: Any) -> Action:
    return Action(title=title, type=action_type, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> EngineStateStore:
    return EngineStateStore(tmp_path / "state")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def work_log(store: EngineStateStore, clock: FakeClock) -> WorkLog:
    return WorkLog(store.work_log, retention=50, clock=clock)


def build_test_runtime(
    tmp_path: Path,
    clock: FakeClock,
    proposer: FakeProposer,
    executors: list[FakeExecutor],
    **overrides: Any,
) -> EngineRuntime:
    settings = RuntimeSettings(state_store_root=str(tmp_path / "state"), **overrides).normalized()
    return build_runtime(
        settings,
        proposer,
        repo_root=tmp_path,
        chain=ExecutorChain(executors),
        clock=clock,
        log_events=False,
    )
