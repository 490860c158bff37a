from __future__ import annotations

import asyncio

import pytest

from autonomy_engine.dispatcher import ExecutionDispatcher
from autonomy_engine.errors import Busy, ExecutionError, ExecutorTimeout, RateLimited, Unavailable
from autonomy_engine.events import ACTION_COMPLETED, ACTION_FAILED, ACTION_STARTED, EventBus
from autonomy_engine.executors import ExecutorChain
from autonomy_engine.models import Action, ActionStatus, ExecutionPlan, ExecutionResult, FailureKind
from autonomy_engine.work_log import WorkLog

from conftest import HANG, EventRecorder, FakeClock, FakeExecutor, make_action


def _approved(title: str = "Summarize findings", **plan: object) -> Action:
    action = make_action(title, "execute", execution_plan=ExecutionPlan(**plan))
    action.transition(ActionStatus.APPROVED)
    return action


def _dispatcher(executors: list[FakeExecutor], bus: EventBus, work_log: WorkLog, clock: FakeClock) -> ExecutionDispatcher:
    return ExecutionDispatcher(ExecutorChain(executors), bus, work_log, clock=clock)


def _fallback_entries(work_log: WorkLog) -> list[str]:
    return [entry.message for entry in work_log.entries() if "falling back" in entry.message]


@pytest.mark.asyncio
async def test_dispatch_success_completes_action(
    bus: EventBus, work_log: WorkLog, clock: FakeClock, recorder: EventRecorder
) -> None:
    executor = FakeExecutor("primary", [ExecutionResult(success=True, output="done")])
    dispatcher = _dispatcher([executor], bus, work_log, clock)
    action = _approved()

    result = await dispatcher.dispatch(action)

    assert result.success and result.executor == "primary"
    assert action.status == ActionStatus.COMPLETED
    assert action.started_at is not None and action.ended_at is not None
    assert recorder.names() == [ACTION_STARTED, ACTION_COMPLETED]
    assert not dispatcher.busy


@pytest.mark.asyncio
async def test_rate_limited_primary_falls_back_once(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    primary = FakeExecutor("primary", [RateLimited("slow down")])
    secondary = FakeExecutor("secondary")
    dispatcher = _dispatcher([primary, secondary], bus, work_log, clock)
    action = _approved("Draft outline")

    result = await dispatcher.dispatch(action)

    assert result.success
    assert action.status == ActionStatus.COMPLETED
    assert action.executor == "secondary"
    assert _fallback_entries(work_log) == [
        "Executor primary rate limited; falling back to next executor for Draft outline"
    ]


@pytest.mark.asyncio
async def test_task_failure_does_not_fall_back(
    bus: EventBus, work_log: WorkLog, clock: FakeClock, recorder: EventRecorder
) -> None:
    primary = FakeExecutor("primary", [ExecutionResult(success=False, error="tests failed")])
    secondary = FakeExecutor("secondary")
    dispatcher = _dispatcher([primary, secondary], bus, work_log, clock)
    action = _approved()

    result = await dispatcher.dispatch(action)

    assert not result.success
    assert action.status == ActionStatus.FAILED
    assert action.error_kind == FailureKind.TASK
    assert action.error == "tests failed"
    assert secondary.calls == []
    assert recorder.named(ACTION_FAILED)[0].payload["error_kind"] == "task"


@pytest.mark.asyncio
async def test_execution_error_stops_chain(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    primary = FakeExecutor("primary", [ExecutionError("bad input")])
    secondary = FakeExecutor("secondary")
    dispatcher = _dispatcher([primary, secondary], bus, work_log, clock)
    action = _approved()

    await dispatcher.dispatch(action)

    assert action.error_kind == FailureKind.TASK
    assert secondary.calls == []
    assert _fallback_entries(work_log) == []


@pytest.mark.asyncio
async def test_timeout_falls_back_and_cancels_attempt(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    primary = FakeExecutor("primary", [HANG])
    secondary = FakeExecutor("secondary")
    dispatcher = _dispatcher([primary, secondary], bus, work_log, clock)
    action = _approved("Slow task", timeout_ms=50)

    result = await dispatcher.dispatch(action)

    assert result.success and result.executor == "secondary"
    assert primary.cancel_calls == 1
    assert _fallback_entries(work_log) == ["Executor primary timeout; falling back to next executor for Slow task"]


@pytest.mark.asyncio
async def test_every_executor_timing_out_is_unavailable(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    primary = FakeExecutor("primary", [HANG])
    secondary = FakeExecutor("secondary", [HANG])
    dispatcher = _dispatcher([primary, secondary], bus, work_log, clock)
    action = _approved("Stuck task", timeout_ms=50)

    result = await dispatcher.dispatch(action)

    assert not result.success
    assert action.error_kind == FailureKind.UNAVAILABLE
    assert action.error == "executor chain exhausted: secondary exceeded 50ms"
    assert primary.cancel_calls == secondary.cancel_calls == 1


@pytest.mark.asyncio
async def test_executor_reported_timeout_falls_back(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    primary = FakeExecutor("primary", [ExecutorTimeout("upstream gateway timed out", executor="primary")])
    secondary = FakeExecutor("secondary")
    dispatcher = _dispatcher([primary, secondary], bus, work_log, clock)

    result = await dispatcher.dispatch(_approved("Fetch report"))

    assert result.success and result.executor == "secondary"
    assert _fallback_entries(work_log) == ["Executor primary timeout; falling back to next executor for Fetch report"]


@pytest.mark.asyncio
async def test_exhausted_chain_reports_rate_limited(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    executors = [FakeExecutor("a", [RateLimited("429")]), FakeExecutor("b", [RateLimited("quota")])]
    dispatcher = _dispatcher(executors, bus, work_log, clock)
    action = _approved()

    result = await dispatcher.dispatch(action)

    assert not result.success
    assert action.error_kind == FailureKind.RATE_LIMITED
    assert action.error is not None and action.error.startswith("executor chain exhausted")
    assert len(_fallback_entries(work_log)) == 1


@pytest.mark.asyncio
async def test_exhausted_chain_with_mixed_errors_is_unavailable(
    bus: EventBus, work_log: WorkLog, clock: FakeClock
) -> None:
    executors = [FakeExecutor("a", [RateLimited("429")]), FakeExecutor("b", [Unavailable("down")])]
    dispatcher = _dispatcher(executors, bus, work_log, clock)
    action = _approved()

    await dispatcher.dispatch(action)

    assert action.error_kind == FailureKind.UNAVAILABLE


@pytest.mark.asyncio
async def test_not_ready_executors_are_skipped(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    offline = FakeExecutor("offline", ready=False)
    online = FakeExecutor("online")
    dispatcher = _dispatcher([offline, online], bus, work_log, clock)

    result = await dispatcher.dispatch(_approved())

    assert result.executor == "online"
    assert offline.calls == []

    lonely = _dispatcher([FakeExecutor("offline", ready=False)], bus, work_log, clock)
    action = _approved()
    await lonely.dispatch(action)
    assert action.error_kind == FailureKind.UNAVAILABLE


@pytest.mark.asyncio
async def test_executor_hint_runs_first(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    first = FakeExecutor("first")
    second = FakeExecutor("second")
    dispatcher = _dispatcher([first, second], bus, work_log, clock)

    result = await dispatcher.dispatch(_approved(executor_hint="second"))

    assert result.executor == "second"
    assert first.calls == []


@pytest.mark.asyncio
async def test_dispatch_while_busy_raises(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    executor = FakeExecutor("primary", [HANG])
    dispatcher = _dispatcher([executor], bus, work_log, clock)
    running = _approved("long")
    task = asyncio.create_task(dispatcher.dispatch(running))
    await asyncio.wait_for(executor.started.wait(), timeout=1)

    assert dispatcher.busy and dispatcher.current_action_id == running.id
    queued = _approved("queued")
    with pytest.raises(Busy):
        await dispatcher.dispatch(queued)
    assert queued.status == ActionStatus.APPROVED

    dispatcher.abort()
    result = await asyncio.wait_for(task, timeout=1)
    assert not result.success
    assert running.status == ActionStatus.FAILED
    assert running.error_kind == FailureKind.CANCELLED
    assert executor.cancel_calls == 1
    assert not dispatcher.busy


@pytest.mark.asyncio
async def test_cancelling_caller_fails_action_and_propagates(
    bus: EventBus, work_log: WorkLog, clock: FakeClock, recorder: EventRecorder
) -> None:
    executor = FakeExecutor("primary", [HANG])
    dispatcher = _dispatcher([executor], bus, work_log, clock)
    action = _approved()
    task = asyncio.create_task(dispatcher.dispatch(action))
    await asyncio.wait_for(executor.started.wait(), timeout=1)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert action.status == ActionStatus.FAILED
    assert action.error_kind == FailureKind.CANCELLED
    assert recorder.names()[-1] == ACTION_FAILED
    assert not dispatcher.busy


@pytest.mark.asyncio
async def test_dispatch_requires_approved_action(bus: EventBus, work_log: WorkLog, clock: FakeClock) -> None:
    dispatcher = _dispatcher([FakeExecutor("primary")], bus, work_log, clock)
    with pytest.raises(ValueError):
        await dispatcher.dispatch(make_action())
    assert not dispatcher.busy
