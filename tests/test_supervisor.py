from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from autonomy_engine.events import STATUS_CHANGED, EventBus
from autonomy_engine.models import EngineState, RunState, SupervisorRecord
from autonomy_engine.settings import RestWindow
from autonomy_engine.state_store import EngineStateStore
from autonomy_engine.supervisor import Supervisor
from autonomy_engine.work_log import WorkLog

from conftest import T0, EventRecorder, FakeClock, FakeExecutor, FakeProposer, build_test_runtime


class FakeLoop:
    def __init__(self) -> None:
        self.last_activity_at: datetime | None = None
        self.rest_until: datetime | None = None
        self.current_goal_id: str | None = None
        self.current_action_id: str | None = None
        self.paused = False
        self.run_calls = 0
        self.abort_calls = 0
        self.reset_calls = 0

    async def run(self) -> None:
        self.run_calls += 1
        await asyncio.Event().wait()

    def abort(self) -> None:
        self.abort_calls += 1

    def reset(self) -> None:
        self.reset_calls += 1

    def set_paused(self, paused: bool) -> None:
        self.paused = paused


def _supervisor(store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock, **kwargs: Any) -> Supervisor:
    options: dict[str, Any] = {
        "stall_threshold_seconds": 900,
        "cooldown_seconds": 300,
        "max_unproductive_restarts": 3,
        "liveness_interval_seconds": 3600,
    }
    options.update(kwargs)
    return Supervisor(store, bus, work_log, clock=clock, **options)


def _transitions(recorder: EventRecorder) -> list[tuple[str, str]]:
    return [(event.payload["from"], event.payload["to"]) for event in recorder.named(STATUS_CHANGED)]


def _messages(work_log: WorkLog) -> list[str]:
    return [entry.message for entry in work_log.entries()]


@pytest.mark.asyncio
async def test_stall_restarts_loop_once_and_sets_cooldown(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock, recorder: EventRecorder
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock)
    loop = FakeLoop()
    await supervisor.start(loop)
    await asyncio.sleep(0)
    assert loop.run_calls == 1

    clock.advance(600)
    assert await supervisor.check_liveness() == RunState.RUNNING

    clock.advance(301)
    assert await supervisor.check_liveness() == RunState.RUNNING
    await asyncio.sleep(0)

    assert _transitions(recorder) == [("stopped", "running"), ("running", "stalled"), ("stalled", "running")]
    assert supervisor.state.restart_count == 1
    assert supervisor.state.cooldown_until == clock.now + supervisor.cooldown
    assert loop.reset_calls == 1
    assert loop.run_calls == 2
    messages = _messages(work_log)
    assert any(message.startswith("Stall detected:") for message in messages)
    assert any(message.startswith("Restarted engine loop (#1)") for message in messages)

    # A fresh restart is a new baseline.
    assert await supervisor.check_liveness() == RunState.RUNNING
    assert supervisor.state.restart_count == 1
    await supervisor.stop()
    assert supervisor.state.run_state == RunState.STOPPED


@pytest.mark.asyncio
async def test_recent_activity_keeps_loop_running(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock)
    loop = FakeLoop()
    await supervisor.start(loop)

    for _ in range(5):
        loop.last_activity_at = clock.advance(800)
        assert await supervisor.check_liveness() == RunState.RUNNING

    assert supervisor.state.restart_count == 0
    assert supervisor.state.last_activity_at == loop.last_activity_at
    await supervisor.stop()


@pytest.mark.asyncio
async def test_cooldown_blocks_restart_until_forced(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock, recorder: EventRecorder
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock, cooldown_seconds=3000)
    await supervisor.start(FakeLoop())

    clock.advance(901)
    await supervisor.check_liveness()
    clock.advance(901)
    assert await supervisor.check_liveness() == RunState.STALLED
    assert supervisor.state.restart_count == 1
    assert supervisor.get_status().cooldown_remaining_seconds == pytest.approx(2099)
    assert _transitions(recorder)[-1] == ("running", "stalled")

    assert await supervisor.force_restart("operator") == RunState.RUNNING
    assert supervisor.state.restart_count == 2
    assert supervisor.state.cooldown_until == clock.now + supervisor.cooldown
    await supervisor.stop()


@pytest.mark.asyncio
async def test_unproductive_restarts_end_in_fatal_stop(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock, recorder: EventRecorder
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock, cooldown_seconds=0, max_unproductive_restarts=2)
    loop = FakeLoop()
    await supervisor.start(loop)

    for _ in range(2):
        clock.advance(901)
        assert await supervisor.check_liveness() == RunState.RUNNING
    clock.advance(901)
    assert await supervisor.check_liveness() == RunState.STOPPED

    status = supervisor.get_status()
    assert status.fatal
    assert status.fatal_reason is not None and "2 restart(s)" in status.fatal_reason
    last_event = recorder.named(STATUS_CHANGED)[-1]
    assert last_event.payload["to"] == "stopped" and last_event.payload["fatal"] is True
    assert any(message.startswith("Giving up:") for message in _messages(work_log))
    assert store.read_supervisor().state.fatal

    clock.advance(10_000)
    assert await supervisor.check_liveness() == RunState.STOPPED
    await supervisor.stop()

    assert await supervisor.force_restart("fixed credentials") == RunState.RUNNING
    assert not supervisor.state.fatal
    await supervisor.stop()


@pytest.mark.asyncio
async def test_activity_after_restart_resets_unproductive_count(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock, cooldown_seconds=0, max_unproductive_restarts=1)
    loop = FakeLoop()
    await supervisor.start(loop)

    clock.advance(901)
    await supervisor.check_liveness()
    loop.last_activity_at = clock.advance(10)
    clock.advance(901)

    assert await supervisor.check_liveness() == RunState.RUNNING
    assert supervisor.state.restart_count == 2
    assert not supervisor.state.fatal
    await supervisor.stop()


@pytest.mark.asyncio
async def test_rest_window_is_idle_not_stalled(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock, recorder: EventRecorder
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock, rest_windows=[RestWindow.parse("22:00-06:00")])
    loop = FakeLoop()
    await supervisor.start(loop)

    clock.advance(11 * 3600)
    assert await supervisor.check_liveness() == RunState.RESTING
    assert loop.paused

    clock.advance(7.5 * 3600)
    assert await supervisor.check_liveness() == RunState.RUNNING
    assert not loop.paused
    assert supervisor.state.restart_count == 0
    assert ("resting", "running") in _transitions(recorder)

    clock.advance(901)
    await supervisor.check_liveness()
    assert supervisor.state.restart_count == 1
    await supervisor.stop()


@pytest.mark.asyncio
async def test_loop_requested_rest_is_idle_not_stalled(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock)
    loop = FakeLoop()
    await supervisor.start(loop)
    loop.rest_until = clock.now + supervisor.stall_threshold * 2

    clock.advance(1000)
    assert await supervisor.check_liveness() == RunState.RESTING
    clock.advance(900)
    assert await supervisor.check_liveness() == RunState.RUNNING
    assert supervisor.state.restart_count == 0
    await supervisor.stop()


@pytest.mark.asyncio
async def test_status_reports_uptime_and_loop_position(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock)
    assert supervisor.get_status().run_state == RunState.STOPPED

    loop = FakeLoop()
    await supervisor.start(loop)
    with pytest.raises(RuntimeError, match="already started"):
        await supervisor.start(loop)
    loop.current_goal_id = "goal-abc"
    clock.advance(3700)

    status = supervisor.get_status()
    assert status.run_state == RunState.RUNNING
    assert status.uptime_seconds == pytest.approx(3700)
    assert status.uptime_display == "1h1m"
    assert status.current_goal_id == "goal-abc"
    assert status.cooldown_remaining_seconds == 0.0
    assert status.total_sessions == 1
    await supervisor.stop()
    assert supervisor.get_status().uptime_seconds == 0.0


@pytest.mark.asyncio
async def test_clean_stop_persists_session(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock
) -> None:
    supervisor = _supervisor(store, bus, work_log, clock)
    await supervisor.start(FakeLoop())
    clock.advance(600)
    await supervisor.stop()

    record = store.read_supervisor()
    assert record is not None
    assert record.state.run_state == RunState.STOPPED
    assert record.last_session_end == clock.now
    assert record.longest_uptime_seconds == pytest.approx(600)

    clock.advance(60)
    successor = _supervisor(store, bus, work_log, clock)
    await successor.start(FakeLoop())
    assert successor.record.total_sessions == 2
    assert successor.record.total_gaps_detected == 0
    await successor.stop()


@pytest.mark.asyncio
async def test_crash_gap_is_detected_on_next_start(
    store: EngineStateStore, bus: EventBus, work_log: WorkLog, clock: FakeClock
) -> None:
    store.write_supervisor(
        SupervisorRecord(
            state=EngineState(run_state=RunState.RUNNING, last_activity_at=T0),
            first_started=T0,
            last_session_start=T0,
            total_sessions=1,
        )
    )
    clock.advance(7200)

    supervisor = _supervisor(store, bus, work_log, clock)
    await supervisor.start(FakeLoop())

    assert supervisor.record.total_sessions == 2
    assert supervisor.record.total_gaps_detected == 1
    assert supervisor.record.first_started == T0
    assert "Resuming after a 2h0m gap since the previous session" in _messages(work_log)
    await supervisor.stop()


@pytest.mark.asyncio
async def test_runtime_runs_cycles_under_supervision(tmp_path: Path, clock: FakeClock) -> None:
    runtime = build_test_runtime(
        tmp_path,
        clock,
        FakeProposer(),
        [FakeExecutor("primary")],
        cycle_interval_seconds=3600,
        liveness_interval_seconds=3600,
    )
    await runtime.start()
    for _ in range(200):
        if runtime.loop.cycles:
            break
        await asyncio.sleep(0.01)

    assert runtime.loop.cycles == 1
    assert runtime.supervisor.get_status().run_state == RunState.RUNNING
    await runtime.stop()

    record = runtime.store.read_supervisor()
    assert record is not None and record.state.run_state == RunState.STOPPED
