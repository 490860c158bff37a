from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Protocol, Sequence

from .errors import RestartExhausted, StallDetected
from .events import STATUS_CHANGED, EventSink
from .models import EngineState, RunState, SupervisorRecord, SupervisorStatus, WorkLogStatus
from .settings import RestWindow, RuntimeSettings
from .state_store import EngineStateStore
from .utils import format_duration, later_of, seconds_until, utc_now
from .work_log import WorkLog

logger = logging.getLogger(__name__)

_SOURCE = "supervisor"


class SupervisedLoop(Protocol):
    @property
    def last_activity_at(self) -> datetime | None: ...

    @property
    def rest_until(self) -> datetime | None: ...

    @property
    def current_goal_id(self) -> str | None: ...

    @property
    def current_action_id(self) -> str | None: ...

    async def run(self) -> None: ...

    def abort(self) -> None: ...

    def reset(self) -> None: ...

    def set_paused(self, paused: bool) -> None: ...


class Supervisor:
    """Keeps the engine loop alive.

    The supervisor is the only writer of :class:`EngineState`. It restarts a
    stalled loop no more often than the cooldown allows, treats configured
    rest windows (and loop-requested rests) as idle rather than stalled, and
    gives up with a fatal status after too many restarts that produced no
    activity.
    """

    def __init__(
        self,
        store: EngineStateStore,
        events: EventSink,
        work_log: WorkLog,
        *,
        stall_threshold_seconds: float = 900,
        cooldown_seconds: float = 300,
        max_unproductive_restarts: int = 3,
        liveness_interval_seconds: float = 30,
        rest_windows: Sequence[RestWindow] = (),
        zone: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_unproductive_restarts < 1:
            raise ValueError(f"max_unproductive_restarts must be >= 1, got: {max_unproductive_restarts}")
        self.store = store
        self.events = events
        self.work_log = work_log
        self.stall_threshold = timedelta(seconds=stall_threshold_seconds)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.max_unproductive_restarts = max_unproductive_restarts
        self.liveness_interval_seconds = liveness_interval_seconds
        self.rest_windows = list(rest_windows)
        self.zone = zone
        self._clock = clock

        self.record = store.read_supervisor() or SupervisorRecord()
        self.state = EngineState()
        self._engine: SupervisedLoop | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._liveness_task: asyncio.Task[None] | None = None
        self._last_restart_at: datetime | None = None
        self._last_rest_end: datetime | None = None
        self._unproductive_restarts = 0

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        store: EngineStateStore,
        events: EventSink,
        work_log: WorkLog,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> "Supervisor":
        return cls(
            store,
            events,
            work_log,
            stall_threshold_seconds=settings.stall_threshold_seconds,
            cooldown_seconds=settings.restart_cooldown_seconds,
            max_unproductive_restarts=settings.max_unproductive_restarts,
            liveness_interval_seconds=settings.liveness_interval_seconds,
            rest_windows=settings.parsed_rest_windows,
            zone=settings.zone,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _in_rest_window(self, now: datetime) -> bool:
        if not self.rest_windows:
            return False
        local = now.astimezone(self.zone) if self.zone is not None else now
        moment = local.time()
        return any(window.contains(moment) for window in self.rest_windows)

    def _loop_resting(self, now: datetime) -> bool:
        rest_until = self._engine.rest_until if self._engine is not None else None
        return rest_until is not None and now < rest_until

    def _persist(self) -> None:
        if self._engine is not None:
            self.state.last_activity_at = self._engine.last_activity_at or self.state.last_activity_at
            self.state.current_goal_id = self._engine.current_goal_id
            self.state.current_action_id = self._engine.current_action_id
        self.record.state = self.state.model_copy()
        self.store.write_supervisor(self.record)

    def _transition(self, new_state: RunState, reason: str) -> None:
        previous = self.state.run_state
        if previous == new_state:
            return
        self.state.run_state = new_state
        logger.info("Engine state %s -> %s (%s)", previous.value, new_state.value, reason)
        self.events.emit(
            STATUS_CHANGED,
            {
                "from": previous.value,
                "to": new_state.value,
                "reason": reason,
                "fatal": self.state.fatal,
                "restart_count": self.state.restart_count,
            },
        )
        self._persist()

    def _spawn_loop(self) -> None:
        if self._engine is None:
            raise RuntimeError("Supervisor has no engine loop attached")
        self._loop_task = asyncio.create_task(self._engine.run(), name="engine-loop")
        self._loop_task.add_done_callback(self._on_loop_done)

    @staticmethod
    def _on_loop_done(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Engine loop task exited with an error", exc_info=exc)

    async def _cancel_loop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if self._engine is not None:
            self._engine.abort()
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _start_liveness(self) -> None:
        if self._liveness_task is None or self._liveness_task.done():
            self._liveness_task = asyncio.create_task(self._liveness_loop(), name="engine-liveness")

    async def _liveness_loop(self) -> None:
        while self.state.run_state != RunState.STOPPED:
            await asyncio.sleep(self.liveness_interval_seconds)
            try:
                await self.check_liveness()
            except Exception:  # noqa: BLE001
                logger.exception("Liveness check failed")

    def _begin_session(self, now: datetime) -> None:
        record = self.record
        previous_end = record.last_session_end
        if record.state.run_state != RunState.STOPPED:
            # Previous process died without a clean stop.
            previous_end = later_of(record.state.last_activity_at, record.last_session_start)
        if previous_end is not None:
            gap = (now - previous_end).total_seconds()
            if gap > self.stall_threshold.total_seconds():
                record.total_gaps_detected += 1
                self.work_log.append(
                    _SOURCE,
                    f"Resuming after a {format_duration(gap)} gap since the previous session",
                    WorkLogStatus.INFO,
                )
        record.total_sessions += 1
        record.first_started = record.first_started or now
        record.last_session_start = now

    def _end_session(self, now: datetime) -> None:
        self.record.last_session_end = now
        if self.state.started_at is not None:
            uptime = (now - self.state.started_at).total_seconds()
            self.record.longest_uptime_seconds = max(self.record.longest_uptime_seconds, uptime)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def engine(self) -> SupervisedLoop | None:
        return self._engine

    async def start(self, engine_loop: SupervisedLoop) -> None:
        if self.state.run_state != RunState.STOPPED:
            raise RuntimeError(f"Supervisor already started (state={self.state.run_state.value})")
        now = self._clock()
        self._engine = engine_loop
        self._begin_session(now)
        self.state = EngineState(started_at=now)
        self._last_restart_at = None
        self._last_rest_end = None
        self._unproductive_restarts = 0
        self._spawn_loop()
        self._start_liveness()
        self.work_log.append(_SOURCE, f"Engine started (session #{self.record.total_sessions})", WorkLogStatus.INFO)
        self._transition(RunState.RUNNING, "start")

    async def _cancel_liveness(self) -> None:
        liveness, self._liveness_task = self._liveness_task, None
        if liveness is not None and liveness is not asyncio.current_task():
            liveness.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await liveness

    async def stop(self) -> None:
        if self.state.run_state == RunState.STOPPED and self._loop_task is None:
            # Already given up; only the liveness task may still be sleeping.
            await self._cancel_liveness()
            return
        now = self._clock()
        await self._cancel_liveness()
        await self._cancel_loop()
        self._end_session(now)
        self.work_log.append(
            _SOURCE,
            f"Engine stopped after {format_duration(self._uptime_seconds(now))}",
            WorkLogStatus.INFO,
        )
        if self.state.run_state == RunState.STOPPED:
            self._persist()
        else:
            self._transition(RunState.STOPPED, "stop")

    def _uptime_seconds(self, now: datetime) -> float:
        if self.state.started_at is None or self.state.run_state == RunState.STOPPED:
            return 0.0
        return max(0.0, (now - self.state.started_at).total_seconds())

    def get_status(self, now: datetime | None = None) -> SupervisorStatus:
        moment = now if now is not None else self._clock()
        uptime = self._uptime_seconds(moment)
        engine = self._engine
        return SupervisorStatus(
            run_state=self.state.run_state,
            uptime_seconds=uptime,
            uptime_display=format_duration(uptime),
            cooldown_remaining_seconds=seconds_until(self.state.cooldown_until, moment),
            restart_count=self.state.restart_count,
            fatal=self.state.fatal,
            fatal_reason=self.state.fatal_reason,
            last_activity_at=(engine.last_activity_at if engine is not None else None) or self.state.last_activity_at,
            current_goal_id=engine.current_goal_id if engine is not None else self.state.current_goal_id,
            current_action_id=engine.current_action_id if engine is not None else self.state.current_action_id,
            total_sessions=self.record.total_sessions,
        )

    async def check_liveness(self, now: datetime | None = None) -> RunState:
        """Evaluate the loop once and restart it if it stalled.

        Returns:
            The run state after the check.
        """
        if self.state.run_state == RunState.STOPPED or self._engine is None:
            return self.state.run_state
        moment = now if now is not None else self._clock()
        engine = self._engine

        in_window = self._in_rest_window(moment)
        engine.set_paused(in_window)
        if in_window or self._loop_resting(moment):
            self._transition(RunState.RESTING, "rest window" if in_window else "loop requested rest")
            return self.state.run_state
        if self.state.run_state == RunState.RESTING:
            self._last_rest_end = moment
            self._transition(RunState.RUNNING, "rest ended")

        activity = engine.last_activity_at
        if activity is not None and self._last_restart_at is not None and activity > self._last_restart_at:
            self._unproductive_restarts = 0
        baseline = later_of(activity, self.state.started_at, self._last_restart_at, self._last_rest_end)
        idle = (moment - baseline).total_seconds() if baseline is not None else 0.0

        if idle <= self.stall_threshold.total_seconds():
            if self.state.run_state == RunState.STALLED:
                self._transition(RunState.RUNNING, "activity resumed")
            elif activity is not None and activity != self.state.last_activity_at:
                self._persist()
            return self.state.run_state

        stall = StallDetected(idle)
        if self.state.run_state != RunState.STALLED:
            self.work_log.append(_SOURCE, f"Stall detected: {stall}", WorkLogStatus.ERROR)
            self._transition(RunState.STALLED, str(stall))

        if self._unproductive_restarts >= self.max_unproductive_restarts:
            await self._give_up(moment, RestartExhausted(self._unproductive_restarts))
            return self.state.run_state

        if self.state.cooldown_until is None or moment >= self.state.cooldown_until:
            await self._restart(moment, str(stall))
        else:
            logger.info(
                "Stalled; restart allowed in %.0fs",
                seconds_until(self.state.cooldown_until, moment),
            )
        return self.state.run_state

    async def _restart(self, now: datetime, reason: str) -> None:
        if self._engine is None:
            raise RuntimeError("Supervisor has no engine loop attached")
        await self._cancel_loop()
        self._engine.reset()
        self.state.cooldown_until = now + self.cooldown
        self.state.restart_count += 1
        self._unproductive_restarts += 1
        self._last_restart_at = now
        self._spawn_loop()
        self.work_log.append(
            _SOURCE,
            f"Restarted engine loop (#{self.state.restart_count}): {reason}",
            WorkLogStatus.INFO,
        )
        if self.state.run_state == RunState.RUNNING:
            self._persist()
        else:
            self._transition(RunState.RUNNING, f"restart: {reason}")

    async def _give_up(self, now: datetime, error: RestartExhausted) -> None:
        await self._cancel_loop()
        self.state.fatal = True
        self.state.fatal_reason = str(error)
        self._end_session(now)
        self.work_log.append(_SOURCE, f"Giving up: {error}", WorkLogStatus.ERROR)
        logger.error("Engine stopped: %s", error)
        self._transition(RunState.STOPPED, "restart attempts exhausted")

    async def force_restart(self, reason: str = "manual restart") -> RunState:
        """Restart the loop now, ignoring the cooldown for this one call.

        A fatal stop is cleared, since the operator asked explicitly.
        """
        if self._engine is None:
            raise RuntimeError("Supervisor has no engine loop attached")
        now = self._clock()
        if self.state.fatal:
            self.state.fatal = False
            self.state.fatal_reason = None
            self._begin_session(now)
            self.state.started_at = now
        self._unproductive_restarts = 0
        await self._restart(now, f"forced: {reason}")
        self._start_liveness()
        return self.state.run_state
