from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from .errors import BackendError, Busy, Cancelled, ExecutionError, ExecutorTimeout, RateLimited
from .events import ACTION_COMPLETED, ACTION_FAILED, ACTION_STARTED, EventSink
from .executors import Executor, ExecutorChain
from .models import Action, ActionStatus, ExecutionResult, FailureKind, WorkLogStatus
from .utils import utc_now
from .work_log import WorkLog

logger = logging.getLogger(__name__)

_SOURCE = "dispatcher"


class _ChainOutcome:
    __slots__ = ("result", "failure_kind")

    def __init__(self, result: ExecutionResult, failure_kind: FailureKind | None) -> None:
        self.result = result
        self.failure_kind = failure_kind


class ExecutionDispatcher:
    """Runs one approved action at a time through the executor chain.

    Each executor gets ``execution_plan.timeout_ms`` per attempt. Rate limits,
    unavailability and timeouts fall through to the next executor in a single
    bounded pass; a task-level failure stops the chain.
    """

    def __init__(
        self,
        chain: ExecutorChain,
        events: EventSink,
        work_log: WorkLog,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.chain = chain
        self.events = events
        self.work_log = work_log
        self._clock = clock
        self._current: Action | None = None
        self._current_executor: Executor | None = None
        self._attempt: asyncio.Task[ExecutionResult] | None = None
        self._abort_requested = False

    @property
    def busy(self) -> bool:
        return self._current is not None

    @property
    def current_action_id(self) -> str | None:
        return self._current.id if self._current is not None else None

    def abort(self) -> None:
        """Cancel the in-flight attempt, if any. The action ends ``failed``/``cancelled``."""
        if self._current is None:
            return
        self._abort_requested = True
        if self._attempt is not None and not self._attempt.done():
            self._attempt.cancel()

    async def dispatch(self, action: Action) -> ExecutionResult:
        """Execute an approved action.

        Returns:
            The final execution result; the action itself is left ``completed`` or ``failed``.

        Raises:
            Busy: If another action is already executing.
            IllegalTransition: If the action is not ``approved``.
            asyncio.CancelledError: If the calling task is cancelled; the action is failed first.
        """
        if self._current is not None:
            raise Busy(self._current.id)
        action.transition(ActionStatus.EXECUTING, at=self._clock())
        self._current = action
        self._abort_requested = False
        self.events.emit(ACTION_STARTED, {"action_id": action.id, "goal_id": action.goal_id, "title": action.title})
        self.work_log.append(_SOURCE, f"Executing: {action.title}", WorkLogStatus.PENDING, action.id)
        try:
            try:
                outcome = await self._run_chain(action)
            except Cancelled as exc:
                result = ExecutionResult(success=False, error=str(exc), executor=action.executor)
                self._finish(action, result, FailureKind.CANCELLED)
                return result
            except asyncio.CancelledError:
                result = ExecutionResult(success=False, error="dispatch cancelled", executor=action.executor)
                self._finish(action, result, FailureKind.CANCELLED)
                raise
            self._finish(action, outcome.result, outcome.failure_kind)
            return outcome.result
        finally:
            self._current = None
            self._current_executor = None
            self._attempt = None

    def _finish(self, action: Action, result: ExecutionResult, failure_kind: FailureKind | None) -> None:
        now = self._clock()
        action.result = result
        if result.executor:
            action.executor = result.executor
        if result.success:
            action.transition(ActionStatus.COMPLETED, at=now)
            self.events.emit(
                ACTION_COMPLETED,
                {"action_id": action.id, "goal_id": action.goal_id, "executor": action.executor, "success": True},
            )
            self.work_log.append(_SOURCE, f"Completed: {action.title}", WorkLogStatus.SUCCESS, action.id)
            return
        kind = failure_kind or FailureKind.TASK
        action.fail(result.error or "execution failed", kind, at=now)
        self.events.emit(
            ACTION_FAILED,
            {"action_id": action.id, "goal_id": action.goal_id, "error": action.error, "error_kind": kind.value},
        )
        self.work_log.append(_SOURCE, f"Failed ({kind.value}): {action.title}: {action.error}", WorkLogStatus.ERROR, action.id)

    async def _attempt_once(self, executor: Executor, action: Action, timeout: float) -> ExecutionResult:
        deadline = self._clock() + timedelta(seconds=timeout)
        self._current_executor = executor
        self._attempt = asyncio.create_task(executor.execute(action, deadline))
        try:
            return await asyncio.wait_for(self._attempt, timeout=timeout)
        except asyncio.CancelledError:
            await executor.cancel()
            current = asyncio.current_task()
            outer_cancel = current is not None and current.cancelling() > 0
            if self._abort_requested and not outer_cancel:
                raise Cancelled(f"Dispatch of {action.id} aborted during {executor.name}") from None
            raise
        except TimeoutError:
            await executor.cancel()
            raise ExecutorTimeout(
                f"{executor.name} exceeded {action.execution_plan.timeout_ms}ms", executor=executor.name
            ) from None
        finally:
            self._attempt = None

    async def _run_chain(self, action: Action) -> _ChainOutcome:
        timeout = action.execution_plan.timeout_seconds
        executors = self.chain.ordered_for(action.execution_plan.executor_hint)
        backend_kinds: list[str] = []
        last_error = "no executor is ready"

        for index, executor in enumerate(executors):
            if self._abort_requested:
                raise Cancelled(f"Dispatch of {action.id} aborted")
            if not executor.is_ready():
                logger.info("Skipping executor %s for %s: not ready", executor.name, action.id)
                continue
            action.executor = executor.name
            try:
                result = await self._attempt_once(executor, action, timeout)
            except BackendError as exc:
                kind = exc.kind
                last_error = str(exc)
            except ExecutionError as exc:
                return _ChainOutcome(ExecutionResult(success=False, error=str(exc), executor=executor.name), FailureKind.TASK)
            except (Cancelled, asyncio.CancelledError):
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Executor %s raised unexpectedly for %s", executor.name, action.id)
                return _ChainOutcome(
                    ExecutionResult(success=False, error=f"{type(exc).__name__}: {exc}", executor=executor.name),
                    FailureKind.TASK,
                )
            else:
                if result.executor is None:
                    result = result.model_copy(update={"executor": executor.name})
                return _ChainOutcome(result, None if result.success else FailureKind.TASK)

            backend_kinds.append(kind)
            if index < len(executors) - 1:
                self.work_log.append(
                    _SOURCE,
                    f"Executor {executor.name} {kind.replace('_', ' ')}; falling back to next executor for {action.title}",
                    WorkLogStatus.INFO,
                    action.id,
                )
            logger.warning("Executor %s failed for %s (%s): %s", executor.name, action.id, kind, last_error)

        if backend_kinds and all(kind == RateLimited.kind for kind in backend_kinds):
            failure_kind = FailureKind.RATE_LIMITED
        else:
            failure_kind = FailureKind.UNAVAILABLE
        logger.error("Executor chain exhausted for %s: %s", action.id, last_error)
        return _ChainOutcome(
            ExecutionResult(success=False, error=f"executor chain exhausted: {last_error}", executor=action.executor),
            failure_kind,
        )
