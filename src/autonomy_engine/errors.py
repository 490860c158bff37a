from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for every error raised by the engine core."""


class ProposalError(EngineError):
    """The proposer failed or returned unusable output."""


class NoActionableWork(ProposalError):
    """No selectable goal exists and goal generation produced nothing."""


class ExecutionError(EngineError):
    """A backend reported a genuine task failure. Never triggers fallback."""


class BackendError(EngineError):
    """Backend-level failure (not task-level); the dispatcher falls back to the next executor."""

    kind = "unavailable"

    def __init__(self, message: str, *, executor: str | None = None) -> None:
        super().__init__(message)
        self.executor = executor


class RateLimited(BackendError):
    kind = "rate_limited"


class Unavailable(BackendError):
    kind = "unavailable"


class ExecutorTimeout(BackendError):
    kind = "timeout"


class Busy(EngineError):
    """Raised by ``dispatch`` when another action is already executing."""

    def __init__(self, current_action_id: str) -> None:
        super().__init__(f"Dispatcher is busy executing {current_action_id}")
        self.current_action_id = current_action_id


class Cancelled(EngineError):
    """The in-flight dispatch was aborted by the supervisor."""


class StallDetected(EngineError):
    def __init__(self, idle_seconds: float) -> None:
        super().__init__(f"Engine loop idle for {idle_seconds:.0f}s")
        self.idle_seconds = idle_seconds


class RestartExhausted(EngineError):
    def __init__(self, attempts: int) -> None:
        super().__init__(f"Engine loop produced no activity after {attempts} restart(s)")
        self.attempts = attempts


class IllegalTransition(ValueError):
    """A status change outside the allowed state machine."""
