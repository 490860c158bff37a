from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import IllegalTransition
from .utils import new_id, utc_now


class GoalStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


SELECTABLE_GOAL_STATUSES = frozenset({GoalStatus.PENDING, GoalStatus.ACTIVE})


class ActionRisk(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class ActionStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTION_STATUS_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PROPOSED: frozenset({ActionStatus.APPROVED, ActionStatus.REJECTED}),
    ActionStatus.APPROVED: frozenset({ActionStatus.EXECUTING}),
    ActionStatus.EXECUTING: frozenset({ActionStatus.COMPLETED, ActionStatus.FAILED}),
    ActionStatus.REJECTED: frozenset(),
    ActionStatus.COMPLETED: frozenset(),
    ActionStatus.FAILED: frozenset(),
}

TERMINAL_ACTION_STATUSES = frozenset(
    status for status, allowed in ACTION_STATUS_TRANSITIONS.items() if not allowed
)


class FailureKind(str, Enum):
    TASK = "task"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


class WorkLogStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class RunState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    RESTING = "resting"
    STALLED = "stalled"


class Milestone(BaseModel):
    label: str
    threshold: float = Field(gt=0.0, le=1.0)
    reached_at: datetime | None = None

    @property
    def reached(self) -> bool:
        return self.reached_at is not None


def default_milestones() -> list[Milestone]:
    return [Milestone(label=f"{round(point * 100)}%", threshold=point) for point in (0.1, 0.25, 0.5, 0.75, 1.0)]


class Goal(BaseModel):
    id: str = Field(default_factory=lambda: new_id("goal"))
    title: str = Field(min_length=1)
    category: str = "general"
    priority: float = 5.0
    status: GoalStatus = GoalStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    milestones: list[Milestone] = Field(default_factory=default_milestones)
    description: str = ""
    applied_snapshots: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def selectable(self) -> bool:
        return self.status in SELECTABLE_GOAL_STATUSES

    def selection_key(self) -> tuple[float, datetime]:
        """Sort key: highest priority first, then earliest creation."""
        return (-self.priority, self.created_at)


class ExecutionPlan(BaseModel):
    executor_hint: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timeout_ms: int = Field(default=120_000, gt=0)
    progress_delta: float = Field(default=0.0, ge=0.0, le=1.0)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


class ExecutionResult(BaseModel):
    success: bool
    output: Any = None
    error: str | None = None
    executor: str | None = None
    progress_delta: float | None = Field(default=None, ge=0.0, le=1.0)


class Action(BaseModel):
    id: str = Field(default_factory=lambda: new_id("action"))
    goal_id: str | None = None
    title: str = Field(min_length=1)
    type: str
    description: str = ""
    risk: ActionRisk = ActionRisk.MANUAL
    status: ActionStatus = ActionStatus.PROPOSED
    execution_plan: ExecutionPlan = Field(default_factory=ExecutionPlan)
    metadata: dict[str, Any] = Field(default_factory=dict)
    result: ExecutionResult | None = None
    error: str | None = None
    error_kind: FailureKind | None = None
    executor: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    approved_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("action type must be non-empty")
        return normalized

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_ACTION_STATUSES

    @property
    def proposal_key(self) -> tuple[Any, ...]:
        """Identity of the proposed work, ignoring lifecycle fields."""
        return (self.goal_id, self.title, self.type, self.execution_plan)

    def transition(self, new_status: ActionStatus, *, at: datetime | None = None) -> None:
        """Move along the status graph, stamping the matching timestamp.

        Raises:
            IllegalTransition: If ``new_status`` is not reachable from the current status.
        """
        allowed = ACTION_STATUS_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise IllegalTransition(
                f"Illegal action status transition for {self.id}: {self.status.value} -> {new_status.value}"
            )
        moment = at if at is not None else utc_now()
        if new_status == ActionStatus.APPROVED:
            self.approved_at = moment
        elif new_status == ActionStatus.EXECUTING:
            self.started_at = moment
        elif new_status in TERMINAL_ACTION_STATUSES:
            self.ended_at = moment
        self.status = new_status

    def fail(self, error: str, kind: FailureKind, *, at: datetime | None = None) -> None:
        self.transition(ActionStatus.FAILED, at=at)
        self.error = error
        self.error_kind = kind


class ApprovalRequest(BaseModel):
    approval_id: str = Field(default_factory=lambda: new_id("approval"))
    action: Action
    created_at: datetime
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ApprovalResolution(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


class WorkLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    seq: int
    source: str
    message: str
    status: WorkLogStatus
    timestamp: datetime
    action_id: str | None = None


class EngineState(BaseModel):
    run_state: RunState = RunState.STOPPED
    current_goal_id: str | None = None
    current_action_id: str | None = None
    last_activity_at: datetime | None = None
    cooldown_until: datetime | None = None
    restart_count: int = 0
    started_at: datetime | None = None
    fatal: bool = False
    fatal_reason: str | None = None


class SupervisorRecord(BaseModel):
    """Persisted supervisor snapshot: engine state plus session continuity counters."""

    state: EngineState = Field(default_factory=EngineState)
    first_started: datetime | None = None
    last_session_start: datetime | None = None
    last_session_end: datetime | None = None
    total_sessions: int = 0
    total_gaps_detected: int = 0
    longest_uptime_seconds: float = 0.0


class SupervisorStatus(BaseModel):
    run_state: RunState
    uptime_seconds: float
    uptime_display: str
    cooldown_remaining_seconds: float
    restart_count: int
    fatal: bool
    fatal_reason: str | None = None
    last_activity_at: datetime | None = None
    current_goal_id: str | None = None
    current_action_id: str | None = None
    total_sessions: int = 0


class EngineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    seq: int
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utc_now)
