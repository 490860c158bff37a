from importlib.metadata import PackageNotFoundError, version

from .approvals import ApprovalQueue
from .dispatcher import ExecutionDispatcher
from .errors import (
    BackendError,
    Busy,
    Cancelled,
    EngineError,
    ExecutionError,
    ExecutorTimeout,
    IllegalTransition,
    NoActionableWork,
    ProposalError,
    RateLimited,
    RestartExhausted,
    StallDetected,
    Unavailable,
)
from .events import EventBus, LoggingSubscriber
from .executors import Executor, ExecutorChain, ExecutorRegistry, SubprocessExecutor
from .goals import GoalManager, GoalStore
from .inbox import InboxCommand, OperatorInbox
from .loop import EngineLoop
from .models import (
    Action,
    ActionRisk,
    ActionStatus,
    ApprovalRequest,
    ApprovalResolution,
    EngineEvent,
    EngineState,
    ExecutionPlan,
    ExecutionResult,
    FailureKind,
    Goal,
    GoalStatus,
    Milestone,
    RunState,
    SupervisorStatus,
    WorkLogEntry,
    WorkLogStatus,
)
from .proposer import ContextRegistry, Proposer
from .risk import RiskPolicy, classify
from .runtime import EngineRuntime, build_runtime
from .settings import RestWindow, RuntimeSettings
from .state_store import EngineStateStore, RecordLog
from .supervisor import Supervisor
from .work_log import WorkLog


def get_version() -> str:
    try:
        return version("autonomy-engine")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Action",
    "ActionRisk",
    "ActionStatus",
    "ApprovalQueue",
    "ApprovalRequest",
    "ApprovalResolution",
    "BackendError",
    "Busy",
    "Cancelled",
    "ContextRegistry",
    "EngineError",
    "EngineEvent",
    "EngineLoop",
    "EngineRuntime",
    "EngineState",
    "EngineStateStore",
    "EventBus",
    "ExecutionDispatcher",
    "ExecutionError",
    "ExecutionPlan",
    "ExecutionResult",
    "Executor",
    "ExecutorChain",
    "ExecutorRegistry",
    "ExecutorTimeout",
    "FailureKind",
    "Goal",
    "GoalManager",
    "GoalStatus",
    "GoalStore",
    "IllegalTransition",
    "InboxCommand",
    "LoggingSubscriber",
    "Milestone",
    "NoActionableWork",
    "OperatorInbox",
    "ProposalError",
    "Proposer",
    "RateLimited",
    "RecordLog",
    "RestWindow",
    "RestartExhausted",
    "RiskPolicy",
    "RunState",
    "RuntimeSettings",
    "StallDetected",
    "SubprocessExecutor",
    "Supervisor",
    "SupervisorStatus",
    "Unavailable",
    "WorkLog",
    "WorkLogEntry",
    "WorkLogStatus",
    "build_runtime",
    "classify",
    "get_version",
]
