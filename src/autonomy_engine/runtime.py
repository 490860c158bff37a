from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from .approvals import ApprovalQueue
from .dispatcher import ExecutionDispatcher
from .events import EventBus, LoggingSubscriber
from .executors import ExecutorChain, ExecutorRegistry, SubprocessExecutor
from .goals import GoalManager, GoalStore
from .inbox import OperatorInbox
from .llm import ChatModelExecutor
from .loop import EngineLoop
from .proposer import ContextRegistry, Proposer
from .risk import RiskPolicy
from .settings import RuntimeSettings
from .state_store import EngineStateStore
from .supervisor import Supervisor
from .utils import utc_now
from .work_log import WorkLog

logger = logging.getLogger(__name__)


def default_executor_registry() -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register("cli", SubprocessExecutor.from_settings)
    registry.register("chat", ChatModelExecutor.from_settings)
    return registry


@dataclass
class EngineRuntime:
    settings: RuntimeSettings
    store: EngineStateStore
    events: EventBus
    work_log: WorkLog
    goals: GoalManager
    approvals: ApprovalQueue
    inbox: OperatorInbox
    risk_policy: RiskPolicy
    chain: ExecutorChain
    dispatcher: ExecutionDispatcher
    context: ContextRegistry
    loop: EngineLoop
    supervisor: Supervisor

    async def start(self) -> None:
        await self.supervisor.start(self.loop)

    async def stop(self) -> None:
        await self.supervisor.stop()

    async def run_forever(self) -> None:
        """Start the supervisor and block until cancelled, then stop cleanly."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()


def build_runtime(
    settings: RuntimeSettings,
    proposer: Proposer,
    *,
    repo_root: Path | None = None,
    registry: ExecutorRegistry | None = None,
    chain: ExecutorChain | None = None,
    context: ContextRegistry | None = None,
    clock: Callable[[], datetime] = utc_now,
    log_events: bool = True,
) -> EngineRuntime:
    """Construct every engine component once and wire them together.

    Args:
        settings: Validated runtime settings.
        proposer: Source of goals and actions.
        repo_root: Base for relative paths in settings (default: cwd).
        registry: Executor registry used to build the chain from
            ``settings.executor_chain_names`` (default: cli + chat).
        chain: Prebuilt executor chain; takes precedence over ``registry``.
        context: Context providers handed to the proposer.
        clock: Time source shared by every component.
        log_events: Mirror engine events to the log.

    Returns:
        The assembled runtime; nothing is started yet.
    """
    root = repo_root if repo_root is not None else Path.cwd()
    store = EngineStateStore(settings.state_store_path(root))
    events = EventBus()
    if log_events:
        events.subscribe(LoggingSubscriber())
    work_log = WorkLog(store.work_log, retention=settings.work_log_retention, clock=clock)
    goals = GoalManager(
        GoalStore(store.goals),
        events,
        work_log,
        generation_cooldown_seconds=settings.goal_generation_cooldown_seconds,
        clock=clock,
    )
    approvals = ApprovalQueue(
        store.approvals,
        events,
        work_log,
        ttl_seconds=settings.approval_ttl_seconds,
        ledger=store.actions,
        clock=clock,
    )
    inbox = OperatorInbox(store.inbox)
    risk_policy = RiskPolicy.from_settings(settings, root)
    if chain is None:
        chain = (registry or default_executor_registry()).build_chain(settings.executor_chain_names, settings)
    dispatcher = ExecutionDispatcher(chain, events, work_log, clock=clock)
    context_registry = context if context is not None else ContextRegistry()
    loop = EngineLoop(
        goals=goals,
        approvals=approvals,
        dispatcher=dispatcher,
        proposer=proposer,
        context=context_registry,
        events=events,
        work_log=work_log,
        action_records=store.actions,
        risk_policy=risk_policy,
        inbox=inbox,
        cycle_interval_seconds=settings.cycle_interval_seconds,
        rate_limit_rest_seconds=settings.rate_limit_rest_seconds,
        max_proposals=settings.max_proposals_per_cycle,
        default_timeout_ms=settings.default_timeout_ms,
        clock=clock,
    )
    supervisor = Supervisor.from_settings(settings, store, events, work_log, clock=clock)
    logger.info("Engine runtime assembled at %s", store.root)
    return EngineRuntime(
        settings=settings,
        store=store,
        events=events,
        work_log=work_log,
        goals=goals,
        approvals=approvals,
        inbox=inbox,
        risk_policy=risk_policy,
        chain=chain,
        dispatcher=dispatcher,
        context=context_registry,
        loop=loop,
        supervisor=supervisor,
    )
