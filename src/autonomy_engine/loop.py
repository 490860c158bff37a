from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .approvals import ApprovalQueue
from .dispatcher import ExecutionDispatcher
from .errors import Busy, NoActionableWork, ProposalError
from .events import PROPOSALS_UPDATED, EventSink
from .goals import GoalManager
from .inbox import InboxCommand, OperatorInbox
from .models import Action, ActionRisk, ActionStatus, FailureKind, Goal, WorkLogStatus
from .proposer import ContextRegistry, Proposer
from .risk import RiskPolicy, classify
from .state_store import RecordLog
from .utils import utc_now
from .work_log import WorkLog

logger = logging.getLogger(__name__)

_SOURCE = "engine"
_OUTSTANDING_STATUSES = frozenset({ActionStatus.PROPOSED, ActionStatus.APPROVED, ActionStatus.EXECUTING})
_LEDGER_COMPACT_EVERY = 200


class CycleState(TypedDict, total=False):
    ready: bool
    goal_id: str | None
    outcome: str
    action_id: str | None


class EngineLoop:
    """Turns goals into proposed, classified and dispatched actions, one cycle at a time.

    Each cycle is a compiled LangGraph ``StateGraph``::

        housekeeping -> dispatch | select_goal | END
        select_goal -> propose_actions | generate_goals | END
        generate_goals -> propose_actions | END
        propose_actions -> dispatch | END
        dispatch -> END

    A failing cycle is logged and degrades to "no progress"; :meth:`run`
    never exits because of one.
    """

    def __init__(
        self,
        *,
        goals: GoalManager,
        approvals: ApprovalQueue,
        dispatcher: ExecutionDispatcher,
        proposer: Proposer,
        context: ContextRegistry,
        events: EventSink,
        work_log: WorkLog,
        action_records: RecordLog,
        risk_policy: RiskPolicy,
        inbox: OperatorInbox | None = None,
        cycle_interval_seconds: float = 60,
        rate_limit_rest_seconds: float = 1_800,
        max_proposals: int = 5,
        default_timeout_ms: int = 120_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.goals = goals
        self.approvals = approvals
        self.dispatcher = dispatcher
        self.proposer = proposer
        self.context = context
        self.events = events
        self.work_log = work_log
        self.action_records = action_records
        self.risk_policy = risk_policy
        self.inbox = inbox
        self.cycle_interval_seconds = cycle_interval_seconds
        self.rate_limit_rest = timedelta(seconds=rate_limit_rest_seconds)
        self.max_proposals = max_proposals
        self.default_timeout_ms = default_timeout_ms
        self._clock = clock
        if approvals.ledger is None:
            approvals.ledger = action_records

        self._ledger: dict[str, Action] = {}
        self._ready: deque[Action] = deque()
        self._last_proposals: dict[str, list[tuple[Any, ...]]] = {}
        self._ledger_writes = 0
        self._last_activity_at: datetime | None = None
        self._rest_until: datetime | None = None
        self._current_goal_id: str | None = None
        self._paused = False
        self._cycles = 0

        self._resume_ledger()
        self.graph = self._build_graph().compile()

    # ------------------------------------------------------------------
    # Accessors used by the Supervisor
    # ------------------------------------------------------------------

    @property
    def last_activity_at(self) -> datetime | None:
        return self._last_activity_at

    @property
    def rest_until(self) -> datetime | None:
        return self._rest_until

    @property
    def current_goal_id(self) -> str | None:
        return self._current_goal_id

    @property
    def current_action_id(self) -> str | None:
        return self.dispatcher.current_action_id

    @property
    def cycles(self) -> int:
        return self._cycles

    def ready_actions(self) -> list[Action]:
        return list(self._ready)

    def outstanding_actions(self) -> list[Action]:
        return [action.model_copy(deep=True) for action in self._ledger.values()]

    def set_paused(self, paused: bool) -> None:
        if paused != self._paused:
            logger.info("Engine loop %s", "paused" if paused else "resumed")
        self._paused = paused

    def abort(self) -> None:
        self.dispatcher.abort()

    def reset(self) -> None:
        """Drop transient cycle state before a restart; the ledger is rebuilt from disk."""
        # Resolutions are already on disk.
        self.approvals.drain_approved()
        self.approvals.drain_rejected()
        self._ready.clear()
        self._last_proposals.clear()
        self._current_goal_id = None
        self._ledger.clear()
        self._resume_ledger()

    # ------------------------------------------------------------------
    # Action ledger
    # ------------------------------------------------------------------

    def _persist(self, action: Action) -> None:
        if action.terminal:
            if action.id in self._ledger:
                self.action_records.delete(action.id)
                del self._ledger[action.id]
        else:
            self.action_records.put(action.id, action.model_dump(mode="json"))
            self._ledger[action.id] = action
        self._ledger_writes += 1
        if self._ledger_writes >= _LEDGER_COMPACT_EVERY:
            self._ledger_writes = 0
            self.action_records.compact()

    def _resume_ledger(self) -> None:
        for payload in self.action_records.snapshot().values():
            action = Action.model_validate(payload)
            if action.status == ActionStatus.EXECUTING:
                action.fail("interrupted by restart", FailureKind.INTERRUPTED, at=self._clock())
                self._ledger[action.id] = action
                self._persist(action)
                self.work_log.append(_SOURCE, f"Interrupted: {action.title}", WorkLogStatus.ERROR, action.id)
            elif action.status == ActionStatus.APPROVED:
                self._ledger[action.id] = action
                self._ready.append(action)
            elif action.status == ActionStatus.PROPOSED:
                self._ledger[action.id] = action
                if self.approvals.find_by_action(action.id) is None:
                    self.approvals.enqueue(action)
        for request in self.approvals.pending():
            owner = self._ledger.get(request.action.id)
            if owner is None or owner.status != ActionStatus.PROPOSED:
                self.approvals.discard(request.approval_id)
                logger.info("Dropped approval %s for already resolved action %s", request.approval_id, request.action.id)
        if self._ledger:
            logger.info("Resumed %d outstanding action(s), %d ready", len(self._ledger), len(self._ready))

    def _goal_has_outstanding(self, goal_id: str) -> bool:
        return any(
            action.goal_id == goal_id and action.status in _OUTSTANDING_STATUSES for action in self._ledger.values()
        )

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(CycleState)
        graph.add_node("housekeeping", self._housekeeping_node)
        graph.add_node("select_goal", self._select_goal_node)
        graph.add_node("generate_goals", self._generate_goals_node)
        graph.add_node("propose_actions", self._propose_actions_node)
        graph.add_node("dispatch", self._dispatch_node)

        graph.add_edge(START, "housekeeping")
        graph.add_conditional_edges(
            "housekeeping",
            self._housekeeping_route,
            {"dispatch": "dispatch", "select_goal": "select_goal", "end": END},
        )
        graph.add_conditional_edges(
            "select_goal",
            self._select_goal_route,
            {"propose_actions": "propose_actions", "generate_goals": "generate_goals", "end": END},
        )
        graph.add_conditional_edges(
            "generate_goals",
            self._goal_route,
            {"propose_actions": "propose_actions", "end": END},
        )
        graph.add_conditional_edges(
            "propose_actions",
            self._propose_route,
            {"dispatch": "dispatch", "end": END},
        )
        graph.add_edge("dispatch", END)
        return graph

    def _apply_command(self, command: InboxCommand) -> None:
        if command.kind == "approve" and command.approval_id:
            resolution = self.approvals.approve(command.approval_id)
            logger.info("Inbox approve %s -> %s", command.approval_id, resolution.value)
        elif command.kind == "reject" and command.approval_id:
            resolution = self.approvals.reject(command.approval_id, command.reason)
            logger.info("Inbox reject %s -> %s", command.approval_id, resolution.value)
        elif command.kind == "add_goal" and command.goal is not None:
            try:
                self.goals.add_goal(command.goal, auto_activate=command.auto_activate)
            except ValueError as exc:
                logger.warning("Inbox add_goal ignored: %s", exc)

    async def _housekeeping_node(self, _state: CycleState) -> dict[str, Any]:
        if self.inbox is not None:
            for command in self.inbox.drain():
                self._apply_command(command)
        self.approvals.expire_stale(self._clock())
        # The queue has already written these resolutions to the ledger.
        for action in self.approvals.drain_rejected():
            self._ledger.pop(action.id, None)
        queued = {action.id for action in self._ready}
        for action in self.approvals.drain_approved():
            self._ledger[action.id] = action
            if action.id not in queued:
                self._ready.append(action)
        if self.dispatcher.busy:
            logger.info("Dispatcher busy with %s; deferring cycle", self.dispatcher.current_action_id)
            return {"outcome": "deferred", "ready": False}
        return {"ready": bool(self._ready)}

    def _housekeeping_route(self, state: CycleState) -> str:
        if state.get("outcome") == "deferred":
            return "end"
        if state.get("ready"):
            return "dispatch"
        return "select_goal"

    async def _select_goal_node(self, _state: CycleState) -> dict[str, Any]:
        goal = self.goals.select_current_goal()
        if goal is None:
            self._current_goal_id = None
            return {"goal_id": None}
        self._current_goal_id = goal.id
        if self._goal_has_outstanding(goal.id):
            return {"goal_id": goal.id, "outcome": "awaiting_approval"}
        return {"goal_id": goal.id}

    def _select_goal_route(self, state: CycleState) -> str:
        if state.get("goal_id") is None:
            return "generate_goals"
        if state.get("outcome") == "awaiting_approval":
            return "end"
        return "propose_actions"

    async def _generate_goals_node(self, _state: CycleState) -> dict[str, Any]:
        if self.goals.generation_throttled():
            logger.debug("Goal generation cooling down")
            return {"goal_id": None, "outcome": "no_work"}
        try:
            context = await self.context.snapshot()
            await self.goals.generate_goals(self.proposer, context)
        except NoActionableWork as exc:
            self.work_log.append(_SOURCE, f"No actionable work: {exc}", WorkLogStatus.INFO)
            return {"goal_id": None, "outcome": "no_work"}
        except ProposalError as exc:
            logger.warning("Goal generation failed: %s", exc)
            self.work_log.append(_SOURCE, f"Goal generation failed: {exc}", WorkLogStatus.ERROR)
            return {"goal_id": None, "outcome": "proposal_error"}
        goal = self.goals.select_current_goal()
        self._current_goal_id = goal.id if goal is not None else None
        if goal is None:
            return {"goal_id": None, "outcome": "no_work"}
        return {"goal_id": goal.id}

    def _goal_route(self, state: CycleState) -> str:
        return "propose_actions" if state.get("goal_id") else "end"

    def _admit(self, goal: Goal, proposals: list[Action]) -> list[Action]:
        known = [action.proposal_key for action in self._ledger.values()]
        unique: list[Action] = []
        for action in proposals[: self.max_proposals]:
            if action.goal_id is None:
                action.goal_id = goal.id
            if action.status != ActionStatus.PROPOSED:
                logger.warning("Ignoring proposal %s with status %s", action.id, action.status.value)
                continue
            key = action.proposal_key
            if key in known or any(key == other.proposal_key for other in unique):
                continue
            plan = action.execution_plan
            if "timeout_ms" not in plan.model_fields_set:
                action.execution_plan = plan.model_copy(update={"timeout_ms": self.default_timeout_ms})
            unique.append(action)
        return unique

    async def _propose_actions_node(self, state: CycleState) -> dict[str, Any]:
        goal_id = state.get("goal_id")
        goal = self.goals.get(goal_id) if goal_id else None
        if goal is None:
            return {"outcome": "no_work"}
        try:
            context = await self.context.snapshot()
            proposals = await self.proposer.propose(goal, context)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Proposer failed for goal %s: %s", goal.id, exc)
            self.work_log.append(_SOURCE, f"Proposal failed for {goal.title}: {exc}", WorkLogStatus.ERROR)
            return {"outcome": "proposal_error"}

        admitted = self._admit(goal, proposals)
        keys = [action.proposal_key for action in admitted]
        if keys != self._last_proposals.get(goal.id):
            self._last_proposals[goal.id] = keys
            self.events.emit(
                PROPOSALS_UPDATED,
                {"goal_id": goal.id, "proposals": [{"title": a.title, "type": a.type} for a in admitted]},
            )
        if not admitted:
            return {"outcome": "no_proposals"}

        # One outstanding action per goal; the rest are re-proposed on later cycles.
        action = admitted[0]
        action.risk = classify(action, self.risk_policy)
        if action.risk == ActionRisk.AUTO:
            action.transition(ActionStatus.APPROVED, at=self._clock())
            self._persist(action)
            self._ready.append(action)
            self.work_log.append(_SOURCE, f"Auto-approved: {action.title}", WorkLogStatus.INFO, action.id)
            return {"outcome": "proposed", "action_id": action.id, "ready": True}
        self._persist(action)
        self.approvals.enqueue(action)
        return {"outcome": "awaiting_approval", "action_id": action.id, "ready": False}

    def _propose_route(self, state: CycleState) -> str:
        return "dispatch" if state.get("ready") and self._ready else "end"

    async def _dispatch_node(self, _state: CycleState) -> dict[str, Any]:
        if not self._ready:
            return {"outcome": "no_work"}
        action = self._ready.popleft()
        try:
            result = await self.dispatcher.dispatch(action)
        except Busy:
            self._ready.appendleft(action)
            return {"outcome": "deferred", "action_id": action.id}
        except asyncio.CancelledError:
            self._persist(action)
            raise
        self._persist(action)

        if result.success:
            if action.goal_id and self.goals.get(action.goal_id) is not None:
                delta = result.progress_delta
                if delta is None:
                    delta = action.execution_plan.progress_delta
                self.goals.sync_progress(action.goal_id, delta, snapshot_id=action.id)
            return {"outcome": "completed", "action_id": action.id}

        if action.error_kind == FailureKind.RATE_LIMITED and self.rate_limit_rest > timedelta(0):
            self._rest_until = self._clock() + self.rate_limit_rest
            self.work_log.append(
                _SOURCE,
                f"Every executor is rate limited; resting until {self._rest_until.isoformat()}",
                WorkLogStatus.INFO,
                action.id,
            )
        return {"outcome": "failed", "action_id": action.id}

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def resting(self, now: datetime | None = None) -> bool:
        moment = now if now is not None else self._clock()
        return self._paused or (self._rest_until is not None and moment < self._rest_until)

    async def run_cycle(self) -> str:
        """Run one cycle and return its outcome label.

        Outcomes: ``resting``, ``deferred``, ``no_work``, ``no_proposals``,
        ``proposal_error``, ``awaiting_approval``, ``proposed``, ``completed``,
        ``failed`` or ``error``.
        """
        if self.resting():
            return "resting"
        try:
            final_state = await self.graph.ainvoke({"ready": False, "goal_id": None, "action_id": None})
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Engine cycle failed")
            self.work_log.append(_SOURCE, f"Cycle failed: {type(exc).__name__}: {exc}", WorkLogStatus.ERROR)
            return "error"
        self._cycles += 1
        self._last_activity_at = self._clock()
        return str(final_state.get("outcome") or "no_work")

    async def run(self) -> None:
        logger.info("Engine loop started (interval=%ss)", self.cycle_interval_seconds)
        while True:
            outcome = await self.run_cycle()
            logger.debug("Cycle outcome: %s", outcome)
            await asyncio.sleep(self.cycle_interval_seconds)
