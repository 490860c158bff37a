from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from .errors import NoActionableWork, ProposalError
from .events import GOAL_COMPLETED, MILESTONE_REACHED, EventSink
from .models import SELECTABLE_GOAL_STATUSES, Goal, GoalStatus, WorkLogStatus
from .state_store import RecordLog
from .utils import utc_now
from .work_log import WorkLog

if TYPE_CHECKING:
    from .proposer import Proposer

logger = logging.getLogger(__name__)

_SOURCE = "goals"

APPLIED_SNAPSHOT_LIMIT = 100


class GoalStore:
    """Durable collection of goals keyed by id."""

    def __init__(self, records: RecordLog) -> None:
        self.records = records
        self._goals: dict[str, Goal] = {
            key: Goal.model_validate(payload) for key, payload in records.snapshot().items()
        }

    def get(self, goal_id: str) -> Goal | None:
        goal = self._goals.get(goal_id)
        return goal.model_copy(deep=True) if goal is not None else None

    def put(self, goal: Goal) -> None:
        self.records.put(goal.id, goal.model_dump(mode="json"))
        self._goals[goal.id] = goal.model_copy(deep=True)

    def delete(self, goal_id: str) -> bool:
        if goal_id not in self._goals:
            return False
        self.records.delete(goal_id)
        del self._goals[goal_id]
        return True

    def list(self) -> list[Goal]:
        return [goal.model_copy(deep=True) for goal in sorted(self._goals.values(), key=lambda goal: goal.created_at)]

    def reload(self) -> None:
        self._goals = {key: Goal.model_validate(payload) for key, payload in self.records.snapshot().items()}

    def __contains__(self, goal_id: object) -> bool:
        return goal_id in self._goals

    def __len__(self) -> int:
        return len(self._goals)


class GoalManager:
    """Owns goal selection, progress accounting and goal generation."""

    def __init__(
        self,
        store: GoalStore,
        events: EventSink,
        work_log: WorkLog,
        *,
        generation_cooldown_seconds: float = 600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.events = events
        self.work_log = work_log
        self.generation_cooldown = timedelta(seconds=generation_cooldown_seconds)
        self._clock = clock
        self._last_generation_at: datetime | None = None

    def _require(self, goal_id: str) -> Goal:
        goal = self.store.get(goal_id)
        if goal is None:
            raise KeyError(f"Unknown goal: {goal_id}")
        return goal

    def _activate(self, goal: Goal, now: datetime) -> None:
        for other in self.store.list():
            if other.id != goal.id and other.status == GoalStatus.ACTIVE:
                other.status = GoalStatus.PENDING
                other.updated_at = now
                self.store.put(other)
                logger.info("Goal %s demoted to pending", other.id)
        goal.status = GoalStatus.ACTIVE
        goal.updated_at = now

    def goals(self) -> list[Goal]:
        return self.store.list()

    def get(self, goal_id: str) -> Goal | None:
        return self.store.get(goal_id)

    def active_goal(self) -> Goal | None:
        return next((goal for goal in self.store.list() if goal.status == GoalStatus.ACTIVE), None)

    def select_current_goal(self) -> Goal | None:
        """Pick the highest-priority selectable goal and make it the single active goal.

        Ties on priority go to the goal created first.

        Returns:
            The selected goal, or ``None`` when no goal is pending or active.
        """
        candidates = [goal for goal in self.store.list() if goal.selectable]
        if not candidates:
            return None
        chosen = min(candidates, key=Goal.selection_key)
        if chosen.status != GoalStatus.ACTIVE:
            self._activate(chosen, self._clock())
            self.store.put(chosen)
            logger.info("Goal %s (%s) is now active", chosen.id, chosen.title)
        return chosen

    def add_goal(self, goal: Goal, auto_activate: bool = False) -> Goal:
        if goal.id in self.store:
            raise ValueError(f"Goal already exists: {goal.id}")
        now = self._clock()
        if goal.status not in (GoalStatus.PENDING, GoalStatus.ACTIVE):
            raise ValueError(f"New goals must be pending or active, got: {goal.status.value}")
        if auto_activate or goal.status == GoalStatus.ACTIVE:
            self._activate(goal, now)
        self.store.put(goal)
        self.work_log.append(_SOURCE, f"Goal added: {goal.title}", WorkLogStatus.INFO)
        return goal

    def sync_progress(self, goal_id: str, delta: float, snapshot_id: str | None = None) -> Goal:
        """Apply a progress increment to a goal.

        Progress is clamped to ``[0, 1]`` and never decreases. Every milestone
        crossed by this update emits ``milestone-reached``; reaching ``1.0``
        completes the goal and emits ``goal-completed``.

        Args:
            goal_id: Goal to update.
            delta: Progress increment; negative values are ignored.
            snapshot_id: Identity of the work that produced the increment. A
                snapshot that was already applied is a no-op. Only the last
                ``APPLIED_SNAPSHOT_LIMIT`` snapshot ids are remembered.

        Returns:
            The goal after the update.

        Raises:
            KeyError: If the goal does not exist.
        """
        goal = self._require(goal_id)
        if snapshot_id is not None and snapshot_id in goal.applied_snapshots:
            logger.debug("Progress snapshot %s already applied to goal %s", snapshot_id, goal_id)
            return goal

        now = self._clock()
        new_progress = min(1.0, max(goal.progress, goal.progress + max(0.0, delta)))
        goal.progress = new_progress
        goal.updated_at = now
        if snapshot_id is not None:
            goal.applied_snapshots.append(snapshot_id)
            del goal.applied_snapshots[:-APPLIED_SNAPSHOT_LIMIT]

        reached: list[dict[str, Any]] = []
        for milestone in goal.milestones:
            if not milestone.reached and new_progress >= milestone.threshold:
                milestone.reached_at = now
                reached.append({"goal_id": goal.id, "label": milestone.label, "threshold": milestone.threshold})

        completed = new_progress >= 1.0 and goal.status != GoalStatus.COMPLETED
        if completed:
            goal.status = GoalStatus.COMPLETED
        self.store.put(goal)

        for payload in reached:
            self.events.emit(MILESTONE_REACHED, payload)
            self.work_log.append(_SOURCE, f"Milestone {payload['label']} reached for {goal.title}", WorkLogStatus.SUCCESS)
        if completed:
            self.events.emit(GOAL_COMPLETED, {"goal_id": goal.id, "title": goal.title})
            self.work_log.append(_SOURCE, f"Goal completed: {goal.title}", WorkLogStatus.SUCCESS)
        return goal

    def reset_progress(self, goal_id: str) -> Goal:
        goal = self._require(goal_id)
        goal.progress = 0.0
        for milestone in goal.milestones:
            milestone.reached_at = None
        if goal.status == GoalStatus.COMPLETED:
            goal.status = GoalStatus.PENDING
        goal.updated_at = self._clock()
        self.store.put(goal)
        self.work_log.append(_SOURCE, f"Progress reset for {goal.title}", WorkLogStatus.INFO)
        return goal

    def archive(self, goal_id: str) -> Goal:
        goal = self._require(goal_id)
        goal.status = GoalStatus.ARCHIVED
        goal.updated_at = self._clock()
        self.store.put(goal)
        self.work_log.append(_SOURCE, f"Goal archived: {goal.title}", WorkLogStatus.INFO)
        return goal

    def delete_goal(self, goal_id: str) -> bool:
        goal = self.store.get(goal_id)
        if goal is None:
            return False
        self.store.delete(goal_id)
        self.work_log.append(_SOURCE, f"Goal deleted: {goal.title}", WorkLogStatus.INFO)
        return True

    def generation_throttled(self) -> bool:
        if self._last_generation_at is None:
            return False
        return self._clock() - self._last_generation_at < self.generation_cooldown

    async def generate_goals(self, proposer: Proposer, context: dict[str, Any]) -> list[Goal]:
        """Ask the proposer for new goals when the backlog has nothing selectable.

        Raises:
            NoActionableWork: If generation is throttled or the proposer returned no goals.
            ProposalError: If the proposer itself failed.
        """
        if self.generation_throttled():
            raise NoActionableWork("Goal generation is cooling down")
        self._last_generation_at = self._clock()
        try:
            proposed = await proposer.propose_goals(context)
        except ProposalError:
            raise
        except Exception as exc:
            raise ProposalError(f"Goal generation failed: {exc}") from exc

        seen: set[str] = set()
        accepted: list[Goal] = []
        for goal in proposed:
            if goal.id in seen or goal.id in self.store:
                logger.warning("Skipping generated goal %s: duplicate id", goal.id)
                continue
            seen.add(goal.id)
            if goal.status not in SELECTABLE_GOAL_STATUSES:
                logger.warning("Skipping generated goal %s: status %s", goal.id, goal.status.value)
                continue
            accepted.append(goal)
        if not accepted:
            raise NoActionableWork("Goal generation produced no goals")
        added = [self.add_goal(goal) for goal in accepted]
        logger.info("Generated %d goal(s)", len(added))
        return added
