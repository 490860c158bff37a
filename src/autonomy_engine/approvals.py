from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .events import APPROVAL_REQUESTED, APPROVAL_RESOLVED, EventSink
from .models import Action, ActionStatus, ApprovalRequest, ApprovalResolution, WorkLogStatus
from .state_store import RecordLog
from .utils import utc_now
from .work_log import WorkLog

logger = logging.getLogger(__name__)

_SOURCE = "approvals"

REASON_EXPIRED = "expired"
REASON_DECLINED = "declined"


class ApprovalQueue:
    """Holds manual actions until an operator approves or rejects them.

    Pending requests are persisted so they survive a restart. Every request
    expires after ``ttl_seconds``; expiry is an implicit reject.

    When an action ``ledger`` is given, a resolution is written to it before
    the request is deleted: approved actions are stored ``approved`` and
    rejected ones are removed. A restart between the two writes therefore
    never puts a resolved action back up for approval.
    """

    def __init__(
        self,
        records: RecordLog,
        events: EventSink,
        work_log: WorkLog,
        *,
        ttl_seconds: float = 86_400,
        ledger: RecordLog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.records = records
        self.events = events
        self.work_log = work_log
        self.ttl = timedelta(seconds=ttl_seconds)
        self.ledger = ledger
        self._clock = clock
        self._pending: dict[str, ApprovalRequest] = {
            key: ApprovalRequest.model_validate(payload) for key, payload in records.snapshot().items()
        }
        self._approved: list[Action] = []
        self._rejected: list[Action] = []
        if self._pending:
            logger.info("Restored %d pending approval(s)", len(self._pending))

    def enqueue(self, action: Action) -> str:
        if action.status != ActionStatus.PROPOSED:
            raise ValueError(f"Only proposed actions can await approval, got {action.id} in {action.status.value}")
        now = self._clock()
        request = ApprovalRequest(action=action.model_copy(deep=True), created_at=now, expires_at=now + self.ttl)
        self.records.put(request.approval_id, request.model_dump(mode="json"))
        self._pending[request.approval_id] = request
        self.events.emit(
            APPROVAL_REQUESTED,
            {"approval_id": request.approval_id, "action_id": action.id, "title": action.title},
        )
        self.work_log.append(_SOURCE, f"Awaiting approval: {action.title}", WorkLogStatus.PENDING, action.id)
        return request.approval_id

    def _resolve(self, request: ApprovalRequest) -> None:
        action = request.action
        if self.ledger is not None:
            if action.terminal:
                self.ledger.delete(action.id)
            else:
                self.ledger.put(action.id, action.model_dump(mode="json"))
        self.discard(request.approval_id)

    def discard(self, approval_id: str) -> bool:
        """Drop a pending request without resolving it. Returns ``False`` if it was not pending."""
        if self._pending.pop(approval_id, None) is None:
            return False
        self.records.delete(approval_id)
        return True

    def approve(self, approval_id: str) -> ApprovalResolution:
        request = self._pending.get(approval_id)
        if request is None:
            return ApprovalResolution.NOT_FOUND
        now = self._clock()
        if request.expired(now):
            self.expire_stale(now)
            return ApprovalResolution.NOT_FOUND
        action = request.action
        action.transition(ActionStatus.APPROVED, at=now)
        self._resolve(request)
        self._approved.append(action)
        self.events.emit(
            APPROVAL_RESOLVED,
            {"approval_id": approval_id, "action_id": action.id, "resolution": ApprovalResolution.APPROVED.value},
        )
        self.work_log.append(_SOURCE, f"Approved: {action.title}", WorkLogStatus.SUCCESS, action.id)
        return ApprovalResolution.APPROVED

    def _reject(self, request: ApprovalRequest, reason: str, at: datetime, detail: str | None = None) -> Action:
        action = request.action
        action.transition(ActionStatus.REJECTED, at=at)
        action.error = reason if not detail else f"{reason}: {detail}"
        self._resolve(request)
        self._rejected.append(action)
        self.events.emit(
            APPROVAL_RESOLVED,
            {
                "approval_id": request.approval_id,
                "action_id": action.id,
                "resolution": ApprovalResolution.REJECTED.value,
                "reason": reason,
            },
        )
        message = f"Rejected ({reason}): {action.title}"
        if detail:
            message = f"{message} ({detail})"
        self.work_log.append(_SOURCE, message, WorkLogStatus.INFO, action.id)
        return action

    def reject(self, approval_id: str, reason: str | None = None) -> ApprovalResolution:
        request = self._pending.get(approval_id)
        if request is None:
            return ApprovalResolution.NOT_FOUND
        self._reject(request, REASON_DECLINED, self._clock(), detail=reason)
        return ApprovalResolution.REJECTED

    def expire_stale(self, now: datetime | None = None) -> list[Action]:
        """Reject every request whose deadline has passed. Safe to call repeatedly."""
        moment = now if now is not None else self._clock()
        stale = [request for request in self._pending.values() if request.expired(moment)]
        expired = [self._reject(request, REASON_EXPIRED, moment) for request in stale]
        if expired:
            logger.info("Expired %d approval request(s)", len(expired))
        return expired

    def pending(self) -> list[ApprovalRequest]:
        return sorted(self._pending.values(), key=lambda request: request.created_at)

    def find_by_action(self, action_id: str) -> ApprovalRequest | None:
        return next((request for request in self._pending.values() if request.action.id == action_id), None)

    def drain_approved(self) -> list[Action]:
        approved, self._approved = self._approved, []
        return approved

    def drain_rejected(self) -> list[Action]:
        rejected, self._rejected = self._rejected, []
        return rejected

    def __len__(self) -> int:
        return len(self._pending)
