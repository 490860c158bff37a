from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Callable

from .models import WorkLogEntry, WorkLogStatus
from .state_store import RecordLog
from .utils import utc_now

logger = logging.getLogger(__name__)


class WorkLog:
    """Bounded, append-only history of what the engine did.

    Entries are persisted to a :class:`RecordLog` keyed by sequence number.
    Only the newest ``retention`` entries are kept in memory; the backing file
    is compacted once it holds twice that many records.
    """

    def __init__(
        self,
        records: RecordLog,
        *,
        retention: int = 500,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if retention < 1:
            raise ValueError(f"retention must be >= 1, got: {retention}")
        self.records = records
        self.retention = retention
        self._clock = clock
        self._entries: deque[WorkLogEntry] = deque(maxlen=retention)
        self._record_count = 0
        self._load()

    def _load(self) -> None:
        live = self.records.live_records()
        self._record_count = len(live)
        for record in live:
            self._entries.append(WorkLogEntry.model_validate(record.payload))
        if self._entries:
            logger.info("Resumed work log with %d entr(ies); last seq=%d", len(self._entries), self._entries[-1].seq)

    def _next_seq(self) -> int:
        return self._entries[-1].seq + 1 if self._entries else 1

    def append(
        self,
        source: str,
        message: str,
        status: WorkLogStatus,
        action_id: str | None = None,
    ) -> WorkLogEntry:
        entry = WorkLogEntry(
            seq=self._next_seq(),
            source=source,
            message=message,
            status=status,
            timestamp=self._clock(),
            action_id=action_id,
        )
        self.records.put(str(entry.seq), entry.model_dump(mode="json"))
        self._entries.append(entry)
        self._record_count += 1
        if self._record_count >= 2 * self.retention:
            self._record_count = self.records.compact(keep_last=self.retention)
        return entry

    def entries(self) -> list[WorkLogEntry]:
        return list(self._entries)

    def recent(
        self, limit: int, *, source: str | None = None, status: WorkLogStatus | None = None
    ) -> list[WorkLogEntry]:
        """Newest ``limit`` entries, optionally only those from ``source`` or with ``status``."""
        if limit <= 0:
            return []
        matching = [
            entry
            for entry in self._entries
            if (source is None or entry.source == source) and (status is None or entry.status == status)
        ]
        return matching[-limit:]

    def __len__(self) -> int:
        return len(self._entries)
