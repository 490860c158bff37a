from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Literal

from pydantic import BaseModel, ValidationError

from .canonical import checksum
from .models import SupervisorRecord

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"

RecordOp = Literal["put", "delete"]


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    The lock lives in a ``.lock`` sidecar so the data file itself can be
    atomically replaced via ``os.replace`` without disturbing the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class Record(BaseModel):
    seq: int
    key: str
    op: RecordOp
    payload: dict[str, Any] | None = None
    checksum: str

    @staticmethod
    def body_checksum(seq: int, key: str, op: RecordOp, payload: dict[str, Any] | None) -> str:
        return checksum({"seq": seq, "key": key, "op": op, "payload": payload})

    @classmethod
    def build(cls, seq: int, key: str, op: RecordOp, payload: dict[str, Any] | None) -> "Record":
        return cls(seq=seq, key=key, op=op, payload=payload, checksum=cls.body_checksum(seq, key, op, payload))

    def verify(self) -> bool:
        return self.checksum == self.body_checksum(self.seq, self.key, self.op, self.payload)

    def to_line(self) -> str:
        return json.dumps(self.model_dump(mode="json"), separators=(",", ":"), sort_keys=True) + "\n"


class RecordLog:
    """Append-only JSON-lines log of keyed records.

    Every line is ``{seq, key, op, payload, checksum}``. Sequence numbers grow
    monotonically across the life of the file (compaction preserves them).
    Appends hold an exclusive ``fcntl`` lock and are fsynced, so a CLI process
    and a running engine can share the same file.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._known_size = -1
        self._last_seq = 0

    def _current_size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def _refresh_last_seq(self) -> int:
        size = self._current_size()
        if size != self._known_size:
            records = self.replay()
            self._last_seq = max([self._last_seq, *(record.seq for record in records)])
            self._known_size = size
        return self._last_seq

    def append(self, key: str, payload: dict[str, Any] | None, *, op: RecordOp = "put") -> Record:
        if op == "put" and payload is None:
            raise ValueError(f"put record for {key!r} requires a payload")
        with _locked_file(self.path):
            seq = self._refresh_last_seq() + 1
            record = Record.build(seq, key, op, payload if op == "put" else None)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(record.to_line())
                handle.flush()
                os.fsync(handle.fileno())
            self._last_seq = seq
            self._known_size = self._current_size()
        return record

    def put(self, key: str, payload: dict[str, Any]) -> Record:
        return self.append(key, payload, op="put")

    def delete(self, key: str) -> Record:
        return self.append(key, None, op="delete")

    def replay(self) -> list[Record]:
        """Return every intact record in file order.

        Torn or corrupt lines (bad JSON, schema mismatch, checksum mismatch)
        are skipped with a warning.
        """
        if not self.path.is_file():
            return []
        records: list[Record] = []
        with self.path.open("r", encoding="utf-8", errors="replace") as handle:
            for line_no, line in enumerate(handle, start=1):
                text = line.strip()
                if not text:
                    continue
                try:
                    record = Record.model_validate_json(text)
                except ValidationError as exc:
                    logger.warning("Skipping corrupt record at %s:%d: %s", self.path, line_no, exc.errors()[:1])
                    continue
                if not record.verify():
                    logger.warning("Skipping record with bad checksum at %s:%d (seq=%d)", self.path, line_no, record.seq)
                    continue
                records.append(record)
        return records

    def live_records(self) -> list[Record]:
        """Latest ``put`` record per key, ordered by sequence; deleted keys are omitted."""
        latest: dict[str, Record] = {}
        for record in self.replay():
            if record.op == "delete":
                latest.pop(record.key, None)
            else:
                latest[record.key] = record
        return sorted(latest.values(), key=lambda record: record.seq)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {record.key: record.payload or {} for record in self.live_records()}

    def record_count(self) -> int:
        return len(self.replay())

    def compact(self, *, keep_last: int | None = None) -> int:
        """Atomically rewrite the file with only live records.

        Args:
            keep_last: When set, only the newest ``keep_last`` live records survive.

        Returns:
            Number of records written.
        """
        with _locked_file(self.path):
            live = self.live_records()
            if keep_last is not None:
                live = live[-keep_last:] if keep_last > 0 else []
            _atomic_write_text(self.path, "".join(record.to_line() for record in live))
            self._known_size = -1
        logger.debug("Compacted %s to %d record(s)", self.path, len(live))
        return len(live)


class EngineStateStore:
    """Directory-backed persistence for every durable engine collection."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.goals = RecordLog(self.root / "goals.jsonl")
        self.actions = RecordLog(self.root / "actions.jsonl")
        self.approvals = RecordLog(self.root / "approvals.jsonl")
        self.work_log = RecordLog(self.root / "work_log.jsonl")
        self.inbox = RecordLog(self.root / "inbox.jsonl")
        self.supervisor_path = self.root / "supervisor.json"

    def read_supervisor(self) -> SupervisorRecord | None:
        if not self.supervisor_path.is_file():
            return None
        text = self.supervisor_path.read_text(encoding="utf-8")
        if not text.strip():
            return None
        try:
            return SupervisorRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"Supervisor snapshot at {self.supervisor_path} is invalid: {exc}") from exc

    def write_supervisor(self, record: SupervisorRecord) -> None:
        with _locked_file(self.supervisor_path):
            _atomic_write_text(self.supervisor_path, record.model_dump_json(indent=2))
