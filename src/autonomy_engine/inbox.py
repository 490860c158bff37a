from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from .models import Goal
from .state_store import RecordLog
from .utils import new_id, utc_now

logger = logging.getLogger(__name__)

CommandKind = Literal["approve", "reject", "add_goal"]


class InboxCommand(BaseModel):
    command_id: str = Field(default_factory=lambda: new_id("cmd"))
    kind: CommandKind
    approval_id: str | None = None
    reason: str | None = None
    goal: Goal | None = None
    auto_activate: bool = False
    submitted_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_arguments(self) -> "InboxCommand":
        if self.kind in ("approve", "reject") and not self.approval_id:
            raise ValueError(f"{self.kind} command requires approval_id")
        if self.kind == "add_goal" and self.goal is None:
            raise ValueError("add_goal command requires goal")
        return self


class OperatorInbox:
    """File-backed command queue from operator tools to a running engine.

    Producers (the CLI) append commands; the engine drains them once per
    tick. Drained commands are deleted, so each is applied at most once.
    """

    def __init__(self, records: RecordLog) -> None:
        self.records = records

    def submit(self, command: InboxCommand) -> InboxCommand:
        self.records.put(command.command_id, command.model_dump(mode="json"))
        logger.info("Queued %s command %s", command.kind, command.command_id)
        return command

    def approve(self, approval_id: str) -> InboxCommand:
        return self.submit(InboxCommand(kind="approve", approval_id=approval_id))

    def reject(self, approval_id: str, reason: str | None = None) -> InboxCommand:
        return self.submit(InboxCommand(kind="reject", approval_id=approval_id, reason=reason))

    def add_goal(self, goal: Goal, auto_activate: bool = False) -> InboxCommand:
        return self.submit(InboxCommand(kind="add_goal", goal=goal, auto_activate=auto_activate))

    def pending(self) -> list[InboxCommand]:
        commands: list[InboxCommand] = []
        for record in self.records.live_records():
            try:
                commands.append(InboxCommand.model_validate(record.payload))
            except ValidationError as exc:
                logger.warning("Discarding malformed inbox command %s: %s", record.key, exc)
                self.records.delete(record.key)
        return commands

    def drain(self) -> list[InboxCommand]:
        commands = self.pending()
        for command in commands:
            self.records.delete(command.command_id)
        if commands:
            self.records.compact()
        return commands
