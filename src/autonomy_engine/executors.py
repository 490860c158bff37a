from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Protocol, Sequence, runtime_checkable

from .errors import RateLimited, Unavailable
from .models import Action, ExecutionResult
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

RATE_LIMIT_RE = re.compile(r"rate.?limit|too many requests|usage limit|quota exceeded|\b429\b", re.IGNORECASE)
UNAVAILABLE_RE = re.compile(
    r"overloaded|service unavailable|connection (?:refused|reset|error)|network error|\b50[234]\b",
    re.IGNORECASE,
)


@runtime_checkable
class Executor(Protocol):
    name: str

    def is_ready(self) -> bool:
        ...

    async def execute(self, action: Action, deadline: datetime) -> ExecutionResult:
        ...

    async def cancel(self) -> None:
        ...


ExecutorFactory = Callable[[RuntimeSettings], Executor]


def render_action_prompt(action: Action) -> str:
    """Plain-text task description handed to text-in/text-out backends."""
    lines = [f"Task: {action.title}", f"Type: {action.type}"]
    if action.description:
        lines.extend(["", action.description])
    if action.execution_plan.payload:
        lines.extend(["", "Details:", json.dumps(action.execution_plan.payload, indent=2, sort_keys=True, default=str)])
    return "\n".join(lines) + "\n"


class SubprocessExecutor:
    """Run a command-line agent with the action prompt on stdin.

    A non-zero exit whose stderr mentions rate limiting raises ``RateLimited``;
    connectivity complaints raise ``Unavailable``; anything else is a task
    failure reported in the result.
    """

    def __init__(self, command: Sequence[str], *, name: str = "cli", cwd: Path | None = None) -> None:
        if not command:
            raise ValueError("command must name an executable")
        self.name = name
        self.command = list(command)
        self.cwd = cwd
        self._process: asyncio.subprocess.Process | None = None

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "SubprocessExecutor":
        return cls(shlex.split(settings.cli_command))

    def is_ready(self) -> bool:
        return shutil.which(self.command[0]) is not None

    async def execute(self, action: Action, deadline: datetime) -> ExecutionResult:
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd is not None else None,
            )
        except OSError as exc:
            raise Unavailable(f"Unable to start {self.command[0]}: {exc}", executor=self.name) from exc

        process = self._process
        try:
            stdout, stderr = await process.communicate(render_action_prompt(action).encode("utf-8"))
        except asyncio.CancelledError:
            await self.cancel()
            raise
        finally:
            self._process = None

        out_text = stdout.decode("utf-8", errors="replace").strip()
        err_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode == 0:
            return ExecutionResult(success=True, output=out_text, executor=self.name)
        if RATE_LIMIT_RE.search(err_text) or RATE_LIMIT_RE.search(out_text):
            raise RateLimited(f"{self.name} reported a rate limit: {err_text[:200]}", executor=self.name)
        if UNAVAILABLE_RE.search(err_text):
            raise Unavailable(f"{self.name} backend unavailable: {err_text[:200]}", executor=self.name)
        return ExecutionResult(
            success=False,
            output=out_text or None,
            error=err_text or f"exit code {process.returncode}",
            executor=self.name,
        )

    async def cancel(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        logger.info("Killing %s subprocess (pid=%s)", self.name, process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


class ExecutorChain:
    """Ordered, immutable list of executors tried by the dispatcher."""

    def __init__(self, executors: Sequence[Executor]) -> None:
        if not executors:
            raise ValueError("ExecutorChain requires at least one executor")
        names = [executor.name for executor in executors]
        if len(set(names)) != len(names):
            raise ValueError(f"ExecutorChain names must be unique, got: {names}")
        self._executors = tuple(executors)

    @property
    def names(self) -> list[str]:
        return [executor.name for executor in self._executors]

    def ordered_for(self, hint: str | None) -> list[Executor]:
        """Chain order, with the hinted executor (if present) moved to the front."""
        executors = list(self._executors)
        if hint:
            hinted = [executor for executor in executors if executor.name == hint]
            executors = hinted + [executor for executor in executors if executor.name != hint]
        return executors

    def __iter__(self) -> Iterator[Executor]:
        return iter(self._executors)

    def __len__(self) -> int:
        return len(self._executors)


class ExecutorRegistry:
    """Explicit name -> factory registry populated at startup."""

    def __init__(self) -> None:
        self._factories: dict[str, ExecutorFactory] = {}

    def register(self, name: str, factory: ExecutorFactory) -> None:
        key = name.strip().lower()
        if not key:
            raise ValueError("executor name must be non-empty")
        if key in self._factories:
            raise ValueError(f"Executor already registered: {key}")
        self._factories[key] = factory

    @property
    def names(self) -> list[str]:
        return sorted(self._factories)

    def build_chain(self, names: Sequence[str], settings: RuntimeSettings) -> ExecutorChain:
        unknown = [name for name in names if name not in self._factories]
        if unknown:
            raise ValueError(f"Unknown executor(s) in AUTONOMY_EXECUTOR_CHAIN: {unknown}; registered: {self.names}")
        executors: list[Executor] = []
        for name in names:
            executor = self._factories[name](settings)
            executor.name = name
            executors.append(executor)
        logger.info("Executor chain: %s", " -> ".join(names))
        return ExecutorChain(executors)
