from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from .models import Action, Goal

logger = logging.getLogger(__name__)

ContextProvider = Callable[[], Awaitable[Any]]


class Proposer(Protocol):
    """Source of candidate work. Implementations are free to call an LLM, a rules engine, or anything else."""

    async def propose(self, goal: Goal, context: dict[str, Any]) -> list[Action]:
        ...

    async def propose_goals(self, context: dict[str, Any]) -> list[Goal]:
        ...


class ContextRegistry:
    """Named context providers polled together into one snapshot."""

    def __init__(self) -> None:
        self._providers: dict[str, ContextProvider] = {}

    def register(self, name: str, provider: ContextProvider) -> None:
        if name in self._providers:
            raise ValueError(f"Context provider already registered: {name}")
        self._providers[name] = provider

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    async def snapshot(self) -> dict[str, Any]:
        """Poll every provider concurrently.

        Payloads pass through untouched. A provider that raises contributes
        ``None`` and is logged.
        """
        if not self._providers:
            return {}
        names = list(self._providers)
        results = await asyncio.gather(*(self._providers[name]() for name in names), return_exceptions=True)
        snapshot: dict[str, Any] = {}
        for name, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Context provider %s failed: %s", name, result)
                snapshot[name] = None
            else:
                snapshot[name] = result
        return snapshot
