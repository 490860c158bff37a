from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

import openai
from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field, ValidationError

from .errors import ProposalError, RateLimited, Unavailable
from .executors import render_action_prompt
from .models import Action, ExecutionPlan, ExecutionResult, Goal
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class SupportsAsyncInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports ainvoke."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Wrap a structured-output runnable and validate its response against ``schema``."""

    schema: type[ModelT]
    runnable: SupportsAsyncInvoke

    async def ainvoke(self, prompt: str) -> ModelT:
        raw_output = await self.runnable.ainvoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for chat model backends")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with a validated API key.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model_name, temperature=temperature, timeout=timeout, max_retries=max_retries)


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated instance of ``schema``.

    Accepts the ``include_raw=True`` envelope, a pydantic model, or a plain dict.

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            ) from parsing_error
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = True,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")
    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(
        schema,
        method=method,
        strict=strict if method != "json_mode" else None,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


def translate_openai_error(exc: Exception, *, executor: str) -> Exception:
    """Map OpenAI client errors onto the engine's backend error types.

    Returns the original exception when it is not a backend-level failure.
    """
    if isinstance(exc, openai.RateLimitError):
        return RateLimited(f"{executor}: {exc}", executor=executor)
    if isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError, openai.InternalServerError)):
        return Unavailable(f"{executor}: {exc}", executor=executor)
    if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
        return Unavailable(f"{executor}: {exc}", executor=executor)
    return exc


class ChatModelExecutor:
    """Executor that hands the action prompt to an OpenAI chat model."""

    def __init__(self, model_name: str, *, name: str = "chat", repo_root: Path | None = None) -> None:
        self.name = name
        self.model_name = model_name
        self.repo_root = repo_root
        self._model: ChatOpenAI | None = None

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "ChatModelExecutor":
        return cls(settings.model_executor)

    def is_ready(self) -> bool:
        if self._model is not None:
            return True
        try:
            # Retries are left to the dispatcher's fallback chain.
            self._model = get_chat_model(model_name=self.model_name, max_retries=0, repo_root=self.repo_root)
        except RuntimeError as exc:
            logger.debug("Chat executor not ready: %s", exc)
            return False
        return True

    async def execute(self, action: Action, deadline: datetime) -> ExecutionResult:
        if not self.is_ready() or self._model is None:
            raise Unavailable("OPENAI_API_KEY is not configured", executor=self.name)
        try:
            message = await self._model.ainvoke(render_action_prompt(action))
        except openai.OpenAIError as exc:
            translated = translate_openai_error(exc, executor=self.name)
            if translated is exc:
                raise
            raise translated from exc
        content = message.content if isinstance(message.content, str) else json.dumps(message.content, default=str)
        return ExecutionResult(success=True, output=content, executor=self.name)

    async def cancel(self) -> None:
        # The HTTP request is owned by the cancelled task; nothing else to release.
        return None


class ProposedAction(BaseModel):
    title: str = Field(description="Short imperative title of the action")
    type: str = Field(description="One of: research, analyze, plan, execute, communicate, or another verb")
    description: str = Field(description="What exactly should be done")
    progress_delta: float = Field(ge=0.0, le=1.0, description="Estimated share of the goal this action completes")


class ActionProposalBatch(BaseModel):
    actions: list[ProposedAction]


class ProposedGoal(BaseModel):
    title: str
    category: str
    priority: float = Field(ge=0.0, le=10.0)
    description: str


class GoalProposalBatch(BaseModel):
    goals: list[ProposedGoal]


def _render_context(context: dict[str, Any]) -> str:
    return json.dumps(context, indent=2, sort_keys=True, default=str) if context else "{}"


class ChatModelProposer:
    """Proposer backed by a chat model with schema-constrained output."""

    def __init__(
        self,
        model_name: str,
        *,
        max_proposals: int = 5,
        default_timeout_ms: int = 120_000,
        repo_root: Path | None = None,
    ) -> None:
        self.model_name = model_name
        self.max_proposals = max_proposals
        self.default_timeout_ms = default_timeout_ms
        self.repo_root = repo_root

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "ChatModelProposer":
        return cls(
            settings.model_proposer,
            max_proposals=settings.max_proposals_per_cycle,
            default_timeout_ms=settings.default_timeout_ms,
        )

    async def _ask(self, schema: type[ModelT], prompt: str) -> ModelT:
        try:
            planner = get_structured_chat_model(model_name=self.model_name, schema=schema, repo_root=self.repo_root)
            return await planner.ainvoke(prompt)
        except (RuntimeError, ValueError, openai.OpenAIError) as exc:
            raise ProposalError(f"{schema.__name__} request failed: {exc}") from exc

    async def propose(self, goal: Goal, context: dict[str, Any]) -> list[Action]:
        prompt = (
            "You plan the next concrete steps toward a user's goal.\n"
            f"Propose at most {self.max_proposals} actions; fewer is better when the next step is obvious.\n"
            f"Goal: {goal.title}\n"
            f"Category: {goal.category}\n"
            f"Progress so far: {goal.progress:.0%}\n"
            f"Goal notes: {goal.description or 'none'}\n"
            "Current context:\n"
            f"{_render_context(context)}"
        )
        batch = await self._ask(ActionProposalBatch, prompt)
        return [
            Action(
                goal_id=goal.id,
                title=item.title,
                type=item.type,
                description=item.description,
                execution_plan=ExecutionPlan(timeout_ms=self.default_timeout_ms, progress_delta=item.progress_delta),
            )
            for item in batch.actions[: self.max_proposals]
        ]

    async def propose_goals(self, context: dict[str, Any]) -> list[Goal]:
        prompt = (
            "The user's goal backlog is empty. Suggest a small number of worthwhile goals "
            "grounded in the context below. Return an empty list if nothing stands out.\n"
            "Priority runs from 0 (someday) to 10 (urgent).\n"
            "Current context:\n"
            f"{_render_context(context)}"
        )
        batch = await self._ask(GoalProposalBatch, prompt)
        return [
            Goal(title=item.title, category=item.category, priority=item.priority, description=item.description)
            for item in batch.goals
        ]
