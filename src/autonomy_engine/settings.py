from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import time
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

DEFAULT_SAFE_ACTION_TYPES = "research,analyze,plan"
DEFAULT_EXECUTOR_CHAIN = "cli,chat"


@dataclass(frozen=True)
class RestWindow:
    """Daily window during which the engine is intentionally idle.

    Windows may wrap midnight (``22:00-07:00``).
    """

    start: time
    end: time

    def contains(self, moment: time) -> bool:
        if self.start <= self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end

    @classmethod
    def parse(cls, raw: str) -> "RestWindow":
        try:
            start_raw, end_raw = (part.strip() for part in raw.split("-", 1))
            start = time.fromisoformat(start_raw)
            end = time.fromisoformat(end_raw)
        except ValueError as exc:
            raise ValueError(f"Rest window must look like HH:MM-HH:MM, got: {raw!r}") from exc
        if start == end:
            raise ValueError(f"Rest window must not be empty, got: {raw!r}")
        return cls(start=start, end=end)


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    cycle_interval_seconds: int = 60
    liveness_interval_seconds: int = 30
    stall_threshold_seconds: int = 900
    restart_cooldown_seconds: int = 300
    max_unproductive_restarts: int = 3
    approval_ttl_seconds: int = 86_400
    work_log_retention: int = 500
    default_timeout_ms: int = 120_000
    goal_generation_cooldown_seconds: int = 600
    rate_limit_rest_seconds: int = 1_800
    max_proposals_per_cycle: int = 5
    safe_action_types: str = DEFAULT_SAFE_ACTION_TYPES
    risk_policy_path: str = ""
    executor_chain: str = DEFAULT_EXECUTOR_CHAIN
    cli_command: str = "claude -p"
    model_proposer: str = "gpt-4o"
    model_executor: str = "gpt-4o-mini"
    rest_windows: str = ""
    timezone: str = "UTC"

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "RuntimeSettings":
        dotenv_path = env_file if env_file is not None else Path.cwd() / ".env"
        if dotenv_path.is_file():
            load_dotenv(dotenv_path)
        return cls(
            state_store_root=os.getenv("AUTONOMY_STATE_STORE_ROOT", "state_store"),
            cycle_interval_seconds=_get_env_int("AUTONOMY_CYCLE_INTERVAL_SECONDS", default=60, minimum=1),
            liveness_interval_seconds=_get_env_int("AUTONOMY_LIVENESS_INTERVAL_SECONDS", default=30, minimum=1),
            stall_threshold_seconds=_get_env_int("AUTONOMY_STALL_THRESHOLD_SECONDS", default=900, minimum=1),
            restart_cooldown_seconds=_get_env_int("AUTONOMY_RESTART_COOLDOWN_SECONDS", default=300, minimum=0),
            max_unproductive_restarts=_get_env_int("AUTONOMY_MAX_UNPRODUCTIVE_RESTARTS", default=3, minimum=1),
            approval_ttl_seconds=_get_env_int("AUTONOMY_APPROVAL_TTL_SECONDS", default=86_400, minimum=1),
            work_log_retention=_get_env_int("AUTONOMY_WORK_LOG_RETENTION", default=500, minimum=1),
            default_timeout_ms=_get_env_int("AUTONOMY_DEFAULT_TIMEOUT_MS", default=120_000, minimum=1),
            goal_generation_cooldown_seconds=_get_env_int(
                "AUTONOMY_GOAL_GENERATION_COOLDOWN_SECONDS", default=600, minimum=0
            ),
            rate_limit_rest_seconds=_get_env_int("AUTONOMY_RATE_LIMIT_REST_SECONDS", default=1_800, minimum=0),
            max_proposals_per_cycle=_get_env_int("AUTONOMY_MAX_PROPOSALS_PER_CYCLE", default=5, minimum=1),
            safe_action_types=os.getenv("AUTONOMY_SAFE_ACTION_TYPES", DEFAULT_SAFE_ACTION_TYPES),
            risk_policy_path=os.getenv("AUTONOMY_RISK_POLICY_PATH", ""),
            executor_chain=os.getenv("AUTONOMY_EXECUTOR_CHAIN", DEFAULT_EXECUTOR_CHAIN),
            cli_command=os.getenv("AUTONOMY_CLI_COMMAND", "claude -p"),
            model_proposer=os.getenv("AUTONOMY_MODEL_PROPOSER", "gpt-4o"),
            model_executor=os.getenv("AUTONOMY_MODEL_EXECUTOR", "gpt-4o-mini"),
            rest_windows=os.getenv("AUTONOMY_REST_WINDOWS", ""),
            timezone=os.getenv("AUTONOMY_TIMEZONE", "UTC"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_store_root.strip():
            raise ValueError("AUTONOMY_STATE_STORE_ROOT must be non-empty")
        if not self.executor_chain_names:
            raise ValueError("AUTONOMY_EXECUTOR_CHAIN must name at least one executor")
        if len(set(self.executor_chain_names)) != len(self.executor_chain_names):
            raise ValueError(f"AUTONOMY_EXECUTOR_CHAIN contains duplicates: {self.executor_chain!r}")

        model_proposer = self.model_proposer.strip()
        if not model_proposer:
            raise ValueError("AUTONOMY_MODEL_PROPOSER must be non-empty")
        model_executor = self.model_executor.strip()
        if not model_executor:
            raise ValueError("AUTONOMY_MODEL_EXECUTOR must be non-empty")

        # Parsed values are recomputed by the properties; this only validates them.
        _ = self.parsed_rest_windows
        _ = self.zone

        return replace(
            self,
            safe_action_types=",".join(self.safe_action_type_list),
            executor_chain=",".join(self.executor_chain_names),
            model_proposer=model_proposer,
            model_executor=model_executor,
            timezone=self.timezone.strip() or "UTC",
        )

    @property
    def safe_action_type_list(self) -> list[str]:
        return sorted({value.strip().lower() for value in self.safe_action_types.split(",") if value.strip()})

    @property
    def executor_chain_names(self) -> list[str]:
        return [value.strip().lower() for value in self.executor_chain.split(",") if value.strip()]

    @property
    def parsed_rest_windows(self) -> list[RestWindow]:
        return [RestWindow.parse(raw) for raw in self.rest_windows.split(",") if raw.strip()]

    @property
    def zone(self) -> ZoneInfo:
        name = self.timezone.strip() or "UTC"
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"AUTONOMY_TIMEZONE is not a known timezone: {name!r}") from exc

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def risk_policy_file(self, repo_root: Path) -> Path | None:
        if not self.risk_policy_path.strip():
            return None
        path = Path(self.risk_policy_path)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
