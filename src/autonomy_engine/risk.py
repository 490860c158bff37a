from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import Action, ActionRisk
from .settings import DEFAULT_SAFE_ACTION_TYPES, RuntimeSettings

logger = logging.getLogger(__name__)

# Metadata flags that force manual approval regardless of type.
ESCALATING_METADATA_FLAGS = ("requires_approval", "mutates_state", "external")


class RiskPolicy(BaseModel):
    safe_types: frozenset[str] = Field(
        default_factory=lambda: frozenset(DEFAULT_SAFE_ACTION_TYPES.split(","))
    )

    @field_validator("safe_types", mode="before")
    @classmethod
    def _normalize(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(str(item).strip().lower() for item in value if str(item).strip())
        return value

    @classmethod
    def from_file(cls, path: Path) -> "RiskPolicy":
        if not path.is_file():
            raise FileNotFoundError(f"Risk policy file does not exist: {path}")
        try:
            return cls.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise ValueError(f"Risk policy file {path} is invalid: {exc}") from exc

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, repo_root: Path | None = None) -> "RiskPolicy":
        policy_file = settings.risk_policy_file(repo_root if repo_root is not None else Path.cwd())
        if policy_file is not None:
            policy = cls.from_file(policy_file)
            logger.info("Loaded risk policy from %s: safe types %s", policy_file, sorted(policy.safe_types))
            return policy
        return cls(safe_types=settings.safe_action_type_list)


def classify(action: Action, policy: RiskPolicy) -> ActionRisk:
    """Decide whether an action may run unattended.

    Only types in the policy's safe set are ``auto``. Metadata can make an
    action stricter but never looser.
    """
    if action.type not in policy.safe_types:
        return ActionRisk.MANUAL
    if any(bool(action.metadata.get(flag)) for flag in ESCALATING_METADATA_FLAGS):
        return ActionRisk.MANUAL
    return ActionRisk.AUTO
