from __future__ import annotations

import uuid
from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    """Return a short unique identifier such as ``goal-3f9a1c2b7e4d``."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def format_duration(seconds: float) -> str:
    """Render a duration compactly: ``2d3h``, ``4h12m``, ``7m``.

    Only the two most significant units are shown. Durations under a minute
    render as ``0m``.
    """
    total_minutes = max(0, int(seconds // 60))
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    if days:
        return f"{days}d{hours}h"
    if hours:
        return f"{hours}h{minutes}m"
    return f"{minutes}m"


def seconds_until(moment: datetime | None, now: datetime) -> float:
    if moment is None:
        return 0.0
    return max(0.0, (moment - now).total_seconds())


def later_of(*moments: datetime | None) -> datetime | None:
    present = [moment for moment in moments if moment is not None]
    return max(present) if present else None
