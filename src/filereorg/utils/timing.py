"""Time helpers shared by the pipelines and the audit ledger."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a naive UTC datetime, the shape pymongo hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_duration(duration_ms: int | float) -> str:
    """Render a duration as ``1h 2m 3s``, ``2m 3s`` or ``3s``."""
    total_seconds = int(duration_ms // 1000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
