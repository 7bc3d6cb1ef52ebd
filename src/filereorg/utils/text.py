"""Text helpers for persisting error details."""

from __future__ import annotations

import traceback

MAX_ERROR_CHARS = 2000
MAX_STACK_FRAMES = 10


def truncate(text: str | None, *, max_chars: int = MAX_ERROR_CHARS) -> str | None:
    """Clip text to ``max_chars``, marking the cut with an ellipsis."""
    if text is None or len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


def describe_error(error: BaseException) -> str:
    message = str(error)
    return message if message else type(error).__name__


def format_stack_trace(
    error: BaseException, *, max_frames: int = MAX_STACK_FRAMES, max_chars: int = MAX_ERROR_CHARS
) -> str:
    """Summarize an exception as its type, message and innermost frames.

    Only the last ``max_frames`` frames are kept and the whole text is clipped
    to ``max_chars`` so it stays small enough for an audit document.
    """
    frames = traceback.extract_tb(error.__traceback__)
    lines = [f"{type(error).__module__}.{type(error).__qualname__}: {error}"]
    for frame in frames[-max_frames:]:
        lines.append(f"\tat {frame.name} ({frame.filename}:{frame.lineno})")
    if len(frames) > max_frames:
        lines.append(f"\t... {len(frames) - max_frames} more")
    return truncate("\n".join(lines), max_chars=max_chars) or ""
