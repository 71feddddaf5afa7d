"""
Text preparation for narration requests.

Incoming narration text is validated and cut to the remote service's length
limit before it is sent. Blank text is rejected; anything else is passed on
as the caller wrote it, so a truncated request is exactly its first
``max_length`` characters. A short preview is kept on every playback
resource for logs and the status surface.

Example:
    >>> prepared = prepare_text("The dragon  wakes.\\n", max_length=3000)
    >>> prepared.text, prepared.truncated
    ('The dragon  wakes.\\n', False)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from narration_ms.core.logging import get_logger, info, warn
from narration_ms.narration.errors import InvalidInputError

_LOG = get_logger("narration-ms.text")


@dataclass
class PreparedText:
    text: str
    original_length: int
    truncated: bool


def preview(text: str, limit: int = 50) -> str:
    """Return the first ``limit`` characters, with an ellipsis if cut."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def prepare_text(text: Any, max_length: int = 3000) -> PreparedText:
    """
    Validate and truncate narration text.

    Raises:
        InvalidInputError: ``text`` is not a string or is blank.
    """
    if not isinstance(text, str):
        raise InvalidInputError(
            "text must be a string",
            details={"type": type(text).__name__},
        )

    if not text.strip():
        raise InvalidInputError("text is empty")

    s = text
    original_length = len(s)
    truncated = original_length > max_length
    if truncated:
        s = s[:max_length]
        warn(_LOG, "text_truncated", original_length=original_length, max_length=max_length)
    else:
        info(_LOG, "text_prepared", chars=original_length)

    return PreparedText(text=s, original_length=original_length, truncated=truncated)
