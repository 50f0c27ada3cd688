"""Utility module for prompt/path sanitization and text helpers."""

from protocol_orchestrator.utils.sanitization import (
    PathTraversalError,
    PromptSanitizer,
    PromptTooLongError,
)


def truncate_with_marker(text: str, max_length: int, marker: str = "[...truncated]") -> str:
    """
    Truncate text from the front if it exceeds max_length.

    Args:
        text: The text to truncate.
        max_length: Maximum length before truncation.
        marker: Marker to prepend when truncated.

    Returns:
        Original text if within limit, otherwise the marker followed by its tail.
    """
    if len(text) <= max_length:
        return text
    # Keep the tail: check output ends with the failure summary
    keep = max(max_length - len(marker), 0)
    return marker + text[len(text) - keep:]


__all__ = [
    "PathTraversalError",
    "PromptSanitizer",
    "PromptTooLongError",
    "truncate_with_marker",
]
