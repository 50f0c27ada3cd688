"""Prompt and path validation before anything reaches a subprocess."""

from __future__ import annotations

from pathlib import Path
import logging

logger = logging.getLogger(__name__)


class PromptTooLongError(Exception):
    """Raised when a rendered prompt exceeds the maximum length."""

    pass


class PathTraversalError(Exception):
    """Raised when an artifact or check path escapes the project root."""

    pass


class PromptSanitizer:
    """
    Validate prompts and confine paths to the project root.

    Agent and reviewer commands are started with create_subprocess_exec()
    and an argv list, so shell metacharacters in a prompt are passed as
    literal text.
    """

    MAX_PROMPT_LENGTH = 200_000

    def __init__(self, project_root: Path | None = None) -> None:
        self.project_root = project_root.resolve() if project_root else None

    def validate_prompt(self, prompt: str) -> str:
        """
        Validate a rendered prompt.

        Raises:
            PromptTooLongError: If the prompt exceeds MAX_PROMPT_LENGTH.
        """
        # Null bytes truncate argv strings in C-based CLIs
        validated = prompt.replace("\x00", "")

        if len(validated) > self.MAX_PROMPT_LENGTH:
            raise PromptTooLongError(
                f"Prompt exceeds {self.MAX_PROMPT_LENGTH} characters "
                f"(got {len(validated)})"
            )

        return validated

    def sanitize_file_path(self, path: str) -> Path:
        """
        Resolve a path and make sure it stays inside the project root.

        Raises:
            PathTraversalError: If the path escapes the project root.
        """
        resolved = Path(path).resolve()
        if self.project_root is None:
            return resolved

        try:
            resolved.relative_to(self.project_root)
        except ValueError:
            raise PathTraversalError(
                f"Path escapes project root: {path} -> {resolved}"
            )

        return resolved
