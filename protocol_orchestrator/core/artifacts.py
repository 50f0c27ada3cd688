"""Artifact path resolution and pre-approval metadata."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from protocol_orchestrator.utils.sanitization import PathTraversalError, PromptSanitizer

logger = logging.getLogger(__name__)

_FRONTMATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_GLOB_CHARS = set("*?[")


@dataclass
class ArtifactMetadata:
    """Approval metadata embedded in an artifact's YAML frontmatter."""

    approved: str | None = None
    validated: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def covers(self, reviewers: tuple[str, ...] | list[str]) -> bool:
        """Whether this artifact was approved and validated by every reviewer."""
        if not self.approved or not self.validated:
            return False
        validated = {v.lower() for v in self.validated}
        return all(r.lower() in validated for r in reviewers)


def render_artifact_pattern(pattern: str, project_id: str) -> str:
    """Substitute the project-id placeholder in an artifact pattern."""
    return pattern.replace("${PROJECT_ID}", project_id).replace("{{project_id}}", project_id)


def resolve_artifact(project_root: Path, pattern: str, project_id: str) -> Path | None:
    """
    Resolve an artifact pattern to an existing file.

    Glob patterns resolve to the first match in sorted order. Paths that
    escape the project root are rejected.

    Returns:
        The artifact path if it exists, None otherwise.
    """
    rendered = render_artifact_pattern(pattern, project_id)
    sanitizer = PromptSanitizer(project_root)

    if _GLOB_CHARS & set(rendered):
        matches = sorted(p for p in project_root.glob(rendered) if p.is_file())
        if not matches:
            return None
        candidate = matches[0]
    else:
        candidate = project_root / rendered

    try:
        resolved = sanitizer.sanitize_file_path(str(candidate))
    except PathTraversalError:
        logger.warning("Artifact pattern %s escapes project root", pattern)
        return None

    return resolved if resolved.is_file() else None


def read_metadata(path: Path) -> ArtifactMetadata | None:
    """Read approval metadata from a markdown artifact's frontmatter."""
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Cannot read artifact %s: %s", path, e)
        return None

    match = _FRONTMATTER.match(content)
    if not match:
        return None

    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.debug("Ignoring unparsable frontmatter in %s: %s", path, e)
        return None

    if not isinstance(data, dict):
        return None

    validated = data.get("validated") or []
    if isinstance(validated, str):
        validated = [v.strip() for v in validated.strip("[]").split(",") if v.strip()]

    approved = data.get("approved")
    return ArtifactMetadata(
        approved=str(approved) if approved else None,
        validated=[str(v) for v in validated],
        extra={k: v for k, v in data.items() if k not in ("approved", "validated")},
    )


def is_pre_approved(path: Path | None, reviewers: tuple[str, ...] | list[str]) -> bool:
    """Whether an artifact exists and carries approval covering ``reviewers``."""
    if path is None or not path.is_file():
        return False
    metadata = read_metadata(path)
    return metadata is not None and metadata.covers(reviewers)
