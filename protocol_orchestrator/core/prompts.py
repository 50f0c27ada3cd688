"""Prompt template loading and rendering for agent invocations."""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(template: str, variables: dict[str, str]) -> str:
    """
    Substitute ``{{name}}`` placeholders.

    Unknown placeholders are left intact so a prompt can carry literal
    template syntax for the agent.
    """

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = variables.get(key)
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(replace, template)


def resolve_prompt_file(prompt_ref: str, protocol_source: str | None) -> Path | None:
    """
    Find a prompt file.

    Looked up in the protocol's ``prompts/`` directory first, then next to
    the protocol file itself.
    """
    candidate = Path(prompt_ref)
    if candidate.is_absolute():
        return candidate if candidate.is_file() else None

    if protocol_source:
        base = Path(protocol_source)
        base = base if base.is_dir() else base.parent
        for directory in (base / "prompts", base):
            path = directory / prompt_ref
            if path.is_file():
                return path
    return None


def build_prompt(
    prompt_ref: str,
    variables: dict[str, str],
    *,
    protocol_source: str | None = None,
    feedback: str = "",
) -> str:
    """
    Build the full prompt for a BUILD step.

    If ``prompt_ref`` names a file the file content is the template,
    otherwise the reference itself is used as inline prompt text. The
    feedback bundle from the previous iteration goes first so the agent
    addresses it before anything else.
    """
    path = resolve_prompt_file(prompt_ref, protocol_source)
    if path is not None:
        template = path.read_text(encoding="utf-8")
    else:
        logger.debug("Prompt file %s not found, using reference as inline text", prompt_ref)
        template = prompt_ref

    body = render_template(template, variables)
    if not feedback:
        return body
    return f"{format_feedback_header(feedback)}\n\n---\n\n{body}"


def format_feedback_header(feedback: str) -> str:
    """Wrap a feedback bundle in the revision banner shown to the agent."""
    return "\n".join(
        [
            "# REVISION REQUIRED",
            "",
            "The previous attempt did not pass verification. Address every",
            "item below before signalling completion.",
            "",
            feedback.strip(),
        ]
    )


def build_feedback_bundle(
    check_diagnostics: dict[str, str],
    review_feedback: str = "",
    gate_feedback: str = "",
) -> str:
    """
    Collect failing-check diagnostics, reviewer change requests and human
    rejection text into one feedback bundle.
    """
    sections: list[str] = []

    if gate_feedback:
        sections.append(f"## Human reviewer\n\n{gate_feedback.strip()}")

    if check_diagnostics:
        lines = ["## Failing checks", ""]
        for name, diagnostic in check_diagnostics.items():
            lines.append(f"### {name}")
            lines.append(diagnostic.strip() or "(no output)")
            lines.append("")
        sections.append("\n".join(lines).rstrip())

    if review_feedback:
        sections.append(f"## Reviewer feedback\n\n{review_feedback.strip()}")

    return "\n\n".join(sections)
