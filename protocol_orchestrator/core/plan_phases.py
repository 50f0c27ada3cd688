"""Extract the ordered plan-phase list from a plan markdown file."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_SECTION = re.compile(r"^##\s*(?:Implementation\s+)?Phases\s*$", re.IGNORECASE | re.MULTILINE)
_NEXT_SECTION = re.compile(r"^##\s", re.MULTILINE)
_NUMBERED = re.compile(r"^###\s*Phase\s+(\d+)\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_ANY_HEADING = re.compile(r"^###\s*(.+)$", re.MULTILINE)

_NON_PHASE_HEADINGS = ("dependencies", "acceptance", "test")


class PlanPhase(BaseModel):
    """One entry of the plan a per_plan_phase phase iterates over."""

    id: str
    title: str
    description: str = ""


def default_plan() -> list[PlanPhase]:
    return [PlanPhase(id="phase_1", title="Implementation")]


def extract_plan_phases(content: str) -> list[PlanPhase]:
    """
    Extract phases from plan markdown.

    Looks for a ``## Phases`` (or ``## Implementation Phases``) section
    containing ``### Phase N: <title>`` headings, then falls back to any
    ``###`` heading in that section. A plan without structure yields a
    single implementation phase.
    """
    section_match = _SECTION.search(content)
    if not section_match:
        return default_plan()

    body = content[section_match.end():]
    end = _NEXT_SECTION.search(body)
    if end:
        body = body[: end.start()]

    phases = [
        PlanPhase(
            id=f"phase_{number}",
            title=title.strip(),
            description=_describe(body, heading_end),
        )
        for number, title, heading_end in (
            (m.group(1), m.group(2), m.end()) for m in _NUMBERED.finditer(body)
        )
    ]

    if not phases:
        index = 1
        for match in _ANY_HEADING.finditer(body):
            title = match.group(1).strip()
            if any(word in title.lower() for word in _NON_PHASE_HEADINGS):
                continue
            phases.append(
                PlanPhase(id=f"phase_{index}", title=title, description=_describe(body, match.end()))
            )
            index += 1

    return phases or default_plan()


def load_plan_phases(path: Path) -> list[PlanPhase]:
    """Read a plan file and extract its phases."""
    phases = extract_plan_phases(path.read_text(encoding="utf-8", errors="replace"))
    logger.info("Extracted %d plan phase(s) from %s", len(phases), path)
    return phases


def _describe(body: str, start: int) -> str:
    """First few short bullet points after a heading."""
    bullets: list[str] = []
    for line in body[start:].splitlines():
        stripped = line.strip()
        if stripped.startswith("###"):
            break
        if stripped.startswith(("- ", "* ")):
            text = stripped[2:].strip()
            if len(text) < 100:
                bullets.append(text)
        if len(bullets) >= 5:
            break
    return "; ".join(bullets)
