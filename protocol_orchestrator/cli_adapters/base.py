"""Agent Runner contract: spawn an agent and collect its output."""

from __future__ import annotations

import os
import shutil
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any


def find_executable(name: str) -> str | None:
    """
    Find a CLI executable, handling Windows .cmd wrappers from npm.

    Args:
        name: The CLI name (e.g., "claude", "consult")

    Returns:
        Full path to executable, or None if not found.
    """
    exe = shutil.which(name)
    if exe:
        return exe

    if sys.platform == "win32":
        exe = shutil.which(f"{name}.cmd")
        if exe:
            return exe

        npm_path = Path(os.environ.get("APPDATA", "")) / "npm" / f"{name}.cmd"
        if npm_path.exists():
            return str(npm_path)

    return None


@dataclass
class AgentRequest:
    """One BUILD invocation."""

    prompt: str
    phase_id: str
    iteration: int = 0
    working_dir: Path | None = None
    variables: dict[str, str] = field(default_factory=dict)
    plan_phase_id: str | None = None


@dataclass
class AgentResult:
    """Raw output of an agent invocation."""

    output: str
    exit_code: int = 0
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)


class AgentRunner(ABC):
    """
    Abstract agent collaborator.

    The orchestrator owns the timeout: ``invoke`` may run as long as the
    agent needs and is cancelled from outside when the BUILD timeout
    elapses. Implementations must release their resources on
    cancellation.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def invoke(self, request: AgentRequest) -> AgentResult:
        """
        Run the agent on a rendered prompt.

        Args:
            request: Prompt and working context.

        Returns:
            AgentResult whose output should end with one terminal signal.
        """
        pass

    @property
    def is_available(self) -> bool:
        """Whether the agent can be started on this system."""
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
