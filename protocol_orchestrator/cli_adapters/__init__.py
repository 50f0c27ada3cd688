"""Adapters for the coding agent that performs BUILD steps.

The agent is any command-line tool that takes a prompt and prints its
work, ending with a ``<signal>...</signal>`` tag. The command line is a
template so the same runner drives claude, codex, gemini or a local
script:

    ["claude", "-p", "{prompt}", "--dangerously-skip-permissions"]
    ["codex", "exec", "{prompt}"]
    ["gemini", "-p", "{prompt}"]
"""

from protocol_orchestrator.cli_adapters.base import (
    AgentRequest,
    AgentResult,
    AgentRunner,
    find_executable,
)
from protocol_orchestrator.cli_adapters.command import CommandAgentRunner, render_argv

__all__ = [
    "AgentRequest",
    "AgentResult",
    "AgentRunner",
    "CommandAgentRunner",
    "find_executable",
    "render_argv",
]
