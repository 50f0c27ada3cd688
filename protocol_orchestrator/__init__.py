"""
Protocol Orchestrator - declarative multi-phase workflows for coding agents

Runs a protocol (an ordered graph of phases) against a project: an agent
builds each phase's artifact, checks and external reviewers verify it,
failures are fed back for another iteration, and humans approve the
result at gates. Every step is recorded in an append-only log so a run
survives crashes and restarts.
"""

__version__ = "0.1.0"

from protocol_orchestrator.core.executor import PhaseExecutor
from protocol_orchestrator.core.protocol_loader import load_protocol
from protocol_orchestrator.core.state_manager import RunStateStore

__all__ = [
    "PhaseExecutor",
    "RunStateStore",
    "load_protocol",
]
