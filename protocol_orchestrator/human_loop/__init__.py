"""Human-in-the-loop decision gate module."""

from protocol_orchestrator.human_loop.gate_controller import (
    DecisionRequest,
    DecisionSource,
    FileDecisionSource,
    GateController,
    GateDecision,
    InteractiveDecisionSource,
    QueueDecisionSource,
)

__all__ = [
    "DecisionRequest",
    "DecisionSource",
    "FileDecisionSource",
    "GateController",
    "GateDecision",
    "InteractiveDecisionSource",
    "QueueDecisionSource",
]
