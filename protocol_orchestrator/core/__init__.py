"""Core orchestration module."""

from protocol_orchestrator.core.errors import (
    CheckFailure,
    ConsultationUnavailable,
    GateRejected,
    MaxIterationsExceeded,
    OrchestratorError,
    PersistenceError,
    SchemaError,
    SignalMissing,
    SignalTimeout,
)
from protocol_orchestrator.core.executor import PhaseExecutor
from protocol_orchestrator.core.protocol import (
    CheckSpec,
    FailurePolicy,
    GateSpec,
    PhaseDefinition,
    PhaseGraph,
    PhaseType,
    ProtocolDefinition,
)
from protocol_orchestrator.core.protocol_loader import load_protocol, parse_protocol
from protocol_orchestrator.core.run_state import (
    EventKind,
    PhaseOutcome,
    RunEvent,
    RunState,
    RunStatus,
    Step,
)
from protocol_orchestrator.core.side_effects import GitSideEffects, NullSideEffects, SideEffects
from protocol_orchestrator.core.signals import Signal, parse_signal
from protocol_orchestrator.core.state_manager import RunStateStore, new_run_id
from protocol_orchestrator.core.verification import (
    CheckContext,
    ShellChecker,
    VerificationOutcome,
    VerificationReport,
    VerificationRunner,
)

__all__ = [
    # Errors
    "CheckFailure",
    "ConsultationUnavailable",
    "GateRejected",
    "MaxIterationsExceeded",
    "OrchestratorError",
    "PersistenceError",
    "SchemaError",
    "SignalMissing",
    "SignalTimeout",
    # Protocol
    "CheckSpec",
    "FailurePolicy",
    "GateSpec",
    "PhaseDefinition",
    "PhaseGraph",
    "PhaseType",
    "ProtocolDefinition",
    "load_protocol",
    "parse_protocol",
    # Execution
    "PhaseExecutor",
    "Signal",
    "parse_signal",
    "GitSideEffects",
    "NullSideEffects",
    "SideEffects",
    # State
    "EventKind",
    "PhaseOutcome",
    "RunEvent",
    "RunState",
    "RunStateStore",
    "RunStatus",
    "Step",
    "new_run_id",
    # Verification
    "CheckContext",
    "ShellChecker",
    "VerificationOutcome",
    "VerificationReport",
    "VerificationRunner",
]
