"""Error taxonomy for the protocol orchestrator.

Only SchemaError and PersistenceError are fatal to a run. Every other
error is raised inside a collaborator and folded back into the state
machine as an outcome the human sees at a gate.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    fatal: bool = False


class SchemaError(OrchestratorError):
    """Malformed protocol definition - aborts load, never starts a run."""

    fatal = True

    def __init__(self, message: str, *, path: str | None = None) -> None:
        if path:
            message = f"{path}: {message}"
        super().__init__(message)
        self.path = path


class PersistenceError(OrchestratorError):
    """Run state could not be written or read back."""

    fatal = True


class CheckFailure(OrchestratorError):
    """A named check failed after its own retry policy was exhausted."""

    def __init__(self, check_name: str, diagnostic: str = "") -> None:
        super().__init__(f"Check '{check_name}' failed: {diagnostic}".rstrip(": "))
        self.check_name = check_name
        self.diagnostic = diagnostic


class ConsultationUnavailable(OrchestratorError):
    """A reviewer errored or timed out."""

    def __init__(self, reviewer: str, reason: str) -> None:
        super().__init__(f"Reviewer {reviewer} unavailable: {reason}")
        self.reviewer = reviewer
        self.reason = reason


class SignalTimeout(OrchestratorError):
    """The agent produced no terminal signal within the timeout."""

    def __init__(self, phase_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"No terminal signal from agent in phase {phase_id} "
            f"after {timeout_seconds:.0f}s"
        )
        self.phase_id = phase_id
        self.timeout_seconds = timeout_seconds


class SignalMissing(SignalTimeout):
    """The agent finished but its output carried no valid terminal signal."""

    def __init__(self, phase_id: str, detail: str) -> None:
        OrchestratorError.__init__(
            self, f"No valid terminal signal from agent in phase {phase_id}: {detail}"
        )
        self.phase_id = phase_id
        self.timeout_seconds = 0.0
        self.detail = detail


class GateRejected(OrchestratorError):
    """A human declined at a gate."""

    def __init__(self, gate_name: str, reason: str = "") -> None:
        super().__init__(f"Gate {gate_name} rejected: {reason or 'no reason given'}")
        self.gate_name = gate_name
        self.reason = reason


class MaxIterationsExceeded(OrchestratorError):
    """A build_verify phase exhausted its iteration budget without approval."""

    def __init__(self, phase_id: str, max_iterations: int) -> None:
        super().__init__(
            f"Phase {phase_id} exhausted {max_iterations} iteration(s) "
            "without full approval"
        )
        self.phase_id = phase_id
        self.max_iterations = max_iterations
