"""Protocol definition models: the declarative phase graph."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PhaseType(str, Enum):
    """How a phase is executed."""

    ONCE = "once"
    PER_PLAN_PHASE = "per_plan_phase"
    BUILD_VERIFY = "build_verify"


class FailurePolicy(str, Enum):
    """What the Verification Runner does when a check fails.

    A check may also name a phase in ``on_fail``. It is then loaded as
    FAIL with ``CheckSpec.return_to`` set to that phase.
    """

    FAIL = "fail"  # Report immediately, the build_verify loop decides
    RETRY = "retry"  # Re-execute this check up to max_retries first


class SignalKind(str, Enum):
    """Terminal signal kinds an agent may emit."""

    PHASE_COMPLETE = "PHASE_COMPLETE"
    BLOCKED = "BLOCKED"


DEFAULT_SIGNALS: tuple[str, ...] = (SignalKind.PHASE_COMPLETE.value, SignalKind.BLOCKED.value)

# Default build_verify budgets when a phase does not set max_iterations
DEFAULT_MAX_ITERATIONS_CONSULTATION = 3
DEFAULT_MAX_ITERATIONS_CHECKS = 5

DEFAULT_CHECK_RETRIES = 2
DEFAULT_CHECK_TIMEOUT = 300.0


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class CheckSpec(_Frozen):
    """A shell-level check."""

    name: str
    command: str
    cwd: str | None = None
    on_fail: FailurePolicy = FailurePolicy.FAIL
    return_to: str | None = None  # Phase to re-enter when the check fails
    max_retries: int = 0
    retry_delay: float = 0.0
    timeout: float = DEFAULT_CHECK_TIMEOUT


class BuildSpec(_Frozen):
    """What the agent is asked to build."""

    prompt: str
    artifact: str | None = None


class VerifySpec(_Frozen):
    """How a built artifact is reviewed."""

    type: str = "review"
    models: tuple[str, ...] = ()
    parallel: bool = True


class GateSpec(_Frozen):
    """A human-approval checkpoint after a phase."""

    name: str
    requires: tuple[str, ...] = ()
    next: str | None = None
    has_next: bool = False  # Distinguishes "next: null" from an absent key


class TransitionSpec(_Frozen):
    """Outcome-keyed transitions out of a phase."""

    on_complete: str | None = None
    on_fail: str | None = None
    on_all_phases_complete: str | None = None


class OnCompleteSpec(_Frozen):
    """Side effects applied after a successful verify."""

    commit: bool = False
    push: bool = False


class PhaseDefinition(_Frozen):
    """One node of the protocol's phase graph."""

    id: str
    name: str = ""
    type: PhaseType = PhaseType.ONCE
    build: BuildSpec | None = None
    verify: VerifySpec | None = None
    checks: tuple[CheckSpec, ...] = ()
    gate: GateSpec | None = None
    transition: TransitionSpec = Field(default_factory=TransitionSpec)
    max_iterations: int = DEFAULT_MAX_ITERATIONS_CHECKS
    on_complete: OnCompleteSpec = Field(default_factory=OnCompleteSpec)
    agent_timeout: float | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def reviewers(self) -> tuple[str, ...]:
        """Configured reviewer identities (empty when no consultation)."""
        return self.verify.models if self.verify else ()

    @property
    def has_consultation(self) -> bool:
        return bool(self.reviewers)

    def step_names(self) -> set[str]:
        """Step names a gate may list as prerequisites."""
        steps = {"build"}
        if self.checks:
            steps.add("checks")
        if self.type == PhaseType.BUILD_VERIFY:
            steps.add("verify")
        if self.has_consultation:
            steps.add("consultation")
        if self.on_complete.commit:
            steps.add("commit")
        if self.on_complete.push:
            steps.add("push")
        steps.update(check.name for check in self.checks)
        return steps


class ProtocolDefinition(_Frozen):
    """A loaded, validated protocol. Immutable once loaded."""

    name: str
    version: str = "1.0"
    description: str = ""
    phases: tuple[PhaseDefinition, ...]
    signals: tuple[str, ...] = DEFAULT_SIGNALS
    phase_completion: tuple[CheckSpec, ...] = ()
    defaults: dict[str, Any] = Field(default_factory=dict)
    source_path: str | None = None

    def get_phase(self, phase_id: str) -> PhaseDefinition | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    @property
    def phase_ids(self) -> list[str]:
        return [p.id for p in self.phases]

    @property
    def first_phase(self) -> PhaseDefinition:
        return self.phases[0]


class PhaseGraph(_Frozen):
    """Protocol plus the resolved transition table.

    ``transitions[phase_id]`` maps an outcome key ("on_complete", "on_fail",
    "on_all_phases_complete") to the next phase id or None (run complete).
    """

    protocol: ProtocolDefinition
    transitions: dict[str, dict[str, str | None]]

    def phase(self, phase_id: str) -> PhaseDefinition:
        phase = self.protocol.get_phase(phase_id)
        if phase is None:
            raise KeyError(f"Unknown phase: {phase_id}")
        return phase

    def next_phase(self, phase_id: str, outcome_key: str = "on_complete") -> str | None:
        table = self.transitions.get(phase_id, {})
        return table.get(outcome_key, table.get("on_complete"))

    def fail_target(self, phase_id: str) -> str | None:
        """Phase to route to when checks fail, or None if not configured."""
        return self.transitions.get(phase_id, {}).get("on_fail")
