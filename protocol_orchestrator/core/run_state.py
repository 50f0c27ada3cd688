"""Run state as an append-only event log with a derived projection.

The Phase Executor is the only writer. Every transition it makes is one
RunEvent; RunState is whatever folding those events in order produces.
Restarting a run is replaying its log.
"""

from __future__ import annotations

from datetime import datetime, UTC
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from protocol_orchestrator.core.plan_phases import PlanPhase


class RunStatus(str, Enum):
    RUNNING = "running"
    AWAITING_GATE = "awaiting_gate"
    COMPLETED = "completed"


class Step(str, Enum):
    """Where inside the current phase the run is."""

    BUILD = "BUILD"
    VERIFY = "VERIFY"
    ITERATE = "ITERATE"
    COMPLETE = "COMPLETE"
    GATE = "GATE"
    ADVANCE = "ADVANCE"  # Gate approved, next phase not entered yet


class PhaseOutcome(str, Enum):
    PASSED = "passed"
    APPROVED = "approved"  # Pre-approved artifact, no build/verify ran
    UNRESOLVED = "unresolved"  # Iteration budget exhausted
    FAILED = "failed"


class EventKind(str, Enum):
    RUN_STARTED = "run_started"
    PHASE_ENTERED = "phase_entered"
    BUILD_COMPLETED = "build_completed"
    VERIFY_COMPLETED = "verify_completed"
    ITERATION_ADVANCED = "iteration_advanced"
    BUILD_RETRIED = "build_retried"
    PHASE_COMPLETED = "phase_completed"
    SIDE_EFFECT_APPLIED = "side_effect_applied"
    GATE_REQUESTED = "gate_requested"
    GATE_DECIDED = "gate_decided"
    PLAN_PHASE_ADVANCED = "plan_phase_advanced"
    RUN_COMPLETED = "run_completed"


class RunEvent(BaseModel):
    """One append-only log record."""

    seq: int
    ts: datetime = Field(default_factory=lambda: datetime.now(UTC))
    kind: EventKind
    payload: dict[str, Any] = Field(default_factory=dict)


class BuildRecord(BaseModel):
    """Result of the last BUILD attempt."""

    iteration: int
    signal: str | None = None  # PHASE_COMPLETE, BLOCKED, or None for no signal
    reason: str = ""
    output_file: str | None = None
    artifact: str | None = None

    @property
    def completed(self) -> bool:
        return self.signal == "PHASE_COMPLETE"


class CheckRecord(BaseModel):
    check_name: str
    passed: bool
    diagnostic: str = ""
    retries_consumed: int = 0
    duration_seconds: float = 0.0


class ReviewRecord(BaseModel):
    reviewer: str
    verdict: str
    feedback: str = ""
    latency_seconds: float = 0.0


class VerifyRecord(BaseModel):
    """Result of the last VERIFY step."""

    iteration: int
    passed: bool
    checks: list[CheckRecord] = Field(default_factory=list)
    reviews: list[ReviewRecord] = Field(default_factory=list)
    consultation_approved: bool | None = None  # None when no consultation ran
    feedback: str = ""
    return_to: str | None = None  # Phase named by a failing check's on_fail


class PhaseRecord(BaseModel):
    phase_id: str
    outcome: PhaseOutcome
    timestamp: datetime
    iteration: int = 0
    plan_phase_id: str | None = None


class GateRecord(BaseModel):
    gate: str
    phase_id: str
    approved: bool
    reason: str = ""
    decided_by: str = "human"
    timestamp: datetime


class RunState(BaseModel):
    """Projection of a run's event log."""

    run_id: str
    protocol: str = ""
    project_id: str = ""
    title: str = ""
    status: RunStatus = RunStatus.RUNNING
    current_phase: str | None = None
    step: Step = Step.BUILD
    plan_phases: list[PlanPhase] = Field(default_factory=list)
    plan_phase_index: int = 0
    iteration: int = 0
    feedback: str = ""
    last_build: BuildRecord | None = None
    last_verify: VerifyRecord | None = None
    phase_outcome: PhaseOutcome | None = None
    pending_gate: str | None = None
    gate_request_seq: int | None = None
    next_phase: str | None = None
    history: list[PhaseRecord] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    gate_log: list[GateRecord] = Field(default_factory=list)
    completed_steps: list[str] = Field(default_factory=list)
    last_seq: int = 0
    updated_at: datetime | None = None

    @property
    def current_plan_phase(self) -> PlanPhase | None:
        if 0 <= self.plan_phase_index < len(self.plan_phases):
            return self.plan_phases[self.plan_phase_index]
        return None

    @property
    def has_more_plan_phases(self) -> bool:
        return self.plan_phase_index + 1 < len(self.plan_phases)

    def _reset_attempt(self) -> None:
        self.step = Step.BUILD
        self.last_build = None
        self.last_verify = None
        self.phase_outcome = None
        self.completed_steps = []

    def _mark(self, *steps: str) -> None:
        for step in steps:
            if step not in self.completed_steps:
                self.completed_steps.append(step)

    def apply(self, event: RunEvent) -> RunState:
        """Fold one event into the projection."""
        p = event.payload
        kind = event.kind

        if kind == EventKind.RUN_STARTED:
            self.protocol = p.get("protocol", "")
            self.project_id = p.get("project_id", "")
            self.title = p.get("title", "")
            self.status = RunStatus.RUNNING

        elif kind == EventKind.PHASE_ENTERED:
            self.current_phase = p["phase_id"]
            self.plan_phases = [PlanPhase.model_validate(x) for x in p.get("plan_phases") or []]
            self.plan_phase_index = 0
            self.iteration = 0
            self.feedback = p.get("feedback", "")
            self.pending_gate = None
            self.gate_request_seq = None
            self.next_phase = None
            self.status = RunStatus.RUNNING
            self._reset_attempt()

        elif kind == EventKind.BUILD_COMPLETED:
            self.last_build = BuildRecord.model_validate(p)
            self.step = Step.VERIFY
            if self.last_build.completed:
                self._mark("build")
            artifact = p.get("artifact")
            if artifact and artifact not in self.artifacts:
                self.artifacts.append(artifact)

        elif kind == EventKind.VERIFY_COMPLETED:
            self.last_verify = VerifyRecord.model_validate(p)
            self.step = Step.ITERATE
            self._mark(*(c.check_name for c in self.last_verify.checks if c.passed))
            if self.last_verify.checks and all(c.passed for c in self.last_verify.checks):
                self._mark("checks")
            if self.last_verify.consultation_approved:
                self._mark("consultation")
            if self.last_verify.passed:
                self._mark("verify")

        elif kind == EventKind.ITERATION_ADVANCED:
            self.iteration = p["iteration"]
            self.feedback = p.get("feedback", "")
            self._reset_attempt()

        elif kind == EventKind.BUILD_RETRIED:
            self.feedback = p.get("feedback", "")
            self._reset_attempt()

        elif kind == EventKind.PHASE_COMPLETED:
            self.phase_outcome = PhaseOutcome(p["outcome"])
            self.step = Step.COMPLETE
            self.history.append(
                PhaseRecord(
                    phase_id=p["phase_id"],
                    outcome=self.phase_outcome,
                    timestamp=event.ts,
                    iteration=self.iteration,
                    plan_phase_id=p.get("plan_phase_id"),
                )
            )

        elif kind == EventKind.SIDE_EFFECT_APPLIED:
            if p.get("ok", True):
                self._mark(p["effect"])

        elif kind == EventKind.GATE_REQUESTED:
            self.step = Step.GATE
            self.status = RunStatus.AWAITING_GATE
            self.pending_gate = p["gate"]
            self.gate_request_seq = event.seq

        elif kind == EventKind.GATE_DECIDED:
            self.gate_log.append(
                GateRecord(
                    gate=p["gate"],
                    phase_id=p["phase_id"],
                    approved=p["approved"],
                    reason=p.get("reason", ""),
                    decided_by=p.get("decided_by", "human"),
                    timestamp=event.ts,
                )
            )
            self.pending_gate = None
            self.gate_request_seq = None
            self.status = RunStatus.RUNNING
            if p["approved"]:
                self.step = Step.ADVANCE
                self.next_phase = p.get("next_phase")

        elif kind == EventKind.PLAN_PHASE_ADVANCED:
            self.plan_phase_index = p["index"]
            self.iteration = 0
            self.feedback = ""
            self.next_phase = None
            self._reset_attempt()

        elif kind == EventKind.RUN_COMPLETED:
            self.status = RunStatus.COMPLETED
            self.pending_gate = None

        self.last_seq = event.seq
        self.updated_at = event.ts
        return self

    @classmethod
    def replay(cls, run_id: str, events: list[RunEvent]) -> RunState:
        """Rebuild the projection from the full log."""
        state = cls(run_id=run_id)
        for event in events:
            state.apply(event)
        return state
