"""Phase Executor: the protocol state machine.

Walks the phase graph one phase at a time. Every transition is appended
to the run's event log before the next step starts, so a restarted
process resumes at the exact recorded step::

    BUILD -> VERIFY -> ITERATE -> COMPLETE -> GATE -> ADVANCE
      ^                   |
      +---- feedback -----+

``once`` phases never iterate. ``per_plan_phase`` phases run the cycle
once per plan phase. ``build_verify`` phases loop until verification
passes or ``max_iterations`` BUILD attempts have been made.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

from protocol_orchestrator.cli_adapters.base import AgentRequest, AgentRunner
from protocol_orchestrator.config.settings import Settings, get_settings
from protocol_orchestrator.core.artifacts import (
    is_pre_approved,
    render_artifact_pattern,
    resolve_artifact,
)
from protocol_orchestrator.core.errors import (
    GateRejected,
    MaxIterationsExceeded,
    SignalMissing,
    SignalTimeout,
)
from protocol_orchestrator.core.plan_phases import PlanPhase, default_plan, load_plan_phases
from protocol_orchestrator.core.prompts import build_feedback_bundle, build_prompt
from protocol_orchestrator.core.protocol import (
    CheckSpec,
    GateSpec,
    PhaseDefinition,
    PhaseGraph,
    PhaseType,
)
from protocol_orchestrator.core.run_state import (
    EventKind,
    PhaseOutcome,
    RunState,
    RunStatus,
    Step,
)
from protocol_orchestrator.core.side_effects import NullSideEffects, SideEffects
from protocol_orchestrator.core.signals import Signal, parse_signal
from protocol_orchestrator.core.state_manager import RunStateStore
from protocol_orchestrator.core.verification import CheckContext, VerificationRunner
from protocol_orchestrator.human_loop.gate_controller import GateController
from protocol_orchestrator.reviewing.consultation import AggregateVerdict, ConsultationAggregator

logger = logging.getLogger(__name__)


class PhaseExecutor:
    """
    Drives one run of a protocol.

    The executor is the only writer of the run's event log. Collaborator
    failures (blocked agents, failing checks, unavailable reviewers,
    rejected gates) become outcomes; only SchemaError and PersistenceError
    escape ``run()``.
    """

    def __init__(
        self,
        graph: PhaseGraph,
        store: RunStateStore,
        *,
        project_root: Path,
        agent: AgentRunner,
        gates: GateController,
        verifier: VerificationRunner | None = None,
        aggregator: ConsultationAggregator | None = None,
        side_effects: SideEffects | None = None,
        settings: Settings | None = None,
        project_id: str = "",
        title: str = "",
        plan_phases: list[PlanPhase] | None = None,
        plan_file: Path | None = None,
    ) -> None:
        self.graph = graph
        self.protocol = graph.protocol
        self.store = store
        self.project_root = project_root.resolve()
        self.agent = agent
        self.gates = gates
        self.verifier = verifier or VerificationRunner()
        self.aggregator = aggregator
        self.side_effects = side_effects or NullSideEffects()
        self.settings = settings or get_settings()
        self.project_id = project_id
        self.title = title
        self.plan_phases = plan_phases
        self.plan_file = plan_file

        needs_reviewers = [p.id for p in self.protocol.phases if p.has_consultation]
        if needs_reviewers and aggregator is None:
            raise ValueError(
                f"Phases {', '.join(needs_reviewers)} configure reviewers "
                "but no ConsultationAggregator was given"
            )

    @property
    def state(self) -> RunState:
        return self.store.state

    async def run(self) -> RunState:
        """
        Start the run, or resume it from its event log.

        Returns when the run completes. Cancelling leaves the log at the
        last committed step.
        """
        owns_lock = not self.store.locked
        if owns_lock:
            self.store.acquire()
        try:
            state = self.store.load()
            if state is None:
                self.store.append(
                    EventKind.RUN_STARTED,
                    protocol=self.protocol.name,
                    project_id=self.project_id,
                    title=self.title,
                )
            else:
                self.project_id = state.project_id or self.project_id
                self.title = state.title or self.title
                logger.info(
                    "Resuming run %s at phase=%s step=%s iteration=%d",
                    self.store.run_id,
                    state.current_phase,
                    state.step.value,
                    state.iteration,
                )

            if self.state.current_phase is None and self.state.status != RunStatus.COMPLETED:
                self._enter_phase(self.protocol.first_phase.id)

            while self.state.status != RunStatus.COMPLETED:
                await self._step()

            logger.info("Run %s completed", self.store.run_id)
            return self.state
        finally:
            if owns_lock:
                self.store.release()

    async def _step(self) -> None:
        """Execute the step the projection says is next."""
        assert self.state.current_phase is not None
        phase = self.graph.phase(self.state.current_phase)
        step = self.state.step

        if step == Step.BUILD:
            await self._build(phase)
        elif step == Step.VERIFY:
            await self._verify(phase)
        elif step == Step.ITERATE:
            self._iterate(phase)
        elif step == Step.COMPLETE:
            await self._complete(phase)
        elif step == Step.GATE:
            await self._gate(phase)
        elif step == Step.ADVANCE:
            self._advance(phase)

    # -- phase entry -------------------------------------------------------

    def _enter_phase(self, phase_id: str, feedback: str = "") -> None:
        phase = self.graph.phase(phase_id)
        logger.info("=== PHASE %s (%s) ===", phase.display_name, phase.type.value)

        plan: list[dict[str, Any]] | None = None
        if phase.type == PhaseType.PER_PLAN_PHASE:
            plan = [p.model_dump() for p in self._resolve_plan_phases()]
            logger.info("Phase %s iterates over %d plan phase(s)", phase.id, len(plan))

        self.store.append(
            EventKind.PHASE_ENTERED,
            phase_id=phase.id,
            plan_phases=plan,
            feedback=feedback,
        )

    def _resolve_plan_phases(self) -> list[PlanPhase]:
        """Caller-supplied list, then the plan file, then the last markdown artifact."""
        if self.plan_phases:
            return list(self.plan_phases)
        if self.plan_file is not None:
            try:
                return load_plan_phases(self.plan_file)
            except OSError as e:
                logger.error("Cannot read plan file %s: %s", self.plan_file, e)
        for artifact in reversed(self.state.artifacts):
            path = Path(artifact)
            if path.suffix == ".md" and path.is_file():
                return load_plan_phases(path)
        return default_plan()

    # -- BUILD -------------------------------------------------------------

    async def _build(self, phase: PhaseDefinition) -> None:
        if self._pre_approved(phase):
            logger.info("Phase %s: artifact is pre-approved, skipping build and verify", phase.id)
            self.store.append(
                EventKind.PHASE_COMPLETED,
                phase_id=phase.id,
                outcome=PhaseOutcome.APPROVED.value,
            )
            return

        iteration = self.state.iteration
        plan_phase = self.state.current_plan_phase
        logger.info(
            "Phase %s: BUILD iteration %d/%d%s",
            phase.id,
            iteration + 1,
            phase.max_iterations,
            f" ({plan_phase.id})" if plan_phase else "",
        )

        signal: Signal | None = None
        reason = ""
        output_file: str | None = None
        try:
            signal, output_file = await self._invoke_agent(phase)
        except SignalTimeout as e:
            # Covers SignalMissing: no usable signal is an implicit BLOCKED
            logger.warning("%s", e)
            reason = str(e)

        artifact = self._artifact_path(phase)
        self.store.append(
            EventKind.BUILD_COMPLETED,
            phase_id=phase.id,
            iteration=iteration,
            plan_phase_id=plan_phase.id if plan_phase else None,
            signal=signal.kind.value if signal else None,
            reason=(signal.reason or "") if signal else reason,
            output_file=output_file,
            artifact=str(artifact) if artifact else None,
        )

    async def _invoke_agent(self, phase: PhaseDefinition) -> tuple[Signal, str | None]:
        """
        Run the agent once and extract its terminal signal.

        Raises:
            SignalTimeout: The agent did not finish within the timeout.
            SignalMissing: The agent finished without a valid signal.
        """
        assert phase.build is not None
        variables = self._variables(phase)
        try:
            prompt = build_prompt(
                phase.build.prompt,
                variables,
                protocol_source=self.protocol.source_path,
                feedback=self.state.feedback,
            )
        except (OSError, UnicodeDecodeError) as e:
            logger.error("Phase %s: cannot read prompt %s: %s", phase.id, phase.build.prompt, e)
            raise SignalMissing(phase.id, f"prompt unreadable: {e}") from e
        plan_phase = self.state.current_plan_phase
        request = AgentRequest(
            prompt=prompt,
            phase_id=phase.id,
            iteration=self.state.iteration,
            working_dir=self.project_root,
            variables=variables,
            plan_phase_id=plan_phase.id if plan_phase else None,
        )
        timeout = phase.agent_timeout or self.settings.timeouts.agent

        try:
            result = await asyncio.wait_for(self.agent.invoke(request), timeout=timeout)
        except asyncio.TimeoutError:
            raise SignalTimeout(phase.id, timeout) from None
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except Exception as e:
            logger.error("Agent %s failed in phase %s: %s", self.agent.name, phase.id, e, exc_info=True)
            raise SignalMissing(phase.id, f"agent error: {e}") from e

        name = f"{self._attempt_label(phase)}-build.txt"
        output_file = str(self.store.write_output(name, result.output))

        parsed = parse_signal(result.output, self.protocol.signals)
        if not parsed.ok:
            raise SignalMissing(phase.id, parsed.error or "no signal")

        assert parsed.signal is not None
        if not parsed.signal.is_complete:
            logger.warning("Phase %s: agent BLOCKED: %s", phase.id, parsed.signal.reason)
        return parsed.signal, output_file

    # -- VERIFY ------------------------------------------------------------

    async def _verify(self, phase: PhaseDefinition) -> None:
        build = self.state.last_build
        iteration = self.state.iteration

        if build is None or not build.completed:
            reason = build.reason if build and build.reason else "agent signalled BLOCKED"
            self.store.append(
                EventKind.VERIFY_COMPLETED,
                phase_id=phase.id,
                iteration=iteration,
                passed=False,
                feedback=f"## Previous attempt blocked\n\n{reason}",
            )
            return

        checks = self._checks_for(phase)
        artifact = Path(build.artifact) if build.artifact else None
        context = CheckContext(
            project_root=self.project_root,
            project_id=self.project_id,
            phase_id=phase.id,
            artifact=artifact,
        )

        logger.info(
            "Phase %s: VERIFY iteration %d (%d check(s), %d reviewer(s))",
            phase.id,
            iteration + 1,
            len(checks),
            len(phase.reviewers),
        )

        if phase.has_consultation:
            assert self.aggregator is not None and phase.verify is not None
            report, aggregate = await asyncio.gather(
                self.verifier.run(checks, context),
                self.aggregator.consult(
                    phase.reviewers,
                    artifact,
                    phase.verify.type,
                    parallel=phase.verify.parallel,
                    phase_id=phase.id,
                    project_id=self.project_id,
                    iteration=iteration,
                ),
            )
            self._write_transcripts(phase, aggregate)
        else:
            report = await self.verifier.run(checks, context)
            aggregate = None

        passed = report.passed and (aggregate is None or aggregate.approved)
        self.store.append(
            EventKind.VERIFY_COMPLETED,
            phase_id=phase.id,
            iteration=iteration,
            passed=passed,
            checks=[asdict(o) for o in report.outcomes],
            reviews=[r.model_dump(mode="json") for r in aggregate.results] if aggregate else [],
            consultation_approved=aggregate.approved if aggregate else None,
            feedback=build_feedback_bundle(
                report.diagnostics(),
                aggregate.feedback() if aggregate else "",
            ),
            return_to=report.return_to,
        )

    def _checks_for(self, phase: PhaseDefinition) -> list[CheckSpec]:
        checks = list(phase.checks)
        if phase.type == PhaseType.PER_PLAN_PHASE:
            names = {c.name for c in checks}
            checks.extend(c for c in self.protocol.phase_completion if c.name not in names)
        return checks

    def _write_transcripts(self, phase: PhaseDefinition, aggregate: AggregateVerdict) -> None:
        label = self._attempt_label(phase)
        for result in aggregate.results:
            self.store.write_output(
                f"{label}-{result.reviewer}.txt",
                f"VERDICT: {result.verdict.value}\n\n{result.feedback}",
            )

    # -- ITERATE -----------------------------------------------------------

    def _iterate(self, phase: PhaseDefinition) -> None:
        verify = self.state.last_verify
        assert verify is not None

        if verify.passed:
            if phase.type == PhaseType.PER_PLAN_PHASE and self.state.has_more_plan_phases:
                self.store.append(
                    EventKind.PLAN_PHASE_ADVANCED,
                    phase_id=phase.id,
                    index=self.state.plan_phase_index + 1,
                )
                return
            self._complete_phase(phase, PhaseOutcome.PASSED)
            return

        if phase.type == PhaseType.ONCE or self._failure_route(phase) is not None:
            self._complete_phase(phase, PhaseOutcome.FAILED)
            return

        if self.state.iteration + 1 < phase.max_iterations:
            logger.info(
                "Phase %s: verification failed, iterating (%d/%d)",
                phase.id,
                self.state.iteration + 2,
                phase.max_iterations,
            )
            self.store.append(
                EventKind.ITERATION_ADVANCED,
                phase_id=phase.id,
                iteration=self.state.iteration + 1,
                feedback=verify.feedback,
            )
            return

        logger.warning("%s", MaxIterationsExceeded(phase.id, phase.max_iterations))
        self._complete_phase(phase, PhaseOutcome.UNRESOLVED)

    def _complete_phase(self, phase: PhaseDefinition, outcome: PhaseOutcome) -> None:
        plan_phase = self.state.current_plan_phase
        self.store.append(
            EventKind.PHASE_COMPLETED,
            phase_id=phase.id,
            outcome=outcome.value,
            plan_phase_id=plan_phase.id if plan_phase else None,
        )

    # -- COMPLETE ----------------------------------------------------------

    async def _complete(self, phase: PhaseDefinition) -> None:
        outcome = self.state.phase_outcome
        assert outcome is not None
        logger.info("Phase %s: COMPLETE (outcome=%s)", phase.id, outcome.value)

        fail_target = self._failure_route(phase) if outcome == PhaseOutcome.FAILED else None
        if fail_target is not None:
            feedback = self.state.last_verify.feedback if self.state.last_verify else ""
            logger.info("Phase %s: checks failed, routing to %s", phase.id, fail_target)
            self._enter_phase(fail_target, feedback=feedback)
            return

        if outcome == PhaseOutcome.PASSED or (
            outcome == PhaseOutcome.UNRESOLVED and self.settings.side_effects_on_unresolved
        ):
            await self._apply_side_effects(phase)

        gate = self._gate_for(phase, outcome)
        next_phase = self._next_phase(phase)
        if gate is None:
            self._transition(phase, next_phase)
            return

        done = set(self.state.completed_steps)
        self.store.append(
            EventKind.GATE_REQUESTED,
            phase_id=phase.id,
            gate=gate.name,
            outcome=outcome.value,
            missing=[r for r in gate.requires if r not in done],
            next_phase=next_phase,
        )

    async def _apply_side_effects(self, phase: PhaseDefinition) -> None:
        done = self.state.completed_steps
        message = self.settings.side_effects.commit_message.format(
            protocol=self.protocol.name,
            phase=phase.id,
            project_id=self.project_id,
        )

        if phase.on_complete.commit and "commit" not in done:
            result = await self.side_effects.commit(message)
            self.store.append(
                EventKind.SIDE_EFFECT_APPLIED,
                phase_id=phase.id,
                effect="commit",
                ok=result.ok,
                detail=result.detail,
            )
            if not result.ok:
                logger.warning("Phase %s: commit failed, not pushing: %s", phase.id, result.detail)
                return

        if phase.on_complete.push and "push" not in done:
            result = await self.side_effects.push()
            self.store.append(
                EventKind.SIDE_EFFECT_APPLIED,
                phase_id=phase.id,
                effect="push",
                ok=result.ok,
                detail=result.detail,
            )

    def _failure_route(self, phase: PhaseDefinition) -> str | None:
        """
        Phase to re-enter after failed verification, if any.

        A failing check whose on_fail names another phase wins. A
        per_plan_phase phase then falls back to its transition.on_fail.
        A check naming its own phase just iterates.
        """
        verify = self.state.last_verify
        if verify is None or verify.passed:
            return None
        if verify.return_to is not None and verify.return_to != phase.id:
            return verify.return_to
        if phase.type == PhaseType.PER_PLAN_PHASE:
            return self.graph.fail_target(phase.id)
        return None

    def _gate_for(self, phase: PhaseDefinition, outcome: PhaseOutcome) -> GateSpec | None:
        """The phase's gate, or an escalation gate for a gateless phase that did not pass."""
        if phase.gate is not None:
            return phase.gate
        if outcome in (PhaseOutcome.UNRESOLVED, PhaseOutcome.FAILED):
            return GateSpec(name=f"{phase.id}-escalation")
        return None

    def _next_phase(self, phase: PhaseDefinition) -> str | None:
        if phase.type == PhaseType.PER_PLAN_PHASE:
            return self.graph.next_phase(phase.id, "on_all_phases_complete")
        return self.graph.next_phase(phase.id)

    # -- GATE --------------------------------------------------------------

    async def _gate(self, phase: PhaseDefinition) -> None:
        outcome = self.state.phase_outcome
        assert outcome is not None and self.state.pending_gate is not None

        gate = phase.gate
        if gate is None or gate.name != self.state.pending_gate:
            gate = GateSpec(name=self.state.pending_gate)
        next_phase = self._next_phase(phase)
        request = self.gates.build_request(
            gate,
            phase,
            outcome,
            completed_steps=self.state.completed_steps,
            next_phase=next_phase,
            request_seq=self.state.gate_request_seq,
            context={
                "run_id": self.store.run_id,
                "iteration": self.state.iteration + 1,
                "artifacts": ", ".join(self.state.artifacts) or "none",
            },
        )

        decision = await self.gates.decide(request)
        self.store.append(
            EventKind.GATE_DECIDED,
            phase_id=phase.id,
            gate=gate.name,
            approved=decision.approved,
            reason=decision.reason,
            decided_by=decision.decided_by,
            next_phase=next_phase,
        )

        if not decision.approved:
            self._handle_rejection(phase, GateRejected(gate.name, decision.reason))

    def _handle_rejection(self, phase: PhaseDefinition, rejection: GateRejected) -> None:
        """Fold the human's rejection into the owning phase."""
        logger.info("%s", rejection)
        previous = self.state.last_verify.feedback if self.state.last_verify else ""
        feedback = build_feedback_bundle({}, previous, gate_feedback=rejection.reason)

        if phase.type != PhaseType.BUILD_VERIFY:
            self.store.append(EventKind.BUILD_RETRIED, phase_id=phase.id, feedback=feedback)
            return

        if self.state.iteration + 1 < phase.max_iterations:
            self.store.append(
                EventKind.ITERATION_ADVANCED,
                phase_id=phase.id,
                iteration=self.state.iteration + 1,
                feedback=feedback,
            )
            return

        # Budget spent: back to COMPLETE as unresolved, the gate is asked again
        self._complete_phase(phase, PhaseOutcome.UNRESOLVED)

    # -- ADVANCE -----------------------------------------------------------

    def _advance(self, phase: PhaseDefinition) -> None:
        if phase.type == PhaseType.PER_PLAN_PHASE and self.state.has_more_plan_phases:
            # An escalated sub-phase was accepted, carry on with the plan
            self.store.append(
                EventKind.PLAN_PHASE_ADVANCED,
                phase_id=phase.id,
                index=self.state.plan_phase_index + 1,
            )
            return
        self._transition(phase, self.state.next_phase)

    def _transition(self, phase: PhaseDefinition, next_phase: str | None) -> None:
        if next_phase is None:
            self.store.append(EventKind.RUN_COMPLETED, last_phase=phase.id)
            return
        self._enter_phase(next_phase)

    # -- helpers -----------------------------------------------------------

    def _artifact_path(self, phase: PhaseDefinition) -> Path | None:
        if phase.build is None or not phase.build.artifact:
            return None
        return resolve_artifact(self.project_root, phase.build.artifact, self.project_id)

    def _pre_approved(self, phase: PhaseDefinition) -> bool:
        if phase.type != PhaseType.BUILD_VERIFY:
            return False
        if self.state.iteration != 0 or self.state.feedback or self.state.last_build is not None:
            return False
        return is_pre_approved(self._artifact_path(phase), phase.reviewers)

    def _attempt_label(self, phase: PhaseDefinition) -> str:
        plan_phase = self.state.current_plan_phase
        sub = f"-{plan_phase.id}" if plan_phase else ""
        return f"{phase.id}{sub}-iter{self.state.iteration + 1}"

    def _variables(self, phase: PhaseDefinition) -> dict[str, str]:
        plan_phase = self.state.current_plan_phase
        artifact = (
            render_artifact_pattern(phase.build.artifact, self.project_id)
            if phase.build and phase.build.artifact
            else ""
        )
        variables = {
            "project_id": self.project_id,
            "title": self.title,
            "current_phase": phase.id,
            "current_state": phase.id,
            "protocol": self.protocol.name,
            "iteration": str(self.state.iteration + 1),
            "artifact": artifact,
        }
        if plan_phase is not None:
            variables["plan_phase_id"] = plan_phase.id
            variables["plan_phase_title"] = plan_phase.title
        return variables
