"""Human approval gates between phases."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any

from protocol_orchestrator.core.protocol import GateSpec, PhaseDefinition
from protocol_orchestrator.core.run_state import PhaseOutcome

logger = logging.getLogger(__name__)


@dataclass
class DecisionRequest:
    """A request for a human decision at a gate."""

    gate: str
    phase_id: str
    outcome: PhaseOutcome
    title: str
    description: str
    missing_requirements: list[str] = field(default_factory=list)
    next_phase: str | None = None
    request_seq: int | None = None
    context: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def needs_attention(self) -> bool:
        """Whether the human is approving something that did not pass cleanly."""
        return self.outcome in (PhaseOutcome.UNRESOLVED, PhaseOutcome.FAILED) or bool(
            self.missing_requirements
        )


@dataclass
class GateDecision:
    """A human's (or the auto-approver's) answer."""

    approved: bool
    reason: str = ""
    decided_by: str = "human"
    decided_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class DecisionSource(ABC):
    """Where gate decisions come from."""

    @abstractmethod
    async def wait(self, request: DecisionRequest) -> GateDecision:
        """Suspend until a decision for ``request`` arrives."""
        pass


class QueueDecisionSource(DecisionSource):
    """In-process decisions, for embedding and tests."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[GateDecision] = asyncio.Queue()
        self.requests: list[DecisionRequest] = []

    def submit(self, decision: GateDecision) -> None:
        self._queue.put_nowait(decision)

    def approve(self, reason: str = "") -> None:
        self.submit(GateDecision(approved=True, reason=reason))

    def reject(self, reason: str) -> None:
        self.submit(GateDecision(approved=False, reason=reason))

    async def wait(self, request: DecisionRequest) -> GateDecision:
        self.requests.append(request)
        return await self._queue.get()


class FileDecisionSource(DecisionSource):
    """
    Polls ``<gates_dir>/<gate>.json`` for a decision.

    The file is written by ``approve``/``reject`` and carries the sequence
    number of the gate request it answers, so a decision left over from an
    earlier request of the same gate is never applied twice.
    """

    def __init__(self, gates_dir: Path, poll_interval: float = 2.0) -> None:
        self.gates_dir = gates_dir
        self.poll_interval = poll_interval

    async def wait(self, request: DecisionRequest) -> GateDecision:
        path = self.gates_dir / f"{request.gate}.json"
        logger.info("Waiting for gate decision at %s", path)

        while True:
            decision = self._read(path, request)
            if decision is not None:
                return decision
            await asyncio.sleep(self.poll_interval)

    def _read(self, path: Path, request: DecisionRequest) -> GateDecision | None:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            # Writer may be mid-rename on some filesystems; try again next poll
            logger.debug("Unreadable decision file %s: %s", path, e)
            return None

        if data.get("request_seq") != request.request_seq:
            return None

        return GateDecision(
            approved=bool(data.get("approved")),
            reason=str(data.get("reason", "")),
            decided_by=str(data.get("decided_by", "human")),
        )


class InteractiveDecisionSource(DecisionSource):
    """Prompts on the terminal."""

    async def wait(self, request: DecisionRequest) -> GateDecision:
        self._print_decision_ui(request)
        loop = asyncio.get_running_loop()

        def get_input(prompt: str) -> str:
            return input(prompt).strip()

        choice = (await loop.run_in_executor(None, get_input, "\nApprove? [y/n]: ")).lower()
        if choice in ("y", "yes", "approve"):
            return GateDecision(approved=True)

        reason = await loop.run_in_executor(None, get_input, "Reason for rejection: ")
        return GateDecision(approved=False, reason=reason)

    def _print_decision_ui(self, request: DecisionRequest) -> None:
        print()
        print("+" + "=" * 61 + "+")
        print(f"|  GATE {request.gate:<54} |")
        print("+" + "=" * 61 + "+")
        print()
        for line in request.description.split("\n"):
            print(f"  {line}")
        print()
        if request.context:
            print("  Context:")
            for key, value in request.context.items():
                print(f"    {key}: {value}")
            print()
        print("+" + "-" * 61 + "+")


class GateController:
    """
    Pauses the run at a gate until a decision arrives.

    A phase whose outcome is "approved" (pre-approved artifact) is granted
    without asking anyone. Everything else is put in front of the
    DecisionSource with unresolved outcomes and missing prerequisite steps
    spelled out.
    """

    def __init__(self, source: DecisionSource) -> None:
        self.source = source

    def build_request(
        self,
        gate: GateSpec,
        phase: PhaseDefinition,
        outcome: PhaseOutcome,
        *,
        completed_steps: list[str] | None = None,
        next_phase: str | None = None,
        request_seq: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> DecisionRequest:
        """Describe the decision the human is asked to make."""
        done = set(completed_steps or [])
        missing = [step for step in gate.requires if step not in done]

        lines = [f"Phase {phase.display_name} finished with outcome: {outcome.value}."]
        if outcome == PhaseOutcome.UNRESOLVED:
            lines.append(
                f"Verification still failed after {phase.max_iterations} iteration(s). "
                "Approving accepts the artifact as it is."
            )
        elif outcome == PhaseOutcome.FAILED:
            lines.append("The agent was blocked or its checks failed. Rejecting re-runs the build.")
        if missing:
            lines.append(f"Required steps not completed: {', '.join(missing)}")
        lines.append(f"On approval the run continues at: {next_phase or '(run complete)'}")

        return DecisionRequest(
            gate=gate.name,
            phase_id=phase.id,
            outcome=outcome,
            title=f"Approve {gate.name}",
            description="\n".join(lines),
            missing_requirements=missing,
            next_phase=next_phase,
            request_seq=request_seq,
            context=context or {},
        )

    async def decide(self, request: DecisionRequest) -> GateDecision:
        """Return the decision for a gate request, waiting if needed."""
        if request.outcome == PhaseOutcome.APPROVED:
            decision = GateDecision(
                approved=True,
                reason="Pre-approved artifact",
                decided_by="auto",
            )
        else:
            if request.needs_attention:
                logger.warning(
                    "Gate %s needs attention: outcome=%s missing=%s",
                    request.gate,
                    request.outcome.value,
                    request.missing_requirements,
                )
            decision = await self.source.wait(request)

        logger.info(
            "Gate %s: %s",
            request.gate,
            "approved" if decision.approved else "rejected",
            extra={"phase_id": request.phase_id, "decided_by": decision.decided_by},
        )
        return decision
