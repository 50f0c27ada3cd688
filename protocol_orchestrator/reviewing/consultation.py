"""Consultation Aggregator: multi-reviewer fan-out and verdict aggregation.

One review request is dispatched per configured reviewer identity. In
parallel mode every request runs concurrently under its own timeout, so a
slow or broken reviewer never blocks the others; it comes back as
UNAVAILABLE instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from protocol_orchestrator.config.settings import UnavailablePolicy
from protocol_orchestrator.core.errors import ConsultationUnavailable

logger = logging.getLogger(__name__)

# Below this length reviewer output is treated as a crash, not a review
MIN_REVIEW_LENGTH = 50

_MARKDOWN_EDGES = "*_`-"


class Verdict(str, Enum):
    """A reviewer's verdict on an artifact."""

    APPROVE = "APPROVE"
    REQUEST_CHANGES = "REQUEST_CHANGES"
    UNAVAILABLE = "UNAVAILABLE"


class ConsultationResult(BaseModel):
    """One reviewer's response."""

    reviewer: str
    verdict: Verdict
    feedback: str = ""
    latency_seconds: float = 0.0


@dataclass
class ReviewRequest:
    """What a reviewer is asked to evaluate."""

    reviewer: str
    review_type: str
    artifact: Path | None = None
    phase_id: str = ""
    project_id: str = ""
    iteration: int = 0


class ReviewerService(ABC):
    """Reviewer collaborator: returns one verdict per request."""

    @abstractmethod
    async def review(self, request: ReviewRequest) -> ConsultationResult:
        """
        Review an artifact.

        Raises:
            ConsultationUnavailable: If the reviewer cannot produce a verdict.
        """
        pass


def parse_verdict(output: str) -> Verdict:
    """
    Parse the verdict from reviewer output.

    Lines are scanned last to first for ``VERDICT: <value>`` so the final
    verdict wins over template text a CLI echoes at the start of its
    output. Markdown emphasis around the line is ignored, as are template
    lines such as ``VERDICT: [APPROVE | REQUEST_CHANGES]``. COMMENT is
    non-blocking and counts as APPROVE.

    Empty, very short, or verdict-less output yields REQUEST_CHANGES so
    nothing proceeds on an unverified artifact.
    """
    if not output or len(output.strip()) < MIN_REVIEW_LENGTH:
        return Verdict.REQUEST_CHANGES

    for line in reversed(output.splitlines()):
        stripped = line.strip().strip(_MARKDOWN_EDGES).strip().upper()
        if not stripped.startswith("VERDICT:") or "[" in stripped:
            continue
        value = stripped[len("VERDICT:"):].strip()
        if value.startswith("REQUEST_CHANGES"):
            return Verdict.REQUEST_CHANGES
        if value.startswith(("APPROVE", "COMMENT")):
            return Verdict.APPROVE

    return Verdict.REQUEST_CHANGES


@dataclass
class AggregateVerdict:
    """Aggregated outcome of one consultation round."""

    results: list[ConsultationResult] = field(default_factory=list)
    policy: UnavailablePolicy = UnavailablePolicy.EXCLUDE
    min_responders: int = 1

    @property
    def responders(self) -> list[ConsultationResult]:
        return [r for r in self.results if r.verdict != Verdict.UNAVAILABLE]

    @property
    def unavailable(self) -> list[ConsultationResult]:
        return [r for r in self.results if r.verdict == Verdict.UNAVAILABLE]

    @property
    def change_requests(self) -> list[ConsultationResult]:
        return [r for r in self.results if r.verdict == Verdict.REQUEST_CHANGES]

    @property
    def quorum_met(self) -> bool:
        if len(self.responders) < self.min_responders:
            return False
        return self.policy == UnavailablePolicy.EXCLUDE or not self.unavailable

    @property
    def approved(self) -> bool:
        """Zero REQUEST_CHANGES among responders, and quorum met."""
        return not self.change_requests and self.quorum_met

    def feedback(self) -> str:
        """REQUEST_CHANGES feedback tagged by reviewer, for the next BUILD."""
        parts = [f"[{r.reviewer}]\n{r.feedback.strip()}" for r in self.change_requests]
        if not self.quorum_met and self.unavailable:
            names = ", ".join(r.reviewer for r in self.unavailable)
            parts.append(f"[consultation]\nNo verdict from: {names}")
        return "\n\n".join(parts)

    def summary(self) -> dict[str, str]:
        return {r.reviewer: r.verdict.value for r in self.results}


class ConsultationAggregator:
    """
    Dispatches reviews and aggregates verdicts.

    ``policy`` decides whether UNAVAILABLE reviewers are excluded from the
    tally (default) or block approval. ``min_responders`` is the smallest
    number of actual verdicts needed to approve.
    """

    def __init__(
        self,
        service: ReviewerService,
        *,
        policy: UnavailablePolicy = UnavailablePolicy.EXCLUDE,
        min_responders: int = 1,
        timeout: float = 600.0,
    ) -> None:
        self.service = service
        self.policy = policy
        self.min_responders = min_responders
        self.timeout = timeout

    async def consult(
        self,
        reviewers: list[str] | tuple[str, ...],
        artifact: Path | None,
        review_type: str,
        *,
        parallel: bool = True,
        phase_id: str = "",
        project_id: str = "",
        iteration: int = 0,
    ) -> AggregateVerdict:
        """Ask every reviewer for a verdict and aggregate the results."""
        requests = [
            ReviewRequest(
                reviewer=name,
                review_type=review_type,
                artifact=artifact,
                phase_id=phase_id,
                project_id=project_id,
                iteration=iteration,
            )
            for name in reviewers
        ]

        logger.info(
            "Consulting %d reviewer(s) (%s): %s",
            len(requests),
            "parallel" if parallel else "sequential",
            ", ".join(reviewers),
        )

        if parallel:
            raw = await asyncio.gather(
                *(self._review_with_timeout(r) for r in requests),
                return_exceptions=True,
            )
            results: list[ConsultationResult] = []
            for request, result in zip(requests, raw):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.warning(
                        "Reviewer %s raised during consultation: %s",
                        request.reviewer,
                        result,
                        exc_info=result,
                    )
                    results.append(_unavailable(request.reviewer, str(result)))
                else:
                    results.append(result)
        else:
            results = [await self._review_with_timeout(r) for r in requests]

        aggregate = AggregateVerdict(
            results=results,
            policy=self.policy,
            min_responders=self.min_responders,
        )
        logger.info(
            "Consultation complete: %s",
            aggregate.summary(),
            extra={"approved": aggregate.approved, "phase_id": phase_id},
        )
        return aggregate

    async def _review_with_timeout(self, request: ReviewRequest) -> ConsultationResult:
        """One review under the per-reviewer timeout. Never raises Exception."""
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(self.service.review(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Reviewer %s timed out after %.0fs", request.reviewer, self.timeout)
            return _unavailable(request.reviewer, f"Timeout after {self.timeout:.0f}s", start)
        except ConsultationUnavailable as e:
            logger.warning("%s", e)
            return _unavailable(request.reviewer, e.reason, start)
        except Exception as e:
            logger.warning("Reviewer %s failed: %s", request.reviewer, e, exc_info=True)
            return _unavailable(request.reviewer, str(e), start)

        if not result.latency_seconds:
            result = result.model_copy(update={"latency_seconds": time.monotonic() - start})
        return result


def _unavailable(reviewer: str, reason: str, start: float | None = None) -> ConsultationResult:
    return ConsultationResult(
        reviewer=reviewer,
        verdict=Verdict.UNAVAILABLE,
        feedback=reason,
        latency_seconds=time.monotonic() - start if start is not None else 0.0,
    )
