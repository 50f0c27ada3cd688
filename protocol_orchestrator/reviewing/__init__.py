"""Consultation: asking external reviewers for verdicts and aggregating them."""

from protocol_orchestrator.reviewing.consultation import (
    AggregateVerdict,
    ConsultationAggregator,
    ConsultationResult,
    ReviewerService,
    ReviewRequest,
    Verdict,
    parse_verdict,
)
from protocol_orchestrator.reviewing.reviewers import CommandReviewer

__all__ = [
    "AggregateVerdict",
    "CommandReviewer",
    "ConsultationAggregator",
    "ConsultationResult",
    "ReviewerService",
    "ReviewRequest",
    "Verdict",
    "parse_verdict",
]
