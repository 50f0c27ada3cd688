"""Tests for verdict parsing and consultation aggregation."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from protocol_orchestrator.config.settings import UnavailablePolicy
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
from protocol_orchestrator.tests.fakes import FakeReviewerService

PADDING = "The artifact was reviewed section by section against the requirements.\n"


class TestParseVerdict:
    """Tests for parse_verdict."""

    def test_approve(self):
        """A trailing APPROVE verdict is recognised."""
        assert parse_verdict(PADDING + "VERDICT: APPROVE") == Verdict.APPROVE

    def test_request_changes(self):
        """REQUEST_CHANGES is recognised."""
        assert parse_verdict(PADDING + "VERDICT: REQUEST_CHANGES") == Verdict.REQUEST_CHANGES

    def test_comment_counts_as_approve(self):
        """COMMENT is non-blocking."""
        assert parse_verdict(PADDING + "VERDICT: COMMENT") == Verdict.APPROVE

    def test_markdown_is_stripped(self):
        """Bold markers around the verdict line are ignored."""
        assert parse_verdict(PADDING + "**VERDICT: APPROVE**") == Verdict.APPROVE

    def test_last_verdict_wins(self):
        """Template text echoed at the top does not override the final verdict."""
        output = "VERDICT: [APPROVE | REQUEST_CHANGES]\n" + PADDING + "VERDICT: REQUEST_CHANGES\n"
        assert parse_verdict(output) == Verdict.REQUEST_CHANGES

        output = "VERDICT: REQUEST_CHANGES\n" + PADDING + "verdict: approve\n"
        assert parse_verdict(output) == Verdict.APPROVE

    def test_template_line_ignored(self):
        """A bracketed template line alone yields no verdict."""
        assert parse_verdict(PADDING + "VERDICT: [APPROVE | REQUEST_CHANGES]") == Verdict.REQUEST_CHANGES

    def test_short_output_is_not_approval(self):
        """Output too short to be a review never approves."""
        assert parse_verdict("VERDICT: APPROVE") == Verdict.REQUEST_CHANGES
        assert parse_verdict("") == Verdict.REQUEST_CHANGES

    def test_missing_verdict(self):
        """Long output without a verdict line requests changes."""
        assert parse_verdict(PADDING * 3) == Verdict.REQUEST_CHANGES


def _result(reviewer: str, verdict: Verdict) -> ConsultationResult:
    return ConsultationResult(reviewer=reviewer, verdict=verdict, feedback=f"{reviewer} says {verdict.value}")


class TestAggregateVerdict:
    """Tests for the aggregation rule."""

    def test_all_approve(self):
        """All APPROVE approves."""
        aggregate = AggregateVerdict([_result("A", Verdict.APPROVE), _result("B", Verdict.APPROVE)])
        assert aggregate.approved is True
        assert aggregate.feedback() == ""

    def test_one_request_changes_blocks(self):
        """A single REQUEST_CHANGES blocks, and its feedback is tagged."""
        aggregate = AggregateVerdict([_result("A", Verdict.REQUEST_CHANGES), _result("B", Verdict.APPROVE)])
        assert aggregate.approved is False
        assert aggregate.feedback() == "[A]\nA says REQUEST_CHANGES"

    def test_unavailable_excluded_by_default(self):
        """By default an UNAVAILABLE reviewer is left out of the tally."""
        aggregate = AggregateVerdict([_result("A", Verdict.APPROVE), _result("B", Verdict.UNAVAILABLE)])
        assert aggregate.policy == UnavailablePolicy.EXCLUDE
        assert aggregate.approved is True
        assert [r.reviewer for r in aggregate.unavailable] == ["B"]

    def test_unavailable_blocks_under_block_policy(self):
        """The block policy refuses approval with any UNAVAILABLE reviewer."""
        aggregate = AggregateVerdict(
            [_result("A", Verdict.APPROVE), _result("B", Verdict.UNAVAILABLE)],
            policy=UnavailablePolicy.BLOCK,
        )
        assert aggregate.approved is False
        assert "No verdict from: B" in aggregate.feedback()

    def test_all_unavailable_never_approves(self):
        """Zero responders is below the minimum quorum."""
        aggregate = AggregateVerdict([_result("A", Verdict.UNAVAILABLE), _result("B", Verdict.UNAVAILABLE)])
        assert aggregate.quorum_met is False
        assert aggregate.approved is False

    def test_min_responders(self):
        """min_responders raises the quorum."""
        results = [_result("A", Verdict.APPROVE), _result("B", Verdict.UNAVAILABLE)]
        assert AggregateVerdict(results, min_responders=2).approved is False
        assert AggregateVerdict(results, min_responders=1).approved is True


class SlowReviewer(ReviewerService):
    """Never answers in time."""

    async def review(self, request: ReviewRequest) -> ConsultationResult:
        await asyncio.sleep(10)
        return _result(request.reviewer, Verdict.APPROVE)


class TestConsultationAggregator:
    """Tests for fan-out and failure handling."""

    @pytest.mark.asyncio
    async def test_parallel_fan_out(self):
        """One request per reviewer, results in reviewer order."""
        service = FakeReviewerService({"A": [Verdict.REQUEST_CHANGES], "B": [Verdict.APPROVE]})
        aggregator = ConsultationAggregator(service)

        aggregate = await aggregator.consult(["A", "B"], Path("spec.md"), "spec-review", phase_id="specify")

        assert [r.reviewer for r in aggregate.results] == ["A", "B"]
        assert aggregate.summary() == {"A": "REQUEST_CHANGES", "B": "APPROVE"}
        assert {r.review_type for r in service.requests} == {"spec-review"}
        assert aggregate.approved is False

    @pytest.mark.asyncio
    async def test_sequential_mode(self):
        """parallel=False asks reviewers one after another."""
        service = FakeReviewerService({"A": [Verdict.APPROVE], "B": [Verdict.APPROVE]})
        aggregate = await ConsultationAggregator(service).consult(["A", "B"], None, "review", parallel=False)
        assert [r.reviewer for r in service.requests] == ["A", "B"]
        assert aggregate.approved is True

    @pytest.mark.asyncio
    async def test_reviewer_error_is_unavailable(self):
        """A reviewer raising becomes UNAVAILABLE with the error as feedback."""
        service = FakeReviewerService({"A": [RuntimeError("model overloaded")], "B": [Verdict.APPROVE]})
        aggregate = await ConsultationAggregator(service).consult(["A", "B"], None, "review")

        first = aggregate.results[0]
        assert first.verdict == Verdict.UNAVAILABLE
        assert "model overloaded" in first.feedback
        assert aggregate.approved is True

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        """A reviewer exceeding the timeout is UNAVAILABLE, not a hang."""
        aggregator = ConsultationAggregator(SlowReviewer(), timeout=0.05)
        aggregate = await aggregator.consult(["A"], None, "review")

        assert aggregate.results[0].verdict == Verdict.UNAVAILABLE
        assert "Timeout" in aggregate.results[0].feedback
        assert aggregate.approved is False

    @pytest.mark.asyncio
    async def test_block_policy(self):
        """The aggregator passes its policy to the aggregate."""
        service = FakeReviewerService({"A": [Verdict.APPROVE], "B": [Verdict.UNAVAILABLE]})
        aggregator = ConsultationAggregator(service, policy=UnavailablePolicy.BLOCK)
        aggregate = await aggregator.consult(["A", "B"], None, "review")
        assert aggregate.approved is False


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")
class TestCommandReviewer:
    """Tests for the subprocess-backed reviewer."""

    @pytest.mark.asyncio
    async def test_parses_verdict_and_writes_transcript(self, tmp_path: Path):
        """Output is parsed for a verdict and kept as a transcript."""
        reviewer = CommandReviewer(
            ["sh", "-c", f"printf '{PADDING}VERDICT: APPROVE\\n'; echo {{model}} >&2"],
            transcript_dir=tmp_path,
        )
        request = ReviewRequest(reviewer="A", review_type="review", phase_id="specify", iteration=1)

        result = await reviewer.review(request)

        assert result.verdict == Verdict.APPROVE
        transcript = (tmp_path / "specify-iter1-A.txt").read_text()
        assert "VERDICT: APPROVE" in transcript

    @pytest.mark.asyncio
    async def test_missing_executable_is_unavailable(self):
        """A reviewer CLI that is not installed yields UNAVAILABLE via the aggregator."""
        reviewer = CommandReviewer(["definitely-not-a-real-consult-cli", "{model}"])
        aggregate = await ConsultationAggregator(reviewer).consult(["A"], None, "review")
        assert aggregate.results[0].verdict == Verdict.UNAVAILABLE
        assert "not found" in aggregate.results[0].feedback
