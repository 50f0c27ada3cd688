"""Tests for the Verification Runner."""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

from protocol_orchestrator.core.protocol import CheckSpec, FailurePolicy
from protocol_orchestrator.core.verification import (
    CheckContext,
    ShellChecker,
    VerificationReport,
    VerificationOutcome,
    VerificationRunner,
)
from protocol_orchestrator.tests.fakes import ScriptedChecker


def _retry_check(name: str = "tests", max_retries: int = 2) -> CheckSpec:
    return CheckSpec(name=name, command="true", on_fail=FailurePolicy.RETRY, max_retries=max_retries)


class TestVerificationRunner:
    """Tests for per-check retry policy."""

    @pytest.mark.asyncio
    async def test_fails_twice_then_passes(self, tmp_path: Path):
        """A retry check that fails twice then passes consumes exactly 2 retries."""
        checker = ScriptedChecker({"tests": [False, False, True]})
        runner = VerificationRunner(checker)

        outcome = await runner.run_check(_retry_check(), CheckContext(project_root=tmp_path))

        assert outcome.passed is True
        assert outcome.retries_consumed == 2
        assert checker.calls["tests"] == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, tmp_path: Path):
        """The last diagnostic is reported after max_retries re-executions."""
        checker = ScriptedChecker({"tests": [False, False, False, True]})
        runner = VerificationRunner(checker)

        outcome = await runner.run_check(_retry_check(), CheckContext(project_root=tmp_path))

        assert outcome.passed is False
        assert outcome.retries_consumed == 2
        assert outcome.diagnostic == "tests failed (call 3)"
        assert checker.calls["tests"] == 3

    @pytest.mark.asyncio
    async def test_on_fail_fail_never_retries(self, tmp_path: Path):
        """on_fail: fail reports the first failure."""
        checker = ScriptedChecker({"lint": [False, True]})
        runner = VerificationRunner(checker)
        check = CheckSpec(name="lint", command="ruff", on_fail=FailurePolicy.FAIL, max_retries=5)

        outcome = await runner.run_check(check, CheckContext(project_root=tmp_path))

        assert outcome.passed is False
        assert outcome.retries_consumed == 0
        assert checker.calls["lint"] == 1

    @pytest.mark.asyncio
    async def test_deterministic(self, tmp_path: Path):
        """Identical inputs give identical outcomes."""
        script = {"a": [False, True], "b": [False, False, False]}
        checks = [_retry_check("a"), _retry_check("b")]
        context = CheckContext(project_root=tmp_path)

        first = await VerificationRunner(ScriptedChecker(script)).run(checks, context)
        second = await VerificationRunner(ScriptedChecker(script)).run(checks, context)

        def summary(report: VerificationReport) -> list[tuple[str, bool, int]]:
            return [(o.check_name, o.passed, o.retries_consumed) for o in report.outcomes]

        assert summary(first) == summary(second) == [("a", True, 1), ("b", False, 2)]

    @pytest.mark.asyncio
    async def test_failing_check_carries_return_phase(self, tmp_path: Path):
        """A check whose on_fail names a phase reports it after failing."""
        runner = VerificationRunner(ScriptedChecker({"tests": [False]}))
        check = CheckSpec(name="tests", command="pytest", return_to="implement")

        report = await runner.run([check], CheckContext(project_root=tmp_path))

        assert report.passed is False
        assert report.return_to == "implement"

    @pytest.mark.asyncio
    async def test_no_checks_passes(self, tmp_path: Path):
        """An empty check list is a passing report."""
        report = await VerificationRunner(ScriptedChecker()).run([], CheckContext(project_root=tmp_path))
        assert report.passed is True
        assert report.outcomes == []


class TestVerificationReport:
    """Tests for report helpers."""

    def test_diagnostics_only_failing(self):
        """diagnostics() maps failing checks to their text."""
        report = VerificationReport(
            outcomes=[
                VerificationOutcome(check_name="lint", passed=True),
                VerificationOutcome(check_name="tests", passed=False, diagnostic="2 failed", retries_consumed=1),
            ]
        )
        assert report.passed is False
        assert report.diagnostics() == {"tests": "2 failed"}
        assert report.total_retries == 1
        assert report.return_to is None

    def test_return_to_from_failing_check(self):
        """The first failing check that names a phase decides where to return."""
        report = VerificationReport(
            outcomes=[
                VerificationOutcome(check_name="build", passed=True, return_to="plan"),
                VerificationOutcome(check_name="tests", passed=False, return_to="implement"),
            ]
        )
        assert report.return_to == "implement"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")
class TestShellChecker:
    """Tests for the subprocess-backed checker."""

    @pytest.mark.asyncio
    async def test_passing_command(self, tmp_path: Path):
        """Exit code 0 passes."""
        result = await ShellChecker().execute(
            CheckSpec(name="ok", command="exit 0"), CheckContext(project_root=tmp_path)
        )
        assert result.passed is True
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_failing_command_diagnostic(self, tmp_path: Path):
        """Non-zero exit reports the code and output."""
        result = await ShellChecker().execute(
            CheckSpec(name="bad", command="echo broken; exit 3"), CheckContext(project_root=tmp_path)
        )
        assert result.passed is False
        assert result.exit_code == 3
        assert "Exit code 3" in result.diagnostic
        assert "broken" in result.diagnostic

    @pytest.mark.asyncio
    async def test_environment_and_cwd(self, tmp_path: Path):
        """Checks see PROJECT_ID/PHASE_ID and run in their cwd."""
        (tmp_path / "sub").mkdir()
        context = CheckContext(project_root=tmp_path, project_id="0042", phase_id="specify")
        check = CheckSpec(
            name="env",
            command='test "$PROJECT_ID-$PHASE_ID" = "0042-specify" && test "$(basename "$(pwd -P)")" = sub',
            cwd="sub",
        )
        result = await ShellChecker().execute(check, context)
        assert result.passed is True

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path):
        """A hung check is killed and fails."""
        result = await ShellChecker().execute(
            CheckSpec(name="slow", command="sleep 5", timeout=0.2),
            CheckContext(project_root=tmp_path),
        )
        assert result.passed is False
        assert "timed out" in result.diagnostic

    @pytest.mark.asyncio
    async def test_cancel_kills_command(self, tmp_path: Path):
        """Cancelling a running check kills its process."""
        pid_file = tmp_path / "pid"
        task = asyncio.create_task(
            ShellChecker().execute(
                CheckSpec(name="hang", command="echo $$ > pid; exec sleep 30"),
                CheckContext(project_root=tmp_path),
            )
        )
        for _ in range(250):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.02)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
