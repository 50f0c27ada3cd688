"""Verification Runner: named checks with per-check retry policy."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from protocol_orchestrator.core.errors import CheckFailure
from protocol_orchestrator.core.protocol import CheckSpec, FailurePolicy
from protocol_orchestrator.utils import truncate_with_marker

logger = logging.getLogger(__name__)

MAX_DIAGNOSTIC_LENGTH = 4000


@dataclass
class CheckContext:
    """What a check runs against."""

    project_root: Path
    project_id: str = ""
    phase_id: str = ""
    artifact: Path | None = None

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env["PROJECT_ID"] = self.project_id
        env["PHASE_ID"] = self.phase_id
        env["ARTIFACT"] = str(self.artifact) if self.artifact else ""
        return env


@dataclass
class CheckResult:
    """Result of a single check execution."""

    passed: bool
    diagnostic: str = ""
    exit_code: int | None = None


@dataclass
class VerificationOutcome:
    """Final result of one named check after its retry policy."""

    check_name: str
    passed: bool
    diagnostic: str = ""
    retries_consumed: int = 0
    duration_seconds: float = 0.0
    return_to: str | None = None


@dataclass
class VerificationReport:
    """Outcomes of every check run in one VERIFY step."""

    outcomes: list[VerificationOutcome] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(o.passed for o in self.outcomes)

    @property
    def failed(self) -> list[VerificationOutcome]:
        return [o for o in self.outcomes if not o.passed]

    @property
    def total_retries(self) -> int:
        return sum(o.retries_consumed for o in self.outcomes)

    def diagnostics(self) -> dict[str, str]:
        """Failing check name to diagnostic text."""
        return {o.check_name: o.diagnostic for o in self.failed}

    @property
    def return_to(self) -> str | None:
        """Phase named by the first failing check that routes elsewhere."""
        for outcome in self.failed:
            if outcome.return_to:
                return outcome.return_to
        return None


class Checker(ABC):
    """Executes one check against an artifact and environment."""

    @abstractmethod
    async def execute(self, check: CheckSpec, context: CheckContext) -> CheckResult:
        """Run the check once. Must not mutate run state."""
        ...


class ShellChecker(Checker):
    """
    Runs a check's command through the shell.

    The shell gets its own process group so that a timeout or a cancelled
    VERIFY kills the command's children along with the shell.
    """

    async def execute(self, check: CheckSpec, context: CheckContext) -> CheckResult:
        cwd = context.project_root / check.cwd if check.cwd else context.project_root

        try:
            process = await asyncio.create_subprocess_shell(
                check.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=cwd,
                env=context.environment(),
                start_new_session=sys.platform != "win32",
            )
        except OSError as e:
            return CheckResult(passed=False, diagnostic=f"Error running {check.command}: {e}")

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=check.timeout)
        except asyncio.TimeoutError:
            await _kill(process)
            return CheckResult(
                passed=False,
                diagnostic=f"Check timed out after {check.timeout:.0f}s",
                exit_code=-1,
            )
        except asyncio.CancelledError:
            await _kill(process)
            raise

        output = stdout.decode("utf-8", errors="replace")
        passed = process.returncode == 0
        diagnostic = "" if passed else (
            f"Exit code {process.returncode}\n{truncate_with_marker(output, MAX_DIAGNOSTIC_LENGTH)}"
        )
        return CheckResult(passed=passed, diagnostic=diagnostic.strip(), exit_code=process.returncode)


async def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill a check's process group, including children that outlived the shell."""
    try:
        if sys.platform == "win32":
            if process.returncode is None:
                process.kill()
        else:
            os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await process.wait()


def _log_check_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Check %s failed on attempt %d, retrying",
        getattr(exc, "check_name", "?"),
        retry_state.attempt_number,
    )


class VerificationRunner:
    """
    Runs declared checks concurrently.

    A check with ``on_fail: fail`` runs once. A check with ``on_fail: retry``
    is re-executed up to ``max_retries`` times before its failure is
    reported. Retries consumed here never count against a build_verify
    phase's iteration budget.
    """

    def __init__(self, checker: Checker | None = None) -> None:
        self.checker = checker or ShellChecker()

    async def run(
        self, checks: list[CheckSpec] | tuple[CheckSpec, ...], context: CheckContext
    ) -> VerificationReport:
        """Run every check and collect all outcomes."""
        if not checks:
            return VerificationReport()

        outcomes = await asyncio.gather(*(self.run_check(c, context) for c in checks))
        report = VerificationReport(outcomes=list(outcomes))

        logger.info(
            "Verification completed",
            extra={
                "phase_id": context.phase_id,
                "passed": report.passed,
                "failed_checks": [o.check_name for o in report.failed],
                "retries": report.total_retries,
            },
        )
        return report

    async def run_check(self, check: CheckSpec, context: CheckContext) -> VerificationOutcome:
        """Run one check under its failure policy."""
        max_retries = check.max_retries if check.on_fail == FailurePolicy.RETRY else 0
        attempts = 0
        start = time.monotonic()

        async def attempt() -> CheckResult:
            nonlocal attempts
            attempts += 1
            result = await self.checker.execute(check, context)
            if not result.passed:
                raise CheckFailure(check.name, result.diagnostic)
            return result

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_fixed(check.retry_delay),
            retry=retry_if_exception_type(CheckFailure),
            before_sleep=_log_check_retry,
            reraise=True,
        )

        try:
            await retrying(attempt)
        except CheckFailure as e:
            logger.info("Check %s failed after %d attempt(s)", check.name, attempts)
            return VerificationOutcome(
                check_name=check.name,
                passed=False,
                diagnostic=e.diagnostic,
                retries_consumed=attempts - 1,
                duration_seconds=time.monotonic() - start,
                return_to=check.return_to,
            )

        return VerificationOutcome(
            check_name=check.name,
            passed=True,
            retries_consumed=attempts - 1,
            duration_seconds=time.monotonic() - start,
        )
