"""Reviewer service backed by a consultation CLI."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from protocol_orchestrator.cli_adapters.base import find_executable
from protocol_orchestrator.cli_adapters.command import render_argv
from protocol_orchestrator.core.errors import ConsultationUnavailable
from protocol_orchestrator.reviewing.consultation import (
    ConsultationResult,
    ReviewerService,
    ReviewRequest,
    parse_verdict,
)

logger = logging.getLogger(__name__)


class CommandReviewer(ReviewerService):
    """
    Runs one review per request through an argv template.

    The template receives ``{model}``, ``{review_type}``, ``{artifact}``,
    ``{phase}`` and ``{project_id}``. The raw output is written to
    ``transcript_dir`` when one is configured.
    """

    def __init__(
        self,
        command: list[str],
        *,
        working_dir: Path | None = None,
        transcript_dir: Path | None = None,
    ) -> None:
        if not command:
            raise ValueError("Reviewer command template is empty")
        self.command = command
        self.working_dir = working_dir
        self.transcript_dir = transcript_dir

    async def review(self, request: ReviewRequest) -> ConsultationResult:
        executable = find_executable(self.command[0])
        if executable is None:
            raise ConsultationUnavailable(request.reviewer, f"{self.command[0]} not found")

        args = render_argv(
            self.command[1:],
            {
                "model": request.reviewer,
                "review_type": request.review_type,
                "artifact": str(request.artifact or ""),
                "phase": request.phase_id,
                "project_id": request.project_id,
            },
        )
        start = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_dir,
            )
        except OSError as e:
            raise ConsultationUnavailable(request.reviewer, str(e)) from e

        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        output = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        self._write_transcript(request, output + stderr)

        if process.returncode != 0 and not output.strip():
            raise ConsultationUnavailable(
                request.reviewer,
                f"exit code {process.returncode}: {stderr.strip()[:500]}",
            )

        return ConsultationResult(
            reviewer=request.reviewer,
            verdict=parse_verdict(output),
            feedback=output.strip(),
            latency_seconds=time.monotonic() - start,
        )

    def _write_transcript(self, request: ReviewRequest, text: str) -> None:
        if self.transcript_dir is None:
            return
        self.transcript_dir.mkdir(parents=True, exist_ok=True)
        name = f"{request.phase_id}-iter{request.iteration}-{request.reviewer}.txt"
        try:
            (self.transcript_dir / name).write_text(text, encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write review transcript %s: %s", name, e)
