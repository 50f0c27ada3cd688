"""Agent runner that starts a configurable CLI as a subprocess."""

from __future__ import annotations

import asyncio
import logging
import time

from protocol_orchestrator.cli_adapters.base import (
    AgentRequest,
    AgentResult,
    AgentRunner,
    find_executable,
)
from protocol_orchestrator.utils.sanitization import PromptSanitizer

logger = logging.getLogger(__name__)


def render_argv(template: list[str], values: dict[str, str]) -> list[str]:
    """Fill ``{name}`` placeholders in each argv element."""
    rendered = []
    for arg in template:
        for key, value in values.items():
            arg = arg.replace("{" + key + "}", value)
        rendered.append(arg)
    return rendered


class CommandAgentRunner(AgentRunner):
    """
    Runs an agent CLI from an argv template.

    The prompt is passed either as an argv element (``{prompt}``) or on
    stdin. Output is stdout followed by stderr when stdout is empty.
    """

    def __init__(
        self,
        command: list[str],
        *,
        prompt_via_stdin: bool = False,
        sanitizer: PromptSanitizer | None = None,
    ) -> None:
        if not command:
            raise ValueError("Agent command template is empty")
        super().__init__(name=command[0])
        self.command = command
        self.prompt_via_stdin = prompt_via_stdin
        self.sanitizer = sanitizer or PromptSanitizer()
        self._executable: str | None = None

    @property
    def executable(self) -> str:
        if self._executable is None:
            self._executable = find_executable(self.command[0]) or self.command[0]
        return self._executable

    @property
    def is_available(self) -> bool:
        return find_executable(self.command[0]) is not None

    async def invoke(self, request: AgentRequest) -> AgentResult:
        if not self.is_available:
            return AgentResult(
                output=f"Agent CLI not found: {self.command[0]}",
                exit_code=-1,
            )

        prompt = self.sanitizer.validate_prompt(request.prompt)
        values = {
            **request.variables,
            "phase": request.phase_id,
            "iteration": str(request.iteration),
            "prompt": "" if self.prompt_via_stdin else prompt,
        }
        args = render_argv(self.command[1:], values)
        start_time = time.monotonic()

        try:
            # argv list, never a shell: the prompt is passed as literal text
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                stdin=asyncio.subprocess.PIPE if self.prompt_via_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.working_dir,
            )
        except OSError as e:
            logger.error("Agent CLI execution error: %s", e, exc_info=True)
            return AgentResult(output=str(e), exit_code=-1)

        stdin_data = prompt.encode("utf-8") if self.prompt_via_stdin else None
        try:
            stdout_bytes, stderr_bytes = await process.communicate(stdin_data)
        except asyncio.CancelledError:
            # BUILD timeout or run cancellation: do not leave the agent running
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        duration = time.monotonic() - start_time

        if process.returncode != 0:
            logger.warning(
                "Agent %s exited with code %s in phase %s",
                self.name,
                process.returncode,
                request.phase_id,
            )

        return AgentResult(
            output=stdout if stdout.strip() else stderr,
            exit_code=process.returncode or 0,
            duration_seconds=duration,
            metadata={"phase_id": request.phase_id, "iteration": request.iteration},
        )
