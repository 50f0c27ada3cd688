"""Tests for the command-line front end and the subprocess agent runner."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml

from protocol_orchestrator.__main__ import main
from protocol_orchestrator.cli_adapters.base import AgentRequest
from protocol_orchestrator.cli_adapters.command import CommandAgentRunner, render_argv
from protocol_orchestrator.config.settings import get_settings
from protocol_orchestrator.core.run_state import EventKind
from protocol_orchestrator.core.state_manager import RunStateStore


def _pending_gate_run(project: Path) -> RunStateStore:
    store = RunStateStore(project / get_settings().state_dir, "run-1")
    with store:
        store.append(EventKind.RUN_STARTED, protocol="spider")
        store.append(EventKind.PHASE_ENTERED, phase_id="specify")
        store.append(EventKind.PHASE_COMPLETED, phase_id="specify", outcome="passed")
        store.append(EventKind.GATE_REQUESTED, phase_id="specify", gate="spec-approval", outcome="passed")
    return store


class TestMain:
    """Tests for CLI subcommands."""

    @pytest.mark.asyncio
    async def test_validate(self, tmp_path: Path, capsys):
        """validate prints the phase table for a good protocol."""
        path = tmp_path / "protocol.yaml"
        path.write_text(yaml.safe_dump({"name": "spider", "phases": [{"id": "a"}, {"id": "b"}]}))

        assert await main(["validate", str(path)]) == 0
        out = capsys.readouterr().out
        assert "Protocol spider" in out
        assert "-> b" in out

    @pytest.mark.asyncio
    async def test_validate_invalid(self, tmp_path: Path, capsys):
        """A schema error exits non-zero with the message."""
        path = tmp_path / "protocol.yaml"
        path.write_text(yaml.safe_dump({"name": "spider", "phases": [{"id": "a", "type": "loop"}]}))

        assert await main(["validate", str(path)]) == 2
        assert "unknown type 'loop'" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_approve_writes_decision_for_pending_request(self, tmp_path: Path):
        """approve answers the pending gate request by sequence number."""
        store = _pending_gate_run(tmp_path)

        assert await main(["approve", "run-1", "--project", str(tmp_path), "--reason", "ok"]) == 0

        decision = json.loads(store.gate_decision_file("spec-approval").read_text())
        assert decision["approved"] is True
        assert decision["reason"] == "ok"
        assert decision["request_seq"] == 4

    @pytest.mark.asyncio
    async def test_reject(self, tmp_path: Path):
        """reject records the reason."""
        store = _pending_gate_run(tmp_path)

        assert await main(["reject", "run-1", "--project", str(tmp_path), "--reason", "too vague"]) == 0

        decision = json.loads(store.gate_decision_file("spec-approval").read_text())
        assert decision["approved"] is False
        assert decision["reason"] == "too vague"

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, tmp_path: Path):
        """A rejection without a reason is a usage error."""
        with pytest.raises(SystemExit):
            await main(["reject", "run-1", "--project", str(tmp_path)])

    @pytest.mark.asyncio
    async def test_approve_without_pending_gate(self, tmp_path: Path):
        """Approving a run that is not at a gate fails."""
        store = RunStateStore(tmp_path / get_settings().state_dir, "run-2")
        with store:
            store.append(EventKind.RUN_STARTED, protocol="spider")

        assert await main(["approve", "run-2", "--project", str(tmp_path)]) == 1

    @pytest.mark.asyncio
    async def test_status(self, tmp_path: Path, capsys):
        """status lists runs and shows one run's pending gate."""
        _pending_gate_run(tmp_path)

        assert await main(["status", "--project", str(tmp_path)]) == 0
        assert "run-1  awaiting_gate" in capsys.readouterr().out

        assert await main(["status", "run-1", "--project", str(tmp_path)]) == 0
        assert "spec-approval (awaiting decision)" in capsys.readouterr().out


class TestCommandAgentRunner:
    """Tests for the subprocess agent runner."""

    def test_render_argv(self):
        """Placeholders are filled per argv element."""
        assert render_argv(["-p", "{prompt}", "--phase={phase}"], {"prompt": "a b", "phase": "x"}) == [
            "-p",
            "a b",
            "--phase=x",
        ]

    def test_empty_command(self):
        """An empty command template is a configuration error."""
        with pytest.raises(ValueError):
            CommandAgentRunner([])

    @pytest.mark.skipif(sys.platform == "win32", reason="needs cat")
    @pytest.mark.asyncio
    async def test_prompt_via_stdin(self, tmp_path: Path):
        """With prompt_via_stdin the prompt is piped to the agent."""
        runner = CommandAgentRunner(["cat"], prompt_via_stdin=True)
        result = await runner.invoke(
            AgentRequest(prompt="hello\n<signal>PHASE_COMPLETE</signal>", phase_id="p", working_dir=tmp_path)
        )
        assert result.exit_code == 0
        assert result.output == "hello\n<signal>PHASE_COMPLETE</signal>"

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path):
        """A missing agent CLI is reported, not raised."""
        runner = CommandAgentRunner(["definitely-not-a-real-agent-cli", "{prompt}"])
        assert runner.is_available is False
        result = await runner.invoke(AgentRequest(prompt="x", phase_id="p", working_dir=tmp_path))
        assert result.exit_code == -1
