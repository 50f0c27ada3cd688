"""Test fixtures for Protocol Orchestrator."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Generator

import pytest

from protocol_orchestrator.config.settings import Settings
from protocol_orchestrator.core.state_manager import RunStateStore


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Empty project directory."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def store(state_dir: Path) -> Generator[RunStateStore, None, None]:
    """A locked store for a fresh run."""
    run_store = RunStateStore(state_dir, "test-run")
    run_store.acquire()
    yield run_store
    run_store.release()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and settings files."""
    return Settings(side_effects={"enabled": True})


@pytest.fixture
def two_phase_protocol() -> dict[str, Any]:
    """specify (build_verify with reviewers A and B, commit + push) then plan (once)."""
    return {
        "name": "spider",
        "version": "1.0",
        "phases": [
            {
                "id": "specify",
                "type": "build_verify",
                "build": {
                    "prompt": "Write the specification for {{title}}",
                    "artifact": "specs/${PROJECT_ID}.md",
                },
                "verify": {"type": "spec-review", "models": ["A", "B"]},
                "max_iterations": 2,
                "on_complete": {"commit": True, "push": True},
                "gate": {"name": "spec-approval", "requires": ["build", "consultation"]},
            },
            {
                "id": "plan",
                "type": "once",
                "build": {"prompt": "Plan {{title}}"},
            },
        ],
    }
