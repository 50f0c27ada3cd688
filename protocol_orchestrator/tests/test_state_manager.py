"""Tests for the event log, projection and run state store."""

from __future__ import annotations

from pathlib import Path

import pytest

from protocol_orchestrator.core.errors import PersistenceError
from protocol_orchestrator.core.run_state import (
    EventKind,
    PhaseOutcome,
    RunState,
    RunStatus,
    Step,
)
from protocol_orchestrator.core.state_manager import RunStateStore, new_run_id


def _walk_to_gate(store: RunStateStore) -> None:
    store.append(EventKind.RUN_STARTED, protocol="spider", project_id="0042", title="Auth")
    store.append(EventKind.PHASE_ENTERED, phase_id="specify")
    store.append(
        EventKind.BUILD_COMPLETED,
        phase_id="specify",
        iteration=0,
        signal="PHASE_COMPLETE",
        artifact="/p/specs/0042.md",
    )
    store.append(
        EventKind.VERIFY_COMPLETED,
        phase_id="specify",
        iteration=0,
        passed=False,
        checks=[],
        reviews=[{"reviewer": "A", "verdict": "REQUEST_CHANGES", "feedback": "fix"}],
        consultation_approved=False,
        feedback="[A]\nfix",
    )
    store.append(EventKind.ITERATION_ADVANCED, phase_id="specify", iteration=1, feedback="[A]\nfix")
    store.append(
        EventKind.BUILD_COMPLETED,
        phase_id="specify",
        iteration=1,
        signal="PHASE_COMPLETE",
        artifact="/p/specs/0042.md",
    )
    store.append(
        EventKind.VERIFY_COMPLETED,
        phase_id="specify",
        iteration=1,
        passed=True,
        consultation_approved=True,
    )
    store.append(EventKind.PHASE_COMPLETED, phase_id="specify", outcome="passed")
    store.append(EventKind.SIDE_EFFECT_APPLIED, phase_id="specify", effect="commit", ok=True)
    store.append(EventKind.GATE_REQUESTED, phase_id="specify", gate="spec-approval", outcome="passed")


class TestProjection:
    """Tests for folding events into RunState."""

    def test_state_follows_events(self, store: RunStateStore):
        """Each event moves the projection to the recorded step."""
        _walk_to_gate(store)
        state = store.state

        assert state.current_phase == "specify"
        assert state.iteration == 1
        assert state.step == Step.GATE
        assert state.status == RunStatus.AWAITING_GATE
        assert state.pending_gate == "spec-approval"
        assert state.gate_request_seq == 10
        assert state.phase_outcome == PhaseOutcome.PASSED
        assert state.artifacts == ["/p/specs/0042.md"]
        assert set(state.completed_steps) >= {"build", "consultation", "verify", "commit"}
        assert [h.phase_id for h in state.history] == ["specify"]

    def test_iteration_resets_attempt(self, store: RunStateStore):
        """Advancing an iteration clears the previous attempt and carries feedback."""
        store.append(EventKind.RUN_STARTED, protocol="p")
        store.append(EventKind.PHASE_ENTERED, phase_id="specify")
        store.append(EventKind.BUILD_COMPLETED, phase_id="specify", iteration=0, signal="BLOCKED", reason="no db")
        assert store.state.step == Step.VERIFY
        assert "build" not in store.state.completed_steps

        store.append(EventKind.ITERATION_ADVANCED, phase_id="specify", iteration=1, feedback="try again")
        assert store.state.step == Step.BUILD
        assert store.state.last_build is None
        assert store.state.feedback == "try again"

    def test_gate_decision(self, store: RunStateStore):
        """An approval records the decision and the next phase."""
        _walk_to_gate(store)
        store.append(
            EventKind.GATE_DECIDED,
            phase_id="specify",
            gate="spec-approval",
            approved=True,
            next_phase="plan",
        )
        state = store.state
        assert state.step == Step.ADVANCE
        assert state.next_phase == "plan"
        assert state.pending_gate is None
        assert state.gate_log[0].approved is True

    def test_replay_matches_live_projection(self, store: RunStateStore):
        """Replaying the log rebuilds the same projection."""
        _walk_to_gate(store)
        replayed = RunState.replay(store.run_id, store.read_events())
        assert replayed.model_dump() == store.state.model_dump()


class TestRunStateStore:
    """Tests for durability and locking."""

    def test_events_are_appended_with_sequence(self, store: RunStateStore):
        """Sequence numbers are contiguous from 1."""
        _walk_to_gate(store)
        events = store.read_events()
        assert [e.seq for e in events] == list(range(1, 11))
        assert store.state_file.exists()

    def test_reload_in_new_process(self, store: RunStateStore, state_dir: Path):
        """A fresh store replays the log to the same state."""
        _walk_to_gate(store)
        store.release()

        other = RunStateStore(state_dir, store.run_id)
        with other:
            state = other.load()
            assert state is not None
            assert state.step == Step.GATE
            assert state.iteration == 1
            event = other.append(
                EventKind.GATE_DECIDED, phase_id="specify", gate="spec-approval", approved=False
            )
            assert event.seq == 11

    def test_torn_final_line_is_dropped(self, store: RunStateStore, state_dir: Path):
        """A crash mid-append leaves a partial line that replay ignores."""
        _walk_to_gate(store)
        store.release()
        with open(store.events_file, "a", encoding="utf-8") as f:
            f.write('{"seq": 11, "kind": "gate_dec')

        reader = RunStateStore(state_dir, store.run_id)
        assert len(reader.read_events()) == 10

        with reader:
            state = reader.load()
            assert state is not None and state.step == Step.GATE
            reader.append(EventKind.GATE_DECIDED, phase_id="specify", gate="spec-approval", approved=True)

        assert len(RunStateStore(state_dir, store.run_id).read_events()) == 11

    def test_corrupt_middle_line_is_fatal(self, store: RunStateStore, state_dir: Path):
        """Corruption before the last line raises PersistenceError."""
        _walk_to_gate(store)
        store.release()
        lines = store.events_file.read_text().splitlines()
        lines[3] = "garbage"
        store.events_file.write_text("\n".join(lines) + "\n")

        with pytest.raises(PersistenceError, match="Corrupt event at line 4"):
            RunStateStore(state_dir, store.run_id).load()

    def test_second_writer_is_refused(self, store: RunStateStore, state_dir: Path):
        """Only one writer may hold a run."""
        with pytest.raises(PersistenceError, match="locked"):
            RunStateStore(state_dir, store.run_id).acquire()

    def test_append_requires_lock(self, state_dir: Path):
        """Appending without the writer lock is refused."""
        with pytest.raises(PersistenceError, match="writer lock"):
            RunStateStore(state_dir, "unlocked").append(EventKind.RUN_STARTED)

    def test_snapshot_and_backups(self, store: RunStateStore):
        """The snapshot mirrors the projection and older copies are pruned."""
        for i in range(15):
            store.append(EventKind.PHASE_ENTERED, phase_id=f"p{i}")
        snapshot = store.load_snapshot()
        assert snapshot is not None and snapshot.current_phase == "p14"
        assert len(list(store.backup_dir.glob("state_*.json"))) <= RunStateStore.MAX_BACKUPS

    def test_outputs_and_gate_files(self, store: RunStateStore):
        """Build outputs and decision files live in the run directory."""
        path = store.write_output("specify-iter1-build.txt", "hello")
        assert path == store.outputs_dir / "specify-iter1-build.txt"
        assert path.read_text() == "hello"

        decision = store.write_gate_decision("spec-approval", {"approved": True, "request_seq": 4})
        assert decision == store.gates_dir / "spec-approval.json"

    def test_list_runs(self, state_dir: Path):
        """list_runs finds every run with a log."""
        for run_id in ("b", "a"):
            with RunStateStore(state_dir, run_id) as run_store:
                run_store.append(EventKind.RUN_STARTED, protocol="p")
        assert RunStateStore.list_runs(state_dir) == ["a", "b"]

    def test_new_run_id(self):
        """Run ids carry the project id and are unique."""
        first, second = new_run_id("0042"), new_run_id("0042")
        assert first.startswith("0042-")
        assert first != second
