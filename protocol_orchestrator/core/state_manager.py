"""Durable run state: fsync'd event log plus atomic snapshots."""

from __future__ import annotations

import fcntl
import json
import logging
import os
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, TextIO
from uuid import uuid4

from pydantic import ValidationError

from protocol_orchestrator.core.errors import PersistenceError
from protocol_orchestrator.core.run_state import EventKind, RunEvent, RunState

logger = logging.getLogger(__name__)


def new_run_id(project_id: str = "") -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    prefix = f"{project_id}-" if project_id else ""
    return f"{prefix}{stamp}-{str(uuid4())[:8]}"


def _fsync_dir(path: Path) -> None:
    """Persist directory entries on POSIX."""
    if os.name != "posix":
        return
    try:
        dir_fd = os.open(str(path), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError as dir_sync_error:
        logger.debug("Directory sync skipped: %s", dir_sync_error)


class RunStateStore:
    """
    Crash-safe storage for one run.

    Layout under ``<state_dir>/runs/<run_id>/``::

        events.jsonl   append-only log, flushed and fsync'd per event
        state.json     atomic snapshot of the projection (convenience only)
        backups/       rolling snapshot backups
        outputs/       build outputs and review transcripts
        gates/         decision files written by approve/reject
        .lock          held exclusively by the single writer

    The log is the source of truth. The snapshot is rewritten after every
    append with temp file + fsync + rename so readers never see a torn
    file.
    """

    RUNS_DIR = "runs"
    EVENTS_FILE = "events.jsonl"
    STATE_FILE = "state.json"
    BACKUP_DIR = "backups"
    OUTPUTS_DIR = "outputs"
    GATES_DIR = "gates"
    LOCK_FILE = ".lock"
    MAX_BACKUPS = 10

    def __init__(self, state_dir: Path, run_id: str) -> None:
        self.run_id = run_id
        self.run_dir = state_dir.resolve() / self.RUNS_DIR / run_id
        self.events_file = self.run_dir / self.EVENTS_FILE
        self.state_file = self.run_dir / self.STATE_FILE
        self.backup_dir = self.run_dir / self.BACKUP_DIR
        self.outputs_dir = self.run_dir / self.OUTPUTS_DIR
        self.gates_dir = self.run_dir / self.GATES_DIR
        self._lock_handle: TextIO | None = None
        self._seq = 0
        self._state: RunState | None = None

    @classmethod
    def list_runs(cls, state_dir: Path) -> list[str]:
        runs_dir = state_dir / cls.RUNS_DIR
        if not runs_dir.is_dir():
            return []
        return sorted(p.name for p in runs_dir.iterdir() if (p / cls.EVENTS_FILE).exists())

    @property
    def locked(self) -> bool:
        """Whether this process holds the writer lock."""
        return self._lock_handle is not None

    @property
    def exists(self) -> bool:
        return self.events_file.exists()

    @property
    def state(self) -> RunState:
        if self._state is None:
            raise PersistenceError(f"Run {self.run_id} has not been loaded")
        return self._state

    # -- writer lock -------------------------------------------------------

    def acquire(self) -> None:
        """Take the exclusive writer lock for this run."""
        try:
            for directory in (self.run_dir, self.backup_dir, self.outputs_dir, self.gates_dir):
                directory.mkdir(parents=True, exist_ok=True)
            handle = open(self.run_dir / self.LOCK_FILE, "a+", encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Cannot create run directory {self.run_dir}: {e}") from e

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise PersistenceError(f"Run {self.run_id} is locked by another orchestrator process")

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._lock_handle = handle
        logger.debug("Acquired writer lock for run %s", self.run_id)

    def release(self) -> None:
        if self._lock_handle is None:
            return
        try:
            fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._lock_handle.close()
            self._lock_handle = None

    def __enter__(self) -> RunStateStore:
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    # -- reading -----------------------------------------------------------

    def read_events(self) -> list[RunEvent]:
        """
        Read the log.

        A trailing line that does not parse is a torn write from a crash
        and is ignored. A bad line anywhere else is corruption.
        """
        if not self.events_file.exists():
            return []

        try:
            lines = self.events_file.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise PersistenceError(f"Cannot read {self.events_file}: {e}") from e

        events: list[RunEvent] = []
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                events.append(RunEvent.model_validate_json(line))
            except ValidationError as e:
                if index == len(lines) - 1:
                    logger.warning("Ignoring torn final event in %s", self.events_file)
                    break
                raise PersistenceError(
                    f"Corrupt event at line {index + 1} of {self.events_file}: {e}"
                ) from e
        return events

    def load(self) -> RunState | None:
        """Replay the log into a fresh projection."""
        if self._lock_handle is not None:
            self._repair_tail()
        events = self.read_events()
        if not events:
            self._state = None
            self._seq = 0
            return None

        self._state = RunState.replay(self.run_id, events)
        self._seq = events[-1].seq
        logger.info(
            "Loaded run %s: %d events, phase=%s step=%s iteration=%d",
            self.run_id,
            len(events),
            self._state.current_phase,
            self._state.step.value,
            self._state.iteration,
        )
        return self._state

    def _repair_tail(self) -> None:
        """Drop a torn final record so the next append starts on a clean line."""
        if not self.events_file.exists():
            return
        try:
            data = self.events_file.read_bytes()
            if not data or data.endswith(b"\n"):
                return
            keep = data.rfind(b"\n") + 1
            try:
                RunEvent.model_validate_json(data[keep:])
            except ValidationError:
                pass
            else:
                # Complete record, only the newline was lost
                with open(self.events_file, "ab") as f:
                    f.write(b"\n")
                    f.flush()
                    os.fsync(f.fileno())
                return
            with open(self.events_file, "r+b") as f:
                f.truncate(keep)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise PersistenceError(f"Cannot repair {self.events_file}: {e}") from e
        logger.warning("Dropped torn final event from %s", self.events_file)

    def load_snapshot(self) -> RunState | None:
        """Read the last snapshot, falling back to backups. For readers only."""
        candidates = [self.state_file, *sorted(self.backup_dir.glob("state_*.json"), reverse=True)]
        for path in candidates:
            if not path.exists():
                continue
            try:
                return RunState.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                logger.warning("Failed to load snapshot %s: %s", path.name, e)
        return None

    # -- writing -----------------------------------------------------------

    def append(self, kind: EventKind, **payload: Any) -> RunEvent:
        """
        Durably append one event and fold it into the projection.

        Raises:
            PersistenceError: If the event could not be written.
        """
        if self._lock_handle is None:
            raise PersistenceError("Appending requires the writer lock")

        if self._state is None:
            self._state = RunState(run_id=self.run_id)

        event = RunEvent(seq=self._seq + 1, kind=kind, payload=payload)
        line = event.model_dump_json() + "\n"

        try:
            is_new = not self.events_file.exists()
            with open(self.events_file, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
            if is_new:
                _fsync_dir(self.run_dir)
        except OSError as e:
            logger.error("Failed to append event %s: %s", kind.value, e, exc_info=True)
            raise PersistenceError(f"Cannot append to {self.events_file}: {e}") from e

        self._seq = event.seq
        self._state.apply(event)
        self._save_snapshot(self._state)
        logger.debug("Appended event %d %s", event.seq, kind.value)
        return event

    def write_output(self, name: str, content: str) -> Path:
        """Persist a build output or transcript under outputs/."""
        path = self.outputs_dir / name
        try:
            self._atomic_write(path, content)
        except OSError as e:
            raise PersistenceError(f"Cannot write output {path}: {e}") from e
        return path

    def gate_decision_file(self, gate: str) -> Path:
        return self.gates_dir / f"{gate}.json"

    def write_gate_decision(self, gate: str, decision: dict[str, Any]) -> Path:
        """Write a decision file for a pending gate (used by approve/reject)."""
        self.gates_dir.mkdir(parents=True, exist_ok=True)
        path = self.gate_decision_file(gate)
        try:
            self._atomic_write(path, json.dumps(decision, indent=2, default=str))
        except OSError as e:
            raise PersistenceError(f"Cannot write gate decision {path}: {e}") from e
        return path

    def _save_snapshot(self, state: RunState) -> None:
        if self.state_file.exists():
            self._create_backup()
        try:
            self._atomic_write(self.state_file, state.model_dump_json(indent=2))
        except OSError as e:
            logger.error("Failed to save snapshot: %s", e, exc_info=True)
            raise PersistenceError(f"Cannot write snapshot {self.state_file}: {e}") from e

    def _atomic_write(self, path: Path, content: str) -> None:
        temp_file = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            temp_file.replace(path)
            _fsync_dir(path.parent)
        except OSError:
            if temp_file.exists():
                temp_file.unlink()
            raise

    def _create_backup(self) -> None:
        """Copy the current snapshot into backups/ and prune old ones."""
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")
        backup_file = self.backup_dir / f"state_{timestamp}.json"
        try:
            backup_file.write_bytes(self.state_file.read_bytes())
        except OSError as e:
            logger.debug("Snapshot backup skipped: %s", e)
            return
        self._prune_backups()

    def _prune_backups(self) -> None:
        backups = sorted(self.backup_dir.glob("state_*.json"), reverse=True)
        for old_backup in backups[self.MAX_BACKUPS:]:
            old_backup.unlink()
            logger.debug("Pruned old backup %s", old_backup.name)
