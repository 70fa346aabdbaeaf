"""Durable storage for loop control records.

The store is the only component shared between controllers, so it owns the
two guarantees the rest of the loop relies on:

- compare_and_set_status() is atomic, which gives one RUNNING controller per
  loop id and crash-safe status transitions.
- Terminal records are read-only: any write to a record whose persisted
  status is complete/failed/stopped raises TerminalRecordError.
"""

import fcntl
import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set

from rwl.constants import RECOVERY_COMMIT_TEMPLATE
from rwl.loop_state import LoopRecord, Signal, Status, utcnow


logger = logging.getLogger(__name__)

LOOP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

WORKSPACE_LOST_REASON = "workspace lost during recovery"


class StorageError(Exception):
    """Persisting or loading control state failed; state integrity is unknown."""
    pass


class TerminalRecordError(StorageError):
    """Raised on an attempt to modify a record that already reached a terminal status."""
    pass


class LoopConflictError(Exception):
    """Another controller holds (or held) RUNNING for this loop id."""
    pass


def validate_loop_id(loop_id: str) -> str:
    if not LOOP_ID_RE.match(loop_id or ""):
        raise ValueError(
            f"Invalid loop id: {loop_id!r}. Use letters, digits, '.', '_' or '-'."
        )
    return loop_id


# =============================================================================
# LIVE OWNER REGISTRY
# =============================================================================

_live_owners: Set[str] = set()
_live_owners_lock = threading.Lock()


def register_owner(owner: str) -> None:
    """Mark a controller token as alive in this process."""
    with _live_owners_lock:
        _live_owners.add(owner)


def release_owner(owner: str) -> None:
    with _live_owners_lock:
        _live_owners.discard(owner)


def live_owners() -> Set[str]:
    with _live_owners_lock:
        return set(_live_owners)


# =============================================================================
# INTERFACE
# =============================================================================

class StateStore(ABC):
    """Abstract interface for control-record storage."""

    @abstractmethod
    def save(self, record: LoopRecord) -> None:
        """
        Persist a record (insert or replace).

        Raises:
            TerminalRecordError: If the persisted record is already terminal
            LoopConflictError: If the persisted record is owned by another controller
            StorageError: On any underlying storage failure
        """
        pass

    @abstractmethod
    def load(self, loop_id: str) -> Optional[LoopRecord]:
        """Load a record by id, or None if it does not exist."""
        pass

    @abstractmethod
    def list_records(self, status: Optional[Status] = None) -> List[LoopRecord]:
        """List records, optionally filtered by status, oldest first."""
        pass

    @abstractmethod
    def append_progress(self, loop_id: str, text: str) -> None:
        """Append human-readable text to the loop's progress log."""
        pass

    @abstractmethod
    def read_progress(self, loop_id: str) -> str:
        """Return the full progress log for a loop ('' if none)."""
        pass

    @abstractmethod
    def compare_and_set_status(
        self,
        loop_id: str,
        expected: Status,
        new: Status,
        owner: Optional[str] = None,
        reason: Optional[str] = None,
        signal: Optional[Signal] = None,
    ) -> bool:
        """
        Atomically move a record from expected to new status.

        Args:
            loop_id: Record to transition
            expected: Status the record must currently have
            new: Status to set
            owner: Controller token stored when new is RUNNING; cleared otherwise
            reason: Failure reason stored alongside a FAILED status
            signal: Signal kind stored alongside a STOPPED status

        Returns:
            True if the transition happened, False if the record is missing or
            its status was not expected.

        Raises:
            TerminalRecordError: If expected is a terminal status
            StorageError: On any underlying storage failure
        """
        pass


# =============================================================================
# LOCAL JSON STORE
# =============================================================================

class LocalStateStore(StateStore):
    """One JSON file per loop under a root directory.

    Writes go to a temp file and are moved into place with os.replace, so a
    crash never leaves a half-written record. Read-modify-write sequences run
    under a thread lock plus an flock on <root>/.lock, which makes them atomic
    across threads and across processes sharing the directory.
    """

    LOCK_FILENAME = ".lock"

    def __init__(self, root: Path):
        self.root = Path(root)
        self._thread_lock = threading.RLock()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create state directory {self.root}: {e}")

    def _record_path(self, loop_id: str) -> Path:
        return self.root / f"{validate_loop_id(loop_id)}.json"

    def _progress_path(self, loop_id: str) -> Path:
        return self.root / f"{validate_loop_id(loop_id)}.progress.txt"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._thread_lock:
            try:
                lock_file = open(self.root / self.LOCK_FILENAME, "a")
            except OSError as e:
                raise StorageError(f"Cannot open store lock: {e}")
            try:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)
                lock_file.close()

    def _read(self, loop_id: str) -> Optional[LoopRecord]:
        path = self._record_path(loop_id)
        if not path.exists():
            return None
        try:
            return LoopRecord.from_dict(json.loads(path.read_text()))
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Cannot read record {loop_id}: {e}")

    def _write(self, record: LoopRecord) -> None:
        path = self._record_path(record.loop_id)
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.root, prefix=f".{record.loop_id}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(record.to_dict(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Cannot write record {record.loop_id}: {e}")

    def save(self, record: LoopRecord) -> None:
        with self._locked():
            existing = self._read(record.loop_id)
            if existing is not None:
                if existing.status.is_terminal:
                    raise TerminalRecordError(
                        f"Record {record.loop_id} is {existing.status.value} and read-only"
                    )
                if existing.owner != record.owner:
                    raise LoopConflictError(
                        f"Record {record.loop_id} is owned by another controller"
                    )
            self._write(record)

    def load(self, loop_id: str) -> Optional[LoopRecord]:
        with self._locked():
            return self._read(loop_id)

    def list_records(self, status: Optional[Status] = None) -> List[LoopRecord]:
        records = []
        with self._locked():
            for path in sorted(self.root.glob("*.json")):
                record = self._read(path.stem)
                if record is None:
                    continue
                if status is None or record.status == status:
                    records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records

    def append_progress(self, loop_id: str, text: str) -> None:
        path = self._progress_path(loop_id)
        with self._locked():
            try:
                with open(path, "a") as f:
                    f.write(text if text.endswith("\n") else text + "\n")
            except OSError as e:
                raise StorageError(f"Cannot append progress for {loop_id}: {e}")

    def read_progress(self, loop_id: str) -> str:
        path = self._progress_path(loop_id)
        with self._locked():
            if not path.exists():
                return ""
            try:
                return path.read_text()
            except OSError as e:
                raise StorageError(f"Cannot read progress for {loop_id}: {e}")

    def compare_and_set_status(
        self,
        loop_id: str,
        expected: Status,
        new: Status,
        owner: Optional[str] = None,
        reason: Optional[str] = None,
        signal: Optional[Signal] = None,
    ) -> bool:
        if expected.is_terminal:
            raise TerminalRecordError(f"Cannot transition out of terminal status {expected.value}")
        with self._locked():
            record = self._read(loop_id)
            if record is None or record.status != expected:
                return False
            record.status = new
            record.owner = owner if new == Status.RUNNING else None
            if reason is not None:
                record.failure_reason = reason
            if signal is not None:
                record.stop_signal = signal
            record.updated_at = utcnow()
            self._write(record)
            return True


# =============================================================================
# RECOVERY SWEEP
# =============================================================================

@dataclass
class RecoveryReport:
    """What the recovery sweep did, by loop id."""
    resumed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def recover_abandoned(
    store: StateStore,
    vcs,
    owners_alive: Optional[Iterable[str]] = None,
    stale_after: Optional[float] = None,
    now: Optional[datetime] = None,
) -> RecoveryReport:
    """
    Recover RUNNING records left behind by a crashed controller.

    Run once at process start, before any new loop is scheduled. Every
    transition goes through compare_and_set_status(), so the sweep never
    touches a record that a live controller has claimed in the meantime.

    Args:
        store: State store to sweep
        vcs: Version-control collaborator (exists / commit)
        owners_alive: Controller tokens known to be alive (default: the
                      controllers registered in this process)
        stale_after: If set, a RUNNING record updated less than this many
                     seconds ago is assumed live and skipped
        now: Clock override for stale_after

    Returns:
        RecoveryReport listing resumed, failed and skipped loop ids
    """
    alive = set(owners_alive) if owners_alive is not None else live_owners()
    now = now or utcnow()
    report = RecoveryReport()

    for record in store.list_records(Status.RUNNING):
        if record.owner and record.owner in alive:
            report.skipped.append(record.loop_id)
            continue
        if stale_after is not None and (now - record.updated_at).total_seconds() < stale_after:
            report.skipped.append(record.loop_id)
            continue

        if vcs.exists(record.workspace):
            message = RECOVERY_COMMIT_TEMPLATE.format(
                loop_id=record.loop_id, cycle=record.cycle_count
            )
            try:
                commit_id = vcs.commit(record.workspace, message)
            except Exception as e:
                # Uncommitted work stays in the workspace for the next controller.
                logger.warning("Recovery checkpoint failed for %s: %s", record.loop_id, e)
                commit_id = None
            if store.compare_and_set_status(record.loop_id, Status.RUNNING, Status.PENDING):
                report.resumed.append(record.loop_id)
                store.append_progress(
                    record.loop_id,
                    f"# Recovered after crash at cycle {record.cycle_count}"
                    f" (checkpoint: {commit_id or 'none'})\n",
                )
                logger.info("Recovered %s to pending", record.loop_id)
            else:
                report.skipped.append(record.loop_id)
        else:
            if store.compare_and_set_status(
                record.loop_id, Status.RUNNING, Status.FAILED, reason=WORKSPACE_LOST_REASON
            ):
                report.failed.append(record.loop_id)
                store.append_progress(
                    record.loop_id,
                    f"# Failed during recovery: workspace {record.workspace} is gone\n",
                )
                logger.warning("Workspace for %s is gone, marked failed", record.loop_id)
            else:
                report.skipped.append(record.loop_id)

    return report
