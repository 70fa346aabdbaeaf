"""Control record, status and outcome types for the iteration loop."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Status(str, Enum):
    """Lifecycle status of a loop control record."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({Status.COMPLETE, Status.FAILED, Status.STOPPED})


class Signal(str, Enum):
    """Out-of-band notifications read by the controller at cycle boundaries."""
    STOP = "stop"
    PAUSE = "pause"
    RESUME = "resume"
    INVALIDATE = "invalidate"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LoopRecord:
    """Durable control record for one loop instance.

    Mutated only by the controller currently holding RUNNING for loop_id.
    """
    loop_id: str
    task: str
    workspace: str
    status: Status = Status.PENDING
    cycle_count: int = 0
    feedback: List[Dict[str, Any]] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    failure_reason: Optional[str] = None
    stop_signal: Optional[Signal] = None
    owner: Optional[str] = None
    tokens_used: int = 0
    cost_used: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "loop_id": self.loop_id,
            "task": self.task,
            "workspace": self.workspace,
            "status": self.status.value,
            "cycle_count": self.cycle_count,
            "feedback": [dict(entry) for entry in self.feedback],
            "artifacts": list(self.artifacts),
            "failure_reason": self.failure_reason,
            "stop_signal": self.stop_signal.value if self.stop_signal else None,
            "owner": self.owner,
            "tokens_used": self.tokens_used,
            "cost_used": self.cost_used,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoopRecord":
        """Build a record from the output of to_dict()."""
        stop_signal = data.get("stop_signal")
        return cls(
            loop_id=data["loop_id"],
            task=data["task"],
            workspace=data["workspace"],
            status=Status(data["status"]),
            cycle_count=int(data.get("cycle_count", 0)),
            feedback=[dict(entry) for entry in data.get("feedback") or []],
            artifacts=list(data.get("artifacts") or []),
            failure_reason=data.get("failure_reason"),
            stop_signal=Signal(stop_signal) if stop_signal else None,
            owner=data.get("owner"),
            tokens_used=int(data.get("tokens_used") or 0),
            cost_used=float(data.get("cost_used") or 0.0),
            created_at=_parse_timestamp(data["created_at"]),
            updated_at=_parse_timestamp(data["updated_at"]),
        )


def _parse_timestamp(value: Union[str, datetime]) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class Complete:
    """Validation passed, the completion token was found and every gate held."""
    cycles: int
    artifacts: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Failed:
    reason: str
    cycles: int


@dataclass(frozen=True)
class Stopped:
    """Terminated (or paused) by an out-of-band signal."""
    signal: Signal
    cycles: int

    @property
    def resumable(self) -> bool:
        return self.signal == Signal.PAUSE


Outcome = Union[Complete, Failed, Stopped]


def outcome_from_record(record: LoopRecord) -> Optional[Outcome]:
    """Reconstruct the outcome of a terminal or paused record, else None."""
    if record.status == Status.COMPLETE:
        return Complete(cycles=record.cycle_count, artifacts=list(record.artifacts))
    if record.status == Status.FAILED:
        return Failed(
            reason=record.failure_reason or "failed",
            cycles=record.cycle_count,
        )
    if record.status == Status.STOPPED:
        return Stopped(
            signal=record.stop_signal or Signal.STOP,
            cycles=record.cycle_count,
        )
    if record.status == Status.PAUSED:
        return Stopped(signal=Signal.PAUSE, cycles=record.cycle_count)
    return None


def describe_outcome(outcome: Outcome) -> str:
    """One-line human-readable description of an outcome."""
    if isinstance(outcome, Complete):
        return f"complete after {outcome.cycles} cycle(s)"
    if isinstance(outcome, Failed):
        return f"failed after {outcome.cycles} cycle(s): {outcome.reason}"
    if isinstance(outcome, Stopped):
        verb = "paused" if outcome.resumable else f"stopped ({outcome.signal.value})"
        return f"{verb} after {outcome.cycles} cycle(s)"
    raise TypeError(f"Unknown outcome: {outcome!r}")
