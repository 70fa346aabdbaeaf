"""Bounded, append-only feedback carried from one cycle to the next.

Each cycle starts with a fresh agent context, so the rendered feedback is the
only thing the agent learns about earlier cycles. The tracker keeps it bounded
by entry count and by characters; on overflow the oldest entries go first and
the most recent entry is always kept.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from rwl.constants import (
    DEFAULT_PROGRESS_MAX_CHARS,
    DEFAULT_PROGRESS_MAX_ENTRIES,
    MAX_ERROR_LINES_PER_ENTRY,
    MAX_OUTPUT_LINES_PER_ENTRY,
)
from rwl.loop_state import utcnow


@dataclass
class ProgressEntry:
    """Outcome of a single cycle."""
    cycle: int
    promise_found: bool
    validation_passed: bool
    gates_passed: bool
    summary: str
    errors: List[str] = field(default_factory=list)
    # Lines reported by successful actions (file contents read, command output)
    outputs: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "promise_found": self.promise_found,
            "validation_passed": self.validation_passed,
            "gates_passed": self.gates_passed,
            "summary": self.summary,
            "errors": list(self.errors),
            "outputs": list(self.outputs),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressEntry":
        return cls(
            cycle=int(data["cycle"]),
            promise_found=bool(data["promise_found"]),
            validation_passed=bool(data["validation_passed"]),
            gates_passed=bool(data["gates_passed"]),
            summary=data.get("summary", ""),
            errors=list(data.get("errors") or []),
            outputs=list(data.get("outputs") or []),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


def format_log_entry(entry: ProgressEntry) -> str:
    """
    Render one entry as a progress-log block.

    Format:
        ## Cycle N
        Timestamp: ...
        Validation: PASSED | FAILED
        Promise: FOUND | NOT FOUND
        Gates: PASSED | FAILED
        Summary: ...
        Errors:
          <error line>
        Actions:
          <action output line>
    """
    lines = [
        f"## Cycle {entry.cycle}",
        f"Timestamp: {entry.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        f"Validation: {'PASSED' if entry.validation_passed else 'FAILED'}",
        f"Promise: {'FOUND' if entry.promise_found else 'NOT FOUND'}",
        f"Gates: {'PASSED' if entry.gates_passed else 'FAILED'}",
        f"Summary: {entry.summary}",
    ]
    if entry.errors:
        lines.append("Errors:")
        lines.extend(f"  {line}" for line in entry.errors)
    if entry.outputs:
        lines.append("Actions:")
        lines.extend(f"  {line}" for line in entry.outputs)
    return "\n".join(lines) + "\n"


class ProgressTracker:
    """Ordered cycle feedback with oldest-first eviction."""

    def __init__(
        self,
        max_entries: Optional[int] = DEFAULT_PROGRESS_MAX_ENTRIES,
        max_chars: Optional[int] = DEFAULT_PROGRESS_MAX_CHARS,
        entries: Optional[Iterable[ProgressEntry]] = None,
    ):
        """
        Args:
            max_entries: Keep at most this many entries (None = unbounded)
            max_chars: Keep the rendered text at most this long, except that
                       the most recent entry is never evicted (None = unbounded)
            entries: Entries restored from a persisted record, oldest first
        """
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if max_chars is not None and max_chars < 1:
            raise ValueError("max_chars must be at least 1")
        self.max_entries = max_entries
        self.max_chars = max_chars
        self._entries: List[ProgressEntry] = []
        self.evicted = 0
        for entry in entries or []:
            self._entries.append(entry)
        self._evict()

    @property
    def entries(self) -> List[ProgressEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: ProgressEntry) -> None:
        """Append an entry, then apply the eviction policy."""
        if self._entries and entry.cycle < self._entries[-1].cycle:
            raise ValueError(
                f"Entry for cycle {entry.cycle} is older than the latest "
                f"entry (cycle {self._entries[-1].cycle})"
            )
        errors = entry.errors[:MAX_ERROR_LINES_PER_ENTRY]
        if len(entry.errors) > MAX_ERROR_LINES_PER_ENTRY:
            errors.append(f"... {len(entry.errors) - MAX_ERROR_LINES_PER_ENTRY} more error line(s)")
        entry.errors = errors
        outputs = entry.outputs[:MAX_OUTPUT_LINES_PER_ENTRY]
        if len(entry.outputs) > MAX_OUTPUT_LINES_PER_ENTRY:
            outputs.append(f"... {len(entry.outputs) - MAX_OUTPUT_LINES_PER_ENTRY} more output line(s)")
        entry.outputs = outputs
        self._entries.append(entry)
        self._evict()

    def render(self) -> str:
        """Feedback text inserted verbatim into the next outbound message."""
        return "\n".join(format_log_entry(entry) for entry in self._entries)

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    @classmethod
    def from_list(
        cls,
        data: Iterable[Dict[str, Any]],
        max_entries: Optional[int] = DEFAULT_PROGRESS_MAX_ENTRIES,
        max_chars: Optional[int] = DEFAULT_PROGRESS_MAX_CHARS,
    ) -> "ProgressTracker":
        return cls(
            max_entries=max_entries,
            max_chars=max_chars,
            entries=[ProgressEntry.from_dict(item) for item in data],
        )

    def _evict(self) -> None:
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                self._entries.pop(0)
                self.evicted += 1
        if self.max_chars is not None:
            while len(self._entries) > 1 and len(self.render()) > self.max_chars:
                self._entries.pop(0)
                self.evicted += 1
