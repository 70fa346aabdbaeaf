"""Read-only observation surface for `rwl status`.

Goal: understand the state of a loop in under 30 seconds.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from rwl.loop_state import LoopRecord, Status, outcome_from_record, describe_outcome, utcnow
from rwl.progress import ProgressEntry
from rwl.vcs import GitWorkspace, VcsError


STATUS_ICONS = {
    Status.PENDING: "·",
    Status.RUNNING: "▶",
    Status.PAUSED: "‖",
    Status.COMPLETE: "✓",
    Status.FAILED: "✗",
    Status.STOPPED: "■",
}

RECENT_ENTRIES = 5


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def format_overview(records: List[LoopRecord]) -> str:
    """One line per loop, oldest first."""
    if not records:
        return "No loops found. Start one with: rwl run --task <text> --loop-id <id>"
    lines = []
    for record in records:
        icon = STATUS_ICONS.get(record.status, "?")
        lines.append(
            f"  {icon} {record.loop_id:<24} {record.status.value:<9}"
            f" cycles={record.cycle_count:<4} updated={record.updated_at.strftime('%Y-%m-%d %H:%M')}"
        )
    return "\n".join(lines)


def format_summary(
    record: LoopRecord,
    recent_commits: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Human-readable summary of one loop.

    Sections: header, state, last cycles (from the bounded feedback),
    recent commits and a verdict line.
    """
    now = now or utcnow()
    lines = [
        "=" * 60,
        f"LOOP SUMMARY: {record.loop_id}",
        "=" * 60,
        "",
        "STATE",
        "-" * 40,
        f"  Status:      {record.status.value}",
        f"  Cycles:      {record.cycle_count}",
        f"  Workspace:   {record.workspace}",
        f"  Created:     {record.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"  Updated:     {format_duration((now - record.updated_at).total_seconds())} ago",
    ]
    if record.tokens_used or record.cost_used:
        lines.append(f"  Usage:       {record.tokens_used} tokens, ${record.cost_used:.4f}")
    if record.owner and record.status == Status.RUNNING:
        lines.append(f"  Owner:       {record.owner}")
    lines.append("")

    entries = [ProgressEntry.from_dict(item) for item in record.feedback]
    lines.append("LAST CYCLES")
    lines.append("-" * 40)
    if entries:
        for entry in entries[-RECENT_ENTRIES:]:
            icon = "✓" if entry.validation_passed and entry.gates_passed else "✗"
            lines.append(f"    {icon} cycle {entry.cycle}: {entry.summary[:70]}")
            for error in entry.errors[:2]:
                lines.append(f"        {error[:70]}")
    else:
        lines.append("  No cycles yet.")
    lines.append("")

    if recent_commits:
        lines.append("RECENT COMMITS")
        lines.append("-" * 40)
        lines.extend(f"    {commit[:72]}" for commit in recent_commits)
        lines.append("")

    lines.append("VERDICT")
    lines.append("-" * 40)
    outcome = outcome_from_record(record)
    if outcome is not None:
        lines.append(f"  {STATUS_ICONS[record.status]} {describe_outcome(outcome).upper()}")
        if record.status == Status.PAUSED:
            lines.append(f"  Resume with: rwl resume {record.loop_id}")
    elif record.status == Status.RUNNING:
        lines.append("  ▶ RUNNING")
    else:
        lines.append(f"  · PENDING - start with: rwl run --loop-id {record.loop_id}")
    lines.append("")
    return "\n".join(lines)


def commits_for(record: LoopRecord, vcs: Optional[GitWorkspace] = None, count: int = 5) -> List[str]:
    """Recent commits in the loop's workspace; empty when it is not a repository."""
    vcs = vcs or GitWorkspace()
    if not vcs.is_repo(Path(record.workspace)):
        return []
    try:
        return vcs.recent_commits(record.workspace, count)
    except VcsError:
        return []
