"""Pattern-based quality gates over the checkpointed workspace."""

import fnmatch
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union


# Never scanned: VCS internals and the loop's own state
EXCLUDED_DIRS = {".git", ".rwl", "__pycache__", "node_modules", ".venv", "venv"}

MAX_FILE_BYTES = 2_000_000
MAX_MATCHES_REPORTED = 5


@dataclass(frozen=True)
class QualityGate:
    """
    A mechanical invariant check.

    forbidden=True: the gate fails if the pattern matches anywhere in scope.
    forbidden=False: the gate fails unless the pattern matches somewhere.
    paths: glob patterns (relative to the workspace) limiting the scope.
    """
    name: str
    pattern: str
    forbidden: bool = True
    paths: Tuple[str, ...] = ()

    def compiled(self) -> "re.Pattern[str]":
        return re.compile(self.pattern, re.MULTILINE)


@dataclass
class GateResult:
    name: str
    passed: bool
    matches: List[str] = field(default_factory=list)

    def describe(self) -> str:
        if self.passed:
            return f"{self.name}: passed"
        if self.matches:
            return f"{self.name}: violated at " + "; ".join(self.matches)
        return f"{self.name}: violated (required pattern not found)"


@dataclass
class GateReport:
    results: List[GateResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failed(self) -> List[GateResult]:
        return [r for r in self.results if not r.passed]


def iter_workspace_files(workspace: Path, paths: Sequence[str] = ()) -> Iterator[Path]:
    """Yield regular files in scope, skipping excluded directories."""
    workspace = Path(workspace)
    for path in sorted(workspace.rglob("*")):
        relative = path.relative_to(workspace)
        if any(part in EXCLUDED_DIRS for part in relative.parts):
            continue
        if not path.is_file():
            continue
        if paths and not any(fnmatch.fnmatch(relative.as_posix(), p) for p in paths):
            continue
        yield path


def _read_text(path: Path) -> Optional[str]:
    try:
        if path.stat().st_size > MAX_FILE_BYTES:
            return None
        return path.read_text()
    except (OSError, UnicodeDecodeError):
        # Binary or unreadable files are out of scope for text patterns.
        return None


def check_gate(gate: QualityGate, workspace: Path) -> GateResult:
    """Evaluate a single gate."""
    regex = gate.compiled()
    matches = []
    found = False
    for path in iter_workspace_files(workspace, gate.paths):
        text = _read_text(path)
        if text is None:
            continue
        for match in regex.finditer(text):
            found = True
            if not gate.forbidden:
                break
            line_no = text.count("\n", 0, match.start()) + 1
            matches.append(f"{path.relative_to(workspace).as_posix()}:{line_no}")
            if len(matches) >= MAX_MATCHES_REPORTED:
                break
        if found and (not gate.forbidden or len(matches) >= MAX_MATCHES_REPORTED):
            break

    if gate.forbidden:
        return GateResult(name=gate.name, passed=not found, matches=matches)
    return GateResult(name=gate.name, passed=found)


def evaluate_gates(gates: Iterable[QualityGate], workspace: Union[str, Path]) -> GateReport:
    """Evaluate every gate; an empty gate list passes."""
    workspace = Path(workspace)
    return GateReport(results=[check_gate(gate, workspace) for gate in gates])
