"""External validation of the workspace after each cycle.

The validation command (test runner, linter, build) is the external half of
the success condition. It never raises: a timeout, a cancellation or a
command that cannot start all come back as a failed ValidationResult.
"""

import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union


TIMEOUT_MARKER = "[rwl] validation timed out"
CANCELLED_MARKER = "[rwl] validation cancelled"

# Lines that usually carry the actionable part of a failing run
ERROR_LINE_PATTERNS = [
    r"\berror\b",
    r"\bfail(ed)?\b",
    r"^E\s+",                 # pytest assertion detail
    r"traceback \(most recent call last\)",
    r"\bpanicked at\b",
    r"\bassertionerror\b",
]
_ERROR_LINE_RE = re.compile("|".join(ERROR_LINE_PATTERNS), re.IGNORECASE)

MAX_ERROR_LINES = 50
POLL_INTERVAL_S = 0.2


@dataclass
class ValidationResult:
    """Result of one validation run. Produced fresh every cycle."""
    passed: bool
    output: str
    errors: List[str] = field(default_factory=list)
    exit_code: int = 0
    timed_out: bool = False


def extract_error_lines(output: str, limit: int = MAX_ERROR_LINES) -> List[str]:
    """Return error-looking lines from output, in order, without duplicates."""
    seen = set()
    lines = []
    for raw in output.splitlines():
        line = raw.rstrip()
        if not line.strip() or line in seen:
            continue
        if _ERROR_LINE_RE.search(line):
            seen.add(line)
            lines.append(line)
            if len(lines) >= limit:
                break
    return lines


def kill_group(proc: subprocess.Popen) -> None:
    """Kill the process and everything it spawned (it leads its own session)."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def run_in_session(
    args: List[str],
    cwd: Union[str, Path],
    timeout: float,
) -> subprocess.CompletedProcess:
    """
    Like subprocess.run with captured text output, but the child leads a new
    session and a timeout kills the whole process group, so nothing it spawned
    keeps touching the workspace afterwards.

    Undecodable output bytes are replaced rather than raising.

    Raises:
        subprocess.TimeoutExpired: After the group has been killed
        OSError: If the program cannot be started
    """
    with subprocess.Popen(
        args,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,
    ) as proc:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            kill_group(proc)
            proc.communicate()
            raise
    return subprocess.CompletedProcess(args, proc.returncode, stdout, stderr)


class ShellValidator:
    """Runs the validation command through the shell inside the workspace."""

    def __init__(self, shell: str = "sh"):
        self.shell = shell

    def validate(
        self,
        workspace: Union[str, Path],
        command: str,
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> ValidationResult:
        """
        Run the validation command.

        Args:
            workspace: Directory to run in
            command: Shell command; exit code 0 means pass
            timeout: Seconds before the process group is killed
            cancel: Optional event; when set, the run is killed early

        Returns:
            ValidationResult. Never raises.
        """
        try:
            proc = subprocess.Popen(
                [self.shell, "-c", command],
                cwd=workspace,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            message = f"Cannot start validation command: {e}"
            return ValidationResult(passed=False, output=message, errors=[message], exit_code=-1)

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._abort(proc, TIMEOUT_MARKER + f" after {timeout:g} seconds", timed_out=True)
            if cancel is not None and cancel.is_set():
                return self._abort(proc, CANCELLED_MARKER, timed_out=False)
            try:
                output, _ = proc.communicate(timeout=min(POLL_INTERVAL_S, remaining))
                break
            except subprocess.TimeoutExpired:
                continue

        output = output or ""
        passed = proc.returncode == 0
        return ValidationResult(
            passed=passed,
            output=output,
            errors=[] if passed else extract_error_lines(output),
            exit_code=proc.returncode,
        )

    def _abort(self, proc: subprocess.Popen, marker: str, timed_out: bool) -> ValidationResult:
        kill_group(proc)
        try:
            partial, _ = proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            partial = ""
        output = f"{partial or ''}\n{marker}".strip()
        errors = extract_error_lines(partial or "")
        errors.append(marker)
        return ValidationResult(
            passed=False,
            output=output,
            errors=errors,
            exit_code=-1,
            timed_out=timed_out,
        )
