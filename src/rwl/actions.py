"""Agent actions and the tool executor that applies them to a workspace."""

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Union

from rwl.validator import run_in_session


class UnknownActionError(ValueError):
    """Raised for an action kind the executor does not know."""
    pass


@dataclass(frozen=True)
class ReadFile:
    path: str


@dataclass(frozen=True)
class WriteFile:
    path: str
    content: str


@dataclass(frozen=True)
class Execute:
    command: str
    timeout: float = 120.0


Action = Union[ReadFile, WriteFile, Execute]


@dataclass
class ActionResult:
    """Result of applying one action."""
    success: bool
    output: str = ""


def parse_action(data: Dict[str, Any]) -> Action:
    """
    Build an action from its JSON form.

    Accepted shapes:
        {"kind": "read_file", "path": "..."}
        {"kind": "write_file", "path": "...", "content": "..."}
        {"kind": "execute", "command": "...", "timeout": 60}

    Raises:
        UnknownActionError: If kind is missing or unknown
        ValueError: If a required field is missing
    """
    if not isinstance(data, dict):
        raise ValueError(f"Action must be an object, got {type(data).__name__}")
    kind = data.get("kind")
    try:
        if kind == "read_file":
            return ReadFile(path=str(data["path"]))
        if kind == "write_file":
            return WriteFile(path=str(data["path"]), content=str(data["content"]))
        if kind == "execute":
            return Execute(
                command=str(data["command"]),
                timeout=float(data.get("timeout", 120.0)),
            )
    except KeyError as e:
        raise ValueError(f"Action {kind!r} missing field: {e}")
    raise UnknownActionError(f"Unknown action kind: {kind!r}")


def _resolve_inside(workspace: Path, relative: str) -> Path:
    root = workspace.resolve()
    target = (root / relative).resolve()
    if target != root and root not in target.parents:
        raise PermissionError(f"Path escapes the workspace: {relative}")
    return target


class ToolExecutor:
    """Applies actions to a workspace directory.

    Never raises for a failed action; failures come back as
    ActionResult(success=False) so the controller can stop the rest of the
    cycle's action list.
    """

    def __init__(self, max_output_chars: int = 20000):
        self.max_output_chars = max_output_chars

    def apply(self, action: Action, workspace: Union[str, Path]) -> ActionResult:
        workspace = Path(workspace)
        try:
            if isinstance(action, ReadFile):
                return self._read(action, workspace)
            if isinstance(action, WriteFile):
                return self._write(action, workspace)
            if isinstance(action, Execute):
                return self._execute(action, workspace)
        except (OSError, UnicodeDecodeError) as e:
            return ActionResult(success=False, output=f"{type(e).__name__}: {e}")
        raise UnknownActionError(f"Unsupported action: {action!r}")

    def _read(self, action: ReadFile, workspace: Path) -> ActionResult:
        target = _resolve_inside(workspace, action.path)
        return ActionResult(success=True, output=self._clip(target.read_text()))

    def _write(self, action: WriteFile, workspace: Path) -> ActionResult:
        target = _resolve_inside(workspace, action.path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(action.content)
        return ActionResult(success=True, output=f"wrote {len(action.content)} chars to {action.path}")

    def _execute(self, action: Execute, workspace: Path) -> ActionResult:
        try:
            result = run_in_session(shlex.split(action.command), workspace, action.timeout)
        except subprocess.TimeoutExpired:
            return ActionResult(
                success=False,
                output=f"Command timed out after {action.timeout:g} seconds: {action.command}",
            )
        except ValueError as e:
            return ActionResult(success=False, output=f"Cannot parse command: {e}")
        output = self._clip(f"{result.stdout}\n{result.stderr}".strip())
        return ActionResult(success=result.returncode == 0, output=output)

    def _clip(self, text: str) -> str:
        if len(text) <= self.max_output_chars:
            return text
        return text[: self.max_output_chars] + f"\n... ({len(text)} chars total)"
