"""Git plumbing used to checkpoint the workspace after every cycle."""

import subprocess
from pathlib import Path
from typing import List, Optional, Union


class VcsError(Exception):
    """A git command failed."""
    pass


class GitWorkspace:
    """Version-control collaborator backed by the git CLI."""

    def __init__(self, git_binary: str = "git", timeout: float = 60.0):
        self.git_binary = git_binary
        self.timeout = timeout

    def _git(self, workspace: Union[str, Path], *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.git_binary, *args],
                cwd=workspace,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise VcsError(f"git {args[0]} failed: {e}")

    def exists(self, workspace: Union[str, Path]) -> bool:
        """True if the workspace directory is still present."""
        return Path(workspace).is_dir()

    def is_repo(self, workspace: Union[str, Path]) -> bool:
        if not self.exists(workspace):
            return False
        try:
            result = self._git(workspace, "rev-parse", "--git-dir")
        except VcsError:
            return False
        return result.returncode == 0

    def has_changes(self, workspace: Union[str, Path]) -> bool:
        result = self._git(workspace, "status", "--porcelain")
        if result.returncode != 0:
            raise VcsError(f"git status failed: {result.stderr.strip()}")
        return bool(result.stdout.strip())

    def head(self, workspace: Union[str, Path]) -> Optional[str]:
        result = self._git(workspace, "rev-parse", "HEAD")
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def commit(self, workspace: Union[str, Path], message: str) -> Optional[str]:
        """
        Stage everything and commit.

        Returns:
            The new commit id, or None when there was nothing to commit.

        Raises:
            VcsError: If the workspace is not a git repository or git fails
        """
        if not self.is_repo(workspace):
            raise VcsError(f"Not a git repository: {workspace}")
        if not self.has_changes(workspace):
            return None

        add = self._git(workspace, "add", "-A")
        if add.returncode != 0:
            raise VcsError(f"git add failed: {add.stderr.strip()}")

        result = self._git(workspace, "commit", "-m", message)
        if result.returncode != 0:
            output = f"{result.stdout}\n{result.stderr}"
            if "nothing to commit" in output:
                return None
            raise VcsError(f"git commit failed: {result.stderr.strip()}")

        return self.head(workspace)

    def recent_commits(self, workspace: Union[str, Path], count: int = 5) -> List[str]:
        result = self._git(workspace, "log", "--oneline", f"-{count}")
        if result.returncode != 0:
            # Fresh repository without commits yet
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]
