"""Shared fixtures and deterministic collaborators for the loop tests."""

from pathlib import Path
from typing import List, Optional

import pytest

from rwl.agent import Agent, AgentResponse
from rwl.config import Config, GitSettings, LoopSettings, ValidationSettings
from rwl.controller import LoopController
from rwl.signals import SignalChannel
from rwl.state_store import LocalStateStore
from rwl.validator import ValidationResult
from rwl.vcs import VcsError


PROMISE = "<promise>COMPLETE</promise>"


# =============================================================================
# DOUBLES
# =============================================================================

class ScriptedAgent(Agent):
    """Returns scripted responses in order; the last one repeats.

    A response may be a string (text only), an AgentResponse, or an
    exception instance to raise.
    """

    def __init__(self, *responses, on_call=None):
        self.responses = list(responses) or [""]
        self.messages: List[str] = []
        self.on_call = on_call

    def complete(self, system: str, message: str, timeout: float) -> AgentResponse:
        self.messages.append(message)
        if self.on_call is not None:
            self.on_call(len(self.messages))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return AgentResponse(text=item)
        return item


class FakeValidator:
    """Returns scripted pass/fail results in order; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results) or [True]
        self.calls = 0

    def validate(self, workspace, command, timeout, cancel=None) -> ValidationResult:
        self.calls += 1
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, ValidationResult):
            return item
        if item:
            return ValidationResult(passed=True, output="all tests passed")
        return ValidationResult(
            passed=False,
            output="E   assert 1 == 2\n1 failed",
            errors=["E   assert 1 == 2", "1 failed"],
            exit_code=1,
        )


class FakeVcs:
    """Records commit messages; optionally fails or reports a lost workspace."""

    def __init__(self, workspace_exists: bool = True, fail: bool = False):
        self.workspace_exists = workspace_exists
        self.fail = fail
        self.messages: List[str] = []

    def exists(self, workspace) -> bool:
        return self.workspace_exists

    def commit(self, workspace, message: str) -> Optional[str]:
        if self.fail:
            raise VcsError("git commit failed: simulated")
        self.messages.append(message)
        return f"commit{len(self.messages):04d}"


def make_config(max_cycles: int = 5, cycle_timeout: float = 5.0, **kwargs) -> Config:
    """Config with no sleeping between cycles and a trivial validation command."""
    return Config(
        loop=LoopSettings(
            max_cycles=max_cycles,
            cycle_timeout=cycle_timeout,
            sleep_between=0,
            completion_signal=PROMISE,
        ),
        validation=ValidationSettings(command="true", timeout=5.0),
        git=GitSettings(auto_commit=True),
        **kwargs,
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store(tmp_path: Path) -> LocalStateStore:
    return LocalStateStore(tmp_path / "loops")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def make_controller(store):
    """Factory for a controller wired to the shared store and fakes."""
    def _make(agent, validator=None, config=None, signals=None, vcs=None) -> LoopController:
        return LoopController(
            config=config or make_config(),
            store=store,
            agent=agent,
            vcs=vcs or FakeVcs(),
            validator=validator or FakeValidator(True),
            signals=signals or SignalChannel(),
        )
    return _make
