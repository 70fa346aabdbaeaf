"""Agent interface and implementations.

An agent call is stateless: one system prompt and one user message in, one
response out. No conversation history is sent or kept.
"""

import json
import logging
import os
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from rwl.actions import Action, parse_action
from rwl.validator import run_in_session


logger = logging.getLogger(__name__)


ACTIONS_INSTRUCTIONS = """
To change the workspace, end your reply with ONE fenced ```json block holding
a list of actions, applied in order:

```json
[
  {"kind": "write_file", "path": "relative/path.py", "content": "..."},
  {"kind": "read_file", "path": "relative/path.py"},
  {"kind": "execute", "command": "python -m pytest -x", "timeout": 120}
]
```

Output of successful actions (file contents, command output) is shown to you
in the progress feedback of the next cycle.
"""


@dataclass
class AgentResponse:
    """Text and actions returned by one agent call."""
    text: str
    actions: List[Action] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None

    @property
    def total_tokens(self) -> int:
        if not self.usage:
            return 0
        total = self.usage.get("total_tokens")
        if total is None:
            total = (self.usage.get("prompt_tokens") or 0) + (self.usage.get("completion_tokens") or 0)
        return int(total or 0)

    @property
    def cost(self) -> float:
        if not self.usage:
            return 0.0
        return float(self.usage.get("cost") or 0.0)


class AgentError(Exception):
    """Error from an agent call (network, API, process, or malformed output)."""
    pass


class Agent(ABC):
    """Abstract interface for the coding agent."""

    @abstractmethod
    def complete(self, system: str, message: str, timeout: float) -> AgentResponse:
        """
        Run one stateless agent call.

        Args:
            system: System prompt
            message: The single user message for this cycle
            timeout: Seconds before the call is abandoned

        Returns:
            AgentResponse with text and actions

        Raises:
            AgentError: On any failure
        """
        pass


# =============================================================================
# ACTION PARSING
# =============================================================================

_JSON_BLOCK_RE = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def parse_agent_actions(text: str) -> List[Action]:
    """
    Extract actions from the last ```json block that holds a list.

    Returns an empty list when there is no such block.

    Raises:
        AgentError: If the block is not valid JSON or holds an invalid action
    """
    blocks = _JSON_BLOCK_RE.findall(text or "")
    for block in reversed(blocks):
        try:
            data = json.loads(block)
        except json.JSONDecodeError as e:
            raise AgentError(f"Actions block is not valid JSON: {str(e)[:100]}")
        if not isinstance(data, list):
            continue
        try:
            return [parse_action(item) for item in data]
        except ValueError as e:
            raise AgentError(f"Invalid action: {e}")
    return []


# =============================================================================
# OPENROUTER
# =============================================================================

class OpenRouterAgent(Agent):
    """Agent backed by the OpenRouter chat completions endpoint.

    API docs: https://openrouter.ai/docs
    """

    BASE_URL = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        max_tokens: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            model: Model identifier (e.g. "anthropic/claude-sonnet-4.5")
            api_key: OpenRouter API key; defaults to OPENROUTER_API_KEY
            max_tokens: Output token cap per call (None = model default)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.model = model
        self.api_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not self.api_key:
            raise AgentError("OPENROUTER_API_KEY environment variable is required.")
        self.max_tokens = max_tokens
        self.transport = transport

    def _make_request(self, payload: dict, headers: dict, timeout: float) -> dict:
        with httpx.Client(timeout=timeout, transport=self.transport) as client:
            response = client.post(self.BASE_URL, headers=headers, json=payload)
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError:
                raise AgentError(f"API response is not valid JSON: {response.text[:200]!r}")
        if not isinstance(data, dict):
            raise AgentError(f"Unexpected API response: {str(data)[:200]}")
        return data

    def complete(self, system: str, message: str, timeout: float) -> AgentResponse:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "rwl",
        }
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system + "\n" + ACTIONS_INSTRUCTIONS},
                {"role": "user", "content": message},
            ],
            "usage": {"include": True},
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens

        try:
            data = self._make_request(payload, headers, timeout)
        except httpx.HTTPStatusError as e:
            try:
                error_msg = e.response.json().get("error", {}).get("message", str(e))
            except ValueError:
                error_msg = str(e)
            raise AgentError(f"API error: {error_msg}")
        except httpx.TimeoutException:
            raise AgentError(f"Request timed out after {timeout:g}s")
        except httpx.RequestError as e:
            raise AgentError(f"Network error: {e}")

        choices = data.get("choices") or []
        if not choices:
            raise AgentError("No choices in API response")
        content = (choices[0].get("message") or {}).get("content") or ""
        if not content:
            raise AgentError("Empty content in API response")

        return AgentResponse(
            text=content,
            actions=parse_agent_actions(content),
            usage=data.get("usage"),
        )


# =============================================================================
# CLAUDE CLI
# =============================================================================

class ClaudeCliAgent(Agent):
    """Agent backed by the `claude` CLI running inside the workspace.

    The CLI edits files itself, so the response carries no actions.
    """

    def __init__(
        self,
        workspace: Path,
        model: str,
        skip_permissions: bool = True,
        binary: str = "claude",
    ):
        self.workspace = Path(workspace)
        self.model = model
        self.skip_permissions = skip_permissions
        self.binary = binary

    def complete(self, system: str, message: str, timeout: float) -> AgentResponse:
        if shutil.which(self.binary) is None:
            raise AgentError(f"{self.binary} CLI not found on PATH")

        cmd = [
            self.binary,
            "--print",
            "--model", self.model,
            "--append-system-prompt", system,
        ]
        if self.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        cmd.append(message)

        try:
            result = run_in_session(cmd, self.workspace, timeout)
        except subprocess.TimeoutExpired:
            raise AgentError(f"{self.binary} timed out after {timeout:g}s")
        except OSError as e:
            raise AgentError(f"Cannot run {self.binary}: {e}")

        if result.returncode != 0:
            raise AgentError(
                f"{self.binary} exited with {result.returncode}: {result.stderr.strip()[:500]}"
            )
        return AgentResponse(text=result.stdout)


# =============================================================================
# TRACING
# =============================================================================

class TracedAgent(Agent):
    """Wraps an agent so every call shows up as a LangSmith span."""

    def __init__(self, inner: Agent, loop_id: str = ""):
        self.inner = inner
        self.loop_id = loop_id

    def complete(self, system: str, message: str, timeout: float) -> AgentResponse:
        from langsmith import traceable

        model = getattr(self.inner, "model", type(self.inner).__name__)
        captured: Dict[str, AgentResponse] = {}

        @traceable(
            name=f"cycle_{str(model).replace('/', '_')}",
            run_type="llm",
            metadata={"loop_id": self.loop_id, "model": model},
        )
        def _traced_call(system_input: str, message_input: str) -> dict:
            response = self.inner.complete(system_input, message_input, timeout)
            captured["response"] = response
            # JSON-serializable output for the trace
            return {
                "text": response.text,
                "actions": len(response.actions),
                "usage": response.usage,
            }

        _traced_call(system, message)
        return captured["response"]
