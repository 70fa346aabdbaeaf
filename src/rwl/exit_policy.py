"""Exit decision for a single cycle.

Pure function, no side effects. Precedence, strictly in this order:

1. A pending signal (the controller handles it before any agent call, so
   decide() only sees it when called directly).
2. Success: validation passed AND promise found AND all gates passed.
3. Validation passed AND promise found but a gate failed: a normal failed
   cycle with explicit gate feedback.
4. cycle >= max_cycles: Failed("max iterations exhausted").
5. Token or cost budget exhausted: Failed naming the limit.
6. Otherwise continue.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from rwl.loop_state import Signal


MAX_ITERATIONS_REASON = "max iterations exhausted"

CONTINUE = "continue"
COMPLETE = "complete"
FAILED = "failed"
STOPPED = "stopped"


@dataclass(frozen=True)
class CycleFacts:
    """Everything the policy needs to know about the cycle just run."""
    cycle: int
    max_cycles: int
    validation_passed: bool
    promise_found: bool
    gates_passed: bool = True
    failed_gates: List[str] = field(default_factory=list)
    signal: Optional[Signal] = None
    agent_error: Optional[str] = None
    tokens_used: int = 0
    max_tokens: Optional[int] = None
    cost_used: float = 0.0
    max_cost: Optional[float] = None


@dataclass(frozen=True)
class Decision:
    kind: str  # continue | complete | failed | stopped
    feedback: str
    reason: Optional[str] = None
    signal: Optional[Signal] = None

    @property
    def terminal(self) -> bool:
        return self.kind != CONTINUE


def cycle_feedback(facts: CycleFacts) -> str:
    """Feedback line for the four-way validation x promise table."""
    if facts.agent_error:
        return f"agent call failed: {facts.agent_error}"
    if facts.validation_passed and facts.promise_found:
        if facts.gates_passed:
            return "complete"
        names = ", ".join(f"`{name}`" for name in facts.failed_gates) or "`unknown`"
        return f"gate {names} violated"
    if facts.validation_passed:
        return "validation passed but completion signal not found"
    if facts.promise_found:
        return "claimed complete but validation failed"
    return "validation failed"


def decide(facts: CycleFacts) -> Decision:
    """Map the facts of a cycle to a terminal decision or continue."""
    if facts.signal is not None and facts.signal != Signal.RESUME:
        return Decision(
            kind=STOPPED,
            feedback=f"stopped by {facts.signal.value} signal",
            signal=facts.signal,
        )

    feedback = cycle_feedback(facts)

    if facts.validation_passed and facts.promise_found and facts.gates_passed:
        return Decision(kind=COMPLETE, feedback=feedback)

    if facts.cycle >= facts.max_cycles:
        return Decision(kind=FAILED, feedback=feedback, reason=MAX_ITERATIONS_REASON)

    if facts.max_tokens is not None and facts.tokens_used >= facts.max_tokens:
        return Decision(
            kind=FAILED,
            feedback=feedback,
            reason=f"token limit exhausted ({facts.tokens_used}/{facts.max_tokens})",
        )

    if facts.max_cost is not None and facts.cost_used >= facts.max_cost:
        return Decision(
            kind=FAILED,
            feedback=feedback,
            reason=f"cost limit exhausted ({facts.cost_used:.4f}/{facts.max_cost:.4f})",
        )

    return Decision(kind=CONTINUE, feedback=feedback)
