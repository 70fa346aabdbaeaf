"""Tests for the exit decision (pure function, exhaustive over its inputs)."""

import itertools

import pytest

from rwl.exit_policy import (
    COMPLETE,
    CONTINUE,
    FAILED,
    MAX_ITERATIONS_REASON,
    STOPPED,
    CycleFacts,
    cycle_feedback,
    decide,
)
from rwl.loop_state import Signal


# =============================================================================
# TESTS - Truth table
# =============================================================================

SIGNALS = [None, Signal.STOP, Signal.PAUSE, Signal.RESUME, Signal.INVALIDATE]


@pytest.mark.parametrize(
    "validation_passed,promise_found,gates_passed,at_max,signal",
    list(itertools.product([True, False], [True, False], [True, False], [True, False], SIGNALS)),
)
def test_precedence_truth_table(validation_passed, promise_found, gates_passed, at_max, signal):
    """Signal > success > max cycles > continue, for every combination."""
    facts = CycleFacts(
        cycle=5 if at_max else 2,
        max_cycles=5,
        validation_passed=validation_passed,
        promise_found=promise_found,
        gates_passed=gates_passed,
        failed_gates=[] if gates_passed else ["no_todos"],
        signal=signal,
    )
    decision = decide(facts)

    if signal is not None and signal != Signal.RESUME:
        assert decision.kind == STOPPED
        assert decision.signal == signal
    elif validation_passed and promise_found and gates_passed:
        assert decision.kind == COMPLETE
    elif at_max:
        assert decision.kind == FAILED
        assert decision.reason == MAX_ITERATIONS_REASON
    else:
        assert decision.kind == CONTINUE
        assert decision.terminal is False


# =============================================================================
# TESTS - Feedback text
# =============================================================================

class TestCycleFeedback:
    """The four-way validation x promise table, plus gates and agent errors."""

    def _facts(self, **kwargs):
        base = dict(cycle=1, max_cycles=10, validation_passed=False, promise_found=False)
        base.update(kwargs)
        return CycleFacts(**base)

    def test_both_true(self):
        assert cycle_feedback(self._facts(validation_passed=True, promise_found=True)) == "complete"

    def test_validation_only(self):
        feedback = cycle_feedback(self._facts(validation_passed=True))
        assert feedback == "validation passed but completion signal not found"

    def test_promise_only(self):
        feedback = cycle_feedback(self._facts(promise_found=True))
        assert feedback == "claimed complete but validation failed"

    def test_neither(self):
        assert cycle_feedback(self._facts()) == "validation failed"

    def test_gate_violation_names_every_gate(self):
        facts = self._facts(
            validation_passed=True,
            promise_found=True,
            gates_passed=False,
            failed_gates=["no_todos", "no_print"],
        )
        assert cycle_feedback(facts) == "gate `no_todos`, `no_print` violated"

    def test_agent_error_wins(self):
        facts = self._facts(agent_error="timed out", validation_passed=True, promise_found=True)
        assert cycle_feedback(facts) == "agent call failed: timed out"


# =============================================================================
# TESTS - Budgets
# =============================================================================

class TestBudgets:

    def test_gate_failure_continues_before_max(self):
        decision = decide(CycleFacts(
            cycle=1, max_cycles=3, validation_passed=True, promise_found=True,
            gates_passed=False, failed_gates=["g"],
        ))
        assert decision.kind == CONTINUE
        assert decision.feedback == "gate `g` violated"

    def test_success_on_last_cycle_is_complete(self):
        decision = decide(CycleFacts(cycle=3, max_cycles=3, validation_passed=True, promise_found=True))
        assert decision.kind == COMPLETE

    def test_token_limit(self):
        decision = decide(CycleFacts(
            cycle=1, max_cycles=10, validation_passed=False, promise_found=False,
            tokens_used=500, max_tokens=500,
        ))
        assert decision.kind == FAILED
        assert decision.reason == "token limit exhausted (500/500)"

    def test_cost_limit(self):
        decision = decide(CycleFacts(
            cycle=1, max_cycles=10, validation_passed=False, promise_found=False,
            cost_used=1.5, max_cost=1.0,
        ))
        assert decision.kind == FAILED
        assert decision.reason.startswith("cost limit exhausted")

    def test_max_cycles_reported_before_budget(self):
        decision = decide(CycleFacts(
            cycle=10, max_cycles=10, validation_passed=False, promise_found=False,
            tokens_used=999, max_tokens=1,
        ))
        assert decision.reason == MAX_ITERATIONS_REASON

    def test_under_budget_continues(self):
        decision = decide(CycleFacts(
            cycle=1, max_cycles=10, validation_passed=False, promise_found=False,
            tokens_used=10, max_tokens=100, cost_used=0.1, max_cost=1.0,
        ))
        assert decision.kind == CONTINUE
