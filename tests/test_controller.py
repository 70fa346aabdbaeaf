"""Tests for the loop controller (fake agent, validator and vcs; real local store)."""

import threading
from dataclasses import replace

import pytest

from rwl.actions import Execute, ReadFile, WriteFile
from rwl.agent import AgentError, AgentResponse
from rwl.config import GitSettings, LimitSettings
from rwl.controller import LoopController, promise_found
from rwl.exit_policy import MAX_ITERATIONS_REASON
from rwl.gates import QualityGate
from rwl.loop_state import Complete, Failed, Signal, Status, Stopped
from rwl.signals import SignalChannel, resume_loop
from rwl.state_store import LocalStateStore, LoopConflictError, StorageError

from conftest import PROMISE, FakeValidator, FakeVcs, ScriptedAgent, make_config


# =============================================================================
# TESTS - Completion token matching
# =============================================================================

class TestPromiseFound:
    """The completion token must be a whole line after trimming."""

    def test_exact_line(self):
        assert promise_found(f"done\n{PROMISE}\n", PROMISE) is True

    def test_surrounding_whitespace_is_trimmed(self):
        assert promise_found(f"done\n   {PROMISE}  \t\n", PROMISE) is True

    def test_embedded_in_sentence_does_not_count(self):
        assert promise_found(f"I will print {PROMISE} when done", PROMISE) is False

    def test_absent(self):
        assert promise_found("still working", PROMISE) is False

    def test_empty_text(self):
        assert promise_found("", PROMISE) is False


# =============================================================================
# TESTS - Scenarios
# =============================================================================

class TestLoopScenarios:
    """End-to-end loop behaviour against a real local store."""

    def test_completes_when_validation_eventually_passes(self, make_controller, store, workspace):
        """Promise every cycle, validation fails twice then passes: Complete after 3."""
        agent = ScriptedAgent(f"working\n{PROMISE}")
        validator = FakeValidator(False, False, True)
        controller = make_controller(agent, validator)

        outcome = controller.run("loop-a", task="build it", workspace=str(workspace))

        assert isinstance(outcome, Complete)
        assert outcome.cycles == 3
        assert len(outcome.artifacts) == 3

        record = store.load("loop-a")
        assert record.status == Status.COMPLETE
        assert record.cycle_count == 3
        assert len(record.feedback) == 3
        assert record.feedback[0]["summary"] == "claimed complete but validation failed"
        assert record.feedback[-1]["summary"] == "complete"

    def test_feedback_reaches_next_message(self, make_controller, workspace):
        """The second message carries the first cycle's failure; no raw agent text."""
        agent = ScriptedAgent("first attempt", f"second attempt\n{PROMISE}")
        validator = FakeValidator(False, True)
        controller = make_controller(agent, validator)

        controller.run("loop-feedback", task="build it", workspace=str(workspace))

        assert "(no previous cycles)" in agent.messages[0]
        assert "## Cycle 1" in agent.messages[1]
        assert "E   assert 1 == 2" in agent.messages[1]
        assert "first attempt" not in agent.messages[1]

    def test_never_claims_complete_exhausts_max_cycles(self, make_controller, store, workspace):
        """Validation passes but the token never appears: Failed after max cycles."""
        agent = ScriptedAgent("all good, nothing else to say")
        controller = make_controller(agent, FakeValidator(True), config=make_config(max_cycles=3))

        outcome = controller.run("loop-b", task="build it", workspace=str(workspace))

        assert outcome == Failed(reason=MAX_ITERATIONS_REASON, cycles=3)
        log = store.read_progress("loop-b")
        assert log.count("## Cycle") == 3
        assert "validation passed but completion signal not found" in log
        assert store.load("loop-b").failure_reason == MAX_ITERATIONS_REASON

    def test_validation_never_passes_exhausts_max_cycles(self, make_controller, store, workspace):
        """Validation fails every cycle: Failed after max cycles, one failure entry each."""
        agent = ScriptedAgent(PROMISE)
        controller = make_controller(agent, FakeValidator(False), config=make_config(max_cycles=3))

        outcome = controller.run("loop-red", task="build it", workspace=str(workspace))

        assert outcome == Failed(reason=MAX_ITERATIONS_REASON, cycles=3)
        feedback = store.load("loop-red").feedback
        assert [entry["validation_passed"] for entry in feedback] == [False, False, False]
        assert store.read_progress("loop-red").count("Validation: FAILED") == 3

    def test_stop_signal_takes_effect_at_next_boundary(self, make_controller, store, workspace):
        """Stop sent during cycle 2 ends the loop after cycle 2."""
        signals = SignalChannel()

        def on_call(count):
            if count == 2:
                signals.send(Signal.STOP)

        agent = ScriptedAgent("not yet", on_call=on_call)
        controller = make_controller(agent, FakeValidator(False), signals=signals)

        outcome = controller.run("loop-c", task="build it", workspace=str(workspace))

        assert outcome == Stopped(signal=Signal.STOP, cycles=2)
        assert len(agent.messages) == 2
        record = store.load("loop-c")
        assert record.status == Status.STOPPED
        assert record.stop_signal == Signal.STOP

    def test_pending_stop_preempts_a_cycle_that_would_succeed(self, make_controller, workspace):
        """A signal already pending means no agent call at all."""
        signals = SignalChannel()
        signals.send(Signal.STOP)
        agent = ScriptedAgent(PROMISE)
        controller = make_controller(agent, FakeValidator(True), signals=signals)

        outcome = controller.run("loop-preempt", task="build it", workspace=str(workspace))

        assert outcome == Stopped(signal=Signal.STOP, cycles=0)
        assert agent.messages == []

    def test_pause_then_resume_continues_from_same_cycle(self, make_controller, store, workspace):
        """Pause after cycle 1, resume, continue at cycle 2 with prior feedback."""
        signals = SignalChannel()
        first_agent = ScriptedAgent("not yet", on_call=lambda n: signals.send(Signal.PAUSE))
        controller = make_controller(first_agent, FakeValidator(False), signals=signals)

        outcome = controller.run("loop-d", task="build it", workspace=str(workspace))

        assert outcome == Stopped(signal=Signal.PAUSE, cycles=1)
        assert outcome.resumable
        assert store.load("loop-d").status == Status.PAUSED

        # A paused record cannot be started without a resume
        with pytest.raises(LoopConflictError, match="resume"):
            make_controller(ScriptedAgent(PROMISE)).run("loop-d")

        assert resume_loop(store, "loop-d") is True
        second_agent = ScriptedAgent(PROMISE)
        outcome = make_controller(second_agent, FakeValidator(True)).run("loop-d")

        assert outcome == Complete(cycles=2, artifacts=outcome.artifacts)
        assert "## Cycle 1" in second_agent.messages[0]
        assert store.load("loop-d").cycle_count == 2

    def test_invalidate_signal_is_terminal(self, make_controller, store, workspace):
        signals = SignalChannel()
        signals.send(Signal.INVALIDATE)
        controller = make_controller(ScriptedAgent("x"), signals=signals)

        outcome = controller.run("loop-inv", task="build it", workspace=str(workspace))

        assert outcome == Stopped(signal=Signal.INVALIDATE, cycles=0)
        assert store.load("loop-inv").status == Status.STOPPED

    def test_resume_signal_while_running_is_ignored(self, make_controller, workspace):
        signals = SignalChannel()
        signals.send(Signal.RESUME)
        controller = make_controller(ScriptedAgent(PROMISE), FakeValidator(True), signals=signals)

        outcome = controller.run("loop-resume", task="build it", workspace=str(workspace))

        assert isinstance(outcome, Complete)


# =============================================================================
# TESTS - Record lifecycle
# =============================================================================

class TestRecordLifecycle:
    """Creation, terminal immutability and single ownership."""

    def test_terminal_record_returns_stored_outcome(self, make_controller, store, workspace):
        make_controller(ScriptedAgent(PROMISE)).run("loop-t", task="t", workspace=str(workspace))
        before = store.load("loop-t")

        agent = ScriptedAgent(PROMISE)
        outcome = make_controller(agent).run("loop-t")

        assert isinstance(outcome, Complete)
        assert outcome.cycles == 1
        assert agent.messages == []
        assert store.load("loop-t").to_dict() == before.to_dict()

    def test_new_loop_requires_task_and_workspace(self, make_controller):
        with pytest.raises(ValueError, match="task and workspace"):
            make_controller(ScriptedAgent()).run("loop-missing")

    def test_invalid_loop_id(self, make_controller, workspace):
        with pytest.raises(ValueError, match="Invalid loop id"):
            make_controller(ScriptedAgent()).run("../escape", task="t", workspace=str(workspace))

    def test_second_controller_cannot_claim_running_loop(self, make_controller, store, workspace):
        first = make_controller(ScriptedAgent())
        record, finished = first.start("loop-owned", task="t", workspace=str(workspace))
        assert finished is None
        assert record.status == Status.RUNNING

        try:
            with pytest.raises(LoopConflictError):
                make_controller(ScriptedAgent()).run("loop-owned")
        finally:
            first.release()

    def test_progress_log_and_feedback_stay_in_sync(self, make_controller, store, workspace):
        agent = ScriptedAgent("a", "b", PROMISE)
        make_controller(agent, FakeValidator(True)).run("loop-sync", task="t", workspace=str(workspace))

        record = store.load("loop-sync")
        log = store.read_progress("loop-sync")
        assert [e["cycle"] for e in record.feedback] == [1, 2, 3]
        assert log.count("## Cycle") == 3


# =============================================================================
# TESTS - Per-cycle failures become feedback
# =============================================================================

class TestCycleFailures:
    """Agent, action and checkpoint failures end the cycle, not the loop."""

    def test_agent_error_is_feedback(self, make_controller, store, workspace):
        agent = ScriptedAgent(AgentError("API error: overloaded"), PROMISE)
        validator = FakeValidator(True)
        outcome = make_controller(agent, validator).run("loop-err", task="t", workspace=str(workspace))

        assert isinstance(outcome, Complete)
        assert outcome.cycles == 2
        # Validation skipped for the failed cycle
        assert validator.calls == 1
        record = store.load("loop-err")
        assert record.feedback[0]["summary"].startswith("agent call failed")
        assert "overloaded" in agent.messages[1]

    def test_agent_timeout_is_feedback(self, make_controller, store, workspace):
        release = threading.Event()

        class SlowAgent(ScriptedAgent):
            def complete(self, system, message, timeout):
                if not self.messages:
                    self.messages.append(message)
                    release.wait(5)
                    return AgentResponse(text=PROMISE)
                return super().complete(system, message, timeout)

        agent = SlowAgent(PROMISE)
        controller = make_controller(agent, FakeValidator(True), config=make_config(cycle_timeout=0.2))
        try:
            outcome = controller.run("loop-slow", task="t", workspace=str(workspace))
        finally:
            release.set()

        assert isinstance(outcome, Complete)
        assert outcome.cycles == 2
        assert "timed out" in store.load("loop-slow").feedback[0]["summary"]

    def test_failed_action_skips_the_rest_but_still_commits(self, make_controller, store, workspace):
        response = AgentResponse(
            text="editing",
            actions=[
                WriteFile(path="first.txt", content="one"),
                Execute(command="false"),
                WriteFile(path="second.txt", content="two"),
            ],
        )
        vcs = FakeVcs()
        controller = make_controller(
            ScriptedAgent(response, PROMISE), FakeValidator(True), vcs=vcs
        )

        outcome = controller.run("loop-act", task="t", workspace=str(workspace))

        assert isinstance(outcome, Complete)
        assert (workspace / "first.txt").read_text() == "one"
        assert not (workspace / "second.txt").exists()
        assert vcs.messages[0] == "rwl: cycle 1"
        errors = store.load("loop-act").feedback[0]["errors"]
        assert any("action 2 (Execute) failed" in line for line in errors)
        assert any("1 remaining action(s) skipped" in line for line in errors)

    def test_checkpoint_failure_is_feedback(self, make_controller, store, workspace):
        controller = make_controller(
            ScriptedAgent(PROMISE), FakeValidator(True), vcs=FakeVcs(fail=True)
        )
        outcome = controller.run("loop-vcs", task="t", workspace=str(workspace))

        assert isinstance(outcome, Complete)
        assert outcome.artifacts == []
        errors = store.load("loop-vcs").feedback[0]["errors"]
        assert any(line.startswith("checkpoint failed") for line in errors)

    def test_storage_error_escapes_and_leaves_record_running(self, workspace, tmp_path):
        class BrokenSaveStore(LocalStateStore):
            def save(self, record):
                if record.cycle_count > 0:
                    raise StorageError("disk full")
                super().save(record)

        store = BrokenSaveStore(tmp_path / "broken")
        controller = LoopController(
            config=make_config(),
            store=store,
            agent=ScriptedAgent(PROMISE),
            vcs=FakeVcs(),
            validator=FakeValidator(True),
        )

        with pytest.raises(StorageError, match="disk full"):
            controller.run("loop-storage", task="t", workspace=str(workspace))

        record = store.load("loop-storage")
        assert record.status == Status.RUNNING
        assert record.cycle_count == 0
        # The unsaved cycle never reaches the progress log
        assert "## Cycle" not in store.read_progress("loop-storage")

    def test_unexpected_agent_exception_is_feedback(self, make_controller, store, workspace):
        agent = ScriptedAgent(ValueError("Expecting value: line 1 column 1"), PROMISE)
        outcome = make_controller(agent).run("loop-odd", task="t", workspace=str(workspace))

        assert isinstance(outcome, Complete)
        assert outcome.cycles == 2
        summary = store.load("loop-odd").feedback[0]["summary"]
        assert summary.startswith("agent call failed")
        assert "ValueError" in agent.messages[1]

    def test_commit_template_with_unknown_braces(self, make_controller, store, workspace):
        config = replace(make_config(), git=GitSettings(commit_template="rwl: {loop_id} cycle {cycle} [{ticket}]"))
        vcs = FakeVcs()
        controller = make_controller(ScriptedAgent(PROMISE), config=config, vcs=vcs)

        outcome = controller.run("loop-tpl", task="t", workspace=str(workspace))

        assert isinstance(outcome, Complete)
        assert vcs.messages == ["rwl: loop-tpl cycle 1 [{ticket}]"]

    def test_read_file_output_reaches_next_message(self, make_controller, store, workspace):
        (workspace / "notes.txt").write_text("SECRET-CONTENT-42\n")
        response = AgentResponse(text="looking", actions=[ReadFile(path="notes.txt")])
        agent = ScriptedAgent(response, PROMISE)

        make_controller(agent).run("loop-read", task="t", workspace=str(workspace))

        assert "action 1 (ReadFile notes.txt):" in agent.messages[1]
        assert "SECRET-CONTENT-42" in agent.messages[1]
        assert "SECRET-CONTENT-42" in store.read_progress("loop-read")
        assert any("SECRET-CONTENT-42" in line for line in store.load("loop-read").feedback[0]["outputs"])


# =============================================================================
# TESTS - Gates and limits
# =============================================================================

class TestGatesAndLimits:

    def test_gate_violation_blocks_completion(self, make_controller, store, workspace):
        """Validation and promise succeed but a forbidden pattern is present."""
        dirty = AgentResponse(text=PROMISE, actions=[WriteFile(path="app.py", content="x = 1  # TODO\n")])
        clean = AgentResponse(text=PROMISE, actions=[WriteFile(path="app.py", content="x = 1\n")])
        config = make_config(quality_gates=(QualityGate(name="no_todos", pattern=r"\bTODO\b"),))
        controller = make_controller(ScriptedAgent(dirty, clean), FakeValidator(True), config=config)

        outcome = controller.run("loop-gate", task="t", workspace=str(workspace))

        assert isinstance(outcome, Complete)
        assert outcome.cycles == 2
        first = store.load("loop-gate").feedback[0]
        assert first["summary"] == "gate `no_todos` violated"
        assert first["gates_passed"] is False
        assert any("app.py:1" in line for line in first["errors"])

    def test_token_limit(self, make_controller, store, workspace):
        response = AgentResponse(text="working", usage={"total_tokens": 6})
        config = make_config(limits=LimitSettings(max_tokens=10))
        controller = make_controller(ScriptedAgent(response), FakeValidator(True), config=config)

        outcome = controller.run("loop-tokens", task="t", workspace=str(workspace))

        assert isinstance(outcome, Failed)
        assert outcome.cycles == 2
        assert "token limit exhausted (12/10)" == outcome.reason
        assert store.load("loop-tokens").tokens_used == 12

    def test_time_limit(self, store, workspace):
        ticks = iter([0.0, 0.0, 100.0, 100.0, 100.0])
        controller = LoopController(
            config=make_config(limits=LimitSettings(max_time=50)),
            store=store,
            agent=ScriptedAgent("working"),
            vcs=FakeVcs(),
            validator=FakeValidator(False),
            clock=lambda: next(ticks),
        )

        outcome = controller.run("loop-time", task="t", workspace=str(workspace))

        assert outcome == Failed(reason="time limit exceeded", cycles=1)
