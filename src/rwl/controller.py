"""Iteration loop controller.

One controller drives one loop id at a time. Each cycle starts from a fresh
agent context: the only input to the agent is the task text plus the bounded
progress feedback, and everything else the agent knows comes from the
workspace on disk.

Per-cycle order:
    signal poll -> message -> agent call -> actions -> checkpoint commit ->
    validation -> completion token -> quality gates -> exit policy ->
    persist record -> progress log

Only StorageError and LoopConflictError escape run(); every other per-cycle
failure becomes feedback for the next cycle.
"""

import logging
import os
import socket
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from rwl.actions import Action, Execute, ToolExecutor
from rwl.agent import Agent, AgentError, AgentResponse
from rwl.config import Config
from rwl.constants import ACTION_OUTPUT_FEEDBACK_CHARS
from rwl.exit_policy import COMPLETE, FAILED, MAX_ITERATIONS_REASON, CycleFacts, Decision, decide
from rwl.gates import GateReport, evaluate_gates
from rwl.loop_state import (
    Complete,
    Failed,
    LoopRecord,
    Outcome,
    Signal,
    Status,
    Stopped,
    outcome_from_record,
    utcnow,
)
from rwl.progress import ProgressEntry, ProgressTracker, format_log_entry
from rwl.prompt_builder import SYSTEM_PROMPT, PromptBuilder
from rwl.signals import SignalChannel
from rwl.state_store import (
    LoopConflictError,
    StateStore,
    register_owner,
    release_owner,
    validate_loop_id,
)
from rwl.validator import ShellValidator, ValidationResult
from rwl.vcs import GitWorkspace, VcsError


logger = logging.getLogger(__name__)

TIME_LIMIT_REASON = "time limit exceeded"
VALIDATION_TAIL_LINES = 10


def promise_found(text: str, token: str) -> bool:
    """True if some line of text, trimmed, equals the completion token exactly."""
    token = token.strip()
    return any(line.strip() == token for line in (text or "").splitlines())


def render_commit_message(template: str, cycle: int, loop_id: str) -> str:
    """Fill {cycle}, {iteration} and {loop_id}; any other braces stay literal."""
    return (
        template.replace("{cycle}", str(cycle))
        .replace("{iteration}", str(cycle))
        .replace("{loop_id}", loop_id)
    )


def describe_action(action: Action) -> str:
    if isinstance(action, Execute):
        return f"Execute `{action.command}`"
    return f"{type(action).__name__} {action.path}"


def make_owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


@dataclass
class CycleState:
    """Facts gathered while a single cycle runs."""
    cycle: int
    message: str = ""
    response: Optional[AgentResponse] = None
    agent_error: Optional[str] = None
    action_errors: List[str] = field(default_factory=list)
    action_outputs: List[str] = field(default_factory=list)
    commit_id: Optional[str] = None
    checkpoint_error: Optional[str] = None
    validation: Optional[ValidationResult] = None
    promise_found: bool = False
    gates: Optional[GateReport] = None
    decision: Optional[Decision] = None


class LoopController:
    """Runs cycles for a loop until a terminal outcome.

    Collaborators are injected so every external boundary can be replaced by
    a deterministic test double.
    """

    def __init__(
        self,
        config: Config,
        store: StateStore,
        agent: Agent,
        tools: Optional[ToolExecutor] = None,
        vcs: Optional[GitWorkspace] = None,
        validator: Optional[ShellValidator] = None,
        signals: Optional[SignalChannel] = None,
        prompt_template: Optional[str] = None,
        system_prompt: str = SYSTEM_PROMPT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.agent = agent
        self.tools = tools or ToolExecutor()
        self.vcs = vcs or GitWorkspace()
        self.validator = validator or ShellValidator()
        self.signals = signals or SignalChannel()
        self.prompt_template = prompt_template
        self.system_prompt = system_prompt
        self.sleep = sleep
        self.clock = clock
        self.owner = make_owner_token()
        self.cancel = threading.Event()
        self._started_at: Optional[float] = None

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        loop_id: str,
        task: Optional[str] = None,
        workspace: Optional[str] = None,
    ) -> Outcome:
        """
        Run the loop to a terminal outcome (or a pause).

        Args:
            loop_id: Loop to run; created PENDING if it does not exist
            task: Task text (required when creating)
            workspace: Workspace path (required when creating)

        Returns:
            Complete, Failed or Stopped. A terminal record returns its stored
            outcome without being touched.

        Raises:
            LoopConflictError: Another controller holds this loop, or it is paused
            StorageError: Control state could not be persisted or loaded
        """
        record, finished = self.start(loop_id, task, workspace)
        if finished is not None:
            return finished

        try:
            tracker = self.open_tracker(record)
            while True:
                outcome = self.run_cycle(record, tracker)
                if outcome is not None:
                    logger.info("Loop %s finished: %s", loop_id, outcome)
                    return outcome
                if self.config.loop.sleep_between > 0:
                    self.sleep(self.config.loop.sleep_between)
        finally:
            self.release()

    def start(
        self,
        loop_id: str,
        task: Optional[str] = None,
        workspace: Optional[str] = None,
    ) -> Tuple[LoopRecord, Optional[Outcome]]:
        """
        Load or create the record and claim RUNNING for this controller.

        Returns:
            (record, None) once claimed, or (record, outcome) if the record is
            already terminal.
        """
        validate_loop_id(loop_id)
        record = self.store.load(loop_id)

        if record is None:
            if not task or not workspace:
                raise ValueError(f"Loop {loop_id} does not exist; task and workspace are required")
            record = LoopRecord(loop_id=loop_id, task=task, workspace=str(workspace))
            self.store.save(record)
            logger.info("Created loop %s", loop_id)

        if record.status.is_terminal:
            return record, outcome_from_record(record)

        if not self.store.compare_and_set_status(
            loop_id, Status.PENDING, Status.RUNNING, owner=self.owner
        ):
            current = self.store.load(loop_id)
            status = current.status.value if current else "missing"
            raise LoopConflictError(
                f"Cannot start loop {loop_id}: status is {status}"
                + (" (resume it first)" if status == Status.PAUSED.value else "")
            )

        register_owner(self.owner)
        self.cancel.clear()
        self._started_at = self.clock()
        claimed = self.store.load(loop_id)
        if claimed is None or claimed.owner != self.owner:
            self.release()
            raise LoopConflictError(f"Lost claim on loop {loop_id}")
        return claimed, None

    def release(self) -> None:
        self.cancel.set()
        release_owner(self.owner)

    def open_tracker(self, record: LoopRecord) -> ProgressTracker:
        return ProgressTracker.from_list(
            record.feedback,
            max_entries=self.config.progress.max_entries,
            max_chars=self.config.progress.max_chars,
        )

    def run_cycle(self, record: LoopRecord, tracker: ProgressTracker) -> Optional[Outcome]:
        """Run one cycle. Returns the outcome if the loop terminated."""
        preempted = self.begin_cycle(record)
        if preempted is not None:
            return preempted

        state = CycleState(cycle=record.cycle_count + 1)
        logger.info("Loop %s: cycle %d/%d", record.loop_id, state.cycle, self.config.loop.max_cycles)

        state.message = self.build_message(record, tracker)
        self.call_agent(state)
        if state.agent_error is None:
            self.apply_actions(state, record)
        self.checkpoint(state, record)
        if state.agent_error is None:
            self.validate(state, record)
            self.detect_promise(state)
            self.check_gates(state, record)
        return self.finish_cycle(state, record, tracker)

    # -------------------------------------------------------------------------
    # Cycle steps
    # -------------------------------------------------------------------------

    def next_signal(self) -> Optional[Signal]:
        """Drain the channel until a signal that preempts the cycle, or None."""
        while True:
            signal = self.signals.poll()
            if signal is None:
                return None
            if signal == Signal.RESUME:
                # Resume is for the scheduler (paused -> pending), not for a running loop.
                logger.debug("Ignoring resume signal while running")
                continue
            return signal

    def begin_cycle(self, record: LoopRecord) -> Optional[Outcome]:
        """
        Cycle boundary checks, before any agent call.

        1. A pending signal preempts everything else.
        2. A record already at max_cycles fails without another cycle.
        3. The max_time limit fails the run.
        """
        signal = self.next_signal()
        if signal is not None:
            return self._stop(record, signal)

        if record.cycle_count >= self.config.loop.max_cycles:
            return self._fail(record, MAX_ITERATIONS_REASON)

        max_time = self.config.limits.max_time
        if max_time is not None and self._started_at is not None:
            if self.clock() - self._started_at >= max_time:
                return self._fail(record, TIME_LIMIT_REASON)
        return None

    def build_message(self, record: LoopRecord, tracker: ProgressTracker) -> str:
        builder = PromptBuilder(
            task=record.task,
            completion_signal=self.config.loop.completion_signal,
            template=self.prompt_template,
        )
        return builder.build(tracker)

    def call_agent(self, state: CycleState) -> None:
        """Call the agent with the single message, bounded by cycle_timeout."""
        timeout = self.config.loop.cycle_timeout
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rwl-agent")
        try:
            future = executor.submit(self.agent.complete, self.system_prompt, state.message, timeout)
            state.response = future.result(timeout=timeout)
        except FuturesTimeout:
            state.agent_error = f"agent call timed out after {timeout:g}s"
        except AgentError as e:
            state.agent_error = str(e)
        except Exception as e:
            state.agent_error = f"{type(e).__name__}: {e}"
            logger.exception("Cycle %d: unexpected agent error", state.cycle)
        finally:
            # A timed-out call is abandoned, not joined.
            executor.shutdown(wait=False)

        if state.agent_error:
            logger.warning("Cycle %d: %s", state.cycle, state.agent_error)

    def apply_actions(self, state: CycleState, record: LoopRecord) -> None:
        """Apply actions in order; the first failure skips the rest."""
        actions = state.response.actions if state.response else []
        for index, action in enumerate(actions, start=1):
            result = self.tools.apply(action, record.workspace)
            if result.success:
                self._record_output(state, index, action, result.output)
                continue
            skipped = len(actions) - index
            state.action_errors.append(
                f"action {index} ({type(action).__name__}) failed: {result.output[:500]}"
            )
            if skipped:
                state.action_errors.append(f"{skipped} remaining action(s) skipped")
            logger.warning("Cycle %d: action %d failed", state.cycle, index)
            return

    def checkpoint(self, state: CycleState, record: LoopRecord) -> None:
        """Commit the workspace so the cycle's effects are durable before validation."""
        if not self.config.git.auto_commit:
            return
        message = render_commit_message(self.config.git.commit_template, state.cycle, record.loop_id)
        try:
            state.commit_id = self.vcs.commit(record.workspace, message)
        except (VcsError, OSError) as e:
            state.checkpoint_error = f"checkpoint failed: {e}"
            logger.warning("Cycle %d: %s", state.cycle, state.checkpoint_error)
            return
        if state.commit_id:
            logger.info("Cycle %d: committed %s", state.cycle, state.commit_id[:12])

    def validate(self, state: CycleState, record: LoopRecord) -> None:
        state.validation = self.validator.validate(
            record.workspace,
            self.config.validation.command,
            self.config.validation.timeout,
            cancel=self.cancel,
        )

    def detect_promise(self, state: CycleState) -> None:
        text = state.response.text if state.response else ""
        state.promise_found = promise_found(text, self.config.loop.completion_signal)

    def check_gates(self, state: CycleState, record: LoopRecord) -> None:
        state.gates = evaluate_gates(self.config.quality_gates, record.workspace)

    def finish_cycle(
        self,
        state: CycleState,
        record: LoopRecord,
        tracker: ProgressTracker,
    ) -> Optional[Outcome]:
        """Decide, record feedback and persist. Returns the outcome if terminal."""
        validation_passed = bool(state.validation and state.validation.passed)
        gates_passed = bool(state.gates and state.gates.all_passed)

        if state.response is not None:
            record.tokens_used += state.response.total_tokens
            record.cost_used += state.response.cost

        limits = self.config.limits
        state.decision = decide(CycleFacts(
            cycle=state.cycle,
            max_cycles=self.config.loop.max_cycles,
            validation_passed=validation_passed,
            promise_found=state.promise_found,
            gates_passed=gates_passed,
            failed_gates=[g.name for g in state.gates.failed] if state.gates else [],
            agent_error=state.agent_error,
            tokens_used=record.tokens_used,
            max_tokens=limits.max_tokens,
            cost_used=record.cost_used,
            max_cost=limits.max_cost,
        ))
        decision = state.decision

        summary = decision.feedback
        if decision.reason:
            summary = f"{summary} ({decision.reason})"
        entry = ProgressEntry(
            cycle=state.cycle,
            promise_found=state.promise_found,
            validation_passed=validation_passed,
            gates_passed=gates_passed,
            summary=summary,
            errors=self._error_lines(state, validation_passed),
            outputs=state.action_outputs,
        )
        tracker.append(entry)

        record.cycle_count = state.cycle
        record.feedback = tracker.to_list()
        if state.commit_id:
            record.artifacts.append(state.commit_id)
        record.updated_at = utcnow()

        outcome: Optional[Outcome] = None
        if decision.kind == COMPLETE:
            record.status = Status.COMPLETE
            outcome = Complete(cycles=state.cycle, artifacts=list(record.artifacts))
        elif decision.kind == FAILED:
            record.status = Status.FAILED
            record.failure_reason = decision.reason
            outcome = Failed(reason=decision.reason or "failed", cycles=state.cycle)

        self.store.save(record)
        # Only a persisted cycle reaches the log.
        self.store.append_progress(record.loop_id, format_log_entry(entry))
        logger.info("Cycle %d: %s", state.cycle, summary)
        return outcome

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _record_output(self, state: CycleState, index: int, action: Action, output: str) -> None:
        text = output.strip()
        if len(text) > ACTION_OUTPUT_FEEDBACK_CHARS:
            text = text[:ACTION_OUTPUT_FEEDBACK_CHARS] + f"\n... ({len(output)} chars total)"
        state.action_outputs.append(f"action {index} ({describe_action(action)}):")
        state.action_outputs.extend(f"  {line}" for line in text.splitlines())

    def _error_lines(self, state: CycleState, validation_passed: bool) -> List[str]:
        lines = []
        if state.agent_error:
            lines.append(state.agent_error)
        lines.extend(state.action_errors)
        if state.checkpoint_error:
            lines.append(state.checkpoint_error)
        if state.validation is not None and not validation_passed:
            if state.validation.errors:
                lines.extend(state.validation.errors)
            else:
                tail = state.validation.output.strip().splitlines()[-VALIDATION_TAIL_LINES:]
                lines.extend(tail)
        if state.gates is not None:
            lines.extend(g.describe() for g in state.gates.failed)
        return lines

    def _stop(self, record: LoopRecord, signal: Signal) -> Outcome:
        logger.info("Loop %s: %s signal at cycle boundary", record.loop_id, signal.value)
        record.status = Status.PAUSED if signal == Signal.PAUSE else Status.STOPPED
        if signal != Signal.PAUSE:
            record.stop_signal = signal
        record.updated_at = utcnow()
        self.store.save(record)
        self.store.append_progress(
            record.loop_id,
            f"# {signal.value.capitalize()} signal received after cycle {record.cycle_count}\n",
        )
        return Stopped(signal=signal, cycles=record.cycle_count)

    def _fail(self, record: LoopRecord, reason: str) -> Outcome:
        record.status = Status.FAILED
        record.failure_reason = reason
        record.updated_at = utcnow()
        self.store.save(record)
        self.store.append_progress(record.loop_id, f"# Failed: {reason}\n")
        return Failed(reason=reason, cycles=record.cycle_count)
