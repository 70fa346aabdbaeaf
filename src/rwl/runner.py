"""Wiring for `rwl run`.

Builds the collaborators from Config, runs the recovery sweep, runs the loop
and writes a run report.
"""

import json
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Set, Tuple

from rwl.agent import Agent, ClaudeCliAgent, OpenRouterAgent, TracedAgent
from rwl.config import Config
from rwl.constants import (
    DEFAULT_CLAUDE_CLI_MODEL,
    DEFAULT_MODEL,
    LOOPS_DIRNAME,
    PROMPT_FILENAME,
    REPORTS_DIRNAME,
    RWL_DIR,
    SIGNALS_DIRNAME,
    TRACE_ENABLED,
)
from rwl.controller import LoopController
from rwl.loop_state import (
    Complete,
    Failed,
    LoopRecord,
    Outcome,
    Status,
    Stopped,
    describe_outcome,
    utcnow,
)
from rwl.signals import FileSignalChannel, install_interrupt_handler
from rwl.state_store import (
    LocalStateStore,
    RecoveryReport,
    StateStore,
    live_owners,
    recover_abandoned,
)
from rwl.vcs import GitWorkspace


logger = logging.getLogger(__name__)

# Slack added to cycle_timeout + validation.timeout before a remote owner is presumed dead
STALE_MARGIN_S = 60.0


@dataclass
class RunResult:
    """What `rwl run` reports back to the CLI."""
    outcome: Outcome
    report_path: Path
    recovery: RecoveryReport


# =============================================================================
# COLLABORATORS
# =============================================================================

def rwl_dir(work_dir: Path) -> Path:
    return Path(work_dir) / RWL_DIR


def build_store(config: Config, work_dir: Path) -> StateStore:
    """Create the configured state store."""
    if config.storage.backend == "postgres":
        from rwl.pg_store import PostgresStateStore
        return PostgresStateStore()
    return LocalStateStore(rwl_dir(work_dir) / LOOPS_DIRNAME)


def build_agent(config: Config, workspace: Path, loop_id: str) -> Agent:
    """Create the configured agent, traced when RWL_TRACE is set."""
    if config.llm.provider == "claude":
        # The OpenRouter default id means nothing to the claude CLI.
        model = config.llm.model if config.llm.model != DEFAULT_MODEL else DEFAULT_CLAUDE_CLI_MODEL
        agent: Agent = ClaudeCliAgent(workspace=workspace, model=model)
    else:
        agent = OpenRouterAgent(model=config.llm.model)
    if TRACE_ENABLED:
        agent = TracedAgent(agent, loop_id=loop_id)
    return agent


def signal_inbox(work_dir: Path, loop_id: str) -> Path:
    return FileSignalChannel.inbox_for(rwl_dir(work_dir) / SIGNALS_DIRNAME, loop_id)


def load_prompt_template(work_dir: Path) -> Optional[str]:
    """Return .rwl/PROMPT.md if the project has customised it."""
    path = rwl_dir(work_dir) / PROMPT_FILENAME
    if path.exists():
        return path.read_text()
    return None


def task_from_plan(plan_path: Path) -> str:
    """Task text for `rwl run --plan`: a pointer to the plan plus its contents."""
    plan_path = Path(plan_path)
    if not plan_path.exists():
        raise FileNotFoundError(f"Plan file not found: {plan_path}")
    return f"Read `{plan_path}` for what to build.\n\n{plan_path.read_text().strip()}"


# =============================================================================
# RECOVERY
# =============================================================================

def parse_owner(owner: str) -> Tuple[str, Optional[int]]:
    """Split a controller token (host:pid:nonce) into host and pid."""
    parts = owner.split(":")
    if len(parts) < 3:
        return owner, None
    try:
        return ":".join(parts[:-2]), int(parts[-2])
    except ValueError:
        return owner, None


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def find_live_owners(
    records: Iterable[LoopRecord],
    stale_after: float,
    now: Optional[datetime] = None,
) -> Set[str]:
    """
    Owner tokens of RUNNING records that still have a live controller.

    Logic:
    1. Controllers registered in this process are alive.
    2. Same host: alive iff the owning pid still exists.
    3. Other hosts: alive while the record was updated within stale_after.
    """
    now = now or utcnow()
    alive = set(live_owners())
    hostname = socket.gethostname()
    for record in records:
        if not record.owner or record.owner in alive:
            continue
        host, pid = parse_owner(record.owner)
        if host == hostname:
            if pid is not None and pid != os.getpid() and process_alive(pid):
                alive.add(record.owner)
        elif (now - record.updated_at).total_seconds() < stale_after:
            alive.add(record.owner)
    return alive


def stale_after_for(config: Config) -> float:
    return config.loop.cycle_timeout + config.validation.timeout + STALE_MARGIN_S


def run_recovery(store: StateStore, config: Config, vcs: Optional[GitWorkspace] = None) -> RecoveryReport:
    """Recovery sweep over RUNNING records whose controller is gone."""
    running = store.list_records(Status.RUNNING)
    alive = find_live_owners(running, stale_after_for(config))
    report = recover_abandoned(store, vcs or GitWorkspace(), owners_alive=alive)
    if report.resumed or report.failed:
        logger.info(
            "Recovery: %d resumed, %d failed, %d skipped",
            len(report.resumed), len(report.failed), len(report.skipped),
        )
    return report


# =============================================================================
# REPORT
# =============================================================================

def write_run_report(
    record: Optional[LoopRecord],
    outcome: Outcome,
    output_dir: Path,
    start_time: datetime,
    end_time: datetime,
) -> Path:
    """
    Write a structured run report to disk.

    Report format: JSON with the outcome and the record's counters.
    Filename: {loop_id}_{timestamp}.json
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    loop_id = record.loop_id if record else "unknown"
    timestamp = end_time.strftime("%Y%m%d_%H%M%S")
    report_path = output_dir / f"{loop_id}_{timestamp}.json"

    report = {
        "loop_id": loop_id,
        "outcome": type(outcome).__name__.lower(),
        "summary": describe_outcome(outcome),
        "cycles": outcome.cycles,
        "reason": outcome.reason if isinstance(outcome, Failed) else None,
        "signal": outcome.signal.value if isinstance(outcome, Stopped) else None,
        "artifacts": list(outcome.artifacts) if isinstance(outcome, Complete) else [],
        "status": record.status.value if record else None,
        "workspace": record.workspace if record else None,
        "tokens_used": record.tokens_used if record else 0,
        "cost_used": record.cost_used if record else 0.0,
        "start_time": start_time.isoformat(),
        "end_time": end_time.isoformat(),
        "duration_seconds": (end_time - start_time).total_seconds(),
    }

    report_path.write_text(json.dumps(report, indent=2))
    return report_path


# =============================================================================
# RUN
# =============================================================================

def run_loop(
    loop_id: str,
    config: Config,
    work_dir: Path = Path("."),
    task: Optional[str] = None,
    workspace: Optional[Path] = None,
    use_graph: bool = False,
    handle_interrupts: bool = True,
    store: Optional[StateStore] = None,
    agent: Optional[Agent] = None,
) -> RunResult:
    """
    Main entry point: recover, run the loop, write a report.

    Args:
        loop_id: Loop to run (created if missing)
        config: Frozen configuration for the whole run
        work_dir: Project directory holding .rwl/
        task: Task text, required for a new loop
        workspace: Workspace the agent edits (default: work_dir)
        use_graph: If True, drive cycles through the LangGraph trace harness
        handle_interrupts: Map SIGINT/SIGTERM to a Stop signal
        store: Override the configured store
        agent: Override the configured agent

    Returns:
        RunResult with the outcome and the report path
    """
    work_dir = Path(work_dir)
    workspace = Path(workspace or work_dir).resolve()
    store = store or build_store(config, work_dir)
    vcs = GitWorkspace()

    recovery = run_recovery(store, config, vcs)

    existing = store.load(loop_id)
    agent_workspace = Path(existing.workspace) if existing else workspace
    agent = agent or build_agent(config, agent_workspace, loop_id)

    signals = FileSignalChannel(signal_inbox(work_dir, loop_id))
    restore_handlers = install_interrupt_handler(signals) if handle_interrupts else None

    controller = LoopController(
        config=config,
        store=store,
        agent=agent,
        vcs=vcs,
        signals=signals,
        prompt_template=load_prompt_template(work_dir),
    )

    start_time = utcnow()
    try:
        if use_graph:
            from rwl.cycle_graph import run_cycle_graph
            outcome = run_cycle_graph(controller, loop_id, task, str(workspace))
        else:
            outcome = controller.run(loop_id, task, str(workspace))
    finally:
        if restore_handlers is not None:
            restore_handlers()
    end_time = utcnow()

    report_path = write_run_report(
        record=store.load(loop_id),
        outcome=outcome,
        output_dir=rwl_dir(work_dir) / REPORTS_DIRNAME,
        start_time=start_time,
        end_time=end_time,
    )
    logger.info("Loop %s %s; report at %s", loop_id, describe_outcome(outcome), report_path)
    return RunResult(outcome=outcome, report_path=report_path, recovery=recovery)
