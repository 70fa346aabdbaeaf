"""CLI entrypoint for the loop runner."""

import logging
import os
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from rwl.config import Config, ConfigError, load_config, local_config_path, save_config
from rwl.constants import PROMPT_FILENAME, RWL_DIR
from rwl.gates import QualityGate
from rwl.loop_state import Complete, Failed, Signal, describe_outcome
from rwl.prompt_builder import PROMPT_TEMPLATE

# Load .env file on CLI startup
load_dotenv()


GITIGNORE_CONTENT = """# rwl runtime state
loops/
signals/
reports/
"""

EXAMPLE_GATES = (
    QualityGate(name="no_todos", pattern=r"\bTODO\b", forbidden=True),
)


def _load(ctx: click.Context) -> Config:
    try:
        return load_config(ctx.obj["config_path"], work_dir=ctx.obj["work_dir"])
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)


def _store(ctx: click.Context, config: Config):
    from rwl.runner import build_store
    from rwl.state_store import StorageError

    try:
        return build_store(config, ctx.obj["work_dir"])
    except (StorageError, ValueError) as e:
        click.echo(f"Storage error: {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(package_name="rwl")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Config file (default: .rwl/rwl.yml, then ~/.config/rwl/rwl.yml).",
)
@click.option(
    "--work-dir",
    type=click.Path(file_okay=False),
    default=".",
    help="Project directory holding .rwl/ (default: current directory).",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], work_dir: str, verbose: bool):
    """rwl - fresh-context agent loop with external validation."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["work_dir"] = Path(work_dir).resolve()


@cli.command()
@click.pass_context
def init(ctx: click.Context):
    """Initialize .rwl/ with a config file, a prompt template and a .gitignore."""
    work_dir: Path = ctx.obj["work_dir"]
    rwl_dir = work_dir / RWL_DIR

    if rwl_dir.exists():
        click.echo(f"⚠ {RWL_DIR}/ already exists. Use 'rm -rf {RWL_DIR}' to reinitialize.")
        return

    if ctx.obj["config_path"] is not None:
        config = _load(ctx)
    else:
        config = Config(quality_gates=EXAMPLE_GATES)

    rwl_dir.mkdir(parents=True)
    click.echo(f"✓ Created {RWL_DIR}/")

    save_config(config, local_config_path(work_dir))
    click.echo(f"✓ Created {RWL_DIR}/rwl.yml")

    (rwl_dir / PROMPT_FILENAME).write_text(PROMPT_TEMPLATE)
    click.echo(f"✓ Created {RWL_DIR}/{PROMPT_FILENAME}")

    (rwl_dir / ".gitignore").write_text(GITIGNORE_CONTENT)
    click.echo(f"✓ Created {RWL_DIR}/.gitignore")

    click.echo("\nrwl initialized successfully!")
    click.echo("Next steps:")
    click.echo(f"  1. Edit {RWL_DIR}/rwl.yml to set the validation command and gates")
    click.echo(f"  2. Edit {RWL_DIR}/{PROMPT_FILENAME} to customize the prompt")
    click.echo("  3. Run 'rwl run --plan <path> --loop-id <id>' to start the loop")


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context):
    """Validate the config file and required environment variables."""
    config = _load(ctx)
    click.echo("Configuration loaded successfully!")
    click.echo(f"  Provider:     {config.llm.provider} ({config.llm.model})")
    click.echo(f"  Max cycles:   {config.loop.max_cycles}")
    click.echo(f"  Validation:   {config.validation.command}")
    click.echo(f"  Gates:        {', '.join(g.name for g in config.quality_gates) or '(none)'}")
    click.echo(f"  Storage:      {config.storage.backend}")

    missing = []
    if config.llm.provider == "openrouter" and not os.environ.get("OPENROUTER_API_KEY"):
        missing.append("OPENROUTER_API_KEY")
    if config.storage.backend == "postgres" and not os.environ.get("DATABASE_URL"):
        missing.append("DATABASE_URL")
    if missing:
        click.echo(f"Missing environment variables: {', '.join(missing)}", err=True)
        raise SystemExit(1)


@cli.command()
@click.option("--task", default=None, help="Task text for a new loop.")
@click.option(
    "--plan",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Implementation plan file; its contents become the task.",
)
@click.option("--loop-id", default="main", show_default=True, help="Loop identifier.")
@click.option(
    "--workspace",
    type=click.Path(file_okay=False),
    default=None,
    help="Workspace the agent edits (default: the work dir).",
)
@click.option("--max-cycles", type=click.IntRange(min=1), default=None, help="Override loop.max_cycles.")
@click.option("--model", default=None, help="Override llm.model.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Override loop.cycle_timeout (seconds).")
@click.option(
    "--no-trace",
    is_flag=True,
    help="Disable the LangGraph trace harness (run the plain controller loop).",
)
@click.pass_context
def run(
    ctx: click.Context,
    task: Optional[str],
    plan: Optional[str],
    loop_id: str,
    workspace: Optional[str],
    max_cycles: Optional[int],
    model: Optional[str],
    timeout: Optional[float],
    no_trace: bool,
):
    """Run (or continue) a loop until it completes, fails or is stopped.

    Exit code 0 on completion, 1 on failure, 2 when stopped or paused.
    """
    from rwl.agent import AgentError
    from rwl.runner import run_loop, task_from_plan
    from rwl.state_store import LoopConflictError, StorageError

    if task and plan:
        click.echo("Error: use either --task or --plan, not both.", err=True)
        raise SystemExit(1)

    config = _load(ctx).with_overrides(max_cycles=max_cycles, model=model, cycle_timeout=timeout)
    if plan:
        task = task_from_plan(Path(plan).resolve())

    click.echo(f"Running loop: {loop_id}")
    click.echo(f"  Model:       {config.llm.provider}/{config.llm.model}")
    click.echo(f"  Max cycles:  {config.loop.max_cycles}")
    click.echo(f"  Validation:  {config.validation.command}")
    if not no_trace:
        click.echo("  (LangGraph tracing enabled)")
    click.echo()

    try:
        result = run_loop(
            loop_id=loop_id,
            config=config,
            work_dir=ctx.obj["work_dir"],
            task=task,
            workspace=Path(workspace) if workspace else None,
            use_graph=not no_trace,
            store=_store(ctx, config),
        )
    except (LoopConflictError, ValueError, AgentError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except StorageError as e:
        click.echo(f"Storage error (loop state unknown): {e}", err=True)
        raise SystemExit(1)

    if result.recovery.resumed or result.recovery.failed:
        click.echo(
            f"Recovered {len(result.recovery.resumed)} loop(s),"
            f" failed {len(result.recovery.failed)}"
        )
    click.echo(f"Loop {loop_id} {describe_outcome(result.outcome)}")
    click.echo(f"  Report: {result.report_path}")

    if isinstance(result.outcome, Complete):
        raise SystemExit(0)
    if isinstance(result.outcome, Failed):
        raise SystemExit(1)
    raise SystemExit(2)


@cli.command()
@click.argument("loop_id", required=False)
@click.pass_context
def status(ctx: click.Context, loop_id: Optional[str]):
    """Show all loops, or a summary of LOOP_ID."""
    from rwl.observe import commits_for, format_overview, format_summary

    config = _load(ctx)
    store = _store(ctx, config)

    if loop_id is None:
        click.echo(format_overview(store.list_records()))
        return

    try:
        record = store.load(loop_id)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    if record is None:
        click.echo(f"Loop not found: {loop_id}", err=True)
        raise SystemExit(1)
    click.echo(format_summary(record, commits_for(record)))


@cli.command("signal")
@click.argument("kind", type=click.Choice([Signal.STOP.value, Signal.PAUSE.value, Signal.INVALIDATE.value]))
@click.argument("loop_id")
@click.pass_context
def send_signal(ctx: click.Context, kind: str, loop_id: str):
    """Deliver a signal to the controller running LOOP_ID.

    Takes effect at the next cycle boundary.
    """
    from rwl.runner import signal_inbox
    from rwl.signals import FileSignalChannel

    try:
        path = FileSignalChannel.deliver(signal_inbox(ctx.obj["work_dir"], loop_id), Signal(kind))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Sent {kind} to {loop_id} ({path.name})")


@cli.command()
@click.argument("loop_id")
@click.pass_context
def resume(ctx: click.Context, loop_id: str):
    """Move a paused loop back to pending so `rwl run` can continue it."""
    from rwl.signals import resume_loop

    config = _load(ctx)
    store = _store(ctx, config)
    try:
        resumed = resume_loop(store, loop_id)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    if not resumed:
        record = store.load(loop_id)
        state = record.status.value if record else "missing"
        click.echo(f"Cannot resume {loop_id}: status is {state}", err=True)
        raise SystemExit(1)
    click.echo(f"Resumed {loop_id}. Continue with: rwl run --loop-id {loop_id}")


@cli.command()
@click.pass_context
def recover(ctx: click.Context):
    """Recover loops left RUNNING by a crashed controller."""
    from rwl.runner import run_recovery

    config = _load(ctx)
    report = run_recovery(_store(ctx, config), config)
    for loop_id in report.resumed:
        click.echo(f"  → {loop_id}: pending")
    for loop_id in report.failed:
        click.echo(f"  ✗ {loop_id}: failed (workspace lost)")
    for loop_id in report.skipped:
        click.echo(f"  · {loop_id}: still owned by a live controller")
    if not (report.resumed or report.failed or report.skipped):
        click.echo("Nothing to recover.")


# Database commands
@cli.group()
def db():
    """Database commands (storage.backend: postgres)."""
    pass


@db.command("init")
def db_init():
    """Initialize the database schema."""
    from rwl.pg_store import PostgresStateStore
    from rwl.state_store import StorageError

    try:
        PostgresStateStore().init_schema()
        click.echo("Database schema initialized successfully.")
    except (StorageError, ValueError) as e:
        click.echo(f"Database error: {e}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
