"""Defaults for the loop runner."""

import os

DEFAULT_COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"

DEFAULT_MAX_CYCLES = 100
DEFAULT_CYCLE_TIMEOUT_S = 600.0
DEFAULT_SLEEP_BETWEEN_S = 2.0

DEFAULT_VALIDATION_COMMAND = "make test"
DEFAULT_VALIDATION_TIMEOUT_S = 600.0

DEFAULT_COMMIT_TEMPLATE = "rwl: cycle {cycle}"
RECOVERY_COMMIT_TEMPLATE = "rwl: recovery checkpoint for {loop_id} (cycle {cycle})"

# Feedback folded into the next prompt is bounded on both axes.
DEFAULT_PROGRESS_MAX_ENTRIES = 20
DEFAULT_PROGRESS_MAX_CHARS = 8000
MAX_ERROR_LINES_PER_ENTRY = 20
MAX_OUTPUT_LINES_PER_ENTRY = 40
ACTION_OUTPUT_FEEDBACK_CHARS = 2000

DEFAULT_MODEL = "anthropic/claude-sonnet-4.5"
DEFAULT_CLAUDE_CLI_MODEL = "opus"

# Local layout, relative to the working directory
RWL_DIR = ".rwl"
CONFIG_FILENAME = "rwl.yml"
PROMPT_FILENAME = "PROMPT.md"
LOOPS_DIRNAME = "loops"
SIGNALS_DIRNAME = "signals"
REPORTS_DIRNAME = "reports"

TRACE_ENABLED = os.getenv("RWL_TRACE", "").lower() in ("1", "true", "yes")
