"""Outbound message assembly.

The message built here is the only input an agent call receives: static task
text plus the rendered progress feedback. Nothing from earlier agent responses
is replayed.
"""

import re
from typing import Optional

from rwl.progress import ProgressTracker


SYSTEM_PROMPT = """You are an autonomous coding agent working in a loop.
You have NO MEMORY of previous runs. Everything you know about earlier
cycles is in the progress feedback below and in the workspace itself."""


PROMPT_TEMPLATE = """# Fresh-context loop - ONE TASK THEN EXIT

You are in a fresh-context loop. You have NO MEMORY of previous cycles.
State persists ONLY in the workspace and in the progress feedback below.

## CRITICAL RULES

1. **READ THE PROGRESS FEEDBACK FIRST** - it tells you what was done and what failed
2. **DO ONE SMALL THING** - one file, one fix, one test
3. **EXIT IMMEDIATELY** - do not retry errors, the loop restarts you with fresh context

Validation runs EXTERNALLY after you exit. You do not need to run it.

## Signalling completion

When ALL work is complete, output this line on its own:

{{completion_signal}}

---

## Task

{{task}}

## Progress feedback

{{feedback}}

## Now: read the feedback and do ONE thing
"""

NO_FEEDBACK = "(no previous cycles)"

_PLACEHOLDER_RE = re.compile(r"\{\{(task|feedback|completion_signal)\}\}")


class PromptBuilder:
    """Renders the per-cycle message from a template."""

    def __init__(
        self,
        task: str,
        completion_signal: str,
        template: Optional[str] = None,
    ):
        self.task = task
        self.completion_signal = completion_signal
        self.template = template or PROMPT_TEMPLATE

    def build(self, tracker: ProgressTracker) -> str:
        """
        Build the outbound message for the next cycle.

        Placeholders {{task}}, {{feedback}} and {{completion_signal}} are
        replaced in a single pass; substituted text is never re-scanned, so
        placeholder-like text inside the task or feedback survives verbatim.
        """
        values = {
            "task": self.task.strip(),
            "feedback": tracker.render().strip() or NO_FEEDBACK,
            "completion_signal": self.completion_signal,
        }
        return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], self.template)
