"""Out-of-band Stop / Pause / Resume / Invalidate delivery.

The controller never waits on a signal. It calls poll() once per cycle
boundary, so a signal takes effect within at most one cycle (one agent call
plus one validation run).
"""

import logging
import queue
import signal as os_signal
from pathlib import Path
from typing import Callable, Optional

from rwl.loop_state import Signal, Status
from rwl.state_store import StateStore, validate_loop_id


logger = logging.getLogger(__name__)


class SignalChannel:
    """Thread-safe FIFO of pending signals."""

    def __init__(self):
        self._queue: "queue.Queue[Signal]" = queue.Queue()

    def send(self, signal: Signal) -> None:
        self._queue.put(Signal(signal))

    def poll(self) -> Optional[Signal]:
        """Return the oldest pending signal without blocking, or None."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None


class FileSignalChannel(SignalChannel):
    """Signal channel that also accepts signals from other processes.

    Another process (`rwl signal stop <loop_id>`) drops a file named
    <sequence>.<kind> into the loop's inbox directory; poll() consumes the
    oldest one. In-process send() signals are delivered first.
    """

    def __init__(self, inbox: Path):
        super().__init__()
        self.inbox = Path(inbox)
        self.inbox.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def inbox_for(signals_dir: Path, loop_id: str) -> Path:
        return Path(signals_dir) / validate_loop_id(loop_id)

    @classmethod
    def deliver(cls, inbox: Path, signal: Signal) -> Path:
        """Write a signal file for a controller in another process to pick up."""
        inbox = Path(inbox)
        inbox.mkdir(parents=True, exist_ok=True)
        existing = [int(p.name.split(".", 1)[0]) for p in inbox.iterdir() if p.name.split(".", 1)[0].isdigit()]
        sequence = max(existing, default=0) + 1
        path = inbox / f"{sequence:06d}.{Signal(signal).value}"
        path.write_text(Signal(signal).value)
        return path

    def poll(self) -> Optional[Signal]:
        pending = super().poll()
        if pending is not None:
            return pending

        for path in sorted(self.inbox.iterdir()):
            kind = path.suffix.lstrip(".")
            try:
                path.unlink()
            except FileNotFoundError:
                # Consumed by a concurrent poll.
                continue
            try:
                return Signal(kind)
            except ValueError:
                logger.warning("Ignoring unknown signal file %s", path.name)
        return None


def install_interrupt_handler(channel: SignalChannel) -> Callable[[], None]:
    """Map SIGINT / SIGTERM to a Stop signal at the next cycle boundary.

    Must be called from the main thread. A second interrupt raises
    KeyboardInterrupt as usual. Returns a function restoring the previous
    handlers.
    """
    previous = {
        signum: os_signal.getsignal(signum)
        for signum in (os_signal.SIGINT, os_signal.SIGTERM)
    }

    def _handler(signum, frame):
        logger.info("Received signal %s, stopping at the next cycle boundary", signum)
        channel.send(Signal.STOP)
        os_signal.signal(os_signal.SIGINT, os_signal.default_int_handler)

    os_signal.signal(os_signal.SIGINT, _handler)
    os_signal.signal(os_signal.SIGTERM, _handler)

    def _restore() -> None:
        for signum, handler in previous.items():
            os_signal.signal(signum, handler)

    return _restore


def resume_loop(store: StateStore, loop_id: str) -> bool:
    """
    Scheduler-side Resume: move a PAUSED record back to PENDING.

    A new controller can then be started against the record. Returns False if
    the record is missing or not paused.
    """
    resumed = store.compare_and_set_status(loop_id, Status.PAUSED, Status.PENDING)
    if resumed:
        store.append_progress(loop_id, "# Resumed\n")
        logger.info("Resumed %s", loop_id)
    return resumed
