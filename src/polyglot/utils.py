import logging
import threading
from collections.abc import Callable

from .errors import SyncCancelled

log = logging.getLogger(__name__)

ProgressSink = Callable[[float], None]

# How often a waiting lock acquisition looks at the cancellation signal
LOCK_POLL_SECONDS = 0.25


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise SyncCancelled("Operation cancelled")


def acquire_lock(lock: threading.Lock, cancel: threading.Event | None = None) -> None:
    """Block until ``lock`` is held, raising ``SyncCancelled`` if cancelled first."""
    while not lock.acquire(timeout=LOCK_POLL_SECONDS):
        check_cancelled(cancel)
    if cancel is not None and cancel.is_set():
        lock.release()
        raise SyncCancelled("Operation cancelled")


def safe_report(progress: ProgressSink | None, value: float) -> None:
    """Report progress, clamped to 0-100. A failing sink never breaks the caller."""
    if progress is None:
        return
    try:
        progress(max(0.0, min(100.0, float(value))))
    except Exception:
        log.warning("Progress callback failed", exc_info=True)


def scaled_progress(progress: ProgressSink | None, start: float, end: float) -> ProgressSink | None:
    """Map a 0-100 sub-range onto ``start``-``end`` of ``progress``."""
    if progress is None:
        return None

    def report(value: float) -> None:
        safe_report(progress, start + (end - start) * value / 100.0)

    return report
