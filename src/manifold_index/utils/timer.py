import time
from contextlib import contextmanager

from .logger import get_logger, log_debug

MS_PER_DAY = 86_400_000


@contextmanager
def timed_block(name: str, **context):
    """Profile execution time of a code block."""
    logger = get_logger(__name__)

    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = (time.perf_counter() - start) * 1000  # ms
        log_debug(logger, f"[TIMER] {name}", elapsed_ms=round(elapsed, 3), **context)


def days_to_ms(days: int) -> int:
    """Convert a day count into epoch-ms span."""
    return int(days) * MS_PER_DAY


def window_bounds(ts: int, lookback_days: int) -> tuple[int, int]:
    """Inclusive [start, end] epoch-ms window ending at `ts`."""
    end = int(ts)
    return end - days_to_ms(lookback_days), end
