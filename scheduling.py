"""Clock and scheduler capabilities used by the self-driven detector loop."""

import threading
import time
from typing import Any, Callable, Protocol


def monotonic_ms() -> float:
    """Default clock: monotonic time in milliseconds."""
    return time.perf_counter() * 1000.0


class Scheduler(Protocol):
    def schedule(self, delay_s: float, fn: Callable[[], None]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...


class ThreadingScheduler:
    """Runs each callback once on a daemon ``threading.Timer``."""

    def schedule(self, delay_s: float, fn: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(0.0, delay_s), fn)
        timer.daemon = True
        timer.start()
        return timer

    def cancel(self, handle: Any) -> None:
        if handle is not None:
            handle.cancel()
