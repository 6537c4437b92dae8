# diagnostics.py
# Warning throttle and logging setup.
#
# Recoverable faults (a failed summary merge, a notification that did not go
# out, a dead-end page) are reported here instead of raising. A WarnThrottle
# emits at most one log line per key per interval so a fault repeated every
# step does not flood the log.

import logging
import time
from collections import deque
from typing import Callable

from rich.logging import RichHandler

logger = logging.getLogger(__name__)


class WarnThrottle:
    """
    Owned rate limiter for diagnostic warnings.

    Lifecycle: one instance per process (see process_throttle()), passed to
    each harness. State survives across runs and is cleared only by reset().

    Example:
        throttle = WarnThrottle(interval_s=10)
        throttle.warn("summary", "History summary failed", exc)
    """

    def __init__(
        self,
        interval_s: float = 10.0,
        max_records: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_s = interval_s
        self._clock = clock
        self._last_emit: dict[str, float] = {}
        self.records: deque[dict] = deque(maxlen=max_records)

    def should_emit(self, key: str) -> bool:
        now = self._clock()
        last = self._last_emit.get(key)
        if last is not None and now - last < self.interval_s:
            return False
        self._last_emit[key] = now
        return True

    def warn(self, key: str, message: str, error: BaseException | str | None = None) -> bool:
        """Record the fault; log it unless the same key was logged recently."""
        detail = str(error) if error is not None else ""
        self.records.append({"key": key, "message": message, "error": detail, "at": time.time()})
        if not self.should_emit(key):
            return False
        if detail:
            logger.warning("%s: %s", message, detail)
        else:
            logger.warning("%s", message)
        return True

    def reset(self) -> None:
        self._last_emit.clear()
        self.records.clear()


_PROCESS_THROTTLE: WarnThrottle | None = None


def process_throttle() -> WarnThrottle:
    global _PROCESS_THROTTLE
    if _PROCESS_THROTTLE is None:
        _PROCESS_THROTTLE = WarnThrottle()
    return _PROCESS_THROTTLE


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
