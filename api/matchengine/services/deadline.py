import logging
import time
from typing import Callable

from matchengine.errors import Timeout

logger = logging.getLogger(__name__)


class Deadline:
    """Operation time budget. ``check`` raises ``Timeout`` once it is spent."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = float(seconds)
        self._clock = clock
        self._started = clock()

    def remaining(self) -> float:
        return self.seconds - (self._clock() - self._started)

    def check(self, stage: str) -> None:
        if self.seconds > 0 and self.remaining() <= 0:
            logger.warning("[MATCHING] deadline of %ss exceeded at stage=%s", self.seconds, stage)
            raise Timeout(f"Operation exceeded {self.seconds:g}s during {stage}", {"stage": stage})
