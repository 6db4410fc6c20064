"""Circuit breaker shared by every outbound dependency.

The semantic search and generative providers, the durable document store
and the redis fast cache each own one. While a breaker is open the owner
skips the call entirely and takes its degraded path, so a dead dependency
costs nothing on the hot path instead of a full timeout per turn.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreaker:
    """closed -> open (after N consecutive failures) -> half-open (after cooldown)."""

    failure_threshold: int = 3
    cooldown_seconds: float = 30.0
    label: str = "dependency"

    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return self._opened_at is not None

    def should_try(self) -> bool:
        if self._opened_at is None:
            return True
        # half-open: let one trial call through once the cooldown has passed
        return (time.monotonic() - self._opened_at) >= self.cooldown_seconds

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker for %s closed after successful trial call", self.label)
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures < self.failure_threshold:
            return
        if self._opened_at is None:
            logger.warning(
                "Circuit breaker OPENED for %s after %d consecutive failures, skipping for %.0fs",
                self.label,
                self._consecutive_failures,
                self.cooldown_seconds,
            )
        # a failed half-open trial call restarts the cooldown
        self._opened_at = time.monotonic()
