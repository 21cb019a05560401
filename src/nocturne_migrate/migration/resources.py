"""
Resource Monitoring
===================
Memory sampling and in-flight write tracking used by the engine to apply
backpressure when the configured memory ceiling is exceeded.
"""

import asyncio
import logging
from typing import Callable, Optional

import psutil

logger = logging.getLogger(__name__)


def process_memory_mb() -> float:
    """Resident set size of this process in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


class MemoryMonitor:
    """
    Samples memory usage every ``check_interval`` batches.

    Args:
        max_memory_mb: Ceiling that triggers throttling
        check_interval: Batches between samples (1 = every batch)
        probe: Callable returning current usage in MB (defaults to psutil RSS)
    """

    def __init__(
        self,
        max_memory_mb: float,
        check_interval: int = 1,
        probe: Optional[Callable[[], float]] = None,
    ):
        self.max_memory_mb = max_memory_mb
        self.check_interval = max(1, check_interval)
        self.probe = probe or process_memory_mb
        self.peak_mb = 0.0
        self.throttle_count = 0

    def should_check(self, batch_number: int) -> bool:
        return batch_number % self.check_interval == 0

    def sample(self) -> float:
        usage = self.probe()
        if usage > self.peak_mb:
            self.peak_mb = usage
        return usage

    def is_over_limit(self, usage_mb: float) -> bool:
        return usage_mb > self.max_memory_mb


class InFlightTracker:
    """Counts batch writes in progress so a throttled caller can wait for them to drain."""

    def __init__(self):
        self._count = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def count(self) -> int:
        return self._count

    def begin(self) -> None:
        self._count += 1
        self._idle.clear()

    def end(self) -> None:
        self._count = max(0, self._count - 1)
        if self._count == 0:
            self._idle.set()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no writes are in flight. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Timed out waiting for {self._count} in-flight writes")
            return False
