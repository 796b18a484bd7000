"""Process memory sampling and adaptive concurrency recommendation."""

from __future__ import annotations

import asyncio
import gc
import logging
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from batch_control.config import DEFAULT_MAX_MEMORY_BYTES

logger = logging.getLogger(__name__)

PRESSURE_RATIO = 0.9
WARNING_RATIO = 0.8


@dataclass(slots=True, frozen=True)
class ResourceSample:
    """One memory/CPU sample of the current process."""

    rss_bytes: int
    ratio: float
    cpu_percent: float | None = None


class ResourceMonitor:
    """Maps process memory utilization to a recommended concurrency level.

    Utilization is ``rss / max_memory_bytes``. Thresholds:

    - ``u > 0.8``: 1
    - ``0.6 < u <= 0.8``: ``min(2, requested)``
    - ``0.4 < u <= 0.6``: ``min(3, requested)``
    - otherwise: ``requested``
    """

    def __init__(
        self,
        *,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
        adaptive: bool = True,
        pressure_pause_seconds: float = 1.0,
        sampler: Callable[[], ResourceSample] | None = None,
    ) -> None:
        if max_memory_bytes <= 0:
            raise ValueError("max_memory_bytes must be > 0.")
        self.max_memory_bytes = max_memory_bytes
        self.adaptive = adaptive
        self.pressure_pause_seconds = pressure_pause_seconds
        self._sampler = sampler or self._sample_process
        self._process: psutil.Process | None = None
        self.current_concurrency: int | None = None

    def sample(self) -> ResourceSample:
        return self._sampler()

    def try_sample(self) -> ResourceSample | None:
        """Like ``sample`` but logs and returns None when the sampler fails."""

        try:
            return self._sampler()
        except Exception:  # noqa: BLE001
            logger.exception("Resource sampling failed")
            return None

    def recommended_concurrency(self, requested: int) -> int:
        requested = max(1, requested)
        sample = self.try_sample() if self.adaptive else None
        if sample is None:
            self.current_concurrency = requested
            return requested

        ratio = sample.ratio
        if ratio > 0.8:
            recommended = 1
        elif ratio > 0.6:
            recommended = min(2, requested)
        elif ratio > 0.4:
            recommended = min(3, requested)
        else:
            recommended = requested

        if recommended != requested:
            logger.info(
                "Concurrency lowered from %d to %d (memory utilization %.0f%%)",
                requested,
                recommended,
                ratio * 100,
            )
        self.current_concurrency = recommended
        return recommended

    async def check_pressure(self) -> bool:
        """Request a GC pass and back off briefly when utilization exceeds 90%."""

        sample = self.try_sample()
        if sample is None or sample.ratio <= PRESSURE_RATIO:
            return False
        logger.warning(
            "Memory pressure %.0f%% - running garbage collection",
            sample.ratio * 100,
        )
        gc.collect()
        await asyncio.sleep(self.pressure_pause_seconds)
        return True

    def _sample_process(self) -> ResourceSample:
        if self._process is None:
            self._process = psutil.Process()
        with self._process.oneshot():
            rss = self._process.memory_info().rss
            cpu = self._process.cpu_percent(interval=None)
        return ResourceSample(rss_bytes=rss, ratio=rss / self.max_memory_bytes, cpu_percent=cpu)
