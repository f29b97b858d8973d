from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)


def rms_level(window: np.ndarray) -> float:
    """Root-mean-square energy of *window*, full scale mapped to 1.0.

    Accepts float PCM in [-1, 1] or int16 PCM; the result is clamped to [0, 1].
    """
    if window.size == 0:
        return 0.0
    data = np.asarray(window)
    if np.issubdtype(data.dtype, np.integer):
        data = data.astype(np.float64) / 32768.0
    else:
        data = data.astype(np.float64, copy=False)
    level = float(np.sqrt(np.mean(np.square(data))))
    return max(0.0, min(1.0, level))


def smooth_level(previous: float, sample: float, factor: float = 0.15) -> float:
    """One step of exponential smoothing toward *sample*."""
    return previous + (sample - previous) * factor


def decay_peak(previous: float, sample: float, elapsed_ms: float, rate_per_100ms: float = 0.05) -> float:
    """Peak hold that falls linearly with elapsed time but never below *sample*."""
    decayed = previous - rate_per_100ms * max(0.0, elapsed_ms) / 100.0
    return max(sample, decayed, 0.0)


@dataclass(frozen=True)
class LevelMeter:
    """Display-oriented view of the input level, advanced once per tick."""

    level: float = 0.0
    peak: float = 0.0
    at_ms: Optional[float] = None

    def advance(self, sample: float, t_ms: float) -> "LevelMeter":
        elapsed = 0.0 if self.at_ms is None else t_ms - self.at_ms
        return LevelMeter(
            level=smooth_level(self.level, sample),
            peak=decay_peak(self.peak, sample, elapsed),
            at_ms=t_ms,
        )


class LevelSource(Protocol):
    def latest_window(self, n_samples: int) -> Optional[np.ndarray]: ...


class LevelSampler:
    """Periodic energy reader driven by an asyncio timer.

    Every tick reads the latest capture window from *source*, reduces it to a
    single RMS value and hands ``(level, t_ms)`` to *on_level*. A tick where the
    source has no fresh audio is skipped, so sampling pauses while the device
    is unavailable and resumes on its own once audio flows again.
    """

    def __init__(
        self,
        source: LevelSource,
        on_level: Callable[[float, float], None],
        *,
        rate_hz: float = 60.0,
        window: int = 2048,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_hz <= 0:
            raise ValueError("rate_hz must be positive")
        self.source = source
        self.on_level = on_level
        self.interval = 1.0 / rate_hz
        self.window = window
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._paused = False

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.is_running:
            return
        self._paused = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> Optional[float]:
        """Take one sample now; returns the level, or None if paused."""
        block = self.source.latest_window(self.window)
        if block is None:
            if not self._paused:
                logger.debug("[LevelSampler] capture unavailable, sampling paused")
                self._paused = True
            return None
        if self._paused:
            logger.debug("[LevelSampler] capture available again, sampling resumed")
            self._paused = False
        level = rms_level(block)
        self.on_level(level, self._clock() * 1000.0)
        return level

    async def _run(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.interval)
