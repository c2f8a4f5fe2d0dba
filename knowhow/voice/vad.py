"""Adaptive voice activity detection for barge-in while the assistant speaks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field

from .activity import ActivityMeter

LOGGER = logging.getLogger("knowhow-voice.vad")


def vad_threshold(
    baseline: float,
    *,
    multiplier: float = 2.5,
    margin: float = 15.0,
    floor: float = 25.0,
) -> float:
    """Energy a sample must exceed to count as the user talking over the assistant."""
    return max(baseline * multiplier, baseline + margin, floor)


@dataclass
class VADCalibration:
    """Echo baseline for one speaking interval; rebuilt every time synthesis starts."""

    target_samples: int
    samples: list[float] = field(default_factory=list)
    baseline: float | None = None

    @property
    def calibrated(self) -> bool:
        return self.baseline is not None

    def add(self, level: float) -> bool:
        """Record a warm-up sample. Returns True once the baseline is known."""
        if self.baseline is not None:
            return True
        self.samples.append(level)
        if len(self.samples) >= self.target_samples:
            self.baseline = math.fsum(self.samples) / len(self.samples)
            return True
        return False


class BargeInDetector:
    """Samples the activity meter during playback and reports genuine user speech.

    The first ``calibration_samples`` ticks measure how loud the assistant's own
    echo is. After that, any sample above the derived threshold stops sampling
    and fires ``on_voice`` once.
    """

    def __init__(
        self,
        meter: ActivityMeter,
        *,
        on_voice: Callable[[float, float], None],
        interval: float = 0.1,
        calibration_samples: int = 15,
        multiplier: float = 2.5,
        margin: float = 15.0,
        floor: float = 25.0,
    ) -> None:
        self.meter = meter
        self.interval = interval
        self.calibration_samples = calibration_samples
        self.multiplier = multiplier
        self.margin = margin
        self.floor = floor
        self._on_voice = on_voice
        self._calibration = VADCalibration(calibration_samples)
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def baseline(self) -> float | None:
        return self._calibration.baseline

    @property
    def threshold(self) -> float | None:
        if self._calibration.baseline is None:
            return None
        return vad_threshold(
            self._calibration.baseline,
            multiplier=self.multiplier,
            margin=self.margin,
            floor=self.floor,
        )

    def start(self) -> None:
        self.stop()
        self._calibration = VADCalibration(self.calibration_samples)
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait_stopped(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def process_sample(self, level: float) -> bool:
        """Feed one energy sample; True means user speech was detected."""
        calibration = self._calibration
        if not calibration.calibrated:
            if calibration.add(level):
                LOGGER.debug("[vad] Echo baseline: %.1f", calibration.baseline)
            return False
        threshold = self.threshold
        return threshold is not None and level > threshold

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            level = self.meter.level()
            if self.process_sample(level):
                threshold = self.threshold or 0.0
                LOGGER.info("[vad] User voice detected, level %.1f > threshold %.1f", level, threshold)
                self._task = None
                self._on_voice(level, threshold)
                return
