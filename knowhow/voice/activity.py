"""Short-time energy metering for the live microphone signal."""

from __future__ import annotations

import math
import sys
from array import array
from collections import deque

LEVEL_SCALE = 255.0


def compute_rms(chunk: bytes, sample_width: int) -> int:
    """Compute RMS (Root Mean Square) for an audio chunk."""
    if not chunk or sample_width <= 0:
        return 0
    frames = len(chunk) // sample_width
    if frames <= 0:
        return 0
    trimmed = chunk[: frames * sample_width]
    typecode = {1: "b", 2: "h", 4: "i"}.get(sample_width)
    if typecode:
        samples = array(typecode)
        samples.frombytes(trimmed)
        if sample_width > 1 and sys.byteorder != "little":
            samples.byteswap()
        total = math.fsum(value * value for value in samples)
    else:
        total = 0.0
        for i in range(0, len(trimmed), sample_width):
            sample = int.from_bytes(trimmed[i : i + sample_width], "little", signed=True)
            total += sample * sample
    mean = total / frames
    return int(math.sqrt(mean))


def compute_level(chunk: bytes, sample_width: int) -> float:
    """RMS of a PCM chunk on a 0-255 magnitude scale (full-scale RMS maps to 255)."""
    if sample_width <= 0:
        return 0.0
    full_scale = float(1 << (8 * sample_width - 1))
    rms = compute_rms(chunk, sample_width)
    return min(LEVEL_SCALE, (rms / full_scale) * LEVEL_SCALE)


class ActivityMeter:
    """Rolling mean of recent chunk levels."""

    def __init__(self, *, sample_width: int = 2, window: int = 5) -> None:
        if window <= 0:
            raise ValueError("Meter window must be positive")
        self.sample_width = sample_width
        self._levels: deque[float] = deque(maxlen=window)

    def observe(self, chunk: bytes) -> float:
        level = compute_level(chunk, self.sample_width)
        self._levels.append(level)
        return level

    def record(self, level: float) -> None:
        self._levels.append(max(0.0, float(level)))

    def level(self) -> float:
        if not self._levels:
            return 0.0
        return math.fsum(self._levels) / len(self._levels)

    def reset(self) -> None:
        self._levels.clear()
