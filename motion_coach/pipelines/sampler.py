"""
Stage 1: Motion sampling & intensity smoothing.

A ``MotionSource`` supplies tri-axis readings; ``MotionSampler`` turns each
reading into a timestamped ``MotionSample``, feeds the exponential
smoother and appends the sample to a bounded history.
"""

import logging
import math
import random
from collections import deque
from typing import Callable, Iterator, Optional

from ..agents.state import MotionSample
from .config import HISTORY_CAPACITY, SMOOTHING_RETAIN, SMOOTHING_NEW
from .utils import monotonic_ms

logger = logging.getLogger(__name__)

Reading = tuple[float, float, float]


# ============================================================================
# Sources
# ============================================================================

class MotionSource:
    """Supplies the latest (x, y, z) reading, or ``None`` when nothing is available."""

    @property
    def user_in_frame(self) -> bool:
        return True

    def read(self) -> Optional[Reading]:
        raise NotImplementedError

    def reset(self) -> None:
        """Prepare for a new session."""


class QueueMotionSource(MotionSource):
    """
    Push-fed source (e.g. accelerometer readings arriving over a socket).

    Readings pushed between two sampler ticks are collapsed to the newest.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        self._pending: deque[Reading] = deque(maxlen=capacity)

    def push(self, x: float, y: float, z: float) -> None:
        self._pending.append((float(x), float(y), float(z)))

    def read(self) -> Optional[Reading]:
        if not self._pending:
            return None
        reading = self._pending[-1]
        self._pending.clear()
        return reading

    def reset(self) -> None:
        self._pending.clear()


class SyntheticMotionSource(MotionSource):
    """
    Camera-style synthetic intensity estimate, one reading per frame.

    The user is considered out of frame for the first five frames and for
    20 of every 100 frames afterwards (``read`` returns ``None``).  In frame,
    intensity idles around 1.0 with periodic bursts (frames 0-7 of every 30)
    and stronger peaks (frames 0-4 of every 60, when not already bursting).
    """

    BASE_INTENSITY = 1.0

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()
        self.frame = 0

    @property
    def user_in_frame(self) -> bool:
        return self.frame > 5 and self.frame % 100 < 80

    def _jitter(self, spread: float) -> float:
        return (self.rng.random() - 0.5) * spread

    def next_intensity(self) -> float:
        if self.frame < 10:
            return self.BASE_INTENSITY + self._jitter(0.1)
        if self.frame % 30 < 8:
            return self.BASE_INTENSITY + 1.5 + self._jitter(0.8)
        if self.frame % 60 < 5:
            return self.BASE_INTENSITY + 2.2 + self._jitter(0.6)
        return self.BASE_INTENSITY + self._jitter(0.2)

    def read(self) -> Optional[Reading]:
        self.frame += 1
        if not self.user_in_frame:
            return None
        target = self.next_intensity()
        x = self._jitter(0.1)
        y = self._jitter(0.1)
        z = math.sqrt(max(target * target - x * x - y * y, 0.0))
        return x, y, z

    def reset(self) -> None:
        self.frame = 0


# ============================================================================
# Smoother & history
# ============================================================================

class IntensitySmoother:
    """Exponential moving average, seeded with the first raw value."""

    def __init__(self, retain: float = SMOOTHING_RETAIN, new: float = SMOOTHING_NEW):
        self.retain = retain
        self.new = new
        self.value: Optional[float] = None

    def update(self, intensity: float) -> float:
        if self.value is None:
            self.value = intensity
        else:
            self.value = self.value * self.retain + intensity * self.new
        return self.value

    def reset(self) -> None:
        self.value = None


class SampleHistory:
    """Ring buffer of recent samples (drop-oldest)."""

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        self._samples: deque[MotionSample] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen

    def append(self, sample: MotionSample) -> None:
        self._samples.append(sample)

    def recent(self, n: int) -> list[MotionSample]:
        if n <= 0:
            return []
        return list(self._samples)[-n:]

    def as_list(self) -> list[MotionSample]:
        return list(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[MotionSample]:
        return iter(self._samples)


# ============================================================================
# Sampler
# ============================================================================

class MotionSampler:
    """
    Reads the source once per tick and maintains smoothed intensity and history.

    Example usage:
        sampler = MotionSampler(SyntheticMotionSource(random.Random(1)))
        sample = sampler.sample()
        print(sampler.smoothed)
    """

    def __init__(
        self,
        source: MotionSource,
        clock: Callable[[], float] = monotonic_ms,
        capacity: int = HISTORY_CAPACITY,
    ):
        self.source = source
        self.clock = clock
        self.smoother = IntensitySmoother()
        self.history = SampleHistory(capacity)

    @property
    def smoothed(self) -> float:
        return self.smoother.value if self.smoother.value is not None else 0.0

    def sample(self) -> Optional[MotionSample]:
        """
        Take one sample from the source.

        Returns:
            The new MotionSample, or ``None`` when the source had no reading
        """
        reading = self.source.read()
        if reading is None:
            return None
        x, y, z = reading
        sample = MotionSample(
            timestamp=self.clock(),
            x=x,
            y=y,
            z=z,
            intensity=math.sqrt(x * x + y * y + z * z),
        )
        self.smoother.update(sample.intensity)
        self.history.append(sample)
        return sample

    def reset(self) -> None:
        self.smoother.reset()
        self.history.clear()
        self.source.reset()
