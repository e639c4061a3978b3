"""
Shared helpers for the coaching pipeline.
"""

import random
import time
from typing import Optional


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds (the default session clock)."""
    return time.monotonic() * 1000.0


def make_rng(seed: Optional[int] = None) -> random.Random:
    """Random source for fallback-text selection; seeded for reproducibility."""
    return random.Random(seed)
