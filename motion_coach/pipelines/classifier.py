"""
Stage 2: Movement classification.

Two classifiers run on every sampler tick:
  - ``MovementStateMachine``: coarse idle/moving/active state over the
    smoothed intensity, with a hysteresis band that retains the previous
    state to prevent flicker near a threshold.
  - ``classify_movement_pattern``: semantic movement class from a trailing
    window of raw samples plus the latest pose snapshot.  This is the cheap
    deterministic answer; the advisory service may later confirm or
    override it.
"""

import logging
from typing import Optional

import numpy as np

from ..agents.state import MotionSample, MovementClass, MovementState, PoseSummary
from .config import (
    ACTIVE_THRESHOLD,
    MOVING_THRESHOLD,
    IDLE_THRESHOLD,
    PATTERN_WINDOW,
    PATTERN_MIN_HISTORY,
    GOOD_POSE_KEYPOINTS,
    HIGH_POSE_KEYPOINTS,
    EXPLOSIVE_MIN_VERTICAL,
    EXPLOSIVE_MIN_INTENSITY,
    EXPLOSIVE_MIN_VARIANCE,
    RHYTHMIC_MIN_LATERAL,
    RHYTHMIC_MAX_VARIANCE,
    RHYTHMIC_AVG_BAND,
    SUSTAINED_MIN_VERTICAL,
    SUSTAINED_MIN_AVG,
    SUSTAINED_MAX_VARIANCE,
    CONTROLLED_MAX_INTENSITY,
    CONTROLLED_MAX_VARIANCE,
    CONTROLLED_MAX_AXIS,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Coarse state machine
# ============================================================================

def next_movement_state(previous: MovementState, smoothed: float) -> MovementState:
    """Transition function over the smoothed intensity."""
    if smoothed > ACTIVE_THRESHOLD:
        return MovementState.ACTIVE
    if smoothed > MOVING_THRESHOLD:
        return MovementState.MOVING
    if smoothed < IDLE_THRESHOLD:
        return MovementState.IDLE
    # Hysteresis band [IDLE_THRESHOLD, MOVING_THRESHOLD]
    return previous


class MovementStateMachine:
    """Owns the session's coarse movement state; updated once per sampler tick."""

    def __init__(self, initial: MovementState = MovementState.IDLE):
        self.state = initial

    def update(self, smoothed: float) -> MovementState:
        new_state = next_movement_state(self.state, smoothed)
        if new_state != self.state:
            logger.debug("Movement state %s -> %s (v=%.2f)", self.state.value, new_state.value, smoothed)
        self.state = new_state
        return new_state

    def reset(self) -> None:
        self.state = MovementState.IDLE


# ============================================================================
# Semantic classifier
# ============================================================================

def window_stats(history: list[MotionSample], window: int = PATTERN_WINDOW) -> tuple[float, float]:
    """
    Average and population variance of the trailing *window* intensities.

    Returns:
        (avg, variance); (0.0, 0.0) for an empty history
    """
    recent = np.array([s.intensity for s in history[-window:]], dtype=float)
    if recent.size == 0:
        return 0.0, 0.0
    return float(recent.mean()), float(recent.var())


def classify_movement_pattern(
    sample: MotionSample,
    history: list[MotionSample],
    pose: Optional[PoseSummary] = None,
) -> MovementClass:
    """
    Rule-based movement class for the latest sample.

    Rules are checked in order and the first match wins.  A missing pose, or
    one with no high-confidence keypoints (pose tracking not running), is
    treated as non-limiting.  A pose with some keypoints but fewer than the
    rule needs suppresses that rule.

    Args:
        sample: Latest raw sample
        history: Recent samples, oldest first (includes *sample*)
        pose: Latest pose snapshot, if any

    Returns:
        MovementClass (``NONE`` with fewer than three samples of history)
    """
    if len(history) < PATTERN_MIN_HISTORY:
        return MovementClass.NONE

    avg, variance = window_stats(history)
    vertical = sample.z
    lateral = abs(sample.y)
    forward = abs(sample.x)

    if pose is None or pose.high_confidence_keypoint_count == 0:
        pose_ok = pose_high = True
    else:
        pose_ok = pose.high_confidence_keypoint_count > GOOD_POSE_KEYPOINTS
        pose_high = pose.high_confidence_keypoint_count > HIGH_POSE_KEYPOINTS

    if (
        vertical > EXPLOSIVE_MIN_VERTICAL
        and sample.intensity > EXPLOSIVE_MIN_INTENSITY
        and variance > EXPLOSIVE_MIN_VARIANCE
        and pose_ok
    ):
        return MovementClass.EXPLOSIVE

    low, high = RHYTHMIC_AVG_BAND
    if (
        lateral > RHYTHMIC_MIN_LATERAL
        and variance < RHYTHMIC_MAX_VARIANCE
        and low < avg < high
        and pose_ok
    ):
        return MovementClass.RHYTHMIC

    if (
        vertical > SUSTAINED_MIN_VERTICAL
        and avg > SUSTAINED_MIN_AVG
        and variance < SUSTAINED_MAX_VARIANCE
        and pose_high
    ):
        return MovementClass.SUSTAINED

    if (
        sample.intensity < CONTROLLED_MAX_INTENSITY
        and variance < CONTROLLED_MAX_VARIANCE
        and max(abs(vertical), lateral, forward) < CONTROLLED_MAX_AXIS
        and pose_ok
    ):
        return MovementClass.CONTROLLED

    return MovementClass.NONE
