"""
Stage 3: Rolling aggregation.

Accumulates motion samples, pose snapshots and smoothed intensities over a
sliding 30-second retention period and emits a ``SessionSummary`` at most
once per window length.  Buffers are not cleared on emit; only a stale gap
(no emit for longer than ``STALE_GAP_MS``) restarts the timing cycle.
"""

import logging
from typing import Callable, Optional

import numpy as np
from pydantic import BaseModel, Field

from ..agents.state import MotionSample, PoseSummary, SessionPhase, SessionSummary
from .config import (
    AGGREGATION_WINDOW_MS,
    STALE_GAP_MS,
    SAMPLES_PER_COLLECT,
    RELEASE_MAX_INTENSITY,
    PREPARATION_AVG_INTENSITY,
    SCORE_AVG_INTENSITY,
    SCORE_MAX_INTENSITY,
    SCORE_SAMPLE_COUNT,
    SCORE_POSE_COUNT,
    SCORE_CAP,
    STRONG_AVG_INTENSITY,
    LOW_AVG_INTENSITY,
    LOW_SAMPLE_COUNT,
)
from .utils import monotonic_ms

logger = logging.getLogger(__name__)


class TimedIntensity(BaseModel):
    timestamp: float
    intensity: float


class TimedPose(BaseModel):
    timestamp: float
    pose: PoseSummary


class AggregationWindow(BaseModel):
    """Session-scoped aggregation buffers and timing."""
    window_start_time: Optional[float] = None
    last_emit_time: Optional[float] = None
    sample_buffer: list[MotionSample] = Field(default_factory=list)
    pose_buffer: list[TimedPose] = Field(default_factory=list)
    intensity_buffer: list[TimedIntensity] = Field(default_factory=list)


# ============================================================================
# Scoring helpers
# ============================================================================

def derive_phase(avg_intensity: float, max_intensity: float) -> SessionPhase:
    if max_intensity > RELEASE_MAX_INTENSITY:
        return SessionPhase.RELEASE
    if avg_intensity > PREPARATION_AVG_INTENSITY:
        return SessionPhase.PREPARATION
    return SessionPhase.SETUP


def window_score(
    avg_intensity: float,
    max_intensity: float,
    sample_count: int,
    pose_count: int,
) -> int:
    """Weighted sum of threshold hits, capped at ``SCORE_CAP``."""
    score = 0
    for value, (threshold, points) in (
        (avg_intensity, SCORE_AVG_INTENSITY),
        (max_intensity, SCORE_MAX_INTENSITY),
        (sample_count, SCORE_SAMPLE_COUNT),
        (pose_count, SCORE_POSE_COUNT),
    ):
        if value > threshold:
            score += points
    return min(SCORE_CAP, score)


def categorize_feedback(
    avg_intensity: float,
    sample_count: int,
) -> tuple[list[str], list[str], list[str]]:
    """
    Build feedback, critical-issue and recommendation lists.

    Returns:
        (feedback, critical_issues, recommendations)
    """
    feedback: list[str] = []
    critical: list[str] = []
    recommendations: list[str] = []

    if avg_intensity > STRONG_AVG_INTENSITY:
        feedback.append("Excellent movement power detected!")
        recommendations.append("Maintain this intensity with consistent form")
    elif avg_intensity > PREPARATION_AVG_INTENSITY:
        feedback.append("Good preparation and steady effort")
        recommendations.append("Build more power into your movements")
    elif avg_intensity < LOW_AVG_INTENSITY:
        critical.append("Low movement intensity detected")
        recommendations.append("Increase the range and speed of your movement")

    if sample_count < LOW_SAMPLE_COUNT:
        critical.append("Limited movement activity")
        recommendations.append("Stay more active between repetitions")

    return feedback, critical, recommendations


# ============================================================================
# Aggregator
# ============================================================================

class RollingAggregator:
    """
    Sliding-window aggregator emitting one summary per window length.

    Example usage:
        aggregator = RollingAggregator()
        aggregator.collect(pose, smoothed_intensity, [sample])
        summary = aggregator.try_emit()   # None until 30 s have elapsed
    """

    def __init__(
        self,
        clock: Callable[[], float] = monotonic_ms,
        window_ms: float = AGGREGATION_WINDOW_MS,
        stale_gap_ms: float = STALE_GAP_MS,
    ):
        self.clock = clock
        self.window_ms = window_ms
        self.stale_gap_ms = stale_gap_ms
        self.window = AggregationWindow()

    def reset(self) -> None:
        self.window = AggregationWindow()

    def _restart_cycle(self, now: float) -> None:
        self.window.window_start_time = now
        self.window.last_emit_time = now

    def _is_stale(self, now: float) -> bool:
        return now - self.window.last_emit_time > self.stale_gap_ms

    def _prune(self, now: float) -> None:
        """Drop entries older than the window length (a boundary entry is kept)."""
        win = self.window
        cutoff = now - self.window_ms
        win.sample_buffer = [s for s in win.sample_buffer if s.timestamp >= cutoff]
        win.pose_buffer = [p for p in win.pose_buffer if p.timestamp >= cutoff]
        win.intensity_buffer = [i for i in win.intensity_buffer if i.timestamp >= cutoff]

    def collect(
        self,
        pose: Optional[PoseSummary],
        intensity: Optional[float],
        raw_samples: list[MotionSample],
    ) -> None:
        """
        Append new data and prune everything older than the window length.

        Args:
            pose: Latest pose snapshot, if this tick has one
            intensity: Current smoothed intensity, or ``None`` when the caller
                only contributes a pose
            raw_samples: Recent raw samples; only the newest few are taken and
                samples already in the buffer are skipped
        """
        win = self.window
        now = self.clock()

        if win.window_start_time is None or self._is_stale(now):
            if win.window_start_time is not None:
                logger.info("Aggregation gap of %.0f ms; restarting cycle", now - win.last_emit_time)
            self._restart_cycle(now)

        newest = win.sample_buffer[-1].timestamp if win.sample_buffer else None
        for sample in raw_samples[-SAMPLES_PER_COLLECT:]:
            if newest is None or sample.timestamp > newest:
                win.sample_buffer.append(sample)
                newest = sample.timestamp

        # Pose snapshots are stamped on arrival (session clock)
        if pose is not None:
            win.pose_buffer.append(TimedPose(timestamp=now, pose=pose))
        if intensity is not None:
            win.intensity_buffer.append(TimedIntensity(timestamp=now, intensity=intensity))
        self._prune(now)

    def try_emit(self) -> Optional[SessionSummary]:
        """
        Emit a summary if a full window length has passed since the last emit.

        Buffers are pruned against the emit time, so a window without recent
        collects only reports what is still inside it.  A stale gap restarts
        the cycle instead of emitting.

        Returns:
            SessionSummary, or ``None`` when not yet due or nothing was collected
        """
        win = self.window
        if win.last_emit_time is None:
            return None
        now = self.clock()
        if self._is_stale(now):
            logger.info("Aggregation gap of %.0f ms at emit; restarting cycle", now - win.last_emit_time)
            self._restart_cycle(now)
            return None
        if now - win.last_emit_time < self.window_ms:
            return None
        self._prune(now)

        intensities = np.array([i.intensity for i in win.intensity_buffer], dtype=float)
        if intensities.size:
            avg = float(intensities.mean())
            max_i = float(intensities.max())
            min_i = float(intensities.min())
        else:
            avg = max_i = min_i = 0.0

        sample_count = len(win.sample_buffer)
        pose_count = len(win.pose_buffer)
        feedback, critical, recommendations = categorize_feedback(avg, sample_count)

        summary = SessionSummary(
            phase=derive_phase(avg, max_i),
            score=window_score(avg, max_i, sample_count, pose_count),
            avg_intensity=avg,
            min_intensity=min_i,
            max_intensity=max_i,
            sample_count=sample_count,
            pose_sample_count=pose_count,
            time_range_ms=now - win.last_emit_time,
            window_start=win.window_start_time,
            feedback=feedback,
            critical_issues=critical,
            recommendations=recommendations,
        )
        win.last_emit_time = now
        logger.info(
            "Window summary: phase=%s score=%d avg=%.2f samples=%d poses=%d",
            summary.phase.value, summary.score, avg, sample_count, pose_count,
        )
        return summary
