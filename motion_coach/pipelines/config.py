"""
Configuration constants for the real-time coaching pipeline.

Centralizes classifier thresholds, aggregation window lengths, buffer
capacities and tick cadences.  Per-session tunables are grouped in
``SessionSettings`` which can be loaded from a YAML file.
"""

from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field

from ..utils.io_utils import load_config

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_SETTINGS_PATH = PROJECT_ROOT / "config" / "session_default.yaml"

# ---------------------------------------------------------------------------
# Sampler / smoother
# ---------------------------------------------------------------------------
HISTORY_CAPACITY: int = 30        # Ring buffer of recent MotionSamples
SMOOTHING_RETAIN: float = 0.7     # Weight of the previous smoothed value
SMOOTHING_NEW: float = 0.3        # Weight of the new raw intensity

# ---------------------------------------------------------------------------
# Coarse state machine (smoothed intensity)
# ---------------------------------------------------------------------------
ACTIVE_THRESHOLD: float = 2.5     # v > 2.5            -> active
MOVING_THRESHOLD: float = 2.0     # 2.0 < v <= 2.5     -> moving
IDLE_THRESHOLD: float = 1.5       # v < 1.5            -> idle
                                  # 1.5 <= v <= 2.0    -> keep previous

# ---------------------------------------------------------------------------
# Secondary (semantic) classifier
# ---------------------------------------------------------------------------
PATTERN_WINDOW: int = 8           # Trailing samples used for avg / variance
PATTERN_MIN_HISTORY: int = 3      # Fewer samples than this -> none
GOOD_POSE_KEYPOINTS: int = 8      # "adequate" pose confidence
HIGH_POSE_KEYPOINTS: int = 10     # "high" pose confidence

EXPLOSIVE_MIN_VERTICAL: float = 0.5
EXPLOSIVE_MIN_INTENSITY: float = 0.7
EXPLOSIVE_MIN_VARIANCE: float = 0.2

RHYTHMIC_MIN_LATERAL: float = 0.25
RHYTHMIC_MAX_VARIANCE: float = 0.1
RHYTHMIC_AVG_BAND: tuple[float, float] = (0.3, 0.7)

SUSTAINED_MIN_VERTICAL: float = 0.3
SUSTAINED_MIN_AVG: float = 0.6
SUSTAINED_MAX_VARIANCE: float = 0.15

CONTROLLED_MAX_INTENSITY: float = 0.5
CONTROLLED_MAX_VARIANCE: float = 0.08
CONTROLLED_MAX_AXIS: float = 0.3

# ---------------------------------------------------------------------------
# Rolling aggregator
# ---------------------------------------------------------------------------
AGGREGATION_WINDOW_MS: float = 30_000.0
STALE_GAP_MS: float = 35_000.0    # ~1.17 x window -> restart the cycle
SAMPLES_PER_COLLECT: int = 5      # Newest raw samples taken per collect()

RELEASE_MAX_INTENSITY: float = 1.2
PREPARATION_AVG_INTENSITY: float = 0.8

# (threshold, points) for the capped 0-100 window score
SCORE_AVG_INTENSITY: tuple[float, int] = (1.0, 30)
SCORE_MAX_INTENSITY: tuple[float, int] = (1.5, 25)
SCORE_SAMPLE_COUNT: tuple[int, int] = (60, 20)
SCORE_POSE_COUNT: tuple[int, int] = (15, 25)
SCORE_CAP: int = 100

STRONG_AVG_INTENSITY: float = 1.2
LOW_AVG_INTENSITY: float = 0.4
LOW_SAMPLE_COUNT: int = 30


# ---------------------------------------------------------------------------
# Per-session settings
# ---------------------------------------------------------------------------

class SessionSettings(BaseModel):
    """Tunables for one coaching session (cadences in milliseconds)."""
    sample_interval_ms: float = Field(default=200.0, gt=0)
    pose_interval_ms: float = Field(default=3000.0, gt=0)
    tip_interval_ms: float = Field(default=2000.0, gt=0)
    summary_check_interval_ms: float = Field(default=1000.0, gt=0)

    analysis_interval_ms: float = Field(
        default=1000.0, ge=0,
        description="Minimum spacing between advisory classification attempts",
    )
    advisory_warmup_ms: float = Field(
        default=3000.0, ge=0,
        description="No advisory classification this soon after session start",
    )
    advisory_min_intensity: float = Field(
        default=MOVING_THRESHOLD,
        description="Smoothed intensity needed before asking for a classification",
    )
    advisory_min_history: int = Field(default=5, ge=0)
    tip_min_intensity: float = Field(default=MOVING_THRESHOLD)

    min_speak_interval_ms: float = Field(default=3000.0, ge=0)
    retain_cache_across_sessions: bool = False
    narrate_summaries: bool = True
    random_seed: Optional[int] = None


def load_session_settings(path: Union[str, Path, None] = None) -> SessionSettings:
    """Load ``SessionSettings`` from YAML (defaults when *path* is missing).

    Args:
        path: YAML file; ``None`` uses ``config/session_default.yaml`` if present.

    Returns:
        Validated settings.

    Raises:
        pydantic.ValidationError: If a value in the file is out of range.
    """
    path = Path(path) if path is not None else DEFAULT_SETTINGS_PATH
    if not path.exists():
        return SessionSettings()
    raw = load_config(str(path)) or {}
    return SessionSettings(**raw.get("session", raw))
