"""
State definitions for the real-time coaching pipeline.

This module defines the Pydantic models for the data that flows from the
motion sampler through the classifiers, the rolling aggregator and the
advisory layer down to the audio dispatcher.  Uses Pydantic for validation
and for LangGraph integration (the session-summary agent state).
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# ============================================================================
# Enumerations
# ============================================================================

class MovementState(str, Enum):
    """Coarse activity state produced by the hysteretic state machine."""
    IDLE = "idle"
    MOVING = "moving"
    ACTIVE = "active"


class MovementClass(str, Enum):
    """Semantic movement class derived from a trailing sample window."""
    EXPLOSIVE = "explosive"
    RHYTHMIC = "rhythmic"
    SUSTAINED = "sustained"
    CONTROLLED = "controlled"
    NONE = "none"


class SessionPhase(str, Enum):
    SETUP = "setup"
    PREPARATION = "preparation"
    RELEASE = "release"


class TipPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class QualityTier(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    NEEDS_IMPROVEMENT = "needs improvement"
    POOR = "poor"


# ============================================================================
# Input Models
# ============================================================================

class MotionSample(BaseModel):
    """One timestamped tri-axis reading and its scalar intensity."""
    timestamp: float = Field(description="Milliseconds on the session clock")
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    intensity: float = Field(ge=0.0, description="Euclidean norm of (x, y, z)")


class Keypoint(BaseModel):
    """A single skeletal keypoint reported by the pose collaborator."""
    name: str
    x: float
    y: float
    score: float = Field(default=0.0, ge=0.0, le=1.0)


class PoseSummary(BaseModel):
    """Read-only pose snapshot supplied by the pose-estimation collaborator."""
    keypoints: list[Keypoint] = Field(default_factory=list)
    high_confidence_keypoint_count: int = Field(default=0, ge=0)
    total_keypoint_count: int = Field(default=0, ge=0)
    timestamp: Optional[float] = None

    @classmethod
    def from_keypoints(
        cls,
        keypoints: list[Keypoint],
        timestamp: Optional[float] = None,
        confidence_threshold: float = 0.5,
    ) -> "PoseSummary":
        """Build a summary, counting keypoints above *confidence_threshold*."""
        return cls(
            keypoints=keypoints,
            high_confidence_keypoint_count=sum(
                1 for kp in keypoints if kp.score > confidence_threshold
            ),
            total_keypoint_count=len(keypoints),
            timestamp=timestamp,
        )

    def keypoint(self, name: str) -> Optional[Keypoint]:
        for kp in self.keypoints:
            if kp.name == name:
                return kp
        return None


# ============================================================================
# Analysis Models (computed by Python, not LLM)
# ============================================================================

class PoseAlignment(BaseModel):
    """Vertical offset between left/right keypoint pairs (0 when unknown)."""
    shoulder: float = 0.0
    hip: float = 0.0
    knee: float = 0.0
    ankle: float = 0.0

    @property
    def worst(self) -> float:
        return max(self.shoulder, self.hip, self.knee, self.ankle)


class MovementContext(BaseModel):
    """Windowed description of the recent motion, used in prompts."""
    pattern: str = Field(description="'stable', 'variable', 'vertical' or 'lateral'")
    stability: str = Field(description="'high', 'medium' or 'low' pose stability")
    trend: str = Field(description="'increasing', 'decreasing' or 'stable'")
    avg_intensity: float
    variance: float


class TipContext(BaseModel):
    """Everything the tip channel needs to ask for (or fall back to) a tip."""
    movement_class: MovementClass
    movement_state: MovementState
    quality: QualityTier = QualityTier.GOOD
    issues: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    pose_keypoints: int = Field(default=0, description="High-confidence keypoint count")
    alignment: PoseAlignment = Field(default_factory=PoseAlignment)
    has_pose: bool = False


# ============================================================================
# Output Models
# ============================================================================

class CoachingTip(BaseModel):
    """A spoken-feedback candidate, consumed once by the audio dispatcher."""
    text: str
    priority: TipPriority = TipPriority.MEDIUM
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source_score: float = Field(default=50.0, ge=0.0, le=100.0)
    timestamp: float = 0.0


class SessionSummary(BaseModel):
    """Performance summary over one 30-second aggregation window."""
    phase: SessionPhase
    score: int = Field(ge=0, le=100)
    avg_intensity: float
    min_intensity: float
    max_intensity: float
    sample_count: int
    pose_sample_count: int
    time_range_ms: float
    window_start: float
    feedback: list[str] = Field(default_factory=list)
    critical_issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


# ============================================================================
# State Model (flows through LangGraph)
# ============================================================================

class CoachingState(BaseModel):
    """
    State that flows through the LangGraph session-summary agent.

    This state is passed between nodes and accumulates information
    as the agent narrates an aggregated window.
    """
    # Input data
    summary: SessionSummary

    # Warnings derived from the summary
    warnings: list[str] = Field(default_factory=list)

    # LLM-generated narration
    llm_feedback: str = ""
    used_fallback: bool = False

    # Final output
    final_response: Optional[dict] = None

    # Error tracking
    error: Optional[str] = None

    class Config:
        """Pydantic config for LangGraph compatibility."""
        arbitrary_types_allowed = True
