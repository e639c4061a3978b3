"""
Context builders for advisory requests (computed by Python, not LLM).

Turns raw history and pose snapshots into the small descriptive structures
used both for prompting the advisory service and by the fallback rules.
"""

from typing import Optional

import numpy as np

from .state import (
    MotionSample,
    MovementClass,
    MovementContext,
    MovementState,
    PoseAlignment,
    PoseSummary,
    QualityTier,
    TipContext,
)

MIN_KEYPOINT_SCORE = 0.5
CONTEXT_WINDOW = 10

# Alignment thresholds (pixel offset between left/right keypoints)
SHOULDER_OFFSET_LIMIT = 25.0
HIP_OFFSET_LIMIT = 20.0
KNEE_OFFSET_LIMIT = 35.0
ANKLE_OFFSET_LIMIT = 30.0

POOR_DETECTION_KEYPOINTS = 6
GOOD_DETECTION_KEYPOINTS = 8
EXCELLENT_DETECTION_KEYPOINTS = 12


def _pair_offset(pose: PoseSummary, left_name: str, right_name: str) -> float:
    left = pose.keypoint(left_name)
    right = pose.keypoint(right_name)
    if left is None or right is None:
        return 0.0
    if left.score < MIN_KEYPOINT_SCORE or right.score < MIN_KEYPOINT_SCORE:
        return 0.0
    return abs(left.y - right.y)


def calculate_pose_alignment(pose: Optional[PoseSummary]) -> PoseAlignment:
    """
    Vertical offset of each left/right keypoint pair.

    Pairs with a missing or low-confidence keypoint report 0.
    """
    if pose is None or not pose.keypoints:
        return PoseAlignment()
    return PoseAlignment(
        shoulder=_pair_offset(pose, "left_shoulder", "right_shoulder"),
        hip=_pair_offset(pose, "left_hip", "right_hip"),
        knee=_pair_offset(pose, "left_knee", "right_knee"),
        ankle=_pair_offset(pose, "left_ankle", "right_ankle"),
    )


def build_movement_context(
    sample: MotionSample,
    history: list[MotionSample],
    pose: Optional[PoseSummary] = None,
) -> MovementContext:
    """
    Describe the recent motion for a classification prompt.

    Args:
        sample: Latest sample (its axes decide the pattern label)
        history: Recent samples, oldest first
        pose: Latest pose snapshot, if any

    Returns:
        MovementContext with pattern, stability, trend, average and variance
    """
    intensities = np.array([s.intensity for s in history[-CONTEXT_WINDOW:]], dtype=float)
    avg = float(intensities.mean()) if intensities.size else 0.0
    variance = float(intensities.var()) if intensities.size else 0.0

    # Later checks take precedence
    pattern = "stable"
    if variance > 0.1:
        pattern = "variable"
    if sample.z > 0.4:
        pattern = "vertical"
    if abs(sample.y) > 0.3:
        pattern = "lateral"

    stability = "high"
    if pose is not None:
        if pose.high_confidence_keypoint_count < GOOD_DETECTION_KEYPOINTS:
            stability = "low"
        elif pose.high_confidence_keypoint_count < EXCELLENT_DETECTION_KEYPOINTS:
            stability = "medium"

    trend = "stable"
    recent = intensities[-3:]
    older = intensities[-6:-3]
    if intensities.size >= 3 and older.size:
        recent_avg = recent.mean()
        older_avg = older.mean()
        if recent_avg > older_avg * 1.2:
            trend = "increasing"
        elif recent_avg < older_avg * 0.8:
            trend = "decreasing"

    return MovementContext(
        pattern=pattern,
        stability=stability,
        trend=trend,
        avg_intensity=avg,
        variance=variance,
    )


def build_tip_context(
    movement_class: MovementClass,
    movement_state: MovementState,
    pose: Optional[PoseSummary] = None,
) -> TipContext:
    """
    Assess form quality, issues and strengths for a tip request.

    Without pose data the quality stays "good" and only movement-based
    strengths are reported.
    """
    issues: list[str] = []
    strengths: list[str] = []
    quality = QualityTier.GOOD
    alignment = calculate_pose_alignment(pose)
    confidence = pose.high_confidence_keypoint_count if pose is not None else 0

    if pose is not None:
        if alignment.shoulder > SHOULDER_OFFSET_LIMIT:
            issues.append("shoulder misalignment")
        if alignment.hip > HIP_OFFSET_LIMIT:
            issues.append("hip imbalance")
        if alignment.knee > KNEE_OFFSET_LIMIT:
            issues.append("knee alignment")
        if alignment.ankle > ANKLE_OFFSET_LIMIT:
            issues.append("foot positioning")

        if confidence > EXCELLENT_DETECTION_KEYPOINTS:
            strengths.append("excellent pose detection")
        if confidence > GOOD_DETECTION_KEYPOINTS and not issues:
            strengths.append("good alignment")

        if confidence < POOR_DETECTION_KEYPOINTS:
            issues.append("poor pose detection")
            quality = QualityTier.POOR
        elif len(issues) > 2:
            quality = QualityTier.NEEDS_IMPROVEMENT
        elif not issues:
            quality = QualityTier.EXCELLENT

    if movement_class == MovementClass.EXPLOSIVE and movement_state == MovementState.ACTIVE:
        strengths.append("good power generation")
    elif movement_class == MovementClass.RHYTHMIC and movement_state == MovementState.MOVING:
        strengths.append("consistent tempo")
    elif movement_class == MovementClass.CONTROLLED and movement_state == MovementState.MOVING:
        strengths.append("precise control")

    return TipContext(
        movement_class=movement_class,
        movement_state=movement_state,
        quality=quality,
        issues=issues,
        strengths=strengths,
        pose_keypoints=confidence,
        alignment=alignment,
        has_pose=pose is not None,
    )
