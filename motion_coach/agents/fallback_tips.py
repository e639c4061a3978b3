"""
Deterministic coaching tips and session narration used when the advisory
service is unavailable, rate limited, or returns something unusable.

Pose problems are addressed first (worst detection, then alignment pairs in
order); otherwise a tip is drawn from the table for the movement class, or
for the coarse movement state when no class applies.
"""

import random
from typing import Optional

from .context import (
    ANKLE_OFFSET_LIMIT,
    EXCELLENT_DETECTION_KEYPOINTS,
    HIP_OFFSET_LIMIT,
    KNEE_OFFSET_LIMIT,
    POOR_DETECTION_KEYPOINTS,
    SHOULDER_OFFSET_LIMIT,
)
from .state import MovementClass, MovementState, SessionPhase, SessionSummary, TipContext


# ============================================================================
# Tip tables
# ============================================================================

CLASS_TIPS: dict[MovementClass, list[str]] = {
    MovementClass.EXPLOSIVE: [
        "Powerful movement! Focus on controlled landing",
        "Great explosive energy! Maintain control",
        "Strong power! Land softly and prepare for next rep",
        "Excellent burst! Keep core engaged throughout",
    ],
    MovementClass.RHYTHMIC: [
        "Perfect rhythm! Keep this tempo",
        "Excellent cadence! Maintain this flow",
        "Great pace! Stay in this rhythm zone",
        "Nice tempo! Focus on smooth transitions",
    ],
    MovementClass.SUSTAINED: [
        "Strong hold! Keep your form tight",
        "Excellent endurance! Maintain alignment",
        "Perfect stability! Control your breathing",
        "Great strength! Keep movements deliberate",
    ],
    MovementClass.CONTROLLED: [
        "Precise control! Move with intention",
        "Excellent form! Keep movements deliberate",
        "Perfect precision! Focus on quality over speed",
        "Great control! Maintain awareness throughout",
    ],
}

STATE_TIPS: dict[MovementState, list[str]] = {
    MovementState.ACTIVE: [
        "Great intensity! Keep your core engaged",
        "Excellent power! Control your movements",
        "Strong energy! Stay balanced and focused",
        "Good intensity! Maintain proper form",
    ],
    MovementState.MOVING: [
        "Good tempo! Keep movements smooth",
        "Nice pace! Focus on proper form",
        "Great flow! Maintain this movement quality",
        "Excellent rhythm! Keep it consistent",
    ],
    MovementState.IDLE: [
        "Get ready! Position yourself properly",
        "Set your foundation! Core engaged",
        "Perfect setup! Focus on your breathing",
        "Good preparation! Ready to perform",
    ],
}

ADJUST_POSITION_TIP = "Adjust position for better detection"
SHOULDER_TIP = "Keep shoulders level for stability"
HIP_TIP = "Maintain level hips for balance"
KNEE_TIP = "Keep knees aligned and forward"
ANKLE_TIP = "Check your foot positioning"
EXCELLENT_FORM_TIP = "Excellent form! Keep it up"


def pose_fallback_tip(context: TipContext) -> Optional[str]:
    """Return the pose-driven tip for *context*, or ``None`` if pose is fine or absent."""
    if not context.has_pose:
        return None
    alignment = context.alignment
    if context.pose_keypoints < POOR_DETECTION_KEYPOINTS:
        return ADJUST_POSITION_TIP
    if alignment.shoulder > SHOULDER_OFFSET_LIMIT:
        return SHOULDER_TIP
    if alignment.hip > HIP_OFFSET_LIMIT:
        return HIP_TIP
    if alignment.knee > KNEE_OFFSET_LIMIT:
        return KNEE_TIP
    if alignment.ankle > ANKLE_OFFSET_LIMIT:
        return ANKLE_TIP
    if context.pose_keypoints > EXCELLENT_DETECTION_KEYPOINTS:
        return EXCELLENT_FORM_TIP
    return None


def candidate_tips(movement_class: MovementClass, movement_state: MovementState) -> list[str]:
    """Equivalent fallback tips: by class first, then by coarse state."""
    if movement_class in CLASS_TIPS:
        return CLASS_TIPS[movement_class]
    return STATE_TIPS.get(movement_state, STATE_TIPS[MovementState.IDLE])


def generate_fallback_tip(context: TipContext, rng: Optional[random.Random] = None) -> str:
    """
    Pick a deterministic-table tip for *context*.

    Args:
        context: Tip context (class, state, pose quality and alignment)
        rng: Random source for choosing among equivalent tips

    Returns:
        Tip text
    """
    tip = pose_fallback_tip(context)
    if tip is not None:
        return tip
    rng = rng or random.Random()
    return rng.choice(candidate_tips(context.movement_class, context.movement_state))


# ============================================================================
# Session narration
# ============================================================================

def generate_fallback_summary_feedback(summary: SessionSummary) -> list[str]:
    """Produce rule-based narration when the Gemini LLM is unavailable.

    Args:
        summary: The 30-second window summary.

    Returns:
        List of short, speakable sentences.
    """
    lines: list[str] = []

    # Overall summary
    if summary.score >= 80:
        lines.append(f"Strong half minute! Your form score was {summary.score} out of 100.")
    elif summary.score >= 50:
        lines.append(f"Solid work, form score {summary.score} out of 100. A few areas to refine.")
    else:
        lines.append(
            f"Your form score was {summary.score} out of 100. "
            "Let's build more consistent movement."
        )

    if summary.phase == SessionPhase.RELEASE:
        lines.append("Great power on your peak movements.")
    elif summary.phase == SessionPhase.PREPARATION:
        lines.append("Good steady effort. Add a bit more explosiveness.")
    else:
        lines.append("Get set up and start moving with purpose.")

    # Most relevant issue, then the first recommendation
    if summary.critical_issues:
        lines.append(summary.critical_issues[0])
    if summary.recommendations:
        lines.append(summary.recommendations[0])

    return lines
