"""
Prompt templates for the advisory service.

This module contains the prompt templates used to classify movement,
generate short real-time coaching tips and narrate 30-second session
summaries.
"""

from typing import Optional

from langchain_core.prompts import ChatPromptTemplate

from .state import MovementContext, PoseSummary, SessionSummary, TipContext


# System prompt that defines the coach's persona
COACH_SYSTEM_PROMPT = """You are an expert AI Fitness Coach with deep knowledge of movement
mechanics, proper form, and injury prevention. You give real-time feedback
while the user is moving, so every answer must be short enough to be spoken
aloud in a few seconds.

Key principles:
- Always be encouraging and supportive
- Address the most critical form issue first
- Prioritize safety and proper form
- Never add explanations the user did not ask for"""


# Movement classification: the answer must be a single class label
CLASSIFY_PROMPT = ChatPromptTemplate.from_messages([
    ("system", COACH_SYSTEM_PROMPT),
    ("human", """Analyze this movement pattern and classify it:

Movement Analysis:
- Current Intensity: {intensity:.2f}
- Accelerometer: X={x:.2f}, Y={y:.2f}, Z={z:.2f}
- Movement Pattern: {pattern}
- Stability: {stability}
- Recent Trend: {trend}
- Pose Quality: {pose_quality}

Classify as: explosive, rhythmic, sustained, controlled, or none.

Explosive: High intensity, sudden acceleration, vertical movement
Rhythmic: Consistent tempo, moderate intensity, repetitive pattern
Sustained: High intensity maintained, controlled movement
Controlled: Low-moderate intensity, precise movement
None: Minimal or no significant movement

Respond with ONLY the classification.""")
])


# Real-time coaching tip
TIP_PROMPT = ChatPromptTemplate.from_messages([
    ("system", COACH_SYSTEM_PROMPT),
    ("human", """Provide real-time form feedback for this data:

Fitness Context:
- Movement Type: {movement_class}
- Current State: {movement_state}
- Movement Quality: {quality}
- Form Issues: {issues}
- Strengths: {strengths}
- Pose Quality: {pose_quality}

Provide a specific, actionable tip (max {max_chars} characters) that helps
improve form or encourages good technique.

Examples:
- "Keep shoulders level for stability"
- "Great rhythm! Maintain tempo"
- "Focus on controlled landing"
- "Excellent form! Keep it up"

Respond with ONLY the tip, no quotes or extra text.""")
])


# 30-second session narration
SESSION_SUMMARY_PROMPT = ChatPromptTemplate.from_messages([
    ("system", COACH_SYSTEM_PROMPT),
    ("human", """Analyze this 30-SECOND AGGREGATED training session:

AGGREGATED SESSION ANALYSIS:
- Average Movement Intensity: {avg_intensity:.2f} (1.0+ = strong, 0.5-0.9 = moderate, <0.5 = weak)
- Peak Movement Intensity: {max_intensity:.2f}
- Minimum Movement Intensity: {min_intensity:.2f}
- Total Movement Count: {sample_count}
- Pose Detection Count: {pose_sample_count}
- Session Phase: {phase}
- Form Score: {score}/100
- Session Duration: {duration_s:.1f} seconds

PERFORMANCE ANALYSIS:
{performance_analysis}

Warnings:
{warnings}

Provide specific, actionable feedback (2-3 sentences) that addresses:
1. Overall performance during this session
2. Specific areas for improvement based on the aggregated data
3. Recommendations for the next 30-second period

Keep your response under {max_words} words. Be conversational, not a bullet list.""")
])


# ============================================================================
# Formatting helpers
# ============================================================================

def format_pose_quality(pose: Optional[PoseSummary]) -> str:
    """Describe pose confidence as "<high>/<total> keypoints"."""
    if pose is None:
        return "No pose data"
    total = pose.total_keypoint_count or 17
    return f"{pose.high_confidence_keypoint_count}/{total} keypoints"


def format_tip_lists(context: TipContext) -> tuple[str, str]:
    """Render the issue and strength lists for the tip prompt."""
    issues = ", ".join(context.issues) if context.issues else "None detected"
    strengths = ", ".join(context.strengths) if context.strengths else "Good baseline"
    return issues, strengths


def format_performance_analysis(summary: SessionSummary) -> str:
    """
    Qualitative reading of the aggregated numbers.

    Args:
        summary: The window summary being narrated

    Returns:
        Bullet list of consistency, power and activity levels
    """
    consistency = "Good" if summary.avg_intensity > 0.8 else "Needs improvement"
    if summary.max_intensity > 1.2:
        power = "Excellent"
    elif summary.max_intensity > 0.8:
        power = "Good"
    else:
        power = "Needs more power"
    if summary.sample_count > 60:
        activity = "High"
    elif summary.sample_count > 30:
        activity = "Moderate"
    else:
        activity = "Low"
    return "\n".join([
        f"- Movement Consistency: {consistency}",
        f"- Power Level: {power}",
        f"- Activity Level: {activity}",
    ])


def format_warnings(warnings: list[str]) -> str:
    if not warnings:
        return "- None"
    return "\n".join(f"- {w}" for w in warnings)


def classify_prompt_inputs(
    sample_intensity: float,
    x: float,
    y: float,
    z: float,
    context: MovementContext,
    pose: Optional[PoseSummary],
) -> dict:
    """Variables for ``CLASSIFY_PROMPT``."""
    return {
        "intensity": sample_intensity,
        "x": x,
        "y": y,
        "z": z,
        "pattern": context.pattern,
        "stability": context.stability,
        "trend": context.trend,
        "pose_quality": format_pose_quality(pose),
    }
