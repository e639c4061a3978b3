"""
Session Coaching Agent - LangGraph Implementation.

This agent uses LangGraph to narrate each emitted 30-second window:
1. Analyzes the aggregated summary and derives warnings
2. Generates spoken feedback using the advisory service (Gemini)
3. Falls back to rule-based narration when the service is unavailable
4. Formats the final response
"""

import logging
from typing import Optional

from langgraph.graph import StateGraph, START, END
from pydantic import BaseModel, Field

from .fallback_tips import generate_fallback_summary_feedback
from .advisory_service import AdvisoryService, AdvisoryServiceError
from .state import CoachingState, SessionPhase, SessionSummary

logger = logging.getLogger(__name__)

LOW_SCORE_WARNING = 50


# ============================================================================
# Pydantic Models for Structured Output
# ============================================================================

class SessionFeedback(BaseModel):
    """Structured narration of one aggregation window."""
    phase: SessionPhase = Field(description="Coarse session phase for the window")
    score: int = Field(description="Capped 0-100 window score")
    avg_intensity: float
    max_intensity: float
    sample_count: int
    pose_sample_count: int

    feedback_summary: str = Field(description="Spoken narration for the window")
    used_fallback: bool = Field(description="True when the rule-based narration was used")
    warnings: list[str] = Field(description="Any warnings about the window")


# ============================================================================
# Graph Nodes
# ============================================================================

def analyze_summary_node(state: CoachingState) -> dict:
    """
    Node 1: Derive warnings from the aggregated window.
    """
    summary = state.summary
    warnings = []

    if summary.score < LOW_SCORE_WARNING:
        warnings.append(
            f"Window score is low ({summary.score}/100). "
            "Focus on steady, deliberate movement."
        )

    if summary.pose_sample_count == 0:
        warnings.append(
            "No pose data in this window. Feedback is based on motion only."
        )

    warnings.extend(summary.critical_issues)
    return {"warnings": warnings}


def fallback_narration(summary: SessionSummary) -> str:
    return " ".join(generate_fallback_summary_feedback(summary))


def make_generate_feedback_node(service: Optional[AdvisoryService]):
    """
    Node 2: Generate the narration with the advisory service.

    The node is built around *service* because the service is not part of
    the graph state.
    """
    async def generate_feedback_node(state: CoachingState) -> dict:
        if service is None:
            return {"llm_feedback": fallback_narration(state.summary), "used_fallback": True}

        try:
            text = await service.summarize_session(state.summary, state.warnings)
        except AdvisoryServiceError as e:
            logger.warning("Session narration failed, using fallback: %s", e)
            return {"llm_feedback": fallback_narration(state.summary), "used_fallback": True}

        text = text.strip()
        if not text:
            return {"llm_feedback": fallback_narration(state.summary), "used_fallback": True}
        return {"llm_feedback": text, "used_fallback": False}

    return generate_feedback_node


def format_response_node(state: CoachingState) -> dict:
    """
    Node 3: Format the final response combining all components.
    """
    summary = state.summary
    response = SessionFeedback(
        phase=summary.phase,
        score=summary.score,
        avg_intensity=summary.avg_intensity,
        max_intensity=summary.max_intensity,
        sample_count=summary.sample_count,
        pose_sample_count=summary.pose_sample_count,
        feedback_summary=state.llm_feedback,
        used_fallback=state.used_fallback,
        warnings=state.warnings,
    )
    return {"final_response": response.model_dump()}


# ============================================================================
# Build the Graph
# ============================================================================

def build_coaching_graph(service: Optional[AdvisoryService] = None):
    """Build and return the compiled session narration graph."""

    graph = StateGraph(CoachingState)

    graph.add_node("analyze_summary", analyze_summary_node)
    graph.add_node("generate_feedback", make_generate_feedback_node(service))
    graph.add_node("format_response", format_response_node)

    # START → analyze_summary → generate_feedback → format_response → END
    graph.add_edge(START, "analyze_summary")
    graph.add_edge("analyze_summary", "generate_feedback")
    graph.add_edge("generate_feedback", "format_response")
    graph.add_edge("format_response", END)

    return graph.compile()


# ============================================================================
# Main Agent Class
# ============================================================================

class CoachingAgent:
    """
    LangGraph-based narration agent for aggregated session windows.

    Example usage:
        agent = CoachingAgent(build_advisory_service())
        feedback = await agent.narrate(summary)
        print(feedback.feedback_summary)
    """

    def __init__(self, service: Optional[AdvisoryService] = None):
        self.graph = build_coaching_graph(service)

    async def narrate(self, summary: SessionSummary) -> SessionFeedback:
        """
        Narrate one emitted window.

        Args:
            summary: The aggregated 30-second summary

        Returns:
            SessionFeedback with the narration and warnings
        """
        initial_state = CoachingState(summary=summary)
        result = await self.graph.ainvoke(initial_state)
        return SessionFeedback(**result["final_response"])
