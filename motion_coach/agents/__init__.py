"""
Agents module for Motion Coach.

This module contains the advisory layer: the service client, its cached and
rate-limited channels, the tip generator with its fallback tables, and the
LangGraph agent that narrates aggregated session windows.
"""

from .coaching_agent import CoachingAgent, SessionFeedback
from .state import (
    CoachingState,
    CoachingTip,
    MotionSample,
    MovementClass,
    MovementState,
    PoseSummary,
    SessionSummary,
)
from .advisory_service import (
    AdvisoryService,
    AdvisoryServiceError,
    AdvisoryResponseError,
    GeminiAdvisoryService,
    build_advisory_service,
)
from .advisory_cache import AdvisoryChannel, ChannelResult
from .tip_generator import AdvisoryTipGenerator

__all__ = [
    "CoachingAgent",
    "SessionFeedback",
    "CoachingState",
    "CoachingTip",
    "MotionSample",
    "MovementClass",
    "MovementState",
    "PoseSummary",
    "SessionSummary",
    "AdvisoryService",
    "AdvisoryServiceError",
    "AdvisoryResponseError",
    "GeminiAdvisoryService",
    "build_advisory_service",
    "AdvisoryChannel",
    "ChannelResult",
    "AdvisoryTipGenerator",
]
