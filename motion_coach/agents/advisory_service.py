"""
Advisory service: the remote language model behind classification and tips.

The pipeline only talks to ``AdvisoryService``; ``GeminiAdvisoryService``
is the production implementation built on ``langchain_google_genai``.
Tests substitute their own subclasses.  Every failure mode (transport,
timeout, empty content) surfaces as ``AdvisoryServiceError`` so the
callers can fall back to local rules.
"""

import asyncio
import logging
from typing import Any, Optional

from langchain_core.prompts import ChatPromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI

from .state import MotionSample, MovementContext, PoseSummary, SessionSummary, TipContext
from .prompts import (
    CLASSIFY_PROMPT,
    TIP_PROMPT,
    SESSION_SUMMARY_PROMPT,
    classify_prompt_inputs,
    format_performance_analysis,
    format_tip_lists,
    format_warnings,
)
from .config import (
    GEMINI_API_KEY,
    GEMINI_MODEL_NAME,
    ADVISORY_TIMEOUT_S,
    CLASSIFY_MAX_TOKENS,
    CLASSIFY_TEMPERATURE,
    TIP_MAX_TOKENS,
    TIP_TEMPERATURE,
    MAX_TIP_CHARS,
    SUMMARY_MAX_TOKENS,
    SUMMARY_TEMPERATURE,
    MAX_SUMMARY_WORDS,
)

logger = logging.getLogger(__name__)


class AdvisoryServiceError(Exception):
    """The advisory service could not produce an answer."""


class AdvisoryResponseError(AdvisoryServiceError):
    """The advisory service answered, but the answer is unusable."""


# ============================================================================
# Service interface
# ============================================================================

class AdvisoryService:
    """Asynchronous text-in/text-out advisor.  Subclasses implement the calls."""

    async def classify(
        self,
        sample: MotionSample,
        context: MovementContext,
        pose: Optional[PoseSummary] = None,
    ) -> str:
        """Return the raw classification text for the latest sample."""
        raise NotImplementedError

    async def generate_tip(self, context: TipContext) -> str:
        """Return the raw text of a short coaching tip."""
        raise NotImplementedError

    async def summarize_session(self, summary: SessionSummary, warnings: list[str]) -> str:
        """Return a short spoken narration of an aggregated window."""
        raise NotImplementedError


def _content_text(content: Any) -> str:
    """Flatten a chat-model message content into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content or "")


class GeminiAdvisoryService(AdvisoryService):
    """
    Advisory service backed by Gemini through LangChain.

    Example usage:
        service = GeminiAdvisoryService(api_key="...")
        raw = await service.generate_tip(context)
    """

    def __init__(
        self,
        api_key: str,
        model_name: str = GEMINI_MODEL_NAME,
        timeout_s: float = ADVISORY_TIMEOUT_S,
    ):
        if not api_key:
            raise ValueError("GeminiAdvisoryService requires an API key")
        self.api_key = api_key
        self.model_name = model_name
        self.timeout_s = timeout_s

    def _llm(self, temperature: float, max_tokens: int) -> ChatGoogleGenerativeAI:
        return ChatGoogleGenerativeAI(
            model=self.model_name,
            google_api_key=self.api_key,
            temperature=temperature,
            max_output_tokens=max_tokens,
            max_retries=0,
            timeout=self.timeout_s,
        )

    async def _run(
        self,
        prompt: ChatPromptTemplate,
        inputs: dict,
        temperature: float,
        max_tokens: int,
    ) -> str:
        chain = prompt | self._llm(temperature, max_tokens)
        try:
            response = await asyncio.wait_for(chain.ainvoke(inputs), self.timeout_s)
        except asyncio.TimeoutError as e:
            raise AdvisoryServiceError(
                f"advisory call timed out after {self.timeout_s:.1f}s"
            ) from e
        except Exception as e:
            raise AdvisoryServiceError(f"advisory call failed: {e}") from e

        text = _content_text(response.content).strip()
        if not text:
            raise AdvisoryResponseError("advisory service returned empty content")
        return text

    async def classify(
        self,
        sample: MotionSample,
        context: MovementContext,
        pose: Optional[PoseSummary] = None,
    ) -> str:
        inputs = classify_prompt_inputs(
            sample.intensity, sample.x, sample.y, sample.z, context, pose
        )
        return await self._run(
            CLASSIFY_PROMPT, inputs, CLASSIFY_TEMPERATURE, CLASSIFY_MAX_TOKENS
        )

    async def generate_tip(self, context: TipContext) -> str:
        issues, strengths = format_tip_lists(context)
        pose_quality = (
            f"{context.pose_keypoints}/17 keypoints" if context.has_pose else "No pose data"
        )
        inputs = {
            "movement_class": context.movement_class.value,
            "movement_state": context.movement_state.value,
            "quality": context.quality.value,
            "issues": issues,
            "strengths": strengths,
            "pose_quality": pose_quality,
            "max_chars": MAX_TIP_CHARS,
        }
        return await self._run(TIP_PROMPT, inputs, TIP_TEMPERATURE, TIP_MAX_TOKENS)

    async def summarize_session(self, summary: SessionSummary, warnings: list[str]) -> str:
        inputs = {
            "avg_intensity": summary.avg_intensity,
            "max_intensity": summary.max_intensity,
            "min_intensity": summary.min_intensity,
            "sample_count": summary.sample_count,
            "pose_sample_count": summary.pose_sample_count,
            "phase": summary.phase.value,
            "score": summary.score,
            "duration_s": summary.time_range_ms / 1000.0,
            "performance_analysis": format_performance_analysis(summary),
            "warnings": format_warnings(warnings),
            "max_words": MAX_SUMMARY_WORDS,
        }
        return await self._run(
            SESSION_SUMMARY_PROMPT, inputs, SUMMARY_TEMPERATURE, SUMMARY_MAX_TOKENS
        )


def build_advisory_service(api_key: Optional[str] = None) -> Optional[AdvisoryService]:
    """
    Create the production advisory service.

    Returns:
        A ``GeminiAdvisoryService``, or ``None`` when no API key is configured
        (callers then rely on the local fallback rules only).
    """
    key = GEMINI_API_KEY if api_key is None else api_key
    if not key:
        logger.info("No advisory API key configured; using local fallback rules only")
        return None
    return GeminiAdvisoryService(api_key=key)
