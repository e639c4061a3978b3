"""
Advisory Tip Generator.

Routes movement classification and tip requests through their advisory
channels, validates what the service returns, and falls back to the local
rule tables whenever the service is unavailable, throttled or unusable.
"""

import logging
import random
import re
from collections import Counter
from typing import Callable, Optional

from ..pipelines.utils import monotonic_ms
from .advisory_cache import AdvisoryChannel, ChannelResult, movement_signature, tip_signature
from .advisory_service import AdvisoryService, AdvisoryResponseError
from .context import build_movement_context, build_tip_context
from .fallback_tips import generate_fallback_tip
from .state import (
    CoachingTip,
    MotionSample,
    MovementClass,
    MovementState,
    PoseSummary,
    TipContext,
    TipPriority,
)
from .config import (
    MOVEMENT_CACHE_TTL_MS,
    MOVEMENT_MIN_INTERVAL_MS,
    MOVEMENT_CACHE_MAX_ENTRIES,
    TIP_CACHE_TTL_MS,
    TIP_MIN_INTERVAL_MS,
    TIP_CACHE_MAX_ENTRIES,
    MAX_TIP_CHARS,
    QUALITY_SCORES,
    FALLBACK_CONFIDENCE,
)

logger = logging.getLogger(__name__)

_QUOTE_CHARS = "\"'`“”‘’"
_VALID_CLASSES = {c.value for c in MovementClass}


# ============================================================================
# Response validation
# ============================================================================

def coerce_movement_class(raw: str) -> MovementClass:
    """
    Map a free-text classification answer onto ``MovementClass``.

    Exactly one recognised label must appear in the answer; anything else
    (no label, several labels) becomes ``NONE``.
    """
    tokens = set(re.findall(r"[a-z]+", (raw or "").lower()))
    matches = tokens & _VALID_CLASSES
    if len(matches) != 1:
        if raw:
            logger.debug("Unrecognised classification %r coerced to none", raw)
        return MovementClass.NONE
    return MovementClass(matches.pop())


def validate_tip_text(raw: str, max_chars: int = MAX_TIP_CHARS) -> str:
    """
    Trim whitespace and surrounding quotes from a tip.

    Raises:
        AdvisoryResponseError: If the tip is empty or longer than *max_chars*.
    """
    text = (raw or "").strip().strip(_QUOTE_CHARS).strip()
    if not text:
        raise AdvisoryResponseError("empty tip")
    if len(text) > max_chars:
        raise AdvisoryResponseError(f"tip too long ({len(text)} > {max_chars} chars)")
    return text


def tip_priority(source_score: float) -> TipPriority:
    """Lower form quality -> more urgent tip."""
    if source_score < 40:
        return TipPriority.HIGH
    if source_score < 70:
        return TipPriority.MEDIUM
    return TipPriority.LOW


# ============================================================================
# Generator
# ============================================================================

class AdvisoryTipGenerator:
    """
    Session-scoped front end to the advisory service.

    Owns the two advisory channels (movement classification and tip text).
    With ``service=None`` every request is answered from the fallback rules.

    Example usage:
        generator = AdvisoryTipGenerator(build_advisory_service(), rng=random.Random(7))
        movement = await generator.classify_movement(sample, history, rule_class, pose)
        tip = await generator.generate_tip(movement.value, MovementState.ACTIVE, pose)
    """

    def __init__(
        self,
        service: Optional[AdvisoryService] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.service = service
        self.rng = rng or random.Random()
        self.clock = clock
        self.movement_channel = AdvisoryChannel(
            "movement",
            ttl_ms=MOVEMENT_CACHE_TTL_MS,
            min_interval_ms=MOVEMENT_MIN_INTERVAL_MS,
            max_entries=MOVEMENT_CACHE_MAX_ENTRIES,
            clock=clock,
        )
        self.tip_channel = AdvisoryChannel(
            "tip",
            ttl_ms=TIP_CACHE_TTL_MS,
            min_interval_ms=TIP_MIN_INTERVAL_MS,
            max_entries=TIP_CACHE_MAX_ENTRIES,
            clock=clock,
        )
        self.stats: Counter = Counter()

    @property
    def has_service(self) -> bool:
        return self.service is not None

    async def classify_movement(
        self,
        sample: MotionSample,
        history: list[MotionSample],
        fallback_class: MovementClass,
        pose: Optional[PoseSummary] = None,
    ) -> ChannelResult:
        """
        Classify the latest sample, asking the advisory service when allowed.

        Args:
            sample: Latest raw sample
            history: Recent samples, oldest first
            fallback_class: The local rule-based class for the same window
            pose: Latest pose snapshot, if any

        Returns:
            ChannelResult whose value is a ``MovementClass``
        """
        history = list(history)

        def fallback() -> MovementClass:
            return fallback_class

        if self.service is None:
            result = ChannelResult(value=fallback(), source="fallback")
        else:
            context = build_movement_context(sample, history, pose)

            async def invoke() -> MovementClass:
                raw = await self.service.classify(sample, context, pose)
                return coerce_movement_class(raw)

            result = await self.movement_channel.call(
                movement_signature(sample, history), invoke, fallback
            )
        self.stats[f"movement_{result.source}"] += 1
        return result

    async def generate_tip(
        self,
        movement_class: MovementClass,
        movement_state: MovementState,
        pose: Optional[PoseSummary] = None,
    ) -> CoachingTip:
        """
        Produce a coaching tip for the current movement.

        Args:
            movement_class: Current semantic class
            movement_state: Current coarse state
            pose: Latest pose snapshot, if any

        Returns:
            CoachingTip with priority and confidence set from the form quality
        """
        context = build_tip_context(movement_class, movement_state, pose)

        def fallback() -> tuple[str, bool]:
            return generate_fallback_tip(context, self.rng), False

        if self.service is None:
            result = ChannelResult(value=fallback(), source="fallback")
        else:
            async def invoke() -> tuple[str, bool]:
                raw = await self.service.generate_tip(context)
                return validate_tip_text(raw), True

            signature = tip_signature(
                movement_class, movement_state, context.pose_keypoints, context.alignment
            )
            result = await self.tip_channel.call(signature, invoke, fallback)

        self.stats[f"tip_{result.source}"] += 1
        text, from_service = result.value
        return self._make_tip(text, context, from_service)

    def _make_tip(self, text: str, context: TipContext, from_service: bool) -> CoachingTip:
        source_score = QUALITY_SCORES[context.quality.value]
        return CoachingTip(
            text=text,
            priority=tip_priority(source_score),
            confidence=source_score / 100.0 if from_service else FALLBACK_CONFIDENCE,
            source_score=source_score,
            timestamp=self.clock(),
        )

    def end_session(self, retain_cache: bool = False) -> None:
        """Reset both channels for the next session; optionally keep cached answers."""
        for channel in (self.movement_channel, self.tip_channel):
            if retain_cache:
                channel.reset_rate_limit()
            else:
                channel.clear()
        logger.debug("Advisory channels reset (retain_cache=%s)", retain_cache)
