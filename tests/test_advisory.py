"""Tests for the advisory layer.

Covers:
  - AdvisoryChannel cache, rate limiting, failure fallback and eviction
  - Request signatures
  - Response validation (class coercion, tip text)
  - Context builders and fallback tip tables
  - AdvisoryTipGenerator with and without a service
  - LangGraph session narration
"""

import asyncio
import random
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from motion_coach.agents.advisory_cache import (
    AdvisoryChannel,
    movement_signature,
    tip_signature,
)
from motion_coach.agents.advisory_service import (
    AdvisoryResponseError,
    AdvisoryService,
    AdvisoryServiceError,
    GeminiAdvisoryService,
    build_advisory_service,
)
from motion_coach.agents.coaching_agent import CoachingAgent
from motion_coach.agents.context import (
    build_movement_context,
    build_tip_context,
    calculate_pose_alignment,
)
from motion_coach.agents.fallback_tips import (
    ADJUST_POSITION_TIP,
    CLASS_TIPS,
    SHOULDER_TIP,
    STATE_TIPS,
    generate_fallback_summary_feedback,
    generate_fallback_tip,
)
from motion_coach.agents.prompts import (
    CLASSIFY_PROMPT,
    classify_prompt_inputs,
    format_performance_analysis,
    format_pose_quality,
    format_warnings,
)
from motion_coach.agents.state import (
    Keypoint,
    MotionSample,
    MovementClass,
    MovementState,
    PoseAlignment,
    PoseSummary,
    QualityTier,
    SessionPhase,
    SessionSummary,
    TipPriority,
)
from motion_coach.agents.tip_generator import (
    AdvisoryTipGenerator,
    coerce_movement_class,
    tip_priority,
    validate_tip_text,
)


# ============================================================================
# Fixtures
# ============================================================================

class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeAdvisoryService(AdvisoryService):
    """Scripted advisory service; ``fail=True`` makes every call raise."""

    def __init__(self, classify_reply="explosive", tip_reply="Drive through your heels",
                 summary_reply="Nice work this half minute.", fail=False):
        self.classify_reply = classify_reply
        self.tip_reply = tip_reply
        self.summary_reply = summary_reply
        self.fail = fail
        self.calls = []

    async def classify(self, sample, context, pose=None):
        self.calls.append("classify")
        if self.fail:
            raise AdvisoryServiceError("service down")
        return self.classify_reply

    async def generate_tip(self, context):
        self.calls.append("tip")
        if self.fail:
            raise AdvisoryServiceError("service down")
        return self.tip_reply

    async def summarize_session(self, summary, warnings):
        self.calls.append("summary")
        if self.fail:
            raise AdvisoryServiceError("service down")
        return self.summary_reply


def _make_channel(clock, ttl_ms=2000.0, min_interval_ms=1000.0, max_entries=50):
    return AdvisoryChannel("test", ttl_ms, min_interval_ms, max_entries, clock=clock)


def _returning(value):
    async def invoke():
        return value
    return invoke


def _raising(exc):
    async def invoke():
        raise exc
    return invoke


def _make_sample(intensity: float, z: float = 0.0, y: float = 0.0) -> MotionSample:
    return MotionSample(timestamp=0.0, x=0.0, y=y, z=z, intensity=intensity)


def _make_pose(high_confidence: int = 13, shoulder_offset: float = 0.0) -> PoseSummary:
    keypoints = [
        Keypoint(name="left_shoulder", x=100.0, y=200.0, score=0.9),
        Keypoint(name="right_shoulder", x=160.0, y=200.0 + shoulder_offset, score=0.9),
    ]
    keypoints += [
        Keypoint(name=f"kp_{i}", x=0.0, y=0.0, score=0.9)
        for i in range(max(high_confidence - 2, 0))
    ]
    return PoseSummary.from_keypoints(keypoints)


def _make_summary(score: int = 30, pose_count: int = 0) -> SessionSummary:
    return SessionSummary(
        phase=SessionPhase.SETUP,
        score=score,
        avg_intensity=0.3,
        min_intensity=0.1,
        max_intensity=0.9,
        sample_count=20,
        pose_sample_count=pose_count,
        time_range_ms=30_000.0,
        window_start=0.0,
        critical_issues=["Low movement intensity detected"],
        recommendations=["Increase the range and speed of your movement"],
    )


# ============================================================================
# AdvisoryChannel
# ============================================================================

class TestAdvisoryChannel:

    def test_cache_hit_within_ttl(self):
        clock = FakeClock(10_000.0)
        channel = _make_channel(clock)

        first = asyncio.run(channel.call("sig", _returning("explosive"), lambda: "none"))
        clock.advance(1_500)
        second = asyncio.run(channel.call("sig", _returning("rhythmic"), lambda: "none"))

        assert first.source == "service"
        assert second.source == "cache"
        assert second.value == first.value == "explosive"
        assert channel.invocations == 1

    def test_entry_expires_after_ttl(self):
        clock = FakeClock(10_000.0)
        channel = _make_channel(clock)
        asyncio.run(channel.call("sig", _returning("a"), lambda: "fb"))
        clock.advance(2_000)
        assert channel.lookup("sig") is None
        result = asyncio.run(channel.call("sig", _returning("b"), lambda: "fb"))
        assert result.value == "b"
        assert channel.invocations == 2

    def test_rate_limited_uses_fallback(self):
        clock = FakeClock(10_000.0)
        channel = _make_channel(clock)
        asyncio.run(channel.call("a", _returning("explosive"), lambda: "none"))
        clock.advance(500)

        result = asyncio.run(channel.call("b", _returning("rhythmic"), lambda: "none"))

        assert result.source == "rate_limited"
        assert result.value == "none"
        assert channel.invocations == 1
        assert channel.limiter.last_invocation_time == 10_000.0
        # The fallback is cached under the new signature
        assert channel.lookup("b") == "none"

    def test_interval_elapsed_invokes_again(self):
        clock = FakeClock(10_000.0)
        channel = _make_channel(clock)
        asyncio.run(channel.call("a", _returning("x"), lambda: "fb"))
        clock.advance(1_000)
        result = asyncio.run(channel.call("b", _returning("y"), lambda: "fb"))
        assert result.source == "service"
        assert channel.limiter.last_invocation_time == 11_000.0

    def test_service_failure_falls_back_and_caches(self):
        clock = FakeClock(10_000.0)
        channel = _make_channel(clock)
        result = asyncio.run(
            channel.call("sig", _raising(AdvisoryServiceError("boom")), lambda: "fb")
        )
        assert result.source == "fallback"
        assert result.value == "fb"
        assert channel.lookup("sig") == "fb"
        assert channel.limiter.last_invocation_time == 10_000.0

    def test_unexpected_error_propagates(self):
        channel = _make_channel(FakeClock())
        with pytest.raises(KeyError):
            asyncio.run(channel.call("sig", _raising(KeyError("bug")), lambda: "fb"))
        assert not channel.is_rate_limited()

    def test_eviction_of_stale_entries(self):
        clock = FakeClock()
        channel = _make_channel(clock, ttl_ms=100.0, min_interval_ms=0.0, max_entries=2)
        asyncio.run(channel.call("a", _returning(1), lambda: 0))
        clock.advance(250)
        asyncio.run(channel.call("b", _returning(2), lambda: 0))
        clock.advance(10)
        asyncio.run(channel.call("c", _returning(3), lambda: 0))
        assert "a" not in channel
        assert len(channel) == 2

    def test_clear_discards_in_flight_result(self):
        clock = FakeClock(10_000.0)
        channel = _make_channel(clock)

        async def scenario():
            release = asyncio.Event()

            async def slow():
                await release.wait()
                return "late"

            task = asyncio.create_task(channel.call("sig", slow, lambda: "fb"))
            await asyncio.sleep(0)
            assert channel.is_rate_limited()
            channel.clear()
            release.set()
            return await task

        result = asyncio.run(scenario())
        assert result.value == "late"
        assert "sig" not in channel
        assert channel.limiter.last_invocation_time is None
        assert not channel.is_rate_limited()


# ============================================================================
# Signatures
# ============================================================================

class TestSignatures:

    def test_movement_signature(self):
        history = [_make_sample(1.0), _make_sample(2.0)]
        assert movement_signature(_make_sample(1.25, z=0.25), history) == "13_3_25"

    def test_movement_signature_empty_history(self):
        assert movement_signature(_make_sample(0.0), []) == "0_0_0"

    def test_nearby_samples_share_signature(self):
        history = [_make_sample(1.0)] * 5
        a = movement_signature(_make_sample(1.01, z=0.51), history)
        b = movement_signature(_make_sample(1.04, z=0.54), history)
        assert a == b

    def test_tip_signature(self):
        sig = tip_signature(
            MovementClass.EXPLOSIVE, MovementState.ACTIVE, 12, PoseAlignment(shoulder=25.0)
        )
        assert sig == "explosive_active_2_3"


# ============================================================================
# Response validation
# ============================================================================

class TestResponseValidation:

    @pytest.mark.parametrize("raw, expected", [
        ("explosive", MovementClass.EXPLOSIVE),
        ("  Rhythmic.\n", MovementClass.RHYTHMIC),
        ("Classification: SUSTAINED", MovementClass.SUSTAINED),
        ("none", MovementClass.NONE),
        ("rhythmic or sustained", MovementClass.NONE),
        ("jumping jacks", MovementClass.NONE),
        ("", MovementClass.NONE),
    ])
    def test_coerce_movement_class(self, raw, expected):
        assert coerce_movement_class(raw) == expected

    def test_tip_text_trimmed(self):
        assert validate_tip_text('  "Keep going!" \n') == "Keep going!"

    def test_tip_text_limits(self):
        assert validate_tip_text("x" * 80) == "x" * 80
        with pytest.raises(AdvisoryResponseError):
            validate_tip_text("x" * 81)
        with pytest.raises(AdvisoryResponseError):
            validate_tip_text("  ''  ")

    def test_tip_priority(self):
        assert tip_priority(30.0) == TipPriority.HIGH
        assert tip_priority(55.0) == TipPriority.MEDIUM
        assert tip_priority(70.0) == TipPriority.LOW
        assert tip_priority(90.0) == TipPriority.LOW


# ============================================================================
# Context builders & fallback tables
# ============================================================================

class TestContext:

    def test_alignment_offsets(self):
        alignment = calculate_pose_alignment(_make_pose(shoulder_offset=30.0))
        assert alignment.shoulder == pytest.approx(30.0)
        assert alignment.hip == 0.0

    def test_alignment_ignores_low_confidence(self):
        pose = PoseSummary.from_keypoints([
            Keypoint(name="left_hip", x=0.0, y=0.0, score=0.9),
            Keypoint(name="right_hip", x=0.0, y=50.0, score=0.3),
        ])
        assert calculate_pose_alignment(pose).hip == 0.0
        assert calculate_pose_alignment(None).worst == 0.0

    def test_tip_context_without_pose(self):
        context = build_tip_context(MovementClass.EXPLOSIVE, MovementState.ACTIVE)
        assert context.quality == QualityTier.GOOD
        assert context.strengths == ["good power generation"]
        assert not context.has_pose

    def test_tip_context_excellent_pose(self):
        context = build_tip_context(MovementClass.NONE, MovementState.MOVING, _make_pose(13))
        assert context.quality == QualityTier.EXCELLENT
        assert "excellent pose detection" in context.strengths
        assert "good alignment" in context.strengths

    def test_tip_context_poor_pose(self):
        context = build_tip_context(MovementClass.NONE, MovementState.MOVING, _make_pose(4))
        assert context.quality == QualityTier.POOR
        assert "poor pose detection" in context.issues

    def test_movement_context(self):
        history = [_make_sample(v) for v in [1.0, 1.0, 1.0, 2.0, 2.0, 2.0]]
        context = build_movement_context(_make_sample(2.0, z=0.5, y=0.4), history)
        assert context.pattern == "lateral"
        assert context.trend == "increasing"
        assert context.stability == "high"
        assert context.avg_intensity == pytest.approx(1.5)


class TestFallbackTips:

    def test_class_table(self):
        context = build_tip_context(MovementClass.RHYTHMIC, MovementState.MOVING)
        assert generate_fallback_tip(context, random.Random(1)) in CLASS_TIPS[MovementClass.RHYTHMIC]

    def test_state_table_when_no_class(self):
        context = build_tip_context(MovementClass.NONE, MovementState.MOVING)
        assert generate_fallback_tip(context, random.Random(1)) in STATE_TIPS[MovementState.MOVING]

    def test_seeded_choice_is_reproducible(self):
        context = build_tip_context(MovementClass.SUSTAINED, MovementState.ACTIVE)
        rng_a, rng_b = random.Random(5), random.Random(5)
        a = [generate_fallback_tip(context, rng_a) for _ in range(5)]
        b = [generate_fallback_tip(context, rng_b) for _ in range(5)]
        assert a == b

    def test_pose_tips_take_precedence(self):
        poor = build_tip_context(MovementClass.EXPLOSIVE, MovementState.ACTIVE, _make_pose(4))
        assert generate_fallback_tip(poor) == ADJUST_POSITION_TIP
        tilted = build_tip_context(
            MovementClass.EXPLOSIVE, MovementState.ACTIVE, _make_pose(10, shoulder_offset=40.0)
        )
        assert generate_fallback_tip(tilted) == SHOULDER_TIP

    def test_summary_feedback(self):
        lines = generate_fallback_summary_feedback(_make_summary(score=30))
        assert "30 out of 100" in lines[0]
        assert "Low movement intensity detected" in lines


# ============================================================================
# Tip generator
# ============================================================================

class TestAdvisoryTipGenerator:

    def test_no_service_uses_fallback(self):
        generator = AdvisoryTipGenerator(None, rng=random.Random(0), clock=FakeClock())
        result = asyncio.run(generator.classify_movement(
            _make_sample(1.0), [_make_sample(1.0)] * 5, MovementClass.CONTROLLED
        ))
        tip = asyncio.run(generator.generate_tip(MovementClass.CONTROLLED, MovementState.MOVING))

        assert result.value == MovementClass.CONTROLLED
        assert result.source == "fallback"
        assert tip.text in CLASS_TIPS[MovementClass.CONTROLLED]
        assert tip.confidence == pytest.approx(0.5)
        assert tip.priority == TipPriority.LOW
        assert generator.movement_channel.invocations == 0
        assert generator.tip_channel.invocations == 0

    def test_service_classification(self):
        service = FakeAdvisoryService(classify_reply="Sustained")
        generator = AdvisoryTipGenerator(service, clock=FakeClock(10_000.0))
        result = asyncio.run(generator.classify_movement(
            _make_sample(2.6, z=0.4), [_make_sample(2.6)] * 5, MovementClass.NONE
        ))
        assert result.value == MovementClass.SUSTAINED
        assert result.from_service
        assert generator.stats["movement_service"] == 1

    def test_service_tip(self):
        service = FakeAdvisoryService(tip_reply="  'Drive through your heels'  ")
        generator = AdvisoryTipGenerator(service, clock=FakeClock(10_000.0))
        tip = asyncio.run(generator.generate_tip(MovementClass.EXPLOSIVE, MovementState.ACTIVE))
        assert tip.text == "Drive through your heels"
        assert tip.confidence == pytest.approx(0.75)
        assert tip.source_score == pytest.approx(75.0)
        assert tip.timestamp == 10_000.0

    def test_overlong_tip_falls_back(self):
        service = FakeAdvisoryService(tip_reply="word " * 30)
        generator = AdvisoryTipGenerator(service, rng=random.Random(2), clock=FakeClock(10_000.0))
        tip = asyncio.run(generator.generate_tip(MovementClass.EXPLOSIVE, MovementState.ACTIVE))
        assert tip.text in CLASS_TIPS[MovementClass.EXPLOSIVE]
        assert tip.confidence == pytest.approx(0.5)
        assert generator.stats["tip_fallback"] == 1

    def test_failing_service_classification_uses_rule_class(self):
        generator = AdvisoryTipGenerator(FakeAdvisoryService(fail=True), clock=FakeClock())
        result = asyncio.run(generator.classify_movement(
            _make_sample(1.0), [], MovementClass.RHYTHMIC
        ))
        assert result.value == MovementClass.RHYTHMIC
        assert result.source == "fallback"

    def test_end_session_clears_cache(self):
        clock = FakeClock(10_000.0)
        generator = AdvisoryTipGenerator(FakeAdvisoryService(), clock=clock)
        asyncio.run(generator.generate_tip(MovementClass.EXPLOSIVE, MovementState.ACTIVE))
        generator.end_session()
        assert len(generator.tip_channel) == 0
        assert generator.tip_channel.limiter.last_invocation_time is None

    def test_end_session_can_retain_cache(self):
        clock = FakeClock(10_000.0)
        generator = AdvisoryTipGenerator(FakeAdvisoryService(), clock=clock)
        asyncio.run(generator.generate_tip(MovementClass.EXPLOSIVE, MovementState.ACTIVE))
        generator.end_session(retain_cache=True)
        assert len(generator.tip_channel) == 1
        assert generator.tip_channel.limiter.last_invocation_time is None


# ============================================================================
# Service factory & narration agent
# ============================================================================

class TestAdvisoryServiceFactory:

    def test_no_key_means_no_service(self):
        assert build_advisory_service(api_key="") is None

    def test_key_builds_gemini_service(self):
        service = build_advisory_service(api_key="test-key")
        assert isinstance(service, GeminiAdvisoryService)

    def test_gemini_requires_key(self):
        with pytest.raises(ValueError):
            GeminiAdvisoryService(api_key="")


class TestCoachingAgent:

    def test_fallback_narration_without_service(self):
        feedback = asyncio.run(CoachingAgent(None).narrate(_make_summary(score=30)))
        assert feedback.used_fallback
        assert "30 out of 100" in feedback.feedback_summary
        assert any("score is low" in w for w in feedback.warnings)
        assert any("No pose data" in w for w in feedback.warnings)

    def test_service_narration(self):
        service = FakeAdvisoryService(summary_reply="  Strong effort, keep it up.  ")
        feedback = asyncio.run(CoachingAgent(service).narrate(_make_summary(score=85, pose_count=20)))
        assert not feedback.used_fallback
        assert feedback.feedback_summary == "Strong effort, keep it up."
        assert feedback.score == 85
        assert service.calls == ["summary"]

    def test_failing_service_falls_back(self):
        service = FakeAdvisoryService(fail=True)
        feedback = asyncio.run(CoachingAgent(service).narrate(_make_summary()))
        assert feedback.used_fallback
        assert feedback.feedback_summary


# ============================================================================
# Prompts
# ============================================================================

class TestPrompts:

    def test_classify_prompt_renders(self):
        sample = _make_sample(2.4, z=0.6)
        context = build_movement_context(sample, [sample] * 4)
        messages = CLASSIFY_PROMPT.format_messages(
            **classify_prompt_inputs(sample.intensity, sample.x, sample.y, sample.z, context, None)
        )
        assert messages[0].type == "system"
        assert "Current Intensity: 2.40" in messages[1].content
        assert "No pose data" in messages[1].content

    def test_performance_analysis(self):
        text = format_performance_analysis(_make_summary())
        assert "Movement Consistency: Needs improvement" in text
        assert "Activity Level: Low" in text

    def test_format_helpers(self):
        assert format_warnings([]) == "- None"
        assert format_pose_quality(_make_pose(13)) == "13/13 keypoints"
