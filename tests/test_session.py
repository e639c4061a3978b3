"""Tests for session orchestration and the tick scheduler.

Covers:
  - Sampler / tip / summary ticks against fake collaborators
  - Advisory confirmation gating and override
  - Stop semantics (state cleared, late results ignored)
  - Scheduler start/stop
  - Session settings loading
"""

import asyncio
import json
import random
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from motion_coach.agents.advisory_service import AdvisoryService
from motion_coach.agents.coaching_agent import CoachingAgent
from motion_coach.agents.fallback_tips import STATE_TIPS
from motion_coach.agents.state import Keypoint, MovementClass, MovementState, PoseSummary
from motion_coach.agents.tip_generator import AdvisoryTipGenerator
from motion_coach.audio.dispatcher import AudioDispatcher, SpeechEngine
from motion_coach.pipelines.config import SessionSettings, load_session_settings
from motion_coach.pipelines.sampler import MotionSource, QueueMotionSource
from motion_coach.pipelines.session import CoachingSession, SessionScheduler
from motion_coach.utils.io_utils import save_session_report


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


class RecordingSpeechEngine(SpeechEngine):
    def __init__(self):
        self.spoken = []

    async def speak(self, text, options, callbacks):
        self.spoken.append(text)
        callbacks.on_done()

    async def stop(self):
        pass


class GatedAdvisoryService(AdvisoryService):
    """Answers only after ``release`` is set (when ``gated``)."""

    def __init__(self, classify_reply="explosive", tip_reply="Drive through your heels",
                 gated=False):
        self.classify_reply = classify_reply
        self.tip_reply = tip_reply
        self.release = asyncio.Event() if gated else None
        self.calls = []

    async def _wait(self):
        if self.release is not None:
            await self.release.wait()

    async def classify(self, sample, context, pose=None):
        self.calls.append("classify")
        await self._wait()
        return self.classify_reply

    async def generate_tip(self, context):
        self.calls.append("tip")
        await self._wait()
        return self.tip_reply

    async def summarize_session(self, summary, warnings):
        self.calls.append("summary")
        return "Good half minute."


class OutOfFrameSource(MotionSource):
    @property
    def user_in_frame(self) -> bool:
        return False

    def read(self):
        return None


def _make_session(source=None, service=None, settings=None, clock=None, agent=None):
    clock = clock or FakeClock(10_000.0)
    engine = RecordingSpeechEngine()
    return CoachingSession(
        source=source or QueueMotionSource(),
        generator=AdvisoryTipGenerator(service, rng=random.Random(0), clock=clock),
        dispatcher=AudioDispatcher(engine, clock=clock),
        agent=agent,
        settings=settings or SessionSettings(),
        clock=clock,
    )


def _drain(session) -> list[str]:
    types = []
    while not session.events.empty():
        types.append(session.events.get_nowait().type)
    return types


def _eager_settings(**overrides) -> SessionSettings:
    values = dict(advisory_warmup_ms=0.0, advisory_min_history=1)
    values.update(overrides)
    return SessionSettings(**values)


# ============================================================================
# Sampler tick
# ============================================================================

class TestSampleTick:

    def test_inactive_session_ignores_ticks(self):
        session = _make_session()
        session.sampler.source.push(0.0, 0.0, 3.0)
        assert session.tick_sample() is None
        assert len(session.sampler.history) == 0

    def test_state_change_emits_event(self):
        session = _make_session()
        session.start()
        session.sampler.source.push(0.0, 0.0, 3.0)
        sample = session.tick_sample()

        assert sample.intensity == pytest.approx(3.0)
        assert session.movement_state == MovementState.ACTIVE
        assert _drain(session) == ["state"]
        assert len(session.aggregator.window.intensity_buffer) == 1

    def test_missing_reading_skips_tick(self):
        session = _make_session()
        session.start()
        session.sampler.source.push(0.0, 0.0, 3.0)
        session.tick_sample()
        assert session.tick_sample() is None
        assert session.movement_state == MovementState.ACTIVE

    def test_out_of_frame_forces_idle(self):
        session = _make_session(source=OutOfFrameSource())
        session.start()
        session.state_machine.state = MovementState.ACTIVE
        session.tick_sample()
        assert session.movement_state == MovementState.IDLE
        assert _drain(session) == ["state"]

    def test_no_confirmation_during_warmup(self):
        service = GatedAdvisoryService()
        session = _make_session(service=service)

        async def scenario():
            session.start()
            for _ in range(6):
                session.sampler.source.push(0.0, 0.0, 3.0)
                session.tick_sample()
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert service.calls == []

    def test_confirmation_overrides_rule_class(self):
        service = GatedAdvisoryService(classify_reply="explosive")
        session = _make_session(service=service, settings=_eager_settings())

        async def scenario():
            session.start()
            session.sampler.source.push(0.0, 0.0, 3.0)
            session.tick_sample()
            await asyncio.gather(*session._tasks)

        asyncio.run(scenario())
        assert service.calls == ["classify"]
        assert session.movement_class == MovementClass.EXPLOSIVE

    def test_confirmed_class_survives_later_ticks(self):
        clock = FakeClock(10_000.0)
        service = GatedAdvisoryService(classify_reply="explosive")
        session = _make_session(service=service, settings=_eager_settings(), clock=clock)

        async def scenario():
            session.start()
            session.sampler.source.push(0.0, 0.0, 3.0)
            session.tick_sample()
            await asyncio.gather(*session._tasks)
            clock.advance(200)
            session.sampler.source.push(0.0, 0.0, 3.0)
            session.tick_sample()
            await asyncio.gather(*session._tasks)

        asyncio.run(scenario())
        assert service.calls == ["classify"]
        assert session.rule_class == MovementClass.NONE
        assert session.movement_class == MovementClass.EXPLOSIVE
        assert session.get_stats()["movement"] == "explosive"

    def test_confirmed_class_dropped_when_idle(self):
        clock = FakeClock(10_000.0)
        service = GatedAdvisoryService(classify_reply="explosive")
        session = _make_session(service=service, settings=_eager_settings(), clock=clock)

        async def scenario():
            session.start()
            session.sampler.source.push(0.0, 0.0, 3.0)
            session.tick_sample()
            await asyncio.gather(*session._tasks)
            for _ in range(10):
                clock.advance(200)
                session.sampler.source.push(0.0, 0.0, 0.0)
                session.tick_sample()
                if session.movement_state == MovementState.IDLE:
                    break

        asyncio.run(scenario())
        assert session.movement_state == MovementState.IDLE
        assert session.advisory_class is None
        assert session.movement_class == session.rule_class

    def test_confirmation_respects_analysis_interval(self):
        clock = FakeClock(10_000.0)
        service = GatedAdvisoryService()
        session = _make_session(service=service, settings=_eager_settings(), clock=clock)

        async def scenario():
            session.start()
            for _ in range(3):
                session.sampler.source.push(0.0, 0.0, 3.0)
                session.tick_sample()
                clock.advance(200)
            await asyncio.gather(*session._tasks)

        asyncio.run(scenario())
        assert service.calls == ["classify"]


# ============================================================================
# Tip & summary ticks
# ============================================================================

class TestTipAndSummaryTicks:

    def test_no_tip_while_idle(self):
        session = _make_session()
        session.start()
        session.sampler.source.push(0.0, 0.0, 0.5)
        session.tick_sample()
        assert asyncio.run(session.tick_tip()) is None

    def test_pose_tick_adds_no_intensity(self):
        session = _make_session()
        session.start()
        session.sampler.source.push(0.0, 0.0, 3.0)
        session.tick_sample()
        for _ in range(3):
            session.pose_feed.update(PoseSummary.from_keypoints(
                [Keypoint(name="nose", x=0.0, y=0.0, score=0.9)]
            ))
            session.tick_pose()

        window = session.aggregator.window
        assert len(window.pose_buffer) == 3
        assert len(window.intensity_buffer) == 1

    def test_fallback_tip_spoken(self):
        session = _make_session()
        session.start()
        session.sampler.source.push(0.0, 0.0, 3.0)
        session.tick_sample()
        _drain(session)

        tip = asyncio.run(session.tick_tip())

        assert tip.text in STATE_TIPS[MovementState.ACTIVE]
        assert session.dispatcher.engine.spoken == [tip.text]
        assert _drain(session) == ["tip"]

    def test_summary_is_narrated(self):
        clock = FakeClock(0.0)
        session = _make_session(clock=clock, agent=CoachingAgent(None))
        session.start()
        session.sampler.source.push(0.0, 0.0, 1.0)
        session.tick_sample()
        _drain(session)

        assert asyncio.run(session.tick_summary()) is None
        clock.advance(30_000)
        summary = asyncio.run(session.tick_summary())

        assert summary is not None
        assert session.summaries == [summary]
        assert _drain(session) == ["summary", "narration"]
        assert len(session.dispatcher.engine.spoken) == 1

    def test_summary_without_agent(self):
        clock = FakeClock(0.0)
        session = _make_session(clock=clock)
        session.start()
        session.sampler.source.push(0.0, 0.0, 1.0)
        session.tick_sample()
        clock.advance(30_000)
        assert asyncio.run(session.tick_summary()) is not None
        assert session.dispatcher.engine.spoken == []


# ============================================================================
# Stop
# ============================================================================

class TestStop:

    def test_stop_clears_session_state(self):
        session = _make_session(service=GatedAdvisoryService())

        async def scenario():
            session.start()
            for _ in range(3):
                session.sampler.source.push(0.0, 0.0, 3.0)
                session.tick_sample()
            await session.tick_tip()
            await session.stop()

        asyncio.run(scenario())
        assert not session.active
        assert len(session.sampler.history) == 0
        assert session.movement_state == MovementState.IDLE
        assert session.aggregator.window.window_start_time is None
        assert len(session.generator.tip_channel) == 0
        assert not session.dispatcher.is_speaking
        assert _drain(session)[-1] == "stopped"

    def test_late_tip_ignored_after_stop(self):
        service = GatedAdvisoryService(gated=True)
        session = _make_session(service=service)

        async def scenario():
            session.start()
            session.sampler.source.push(0.0, 0.0, 3.0)
            session.tick_sample()
            task = asyncio.create_task(session.tick_tip())
            await asyncio.sleep(0)
            await session.stop()
            service.release.set()
            return await task

        assert asyncio.run(scenario()) is None
        assert session.dispatcher.engine.spoken == []
        assert "tip" not in _drain(session)

    def test_stop_cancels_pending_confirmation(self):
        service = GatedAdvisoryService(gated=True)
        session = _make_session(service=service, settings=_eager_settings())

        async def scenario():
            session.start()
            session.sampler.source.push(0.0, 0.0, 3.0)
            session.tick_sample()
            await asyncio.sleep(0)
            await session.stop()

        asyncio.run(scenario())
        assert service.calls == ["classify"]
        assert not session._tasks
        assert session.movement_class == MovementClass.NONE

    def test_restart_after_stop(self):
        session = _make_session()

        async def scenario():
            session.start()
            await session.stop()
            session.start()

        asyncio.run(scenario())
        assert session.active
        assert session.epoch == 3


# ============================================================================
# Scheduler & settings
# ============================================================================

class TestScheduler:

    def test_start_and_stop(self):
        settings = SessionSettings(
            sample_interval_ms=10, pose_interval_ms=20,
            tip_interval_ms=20, summary_check_interval_ms=20,
        )
        source = QueueMotionSource()
        session = CoachingSession(
            source=source,
            generator=AdvisoryTipGenerator(None, rng=random.Random(0)),
            dispatcher=AudioDispatcher(RecordingSpeechEngine()),
            settings=settings,
        )
        scheduler = SessionScheduler(session)

        async def scenario():
            await scheduler.start()
            assert scheduler.running
            for _ in range(5):
                source.push(0.0, 0.0, 3.0)
                await asyncio.sleep(0.02)
            await scheduler.stop()

        asyncio.run(scenario())
        assert not scheduler.running
        assert not session.active
        assert session.dispatcher.engine.spoken


class TestSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_session_settings(tmp_path / "missing.yaml")
        assert settings == SessionSettings()

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "session.yaml"
        path.write_text("session:\n  sample_interval_ms: 100\n  random_seed: 7\n")
        settings = load_session_settings(path)
        assert settings.sample_interval_ms == 100
        assert settings.random_seed == 7
        assert settings.tip_interval_ms == 2000

    def test_default_file_matches_defaults(self):
        settings = load_session_settings()
        assert settings.sample_interval_ms == 200
        assert settings.min_speak_interval_ms == 3000
        assert not settings.retain_cache_across_sessions

    def test_session_report(self, tmp_path):
        clock = FakeClock(0.0)
        session = _make_session(clock=clock)
        session.start()
        session.sampler.source.push(0.0, 0.0, 1.0)
        session.tick_sample()
        clock.advance(30_000)
        asyncio.run(session.tick_summary())

        path = save_session_report(session.summaries, reports_dir=str(tmp_path))
        records = json.loads(Path(path).read_text())
        assert len(records) == 1
        assert records[0]["phase"] == "preparation"
