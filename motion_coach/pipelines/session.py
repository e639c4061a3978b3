"""
Stage 4: Session orchestration.

``CoachingSession`` holds all session-scoped state (sampler, classifiers,
aggregator, advisory channels, speech resource) and exposes one method per
periodic tick.  ``SessionScheduler`` drives the four ticks as independent
asyncio tasks on a single event loop:

    sampler tick  -> sample, smooth, classify, collect (never awaits)
    pose tick     -> collect the latest pose snapshot
    tip tick      -> advisory tip -> audio dispatcher
    summary tick  -> try_emit -> narration agent -> audio dispatcher

Results of advisory or speech calls that complete after ``stop`` are
ignored (each session start/stop bumps an epoch counter).
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from ..agents.coaching_agent import CoachingAgent
from ..agents.state import (
    CoachingTip,
    MotionSample,
    MovementClass,
    MovementState,
    PoseSummary,
    SessionSummary,
    TipPriority,
)
from ..agents.tip_generator import AdvisoryTipGenerator
from ..audio.dispatcher import AudioDispatcher
from .aggregator import RollingAggregator
from .classifier import MovementStateMachine, classify_movement_pattern
from .config import SessionSettings
from .sampler import MotionSampler, MotionSource
from .utils import monotonic_ms

logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 100


class SessionEvent(BaseModel):
    """Notification published to session observers (UI, websocket, logs)."""
    type: str = Field(description="'state', 'tip', 'summary', 'narration' or 'stopped'")
    timestamp: float
    payload: dict = Field(default_factory=dict)


class PoseFeed:
    """Latest pose snapshot from the pose-estimation collaborator."""

    def __init__(self):
        self._latest: Optional[PoseSummary] = None
        self._fresh = False

    def update(self, pose: Optional[PoseSummary]) -> None:
        self._latest = pose
        self._fresh = pose is not None

    def latest(self) -> Optional[PoseSummary]:
        return self._latest

    def take_fresh(self) -> Optional[PoseSummary]:
        """Return the snapshot once; ``None`` if nothing new arrived since the last call."""
        if not self._fresh:
            return None
        self._fresh = False
        return self._latest

    def clear(self) -> None:
        self._latest = None
        self._fresh = False


# ============================================================================
# Session
# ============================================================================

class CoachingSession:
    """
    All state for one coaching session plus its tick handlers.

    Example usage:
        session = CoachingSession(source, generator, dispatcher)
        session.start()
        session.tick_sample()
        await session.tick_tip()
        await session.stop()
    """

    def __init__(
        self,
        source: MotionSource,
        generator: AdvisoryTipGenerator,
        dispatcher: AudioDispatcher,
        agent: Optional[CoachingAgent] = None,
        settings: Optional[SessionSettings] = None,
        clock: Callable[[], float] = monotonic_ms,
        pose_feed: Optional[PoseFeed] = None,
    ):
        self.settings = settings or SessionSettings()
        self.clock = clock
        self.generator = generator
        self.dispatcher = dispatcher
        self.agent = agent
        self.pose_feed = pose_feed or PoseFeed()

        self.sampler = MotionSampler(source, clock=clock)
        self.state_machine = MovementStateMachine()
        self.aggregator = RollingAggregator(clock=clock)
        # Rule result of the latest tick; the advisory answer, when present,
        # is held until the next confirmation or until the state drops to idle.
        self.rule_class = MovementClass.NONE
        self.advisory_class: Optional[MovementClass] = None
        self.movement_class = MovementClass.NONE

        self.events: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.summaries: list[SessionSummary] = []
        self.epoch = 0
        self.active = False
        self.started_at: Optional[float] = None
        self._last_analysis: Optional[float] = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def movement_state(self) -> MovementState:
        return self.state_machine.state

    def start(self) -> None:
        self.epoch += 1
        self.active = True
        self.started_at = self.clock()
        self._last_analysis = None
        self.summaries = []
        logger.info("Coaching session started (epoch %d)", self.epoch)

    async def stop(self) -> None:
        """
        End the session: ignore in-flight results, silence speech and clear
        session-scoped state.  Cached advisory answers survive only when
        ``retain_cache_across_sessions`` is set.
        """
        self.epoch += 1
        self.active = False

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.dispatcher.stop()
        self.dispatcher.reset()
        self.generator.end_session(retain_cache=self.settings.retain_cache_across_sessions)

        self.sampler.reset()
        self.state_machine.reset()
        self.aggregator.reset()
        self.pose_feed.clear()
        self.rule_class = MovementClass.NONE
        self.advisory_class = None
        self.movement_class = MovementClass.NONE
        self.started_at = None
        self._last_analysis = None
        self._emit("stopped", {})
        logger.info("Coaching session stopped")

    def _emit(self, event_type: str, payload: dict) -> None:
        event = SessionEvent(type=event_type, timestamp=self.clock(), payload=payload)
        if self.events.full():
            self.events.get_nowait()
        self.events.put_nowait(event)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def tick_sample(self) -> Optional[MotionSample]:
        """
        Sampler tick: sample, smooth, classify and collect.

        A tick without a reading is skipped; if the source reports the user
        out of frame the session is also forced back to idle.
        """
        if not self.active:
            return None
        previous = self.state_machine.state
        sample = self.sampler.sample()

        if sample is None:
            if self.sampler.source.user_in_frame:
                return None
            self.state_machine.reset()
            self.rule_class = MovementClass.NONE
            self.advisory_class = None
            self.movement_class = MovementClass.NONE
            if previous != MovementState.IDLE:
                self._emit("state", {"state": MovementState.IDLE.value, "movement": MovementClass.NONE.value})
            return None

        smoothed = self.sampler.smoothed
        state = self.state_machine.update(smoothed)
        history = self.sampler.history.as_list()
        pose = self.pose_feed.latest()
        rule_class = classify_movement_pattern(sample, history, pose)
        self.rule_class = rule_class
        if state == MovementState.IDLE:
            self.advisory_class = None
        self.movement_class = self.advisory_class if self.advisory_class is not None else rule_class

        # Classification precedes aggregation for every sample
        self.aggregator.collect(None, smoothed, [sample])

        if state != previous:
            self._emit("state", {
                "state": state.value,
                "movement": self.movement_class.value,
                "intensity": round(smoothed, 3),
            })

        now = sample.timestamp
        if self._should_confirm(now, smoothed, len(history)):
            self._last_analysis = now
            self._spawn(self._confirm_classification(sample, history, rule_class, pose, self.epoch))
        return sample

    def _should_confirm(self, now: float, smoothed: float, history_len: int) -> bool:
        s = self.settings
        if not self.generator.has_service or self.started_at is None:
            return False
        if now - self.started_at < s.advisory_warmup_ms:
            return False
        if smoothed <= s.advisory_min_intensity or history_len < s.advisory_min_history:
            return False
        return self._last_analysis is None or now - self._last_analysis >= s.analysis_interval_ms

    async def _confirm_classification(
        self,
        sample: MotionSample,
        history: list[MotionSample],
        rule_class: MovementClass,
        pose: Optional[PoseSummary],
        epoch: int,
    ) -> None:
        result = await self.generator.classify_movement(sample, history, rule_class, pose)
        if epoch != self.epoch:
            return
        if result.value != self.movement_class:
            logger.debug(
                "Advisory classification %s overrides %s (%s)",
                result.value.value, self.movement_class.value, result.source,
            )
        # Throttled or failed calls return the rule class; only service answers are held
        self.advisory_class = result.value if result.source in ("service", "cache") else None
        self.movement_class = result.value

    def tick_pose(self) -> Optional[PoseSummary]:
        """Pose tick: fold a newly arrived pose snapshot into the aggregator."""
        if not self.active:
            return None
        pose = self.pose_feed.take_fresh()
        if pose is not None:
            self.aggregator.collect(pose, None, [])
        return pose

    async def tick_tip(self) -> Optional[CoachingTip]:
        """Tip tick: request a tip for the current movement and hand it to the dispatcher."""
        if not self.active:
            return None
        state = self.state_machine.state
        if state == MovementState.IDLE or self.sampler.smoothed <= self.settings.tip_min_intensity:
            return None

        epoch = self.epoch
        tip = await self.generator.generate_tip(
            self.movement_class, state, self.pose_feed.latest()
        )
        if epoch != self.epoch:
            return None

        self._emit("tip", tip.model_dump(mode="json"))
        await self.dispatcher.request_speak(tip)
        return tip

    async def tick_summary(self) -> Optional[SessionSummary]:
        """Summary tick: emit a window summary when due and narrate it."""
        if not self.active:
            return None
        summary = self.aggregator.try_emit()
        if summary is None:
            return None

        self.summaries.append(summary)
        self._emit("summary", summary.model_dump(mode="json"))

        if self.agent is None or not self.settings.narrate_summaries:
            return summary

        epoch = self.epoch
        feedback = await self.agent.narrate(summary)
        if epoch != self.epoch:
            return summary

        self._emit("narration", feedback.model_dump(mode="json"))
        await self.dispatcher.request_speak(CoachingTip(
            text=feedback.feedback_summary,
            priority=TipPriority.MEDIUM,
            confidence=0.5 if feedback.used_fallback else 0.8,
            source_score=float(summary.score),
            timestamp=self.clock(),
        ))
        return summary

    def get_stats(self) -> dict:
        return {
            "active": self.active,
            "state": self.state_machine.state.value,
            "movement": self.movement_class.value,
            "smoothed_intensity": self.sampler.smoothed,
            "history_size": len(self.sampler.history),
            "summaries": len(self.summaries),
            "advisory": dict(self.generator.stats),
            "audio": self.dispatcher.get_stats(),
        }


# ============================================================================
# Scheduler
# ============================================================================

TickFn = Callable[[], Union[Any, Awaitable[Any]]]


class SessionScheduler:
    """
    Runs the four periodic ticks of a ``CoachingSession`` as asyncio tasks.

    Example usage:
        scheduler = SessionScheduler(session)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, session: CoachingSession):
        self.session = session
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        s = self.session.settings
        self.session.start()
        self._tasks = [
            asyncio.create_task(self._periodic("sampler", s.sample_interval_ms, self.session.tick_sample)),
            asyncio.create_task(self._periodic("pose", s.pose_interval_ms, self.session.tick_pose)),
            asyncio.create_task(self._periodic("tip", s.tip_interval_ms, self.session.tick_tip)),
            asyncio.create_task(self._periodic("summary", s.summary_check_interval_ms, self.session.tick_summary)),
        ]

    async def _periodic(self, name: str, interval_ms: float, tick: TickFn) -> None:
        interval_s = interval_ms / 1000.0
        while True:
            try:
                result = tick()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s tick failed", name)
            await asyncio.sleep(interval_s)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.session.stop()


# ============================================================================
# Example Usage
# ============================================================================

async def run_demo(duration_s: float = 65.0, settings: Optional[SessionSettings] = None) -> CoachingSession:
    """Run a synthetic session with spoken output going to the log."""
    from ..agents.advisory_service import build_advisory_service
    from ..audio.dispatcher import LoggingSpeechEngine
    from .sampler import SyntheticMotionSource
    from .utils import make_rng

    settings = settings or SessionSettings()
    rng = make_rng(settings.random_seed)
    service = build_advisory_service()
    session = CoachingSession(
        source=SyntheticMotionSource(rng),
        generator=AdvisoryTipGenerator(service, rng=rng),
        dispatcher=AudioDispatcher(LoggingSpeechEngine(), settings.min_speak_interval_ms),
        agent=CoachingAgent(service),
        settings=settings,
    )
    scheduler = SessionScheduler(session)
    await scheduler.start()
    try:
        await asyncio.sleep(duration_s)
    finally:
        stats = session.get_stats()
        await scheduler.stop()
    logger.info("Session stats: %s", stats)
    return session


if __name__ == "__main__":
    from ..utils.io_utils import save_session_report, set_global_seed
    from .config import load_session_settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(levelname)s | %(name)s | %(message)s",
    )
    demo_settings = load_session_settings()
    if demo_settings.random_seed is not None:
        set_global_seed(demo_settings.random_seed)
    finished = asyncio.run(run_demo(settings=demo_settings))
    if finished.summaries:
        save_session_report(finished.summaries)
