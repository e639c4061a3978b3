"""
Audio Dispatcher.

Serializes spoken feedback through a single exclusive speech resource:
  - a request is dropped while another utterance is in flight
  - a repeat of the last text within ``min_speak_interval_ms`` is dropped
  - the resource is released on every terminal path (done, stopped, error,
    a failing ``speak`` call, and ``stop``)
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Callable, Optional

from pydantic import BaseModel, Field

from ..agents.state import CoachingTip, TipPriority
from ..pipelines.utils import monotonic_ms

logger = logging.getLogger(__name__)

MAX_HISTORY = 10


# ============================================================================
# Speech collaborator interface
# ============================================================================

class SpeechOptions(BaseModel):
    language: str = "en-US"
    rate: float = Field(default=1.1, ge=0.5, le=2.0)
    pitch: float = Field(default=1.0, ge=0.5, le=2.0)
    volume: float = Field(default=0.9, ge=0.0, le=1.0)


class SpeechCallbacks:
    """Terminal and start notifications from the speech engine for one utterance."""

    def __init__(
        self,
        on_start: Callable[[], None],
        on_done: Callable[[], None],
        on_stopped: Callable[[], None],
        on_error: Callable[[Exception], None],
    ):
        self.on_start = on_start
        self.on_done = on_done
        self.on_stopped = on_stopped
        self.on_error = on_error


class SpeechEngine:
    """External speech playback.  ``speak`` returns once playback has been started."""

    async def speak(self, text: str, options: SpeechOptions, callbacks: SpeechCallbacks) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError


class LoggingSpeechEngine(SpeechEngine):
    """
    Engine that logs utterances instead of rendering audio.

    Completion is signalled after an estimate of the spoken duration so the
    dispatcher sees realistic busy periods.
    """

    WORDS_PER_SECOND = 2.5

    def __init__(self):
        self._pending: Optional[asyncio.TimerHandle] = None
        self._callbacks: Optional[SpeechCallbacks] = None

    def estimate_duration(self, text: str, options: SpeechOptions) -> float:
        words = max(1, len(text.split()))
        return words / (self.WORDS_PER_SECOND * options.rate)

    async def speak(self, text: str, options: SpeechOptions, callbacks: SpeechCallbacks) -> None:
        logger.info("[SPEAK] %s (rate=%.2f volume=%.2f)", text, options.rate, options.volume)
        self._callbacks = callbacks
        callbacks.on_start()
        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(self.estimate_duration(text, options), self._finish)

    def _finish(self) -> None:
        callbacks, self._callbacks, self._pending = self._callbacks, None, None
        if callbacks is not None:
            callbacks.on_done()

    async def stop(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
        callbacks, self._callbacks, self._pending = self._callbacks, None, None
        if callbacks is not None:
            callbacks.on_stopped()


# ============================================================================
# Dispatcher
# ============================================================================

class SpeechResource(BaseModel):
    """The single exclusive speech slot."""
    is_speaking: bool = False
    last_spoken_text: Optional[str] = None
    last_spoken_time: Optional[float] = None


class SpokenRecord(BaseModel):
    text: str
    priority: TipPriority
    source_score: float
    timestamp: float


def speech_options(priority: TipPriority, base: Optional[SpeechOptions] = None) -> SpeechOptions:
    """Derive rate/volume from tip priority; urgent tips are faster and louder."""
    base = base or SpeechOptions()
    if priority == TipPriority.HIGH:
        return base.model_copy(update={
            "rate": min(2.0, base.rate * 1.1),
            "volume": 1.0,
        })
    return base.model_copy()


class AudioDispatcher:
    """
    Exclusive-resource front end to the speech engine.

    Example usage:
        dispatcher = AudioDispatcher(LoggingSpeechEngine())
        spoken = await dispatcher.request_speak(tip)
    """

    def __init__(
        self,
        engine: SpeechEngine,
        min_speak_interval_ms: float = 3000.0,
        clock: Callable[[], float] = monotonic_ms,
        voice: Optional[SpeechOptions] = None,
    ):
        self.engine = engine
        self.min_speak_interval_ms = min_speak_interval_ms
        self.clock = clock
        self.voice = voice or SpeechOptions()

        self.resource = SpeechResource()
        # Engines may deliver callbacks from their own thread
        self._lock = threading.Lock()
        self._utterance = 0
        self.history: deque[SpokenRecord] = deque(maxlen=MAX_HISTORY)
        self.dropped_busy = 0
        self.dropped_duplicate = 0
        self.errors = 0

    @property
    def is_speaking(self) -> bool:
        return self.resource.is_speaking

    def _acquire(self, text: str) -> Optional[int]:
        """Atomic check-and-set; returns the utterance id or ``None`` if dropped."""
        with self._lock:
            res = self.resource
            if res.is_speaking:
                self.dropped_busy += 1
                logger.debug("Already speaking, dropping: %s", text)
                return None
            now = self.clock()
            if (
                res.last_spoken_text == text
                and res.last_spoken_time is not None
                and now - res.last_spoken_time < self.min_speak_interval_ms
            ):
                self.dropped_duplicate += 1
                logger.debug("Duplicate within %.0f ms, dropping: %s", self.min_speak_interval_ms, text)
                return None
            res.is_speaking = True
            res.last_spoken_text = text
            res.last_spoken_time = now
            self._utterance += 1
            return self._utterance

    def _release(self, utterance: Optional[int], reason: str) -> None:
        with self._lock:
            if utterance is not None and utterance != self._utterance:
                return
            if self.resource.is_speaking:
                logger.debug("Speech resource released (%s)", reason)
            self.resource.is_speaking = False

    def _callbacks(self, utterance: int, text: str) -> SpeechCallbacks:
        def on_error(error: Exception) -> None:
            self.errors += 1
            logger.error("Speech error for %r: %s", text, error)
            self._release(utterance, "error")

        return SpeechCallbacks(
            on_start=lambda: logger.debug("Started speaking: %s", text),
            on_done=lambda: self._release(utterance, "done"),
            on_stopped=lambda: self._release(utterance, "stopped"),
            on_error=on_error,
        )

    async def request_speak(self, tip: CoachingTip) -> bool:
        """
        Speak *tip* unless the resource is busy or the text is a recent repeat.

        Returns:
            True if the utterance was handed to the speech engine
        """
        text = tip.text.strip()
        if not text:
            return False
        utterance = self._acquire(text)
        if utterance is None:
            return False

        options = speech_options(tip.priority, self.voice)
        try:
            await self.engine.speak(text, options, self._callbacks(utterance, text))
        except asyncio.CancelledError:
            self._release(utterance, "cancelled")
            raise
        except Exception as e:
            self.errors += 1
            logger.error("Speech engine failed for %r: %s", text, e)
            self._release(utterance, "speak failed")
            return False

        self.history.appendleft(SpokenRecord(
            text=text,
            priority=tip.priority,
            source_score=tip.source_score,
            timestamp=self.resource.last_spoken_time or self.clock(),
        ))
        return True

    async def stop(self) -> None:
        """Stop any utterance in flight; the resource is free afterwards."""
        try:
            if self.resource.is_speaking:
                await self.engine.stop()
        except Exception as e:
            logger.error("Speech engine stop failed: %s", e)
        finally:
            self._release(None, "stop")

    def reset(self) -> None:
        """Forget dedup state and history for a new session."""
        with self._lock:
            self.resource = SpeechResource()
            self._utterance += 1
        self.history.clear()

    def get_stats(self) -> dict:
        total = len(self.history)
        avg_score = sum(r.source_score for r in self.history) / total if total else 0.0
        return {
            "total_feedback": total,
            "average_score": round(avg_score),
            "is_speaking": self.resource.is_speaking,
            "dropped_busy": self.dropped_busy,
            "dropped_duplicate": self.dropped_duplicate,
            "errors": self.errors,
            "voice": self.voice.model_dump(),
        }
