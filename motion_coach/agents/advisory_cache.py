"""
Cache and rate limiter in front of the advisory service.

One ``AdvisoryChannel`` is created per kind of advisory call (movement
classification, tip text).  Each channel memoizes results under a quantized
signature and enforces a minimum spacing between real service invocations;
when a call is throttled or fails, the caller-supplied fallback is used and
cached instead.
"""

import logging
import math
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel

from ..pipelines.utils import monotonic_ms
from .advisory_service import AdvisoryServiceError
from .state import MotionSample, MovementClass, MovementState, PoseAlignment

logger = logging.getLogger(__name__)


# ============================================================================
# Channel state
# ============================================================================

class AdvisoryCacheEntry(BaseModel):
    signature: str
    result: Any
    cached_at: float


class RateLimiterState(BaseModel):
    """Time of the last real service invocation on a channel (``None`` = never)."""
    last_invocation_time: Optional[float] = None


ResultSource = Literal["cache", "service", "fallback", "rate_limited"]


class ChannelResult(BaseModel):
    """Value returned by a channel call and where it came from."""
    value: Any
    source: ResultSource

    @property
    def from_service(self) -> bool:
        return self.source == "service"


class AdvisoryChannel:
    """
    Signature-keyed cache plus minimum-interval limiter for one advisory call.

    Lookup order for ``call``:
        1. fresh cache entry (age < ``ttl_ms``) -> cached value
        2. last invocation less than ``min_interval_ms`` ago, or another call
           still in flight -> fallback, cached, limiter untouched
        3. invoke the service; on ``AdvisoryServiceError`` use the fallback.
           Either way the value is cached and the limiter is stamped with the
           time the call started.

    Example usage:
        channel = AdvisoryChannel("tip", ttl_ms=3000, min_interval_ms=2000, max_entries=30)
        result = await channel.call(sig, lambda: service.generate_tip(ctx), fallback)
    """

    def __init__(
        self,
        name: str,
        ttl_ms: float,
        min_interval_ms: float,
        max_entries: int,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.name = name
        self.ttl_ms = ttl_ms
        self.min_interval_ms = min_interval_ms
        self.max_entries = max_entries
        self.clock = clock

        self.limiter = RateLimiterState()
        self._entries: dict[str, AdvisoryCacheEntry] = {}
        self._in_flight = False
        # Bumped by clear()/reset_rate_limit() so late results from an
        # earlier session are not written back.
        self._generation = 0
        self.invocations = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, signature: str) -> bool:
        return signature in self._entries

    def lookup(self, signature: str, now: Optional[float] = None) -> Optional[Any]:
        """Return the cached value for *signature* if still fresh."""
        now = self.clock() if now is None else now
        entry = self._entries.get(signature)
        if entry is not None and now - entry.cached_at < self.ttl_ms:
            return entry.result
        return None

    def is_rate_limited(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        if self._in_flight:
            return True
        last = self.limiter.last_invocation_time
        return last is not None and now - last < self.min_interval_ms

    async def call(
        self,
        signature: str,
        invoke: Callable[[], Awaitable[Any]],
        fallback: Callable[[], Any],
    ) -> ChannelResult:
        """
        Resolve one advisory request through the cache and limiter.

        Args:
            signature: Quantized key for the request
            invoke: Coroutine factory performing the real service call
            fallback: Deterministic local substitute

        Returns:
            ChannelResult with the value and its source
        """
        now = self.clock()
        entry = self._entries.get(signature)
        if entry is not None and now - entry.cached_at < self.ttl_ms:
            logger.debug("[%s] cache hit for %s", self.name, signature)
            return ChannelResult(value=entry.result, source="cache")

        if self.is_rate_limited(now):
            logger.debug("[%s] rate limited, using fallback for %s", self.name, signature)
            value = fallback()
            self._store(signature, value, now)
            return ChannelResult(value=value, source="rate_limited")

        generation = self._generation
        self._in_flight = True
        self.invocations += 1
        try:
            value = await invoke()
            source: ResultSource = "service"
        except AdvisoryServiceError as e:
            logger.warning("[%s] advisory call failed, using fallback: %s", self.name, e)
            value = fallback()
            source = "fallback"
        finally:
            if generation == self._generation:
                self._in_flight = False

        if generation == self._generation:
            self.limiter.last_invocation_time = now
            self._store(signature, value, now)
        else:
            logger.debug("[%s] discarding result from a cleared session", self.name)
        return ChannelResult(value=value, source=source)

    def _store(self, signature: str, value: Any, now: float) -> None:
        self._entries[signature] = AdvisoryCacheEntry(
            signature=signature, result=value, cached_at=now
        )
        if len(self._entries) > self.max_entries:
            self._evict(now)

    def _evict(self, now: float) -> None:
        expired = [
            sig for sig, entry in self._entries.items()
            if now - entry.cached_at > 2 * self.ttl_ms
        ]
        for sig in expired:
            del self._entries[sig]
        if expired:
            logger.debug("[%s] evicted %d stale entries", self.name, len(expired))

    def reset_rate_limit(self) -> None:
        """Forget the last invocation time (cache contents are kept)."""
        self.limiter = RateLimiterState()
        self._in_flight = False
        self._generation += 1

    def clear(self) -> None:
        """Drop all cached entries and the limiter state."""
        self._entries.clear()
        self.reset_rate_limit()


# ============================================================================
# Signatures
# ============================================================================

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def movement_signature(sample: MotionSample, history: list[MotionSample]) -> str:
    """
    Quantized key for a classification request.

    Combines intensity and vertical acceleration in tenths with the variance
    (in hundredths) of the last five history intensities, each rounded to 0.1.
    """
    recent = [_round_half_up(s.intensity * 10) / 10 for s in history[-5:]]
    if recent:
        avg = sum(recent) / len(recent)
        variance = sum((v - avg) ** 2 for v in recent) / len(recent)
    else:
        variance = 0.0
    return (
        f"{_round_half_up(sample.intensity * 10)}_"
        f"{_round_half_up(sample.z * 10)}_"
        f"{_round_half_up(variance * 100)}"
    )


def tip_signature(
    movement_class: MovementClass,
    movement_state: MovementState,
    pose_keypoints: int,
    alignment: PoseAlignment,
) -> str:
    """Quantized key for a tip request: class, state, pose bucket, alignment bucket."""
    return (
        f"{movement_class.value}_{movement_state.value}_"
        f"{_round_half_up(pose_keypoints / 5)}_"
        f"{_round_half_up(alignment.worst / 10)}"
    )
