"""Realtime ("live mode") poll scheduler.

State machine: Disabled -> Enabled -> Disabled. While enabled, each due tick
fetches messages newer than the last one seen, reconciles them into the
displayed list as an incremental poll, and publishes the result.

At most one fetch is in flight per scheduler: a tick that fires while the
previous fetch is still running is skipped, not queued. Results that arrive
after polling was disabled, or after the search scope changed, are
discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from slacksearch.core.exceptions import FetchErrorKind, classify_error
from slacksearch.live.identity import (
    MessageKey,
    advance_timestamp,
    newest_timestamp,
    timestamp_to_micros,
)
from slacksearch.live.models import Message, MessageBatch
from slacksearch.live.reconciler import (
    MessageReconciler,
    ReconciliationResult,
    message_reconciler,
)
from slacksearch.live.timers import PollTimer
from slacksearch.metrics.live_metrics import (
    live_poll_duration_seconds,
    live_polls_total,
    record_reconcile_changes,
)

logger = logging.getLogger(__name__)

IncrementalFetch = Callable[[Optional[str]], Awaitable[MessageBatch]]
PublishCallback = Callable[[ReconciliationResult], Optional[Awaitable[None]]]
ErrorCallback = Callable[[FetchErrorKind, BaseException], None]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PollOutcome(str, Enum):
    DISABLED = "disabled"
    NOT_DUE = "not_due"
    SKIPPED = "skipped"
    SUCCESS = "success"
    DISCARDED = "discarded"
    AUTH_ERROR = "auth_error"
    TRANSIENT_ERROR = "transient_error"
    MALFORMED = "malformed"


@dataclass
class PollState:
    enabled: bool = False
    interval_seconds: float = 30.0
    last_poll_time: Optional[datetime] = None
    next_poll_time: Optional[datetime] = None
    last_seen_message_ts: Optional[str] = None
    known_message_ids: Set[MessageKey] = field(default_factory=set)
    message_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[FetchErrorKind] = None
    auth_failed: bool = False


class RealtimePollScheduler:
    """Timer-driven incremental polling against the displayed message list."""

    def __init__(
        self,
        fetch: IncrementalFetch,
        get_current: Callable[[], List[Message]],
        publish: PublishCallback,
        reconciler: Optional[MessageReconciler] = None,
        timer: Optional[PollTimer] = None,
        clock: Clock = _utcnow,
        interval_seconds: float = 30.0,
        min_interval_seconds: float = 5.0,
        anchor_offset_seconds: int = 1,
        transient_error_threshold: int = 3,
        on_error: Optional[ErrorCallback] = None,
    ):
        self._fetch = fetch
        self._get_current = get_current
        self._publish = publish
        self.reconciler = reconciler or message_reconciler
        self.timer = timer
        self._clock = clock
        self.min_interval_seconds = min_interval_seconds
        self.anchor_offset_seconds = anchor_offset_seconds
        self.transient_error_threshold = transient_error_threshold
        self.on_error = on_error
        self.state = PollState(interval_seconds=self._clamp(interval_seconds))
        self._generation = 0
        self._in_flight = False

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    @property
    def is_enabled(self) -> bool:
        return self.state.enabled

    @property
    def is_fetching(self) -> bool:
        return self._in_flight

    @property
    def generation(self) -> int:
        return self._generation

    def enable(self) -> None:
        now = self._clock()
        current = self._get_current()
        self._generation += 1
        self.state.enabled = True
        self.state.last_poll_time = now
        self.state.next_poll_time = now + timedelta(seconds=self.state.interval_seconds)
        self.state.known_message_ids = {message.key for message in current}
        self.state.last_seen_message_ts = newest_timestamp(current)
        self.state.message_count = 0
        self.state.consecutive_failures = 0
        self.state.last_error = None
        self.state.auth_failed = False
        logger.info(
            "Live mode enabled (interval=%ss, anchor=%s, known=%d)",
            self.state.interval_seconds,
            self.state.last_seen_message_ts,
            len(self.state.known_message_ids),
        )

    def disable(self) -> None:
        if self.state.enabled:
            logger.info(
                "Live mode disabled after %d new messages", self.state.message_count
            )
        self._generation += 1
        self.state.enabled = False
        self.state.next_poll_time = None

    def set_update_interval(self, seconds: float) -> None:
        interval = self._clamp(seconds)
        if interval != seconds:
            logger.warning(
                "Poll interval %ss below minimum; using %ss", seconds, interval
            )
        self.state.interval_seconds = interval
        # Keep the countdown that is already running
        if self.state.enabled and self.state.last_poll_time is not None:
            self.state.next_poll_time = self.state.last_poll_time + timedelta(
                seconds=interval
            )

    def reset_scope(self) -> None:
        """Restart identity tracking after the displayed search was replaced."""
        current = self._get_current()
        self._generation += 1
        self.state.known_message_ids = {message.key for message in current}
        self.state.last_seen_message_ts = newest_timestamp(current)
        self.state.message_count = 0
        if self.state.enabled:
            self._reschedule()

    # ------------------------------------------------------------------
    # Timer integration
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.timer is not None:
            self.timer.start(self.on_heartbeat)

    async def stop(self) -> None:
        if self.timer is not None:
            await self.timer.stop()

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if not self.state.enabled or self.state.next_poll_time is None:
            return False
        return (now or self._clock()) >= self.state.next_poll_time

    def seconds_until_next_poll(self) -> Optional[int]:
        if not self.state.enabled or self.state.next_poll_time is None:
            return None
        remaining = (self.state.next_poll_time - self._clock()).total_seconds()
        return max(0, int(remaining))

    async def on_heartbeat(self) -> PollOutcome:
        if not self.state.enabled:
            return PollOutcome.DISABLED
        if not self.is_due():
            return PollOutcome.NOT_DUE
        return await self.tick()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def tick(self) -> PollOutcome:
        if not self.state.enabled:
            return PollOutcome.DISABLED
        if self._in_flight:
            logger.debug("Poll tick skipped: previous fetch still in flight")
            live_polls_total.labels(outcome=PollOutcome.SKIPPED.value).inc()
            return PollOutcome.SKIPPED

        self._in_flight = True
        generation = self._generation
        anchor = self._anchor()
        started = time.perf_counter()
        try:
            outcome = await self._poll(generation, anchor)
        finally:
            self._in_flight = False
            live_poll_duration_seconds.observe(time.perf_counter() - started)
        live_polls_total.labels(outcome=outcome.value).inc()
        return outcome

    async def _poll(self, generation: int, anchor: Optional[str]) -> PollOutcome:
        malformed = False
        try:
            batch = await self._fetch(anchor)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify_error(e)
            if kind is not FetchErrorKind.MALFORMED:
                return self._handle_failure(generation, kind, e)
            logger.warning("Malformed poll response treated as empty batch: %s", e)
            batch = MessageBatch()
            malformed = True

        if not self._is_current(generation):
            logger.debug("Discarding poll result from a stale live session")
            return PollOutcome.DISCARDED

        if not isinstance(batch, MessageBatch):
            logger.warning(
                "Poll fetch returned %s; treating as empty batch", type(batch).__name__
            )
            batch = MessageBatch()
            malformed = True

        result = self.reconciler.reconcile(
            self._get_current(), batch.messages, is_incremental_poll=True
        )
        added = result.changes.added
        record_reconcile_changes(
            "incremental", len(added), 0, len(result.changes.updated)
        )
        if added:
            self.state.known_message_ids |= added
            self.state.message_count += len(added)
            self._advance_last_seen(
                message for message in result.messages if message.key in added
            )
            logger.info("Live poll found %d new messages", len(added))

        outcome = await self._call_publish(result)

        self.state.consecutive_failures = 0
        self.state.auth_failed = False
        self.state.last_error = FetchErrorKind.MALFORMED if malformed else None
        self._reschedule()
        if outcome is not None:
            return outcome
        return PollOutcome.MALFORMED if malformed else PollOutcome.SUCCESS

    async def _call_publish(self, result: ReconciliationResult) -> Optional[PollOutcome]:
        try:
            published = self._publish(result)
            if asyncio.iscoroutine(published):
                await published
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Publishing live poll result failed")
            return PollOutcome.TRANSIENT_ERROR
        return None

    def _handle_failure(
        self, generation: int, kind: FetchErrorKind, error: BaseException
    ) -> PollOutcome:
        if not self._is_current(generation):
            return PollOutcome.DISCARDED

        self.state.consecutive_failures += 1
        self.state.last_error = kind
        self._reschedule()

        if kind is FetchErrorKind.AUTHENTICATION:
            # Keep polling: credentials may be fixed without leaving live mode
            self.state.auth_failed = True
            logger.error("Live poll authentication failed: %s", error)
            self._notify_error(kind, error)
            return PollOutcome.AUTH_ERROR

        logger.warning(
            "Live poll failed (%d consecutive): %s",
            self.state.consecutive_failures,
            error,
        )
        if self.state.consecutive_failures == self.transient_error_threshold:
            self._notify_error(kind, error)
        return PollOutcome.TRANSIENT_ERROR

    def _notify_error(self, kind: FetchErrorKind, error: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(kind, error)
        except Exception:
            logger.exception("Live poll error listener failed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return self.state.enabled and generation == self._generation

    def _anchor(self) -> Optional[str]:
        last_seen = self.state.last_seen_message_ts
        if last_seen is None:
            return None
        return advance_timestamp(last_seen, self.anchor_offset_seconds)

    def _advance_last_seen(self, messages) -> None:
        candidate = newest_timestamp(messages)
        if candidate is None:
            return
        current = self.state.last_seen_message_ts
        if current is None or timestamp_to_micros(candidate) > timestamp_to_micros(
            current
        ):
            self.state.last_seen_message_ts = candidate

    def _reschedule(self) -> None:
        now = self._clock()
        self.state.last_poll_time = now
        if self.state.enabled:
            self.state.next_poll_time = now + timedelta(
                seconds=self.state.interval_seconds
            )

    def _clamp(self, seconds: float) -> float:
        return max(float(seconds), self.min_interval_seconds)
