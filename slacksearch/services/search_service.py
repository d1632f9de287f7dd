"""Search orchestration.

Owns the observable search state and wires the fetch capabilities, the
reconciler, the progressive reaction loader and the live poll scheduler
together. The displayed list only ever changes through reconciler output
or reaction attachment.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import (
    Awaitable,
    Callable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
)

from slacksearch.core.config import Settings, get_settings
from slacksearch.core.exceptions import FetchErrorKind, classify_error
from slacksearch.live.models import (
    FetchParams,
    Message,
    MessageBatch,
    ReactionSummary,
    ThreadMessages,
)
from slacksearch.live.polling import RealtimePollScheduler
from slacksearch.live.reactions import (
    ProgressiveReactionLoader,
    ReactionBatchFetcher,
    ReactionRequest,
)
from slacksearch.live.reconciler import (
    ChangeSet,
    DuplicatePolicy,
    MessageReconciler,
    ReconciliationResult,
    UpdateStrategy,
)
from slacksearch.live.store import SearchState, SearchStateStore
from slacksearch.live.timers import AsyncioHeartbeat, PollTimer
from slacksearch.metrics.live_metrics import record_reconcile_changes

logger = logging.getLogger(__name__)

ChangeListener = Callable[[List[Message], ChangeSet], Optional[Awaitable[None]]]
ErrorListener = Callable[[FetchErrorKind, BaseException], None]


class MessageSource(Protocol):
    """Remote fetch capabilities consumed by the search core."""

    async def fetch_message_batch(self, params: FetchParams) -> MessageBatch: ...

    async def lookup_reactions(
        self, requests: Sequence[ReactionRequest]
    ) -> Mapping[int, Optional[ReactionSummary]]: ...

    async def fetch_thread(self, channel_id: str, thread_ts: str) -> ThreadMessages: ...

    async def close(self) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SearchService:
    """Full searches, live updates and background reaction loading."""

    def __init__(
        self,
        source: MessageSource,
        settings: Optional[Settings] = None,
        store: Optional[SearchStateStore] = None,
        reconciler: Optional[MessageReconciler] = None,
        timer: Optional[PollTimer] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_messages_changed: Optional[ChangeListener] = None,
        on_error: Optional[ErrorListener] = None,
    ):
        self.settings = settings or get_settings()
        self.source = source
        self.store = store or SearchStateStore()
        self.reconciler = reconciler or MessageReconciler(
            DuplicatePolicy(self.settings.RECONCILER_DUPLICATE_POLICY)
        )
        self.on_error = on_error
        self._change_listeners: List[ChangeListener] = []
        if on_messages_changed is not None:
            self._change_listeners.append(on_messages_changed)

        self.loader = ProgressiveReactionLoader(
            ReactionBatchFetcher(source, self.settings.REACTION_FETCH_BATCH_SIZE),
            on_messages_changed=self._on_reactions_loaded,
            initial_batch_size=self.settings.REACTION_INITIAL_BATCH_SIZE,
            chunk_size=self.settings.REACTION_CHUNK_SIZE,
            yield_seconds=self.settings.REACTION_YIELD_SECONDS,
            skip_ratio=self.settings.REACTION_SKIP_RATIO,
        )
        self.scheduler = RealtimePollScheduler(
            fetch=self.fetch_incremental,
            get_current=lambda: self.store.messages,
            publish=self._publish_poll,
            reconciler=self.reconciler,
            timer=timer or AsyncioHeartbeat(self.settings.LIVE_HEARTBEAT_SECONDS),
            clock=clock or _utcnow,
            interval_seconds=self.settings.LIVE_POLL_INTERVAL_SECONDS,
            min_interval_seconds=self.settings.LIVE_POLL_MIN_INTERVAL_SECONDS,
            anchor_offset_seconds=self.settings.LIVE_POLL_ANCHOR_OFFSET_SECONDS,
            transient_error_threshold=self.settings.LIVE_TRANSIENT_ERROR_THRESHOLD,
            on_error=self._on_poll_error,
        )
        self._reaction_generation = 0
        self._reaction_tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> SearchState:
        return self.store.get_snapshot()

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a messages-changed listener; returns an unsubscribe function."""
        self._change_listeners.append(listener)

        def remove() -> None:
            if listener in self._change_listeners:
                self._change_listeners.remove(listener)

        return remove

    # =========================================================================
    # Full search
    # =========================================================================

    async def search(self, params: FetchParams) -> SearchState:
        """Run a full search and reconcile it into the displayed list.

        Fetch failures are recorded in the state rather than raised. A
        malformed response is reconciled as an empty result.
        """
        self._reaction_generation += 1
        self.store.set(self.state.evolve(params=params, is_loading=True))

        try:
            batch = await self.source.fetch_message_batch(params)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify_error(e)
            if kind is not FetchErrorKind.MALFORMED:
                if kind is FetchErrorKind.AUTHENTICATION:
                    logger.error("Search failed, credentials rejected: %s", e)
                else:
                    logger.warning("Search failed: %s", e)
                self.store.set(
                    self.state.evolve(is_loading=False, error=str(e), error_kind=kind)
                )
                self._notify_error(kind, e)
                return self.state
            logger.warning("Malformed search response treated as empty: %s", e)
            batch = MessageBatch()

        result = self.reconciler.reconcile(
            self.store.messages,
            batch.messages,
            is_incremental_poll=False,
            limit=params.limit,
        )
        changes = result.changes
        record_reconcile_changes(
            "full", len(changes.added), len(changes.removed), len(changes.updated)
        )
        await self._publish(result, is_loading=False, error=None, error_kind=None)
        logger.info(
            "Search complete: %d messages (approx %d matches), changes=%s",
            len(result.messages),
            batch.total_approx,
            changes.summary(),
        )

        self.scheduler.reset_scope()
        self._start_reaction_load(result.messages, replace_running=True)
        return self.state

    async def fetch_thread(self, channel_id: str, thread_ts: str) -> ThreadMessages:
        return await self.source.fetch_thread(channel_id, thread_ts)

    # =========================================================================
    # Live mode
    # =========================================================================

    async def fetch_incremental(self, from_ts: Optional[str]) -> MessageBatch:
        """Fetch every message newer than ``from_ts`` within the active search scope.

        No limit is applied: a burst larger than the search limit arrives
        whole, since the anchor moves past everything returned.
        """
        params = self.state.params
        if params is None:
            logger.debug("Incremental fetch requested without an active search")
            return MessageBatch()
        incremental = params.model_copy(
            update={
                "from_timestamp": from_ts,
                "to_timestamp": None,
                "to_date": None,
                "limit": None,
            }
        )
        return await self.source.fetch_message_batch(incremental)

    def enable_live(self) -> None:
        """Start polling for new messages in the current search scope.

        Raises:
            ValueError: If no search has been run yet
        """
        if self.state.params is None:
            raise ValueError("Run a search before enabling live mode")
        self.scheduler.enable()
        self.scheduler.start()

    async def disable_live(self) -> None:
        self.scheduler.disable()
        await self.scheduler.stop()

    def set_update_interval(self, seconds: float) -> None:
        self.scheduler.set_update_interval(seconds)

    async def close(self) -> None:
        """Stop polling, abandon reaction loads and release the client."""
        await self.disable_live()
        self._reaction_generation += 1
        tasks = list(self._reaction_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.source.close()
        logger.info("Search service closed")

    # =========================================================================
    # Publishing
    # =========================================================================

    async def _publish(self, result: ReconciliationResult, **fields) -> None:
        self.store.set(
            self.state.evolve(
                messages=result.messages,
                last_changes=result.changes,
                update_strategy=result.strategy,
                **fields,
            )
        )
        await self._notify_changed(result.messages, result.changes)

    async def _publish_poll(self, result: ReconciliationResult) -> None:
        if result.changes.is_empty:
            if self.state.error is not None:
                self.store.set(self.state.evolve(error=None, error_kind=None))
            return
        await self._publish(result, error=None, error_kind=None)

        added = [m for m in result.messages if m.key in result.changes.added]
        if added:
            self._start_reaction_load(added, replace_running=False)

    async def _on_reactions_loaded(
        self, messages: List[Message], changes: ChangeSet
    ) -> None:
        # Reactions were attached in place; republish the whole displayed list
        displayed = list(self.store.messages)
        self.store.set(
            self.state.evolve(
                messages=displayed,
                last_changes=changes,
                update_strategy=UpdateStrategy.PATCH,
                reaction_progress=self.loader.progress,
            )
        )
        await self._notify_changed(displayed, changes)

    async def _notify_changed(self, messages: List[Message], changes: ChangeSet) -> None:
        for listener in list(self._change_listeners):
            try:
                outcome = listener(messages, changes)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception("messages-changed listener %r failed", listener)

    # =========================================================================
    # Background reaction loading
    # =========================================================================

    def _start_reaction_load(
        self, messages: List[Message], replace_running: bool
    ) -> None:
        if replace_running:
            for task in list(self._reaction_tasks):
                task.cancel()
        generation = self._reaction_generation
        task = asyncio.create_task(self._load_reactions(messages, generation))
        self._reaction_tasks.add(task)
        task.add_done_callback(self._reaction_tasks.discard)

    async def _load_reactions(self, messages: List[Message], generation: int) -> None:
        try:
            progress = await self.loader.load(
                messages, should_continue=lambda: generation == self._reaction_generation
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background reaction loading crashed")
            return
        if generation == self._reaction_generation:
            self.store.set(self.state.evolve(reaction_progress=progress))

    # =========================================================================
    # Errors
    # =========================================================================

    def _on_poll_error(self, kind: FetchErrorKind, error: BaseException) -> None:
        self.store.set(self.state.evolve(error=str(error), error_kind=kind))
        self._notify_error(kind, error)

    def _notify_error(self, kind: FetchErrorKind, error: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(kind, error)
        except Exception:
            logger.exception("Error listener failed")
