"""Reaction loading for displayed messages.

Reactions are fetched separately from message bodies:

- ReactionBatchFetcher: splits requests into bounded chunks, one remote
  lookup per chunk, and turns a failing chunk into null results instead of
  an exception.
- ProgressiveReactionLoader: loads a small visible chunk first, then the
  rest sequentially, attaching results by position and notifying after
  each chunk.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from slacksearch.live.identity import MessageKey
from slacksearch.live.models import Message, ReactionSummary
from slacksearch.live.reconciler import ChangeSet
from slacksearch.metrics.live_metrics import (
    reaction_chunk_failures_total,
    reaction_fetch_total,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class ReactionRequest:
    channel_id: str
    ts: str
    position_index: int

    @property
    def key(self) -> MessageKey:
        return MessageKey(self.channel_id, self.ts)


@dataclass(frozen=True)
class ReactionResult:
    position_index: int
    summary: Optional[ReactionSummary]


@dataclass
class ReactionBatchResult:
    """Results are not in request order; index them by ``position_index``."""

    reactions: List[ReactionResult] = field(default_factory=list)
    fetched_count: int = 0
    error_count: int = 0

    def by_position(self) -> Dict[int, Optional[ReactionSummary]]:
        return {result.position_index: result.summary for result in self.reactions}


@dataclass
class ReactionLoadProgress:
    """Soft "reactions still loading" indicator for the presentation layer."""

    total: int = 0
    loaded: int = 0
    errors: int = 0
    is_loading: bool = False
    skipped: bool = False


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class ReactionLookup(Protocol):
    """Remote reaction lookup for one chunk of requests.

    Returns a mapping from ``position_index`` to a summary, or ``None`` for
    items that could not be fetched. May raise; the fetcher isolates that.
    """

    async def lookup_reactions(
        self, requests: Sequence[ReactionRequest]
    ) -> Mapping[int, Optional[ReactionSummary]]: ...


MessagesChangedCallback = Callable[[List[Message], ChangeSet], Optional[Awaitable[None]]]


# =============================================================================
# ReactionBatchFetcher
# =============================================================================


class ReactionBatchFetcher:
    """Fetch reactions in bounded chunks, tolerating failure per chunk."""

    def __init__(self, lookup: ReactionLookup, default_batch_size: int = 10):
        if default_batch_size < 1:
            raise ValueError("default_batch_size must be >= 1")
        self.lookup = lookup
        self.default_batch_size = default_batch_size

    async def fetch_reactions(
        self,
        requests: Sequence[ReactionRequest],
        batch_size: Optional[int] = None,
    ) -> ReactionBatchResult:
        size = batch_size or self.default_batch_size
        if size < 1:
            raise ValueError("batch_size must be >= 1")

        result = ReactionBatchResult()
        for start in range(0, len(requests), size):
            chunk = list(requests[start : start + size])
            try:
                found = await self.lookup.lookup_reactions(chunk)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Reaction chunk of %d failed (%s): %s",
                    len(chunk),
                    type(e).__name__,
                    e,
                )
                reaction_chunk_failures_total.inc()
                reaction_fetch_total.labels(result="error").inc(len(chunk))
                result.reactions.extend(
                    ReactionResult(request.position_index, None) for request in chunk
                )
                result.error_count += len(chunk)
                continue

            if not isinstance(found, Mapping):
                logger.warning(
                    "Reaction lookup returned %s instead of a mapping",
                    type(found).__name__,
                )
                found = {}

            for request in chunk:
                summary = found.get(request.position_index)
                if summary is None:
                    result.error_count += 1
                    reaction_fetch_total.labels(result="error").inc()
                else:
                    result.fetched_count += 1
                    reaction_fetch_total.labels(result="fetched").inc()
                result.reactions.append(ReactionResult(request.position_index, summary))
        return result


# =============================================================================
# ProgressiveReactionLoader
# =============================================================================


class ProgressiveReactionLoader:
    """Attach reactions to an already displayed list, chunk by chunk.

    Chunks are fetched one after another, never in parallel, to keep the
    number of concurrent remote calls bounded under Slack's rate limits.
    Loads are serialized too: a load started while another is running waits
    for it, so at most one chunk lookup is in flight per loader and
    ``progress`` always describes the running (or last) load.
    """

    def __init__(
        self,
        fetcher: ReactionBatchFetcher,
        on_messages_changed: Optional[MessagesChangedCallback] = None,
        initial_batch_size: int = 10,
        chunk_size: int = 15,
        fetch_batch_size: Optional[int] = None,
        yield_seconds: float = 0.0,
        skip_ratio: float = 0.9,
    ):
        self.fetcher = fetcher
        self.on_messages_changed = on_messages_changed
        self.initial_batch_size = initial_batch_size
        self.chunk_size = chunk_size
        self.fetch_batch_size = fetch_batch_size
        self.yield_seconds = yield_seconds
        self.skip_ratio = skip_ratio
        self.progress = ReactionLoadProgress()
        self._lock = asyncio.Lock()

    async def load(
        self,
        messages: List[Message],
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> ReactionLoadProgress:
        """Load reactions for messages in ``messages`` that have none yet.

        Mutates ``messages`` in place. ``should_continue`` lets the owner
        abandon a load whose list is no longer displayed.
        """
        async with self._lock:
            return await self._load(messages, should_continue)

    async def _load(
        self,
        messages: List[Message],
        should_continue: Optional[Callable[[], bool]],
    ) -> ReactionLoadProgress:
        total = len(messages)
        pending = [
            ReactionRequest(message.channel_id, message.ts, index)
            for index, message in enumerate(messages)
            if message.reactions is None
        ]
        progress = ReactionLoadProgress(total=total, loaded=total - len(pending))
        self.progress = progress

        if not pending:
            logger.debug("All %d messages already have reactions", total)
            return progress
        if total and (total - len(pending)) / total >= self.skip_ratio:
            logger.debug(
                "Skipping reaction load: %d/%d messages already have reactions",
                total - len(pending),
                total,
            )
            progress.skipped = True
            return progress

        logger.info("Loading reactions for %d of %d messages", len(pending), total)
        progress.is_loading = True
        try:
            for index, chunk in enumerate(self._chunks(pending)):
                if index > 0:
                    # Hand control back to the event loop between chunks
                    await asyncio.sleep(self.yield_seconds)
                if should_continue is not None and not should_continue():
                    logger.debug("Reaction load abandoned after %d chunks", index)
                    break

                batch = await self.fetcher.fetch_reactions(chunk, self.fetch_batch_size)
                changes = self._apply(messages, chunk, batch)
                progress.loaded += len(changes.updated)
                progress.errors += batch.error_count
                logger.debug(
                    "Reaction chunk %d: %d attached, %d errors (%d/%d loaded)",
                    index,
                    len(changes.updated),
                    batch.error_count,
                    progress.loaded,
                    total,
                )
                if changes.updated:
                    await self._notify(messages, changes)
        finally:
            progress.is_loading = False

        logger.info(
            "Reaction loading complete: %d loaded, %d errors",
            progress.loaded,
            progress.errors,
        )
        return progress

    def _chunks(self, pending: List[ReactionRequest]):
        first = pending[: self.initial_batch_size]
        if first:
            yield first
        rest = pending[self.initial_batch_size :]
        for start in range(0, len(rest), self.chunk_size):
            yield rest[start : start + self.chunk_size]

    @staticmethod
    def _apply(
        messages: List[Message],
        chunk: Sequence[ReactionRequest],
        batch: ReactionBatchResult,
    ) -> ChangeSet:
        changes = ChangeSet()
        requests = {request.position_index: request for request in chunk}
        for result in batch.reactions:
            request = requests.get(result.position_index)
            if request is None or result.summary is None:
                continue
            target = _resolve_target(messages, request)
            if target is None or target.reactions is not None:
                continue
            target.reactions = result.summary
            changes.updated.add(request.key)
        return changes

    async def _notify(self, messages: List[Message], changes: ChangeSet) -> None:
        if self.on_messages_changed is None:
            return
        try:
            outcome = self.on_messages_changed(messages, changes)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception:
            logger.exception("messages-changed listener failed after reaction chunk")


def _resolve_target(
    messages: List[Message], request: ReactionRequest
) -> Optional[Message]:
    """Find the message a result belongs to, by position first, then by identity."""
    index = request.position_index
    if 0 <= index < len(messages) and messages[index].key == request.key:
        return messages[index]
    for message in messages:
        if message.key == request.key:
            return message
    return None
