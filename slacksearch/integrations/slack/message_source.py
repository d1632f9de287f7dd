"""Slack-backed fetch capabilities for the search core.

``SlackMessageSource`` implements the three remote capabilities the core
consumes: fetching a message batch, looking up reactions for a chunk of
messages, and fetching a thread.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from slacksearch.cache.directory import WorkspaceDirectory
from slacksearch.core.config import Settings
from slacksearch.core.exceptions import (
    AuthenticationError,
    MalformedResponseError,
    SlackSearchError,
)
from slacksearch.integrations.slack.client import SlackWebClient, next_cursor
from slacksearch.integrations.slack.parser import parse_messages, parse_reactions
from slacksearch.integrations.slack.query import (
    build_search_query,
    chunk_channels,
    timestamp_to_date,
)
from slacksearch.live.identity import (
    MessageKey,
    micros_to_timestamp,
    sort_newest_first,
    sort_oldest_first,
    timestamp_to_micros,
)
from slacksearch.live.models import (
    FetchParams,
    Message,
    MessageBatch,
    ReactionSummary,
    ThreadMessages,
)
from slacksearch.live.reactions import ReactionRequest

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 200
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MICROSECOND = datetime.resolution


def datetime_to_timestamp(value: datetime) -> str:
    """Format a datetime as a Slack timestamp (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    micros = (value - _EPOCH) // _ONE_MICROSECOND
    return micros_to_timestamp(max(micros, 0))


def _day(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def matches_bounds(message: Message, params: FetchParams) -> bool:
    """Exact client-side filtering the remote query cannot express."""
    micros = timestamp_to_micros(message.ts)
    if params.from_timestamp and micros < timestamp_to_micros(params.from_timestamp):
        return False
    if params.to_timestamp and micros > timestamp_to_micros(params.to_timestamp):
        return False
    if params.from_date or params.to_date:
        day = timestamp_to_date(message.ts)
        if params.from_date and day < _day(params.from_date):
            return False
        if params.to_date and day > _day(params.to_date):
            return False
    if params.user_ids and message.user_id not in params.user_ids:
        return False
    return True


def _below_limit(collected: Sequence[Message], params: FetchParams) -> bool:
    return params.limit is None or len(collected) < params.limit


def _raise_if_auth(outcomes: Iterable[object]) -> None:
    for outcome in outcomes:
        if isinstance(outcome, (AuthenticationError, asyncio.CancelledError)):
            raise outcome


class SlackMessageSource:
    """Fetch messages, reactions and threads from the Slack Web API."""

    def __init__(
        self,
        client: SlackWebClient,
        directory: WorkspaceDirectory,
        settings: Settings,
    ):
        self.client = client
        self.directory = directory
        self.page_size = settings.SEARCH_PAGE_SIZE
        self.channel_batch_size = settings.CHANNEL_BATCH_SIZE
        self.default_channels = list(settings.SLACK_DEFAULT_CHANNELS)

    async def close(self) -> None:
        await self.client.close()

    # =========================================================================
    # Message batches
    # =========================================================================

    async def fetch_message_batch(self, params: FetchParams) -> MessageBatch:
        """Fetch up to ``params.limit`` messages matching ``params``, newest first.

        With ``limit=None`` every page is fetched and nothing is cut.

        Raises:
            AuthenticationError: Credentials rejected
            TransientFetchError: Every channel batch failed transiently
            MalformedResponseError: The first page could not be decoded
        """
        channel_ids = params.channel_ids or []
        if params.has_text_query or (not channel_ids and params.user_ids):
            collected, total = await self._search(params, channel_ids)
            mode = "search"
        else:
            channel_ids = channel_ids or self.default_channels
            if not channel_ids:
                logger.warning("Nothing to fetch: no query text and no channels in scope")
                return MessageBatch()
            collected, total = await self._browse(params, channel_ids)
            mode = "history"

        messages = self._dedupe(collected)
        messages = sort_newest_first(messages)
        if params.limit is not None:
            messages = messages[: params.limit]
        await self._resolve_names(messages)
        logger.info(
            "Fetched %d messages via %s (channels=%d, from=%s, approx total=%d)",
            len(messages),
            mode,
            len(channel_ids),
            params.from_timestamp,
            total,
        )
        return MessageBatch(messages=messages, total_approx=max(total, len(messages)))

    async def _search(
        self, params: FetchParams, channel_ids: Sequence[str]
    ) -> Tuple[List[Message], int]:
        # One query per channel; at most one batch of channels in flight
        outcomes: List[object] = []
        for batch in chunk_channels(channel_ids, self.channel_batch_size):
            results = await asyncio.gather(
                *(self._search_channel(params, channel_id) for channel_id in batch or [None]),
                return_exceptions=True,
            )
            _raise_if_auth(results)
            outcomes.extend(results)
        return self._combine(outcomes, "search")

    async def _search_channel(
        self, params: FetchParams, channel_id: Optional[str]
    ) -> Tuple[List[Message], int]:
        query = build_search_query(params, channel_id)
        if not query:
            logger.warning("Search scope produced an empty query; skipping")
            return [], 0
        collected: List[Message] = []
        total = 0
        page = 1
        pages = 1
        while page <= pages and _below_limit(collected, params):
            try:
                payload = await self.client.search_messages(
                    query, count=self.page_size, page=page
                )
            except AuthenticationError:
                raise
            except SlackSearchError as e:
                if page == 1:
                    raise
                logger.warning(
                    "Search page %d for %r failed, keeping %d messages: %s",
                    page,
                    query,
                    len(collected),
                    e,
                )
                break

            section = payload.get("messages")
            if not isinstance(section, dict) or not isinstance(
                section.get("matches"), list
            ):
                raise MalformedResponseError("search.messages", "missing 'messages.matches'")
            if page == 1:
                total = section.get("total") if isinstance(section.get("total"), int) else 0
                paging = section.get("paging")
                if isinstance(paging, dict) and isinstance(paging.get("pages"), int):
                    pages = paging["pages"]

            matches = section["matches"]
            collected.extend(
                message
                for message in parse_messages(matches)
                if matches_bounds(message, params)
            )
            if not matches:
                break
            page += 1
        return collected, total

    async def _browse(
        self, params: FetchParams, channel_ids: Sequence[str]
    ) -> Tuple[List[Message], int]:
        outcomes = await asyncio.gather(
            *(self._channel_history(params, channel_id) for channel_id in channel_ids),
            return_exceptions=True,
        )
        return self._combine(outcomes, "conversations.history")

    async def _channel_history(
        self, params: FetchParams, channel_id: str
    ) -> Tuple[List[Message], int]:
        oldest = params.from_timestamp
        if oldest is None and params.from_date is not None:
            oldest = datetime_to_timestamp(params.from_date)
        latest = params.to_timestamp

        channel_name = await self.directory.channel_name(channel_id)
        collected: List[Message] = []
        cursor: Optional[str] = None
        first = True
        while _below_limit(collected, params):
            try:
                payload = await self.client.conversations_history(
                    channel_id,
                    oldest=oldest,
                    latest=latest,
                    limit=min(HISTORY_PAGE_SIZE, params.limit or HISTORY_PAGE_SIZE),
                    cursor=cursor,
                )
            except AuthenticationError:
                raise
            except SlackSearchError as e:
                if first:
                    raise
                logger.warning(
                    "History page for %s failed, keeping %d messages: %s",
                    channel_id,
                    len(collected),
                    e,
                )
                break
            first = False

            raw_messages = payload.get("messages")
            if not isinstance(raw_messages, list):
                raise MalformedResponseError("conversations.history", "missing 'messages'")
            for message in parse_messages(
                raw_messages, channel_id=channel_id, reactions_included=True
            ):
                if matches_bounds(message, params):
                    if message.channel_name is None and channel_name:
                        message.channel_name = channel_name
                    collected.append(message)

            cursor = next_cursor(payload)
            if not cursor or not payload.get("has_more", True):
                break
        return collected, len(collected)

    @staticmethod
    def _combine(outcomes: Sequence[object], label: str) -> Tuple[List[Message], int]:
        _raise_if_auth(outcomes)
        messages: List[Message] = []
        total = 0
        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if failures and len(failures) == len(outcomes):
            raise failures[0]
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                continue
            batch_messages, batch_total = outcome
            messages.extend(batch_messages)
            total += batch_total
        if failures:
            logger.warning(
                "%d of %d %s batches failed; returning partial results: %s",
                len(failures),
                len(outcomes),
                label,
                failures[0],
            )
        return messages, total

    @staticmethod
    def _dedupe(messages: Iterable[Message]) -> List[Message]:
        seen: Dict[MessageKey, Message] = {}
        for message in messages:
            seen.setdefault(message.key, message)
        return list(seen.values())

    async def _resolve_names(self, messages: Sequence[Message]) -> None:
        unresolved = {m.user_id for m in messages if m.user_name is None and m.user_id}
        names = await self.directory.resolve_user_names(unresolved) if unresolved else {}
        for message in messages:
            if message.user_name is None and message.user_id in names:
                message.user_name = names[message.user_id]
            if message.channel_name is None:
                message.channel_name = self.directory.cached_channel_name(
                    message.channel_id
                )
            elif self.directory.cached_channel_name(message.channel_id) is None:
                self.directory.remember_channel(message.channel_id, message.channel_name)

    # =========================================================================
    # Reactions
    # =========================================================================

    async def lookup_reactions(
        self, requests: Sequence[ReactionRequest]
    ) -> Mapping[int, Optional[ReactionSummary]]:
        """Look up reactions for one chunk, one ``reactions.get`` per message.

        Items that fail map to None. An authentication failure fails the
        whole chunk.
        """
        outcomes = await asyncio.gather(
            *(self.client.reactions_get(r.channel_id, r.ts) for r in requests),
            return_exceptions=True,
        )
        _raise_if_auth(outcomes)

        found: Dict[int, Optional[ReactionSummary]] = {}
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                logger.debug("reactions.get failed for %s: %s", request.key, outcome)
                found[request.position_index] = None
            else:
                found[request.position_index] = parse_reactions(outcome)
        return found

    # =========================================================================
    # Threads
    # =========================================================================

    async def fetch_thread(self, channel_id: str, thread_ts: str) -> ThreadMessages:
        """Fetch a thread parent and its replies, oldest first.

        Raises:
            MalformedResponseError: The parent message is not in the response
        """
        collected: List[Message] = []
        cursor: Optional[str] = None
        while True:
            payload = await self.client.conversations_replies(
                channel_id, thread_ts, cursor=cursor
            )
            raw_messages = payload.get("messages")
            if not isinstance(raw_messages, list):
                raise MalformedResponseError("conversations.replies", "missing 'messages'")
            collected.extend(
                parse_messages(raw_messages, channel_id=channel_id, reactions_included=True)
            )
            cursor = next_cursor(payload)
            if not cursor:
                break

        messages = sort_oldest_first(self._dedupe(collected))
        parent = next((m for m in messages if m.ts == thread_ts), None)
        if parent is None:
            raise MalformedResponseError(
                "conversations.replies", f"thread parent {thread_ts} not returned"
            )
        channel_name = await self.directory.channel_name(channel_id)
        for message in messages:
            message.channel_name = message.channel_name or channel_name
        await self._resolve_names(messages)
        replies = [m for m in messages if m is not parent]
        return ThreadMessages(parent=parent, replies=replies)
