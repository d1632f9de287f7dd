"""Build ``search.messages`` query strings from fetch parameters.

Slack's ``after:``/``before:`` modifiers take calendar days and are
exclusive, so timestamp bounds are widened to whole days here and enforced
exactly on the client after fetching.
"""

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Sequence

from slacksearch.live.identity import MICROS_PER_SECOND, timestamp_to_micros
from slacksearch.live.models import FetchParams


def timestamp_to_date(ts: str) -> date:
    seconds = timestamp_to_micros(ts) // MICROS_PER_SECOND
    return datetime.fromtimestamp(seconds, tz=timezone.utc).date()


def _as_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def _earliest(*days: Optional[date]) -> Optional[date]:
    present = [day for day in days if day is not None]
    return min(present) if present else None


def _latest(*days: Optional[date]) -> Optional[date]:
    present = [day for day in days if day is not None]
    return max(present) if present else None


def build_search_query(params: FetchParams, channel_id: Optional[str] = None) -> str:
    """Compose a Slack search query scoped to at most one channel.

    Slack cannot OR several ``in:`` modifiers, so multi-channel searches run
    one query per channel.

    Args:
        params: Fetch parameters (text, users, time bounds)
        channel_id: Channel for this call; defaults to the single entry of
            ``params.channel_ids``

    Raises:
        ValueError: No ``channel_id`` given and ``params`` names several channels
    """
    if channel_id is None and params.channel_ids:
        if len(params.channel_ids) > 1:
            raise ValueError("One search query per channel; pass channel_id")
        channel_id = params.channel_ids[0]

    parts: List[str] = []
    if params.has_text_query:
        parts.append(params.query.strip())

    if channel_id:
        parts.append(f"in:<#{channel_id}>")

    # Several users cannot be OR-ed in one query; they are filtered client-side
    if len(params.user_ids) == 1:
        parts.append(f"from:<@{params.user_ids[0]}>")

    from_day = _earliest(
        timestamp_to_date(params.from_timestamp) if params.from_timestamp else None,
        _as_date(params.from_date) if params.from_date else None,
    )
    if from_day is not None:
        parts.append(f"after:{(from_day - timedelta(days=1)).isoformat()}")

    to_day = _latest(
        timestamp_to_date(params.to_timestamp) if params.to_timestamp else None,
        _as_date(params.to_date) if params.to_date else None,
    )
    if to_day is not None:
        parts.append(f"before:{(to_day + timedelta(days=1)).isoformat()}")

    return " ".join(parts)


def chunk_channels(channel_ids: Sequence[str], size: int) -> List[List[str]]:
    """Split channel ids into groups of at most ``size``."""
    if not channel_ids:
        return [[]]
    return [list(channel_ids[i : i + size]) for i in range(0, len(channel_ids), size)]
