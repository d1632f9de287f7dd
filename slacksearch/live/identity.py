"""Message identity and ordering.

Slack timestamps ("1700000000.123456") are compared as fixed-point integers
(microseconds), never as floats: two timestamps a few microseconds apart
collapse to the same float and would misorder or deduplicate messages.
"""

import re
from typing import TYPE_CHECKING, Iterable, List, NamedTuple, Optional

from slacksearch.core.exceptions import InvalidTimestampError

if TYPE_CHECKING:
    from slacksearch.live.models import Message

MICROS_PER_SECOND = 1_000_000

_TIMESTAMP_RE = re.compile(r"^(\d+)(?:\.(\d{1,6}))?$")


class MessageKey(NamedTuple):
    """Canonical message identity: exact (channel, timestamp) strings."""

    channel_id: str
    ts: str

    def __str__(self) -> str:
        return f"{self.channel_id}:{self.ts}"


def is_valid_timestamp(value: object) -> bool:
    return isinstance(value, str) and _TIMESTAMP_RE.match(value) is not None


def timestamp_to_micros(ts: str) -> int:
    """Convert a Slack timestamp string to integer microseconds.

    Raises:
        InvalidTimestampError: If ``ts`` is not a decimal string
    """
    if not isinstance(ts, str):
        raise InvalidTimestampError(ts)
    match = _TIMESTAMP_RE.match(ts.strip())
    if match is None:
        raise InvalidTimestampError(ts)
    seconds, fraction = match.groups()
    return int(seconds) * MICROS_PER_SECOND + int((fraction or "").ljust(6, "0"))


def micros_to_timestamp(micros: int) -> str:
    """Format integer microseconds in Slack's ``seconds.micros`` form."""
    if micros < 0:
        raise InvalidTimestampError(micros)
    seconds, fraction = divmod(micros, MICROS_PER_SECOND)
    return f"{seconds}.{fraction:06d}"


def advance_timestamp(ts: str, seconds: int = 1) -> str:
    """Return ``ts`` shifted by a whole number of seconds, without float math."""
    return micros_to_timestamp(timestamp_to_micros(ts) + seconds * MICROS_PER_SECOND)


def message_key(message: "Message") -> MessageKey:
    return MessageKey(message.channel_id, message.ts)


def sort_key(message: "Message") -> int:
    return timestamp_to_micros(message.ts)


def compare_messages(a: "Message", b: "Message") -> int:
    """Three-way comparison by timestamp (negative when ``a`` is older)."""
    left, right = sort_key(a), sort_key(b)
    return (left > right) - (left < right)


def sort_newest_first(messages: Iterable["Message"]) -> List["Message"]:
    """Stable descending sort; equal timestamps keep their input order."""
    return sorted(messages, key=sort_key, reverse=True)


def sort_oldest_first(messages: Iterable["Message"]) -> List["Message"]:
    """Stable ascending sort, used for thread views."""
    return sorted(messages, key=sort_key)


def newest_timestamp(messages: Iterable["Message"]) -> Optional[str]:
    newest: Optional["Message"] = None
    for message in messages:
        if newest is None or sort_key(message) > sort_key(newest):
            newest = message
    return newest.ts if newest is not None else None
