"""Message models for search results and live updates.

A message body and its reactions arrive in two phases: ``reactions is None``
means "not loaded yet", an empty dict means "loaded, nobody reacted".
"""

from datetime import datetime
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator

from slacksearch.core.exceptions import InvalidTimestampError
from slacksearch.live.identity import MessageKey, is_valid_timestamp


class ReactionTally(BaseModel):
    """Count and reactor ids for one reaction name."""

    count: int = Field(default=0, ge=0)
    reactor_ids: Set[str] = Field(default_factory=set)


ReactionSummary = Dict[str, ReactionTally]


class Message(BaseModel):
    """One chat message as displayed in a result list."""

    channel_id: str = Field(..., min_length=1)
    ts: str = Field(..., description="Slack timestamp, unique within a channel")
    user_id: str = ""
    user_name: Optional[str] = Field(
        default=None, description="Resolved display name (None while unresolved)"
    )
    text: str = ""
    channel_name: Optional[str] = None
    thread_ts: Optional[str] = None
    reply_count: int = Field(default=0, ge=0)
    edited_ts: Optional[str] = None
    permalink: Optional[str] = None
    files: List[str] = Field(default_factory=list)
    reactions: Optional[ReactionSummary] = None

    @field_validator("ts")
    @classmethod
    def validate_ts(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_timestamp(v):
            raise InvalidTimestampError(v)
        return v

    @field_validator("thread_ts", "edited_ts")
    @classmethod
    def validate_optional_ts(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        v = v.strip()
        if not is_valid_timestamp(v):
            raise InvalidTimestampError(v)
        return v

    @property
    def key(self) -> MessageKey:
        return MessageKey(self.channel_id, self.ts)

    @property
    def is_thread_parent(self) -> bool:
        return self.thread_ts == self.ts and self.reply_count > 0


class ThreadMessages(BaseModel):
    """A thread parent with its replies, oldest first."""

    parent: Message
    replies: List[Message] = Field(default_factory=list)


class FetchParams(BaseModel):
    """Parameters for one message fetch (full search or incremental poll)."""

    query: Optional[str] = None
    channel_ids: List[str] = Field(default_factory=list)
    user_ids: List[str] = Field(default_factory=list)
    from_timestamp: Optional[str] = None
    to_timestamp: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    # None means no cap: page until the remote side is exhausted
    limit: Optional[int] = Field(default=100, ge=1)

    @field_validator("from_timestamp", "to_timestamp")
    @classmethod
    def validate_bounds(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_timestamp(v):
            raise InvalidTimestampError(v)
        return v

    @field_validator("channel_ids", "user_ids")
    @classmethod
    def strip_ids(cls, v: List[str]) -> List[str]:
        return [item.strip() for item in v if item and item.strip()]

    @property
    def has_text_query(self) -> bool:
        return bool(self.query and self.query.strip())


class MessageBatch(BaseModel):
    """Result of ``fetch_message_batch``: newest first."""

    messages: List[Message] = Field(default_factory=list)
    total_approx: int = 0
