"""Convert raw Slack Web API message payloads into ``Message`` models."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from slacksearch.live.models import Message, ReactionSummary, ReactionTally

logger = logging.getLogger(__name__)


def parse_reactions(raw: Any) -> Optional[ReactionSummary]:
    """Build a reaction summary from Slack's ``[{name, count, users}]`` list.

    Returns None when ``raw`` is not a list. Malformed entries are skipped.
    """
    if not isinstance(raw, list):
        return None
    summary: ReactionSummary = {}
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            logger.warning("Skipping malformed reaction entry: %r", item)
            continue
        users = item.get("users") or []
        reactor_ids = {user for user in users if isinstance(user, str)}
        count = item.get("count")
        if not isinstance(count, int) or count < 0:
            count = len(reactor_ids)
        tally = summary.get(item["name"])
        if tally is None:
            summary[item["name"]] = ReactionTally(count=count, reactor_ids=reactor_ids)
        else:
            tally.count += count
            tally.reactor_ids |= reactor_ids
    return summary


def _channel_fields(raw: Dict, channel_id: Optional[str]) -> tuple:
    channel = raw.get("channel")
    if isinstance(channel, dict):
        return channel.get("id") or channel_id, channel.get("name")
    if isinstance(channel, str) and channel:
        return channel, None
    return channel_id, None


def _file_labels(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    labels = []
    for item in raw:
        if isinstance(item, dict):
            label = item.get("id") or item.get("name")
            if isinstance(label, str):
                labels.append(label)
    return labels


def parse_message(
    raw: Any,
    channel_id: Optional[str] = None,
    reactions_included: bool = False,
) -> Optional[Message]:
    """Parse one raw message, returning None (and logging) when malformed.

    Args:
        raw: Message object from search.messages or conversations.* methods
        channel_id: Channel to assume when the payload does not carry one
        reactions_included: True for methods that embed reactions, so a
            missing ``reactions`` key means "no reactions" instead of "unknown"
    """
    if not isinstance(raw, dict):
        logger.warning("Skipping malformed message of type %s", type(raw).__name__)
        return None

    resolved_channel, channel_name = _channel_fields(raw, channel_id)
    if not resolved_channel:
        logger.warning("Skipping message %s without channel", raw.get("ts"))
        return None

    reactions: Optional[ReactionSummary] = None
    if "reactions" in raw:
        reactions = parse_reactions(raw.get("reactions"))
    elif reactions_included:
        reactions = {}

    edited = raw.get("edited")
    reply_count = raw.get("reply_count")
    user_id = raw.get("user") or raw.get("bot_id") or ""
    # Bots and integrations carry their display name inline
    user_name = None if raw.get("user") else raw.get("username")

    try:
        return Message(
            channel_id=resolved_channel,
            ts=raw.get("ts"),
            user_id=user_id,
            user_name=user_name,
            text=raw.get("text") or "",
            channel_name=channel_name,
            thread_ts=raw.get("thread_ts"),
            reply_count=reply_count if isinstance(reply_count, int) else 0,
            edited_ts=edited.get("ts") if isinstance(edited, dict) else None,
            permalink=raw.get("permalink"),
            files=_file_labels(raw.get("files")),
            reactions=reactions,
        )
    except (ValidationError, TypeError, ValueError) as e:
        logger.warning("Skipping malformed message %r: %s", raw.get("ts"), e)
        return None


def parse_messages(
    raw_messages: Iterable[Any],
    channel_id: Optional[str] = None,
    reactions_included: bool = False,
) -> List[Message]:
    messages = []
    for raw in raw_messages:
        message = parse_message(raw, channel_id, reactions_included)
        if message is not None:
            messages.append(message)
    return messages
