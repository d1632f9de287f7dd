"""Message reconciliation.

Merges a freshly fetched batch into the currently displayed list:

- unchanged messages keep their object identity and position,
- edited messages are replaced in place, keeping reactions that were already
  loaded when the incoming copy has none yet,
- new messages are inserted in timestamp order,
- removals are only reported for full searches; an incremental poll covers a
  recent time window and absence there does not mean deletion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set

from slacksearch.live.identity import MessageKey, sort_newest_first
from slacksearch.live.models import Message

logger = logging.getLogger(__name__)


class UpdateStrategy(str, Enum):
    """How the presentation layer should apply a change-set."""

    NONE = "none"
    PATCH = "patch"  # Insert/update only; safe to apply without moving scroll
    FULL = "full"


class DuplicatePolicy(str, Enum):
    """Which copy wins when one batch repeats an identity."""

    KEEP_LAST = "keep_last"
    KEEP_FIRST = "keep_first"


@dataclass
class ChangeSet:
    added: Set[MessageKey] = field(default_factory=set)
    removed: Set[MessageKey] = field(default_factory=set)
    updated: Set[MessageKey] = field(default_factory=set)
    unchanged: Set[MessageKey] = field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.removed) + len(self.updated)

    def summary(self) -> Dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
        }


@dataclass
class ReconciliationResult:
    messages: List[Message]
    changes: ChangeSet

    @property
    def strategy(self) -> UpdateStrategy:
        return decide_update_strategy(self.changes)


def decide_update_strategy(changes: ChangeSet) -> UpdateStrategy:
    if changes.is_empty:
        return UpdateStrategy.NONE
    if changes.removed:
        return UpdateStrategy.FULL
    return UpdateStrategy.PATCH


def _content_differs(current: Message, incoming: Message) -> bool:
    if (
        current.text != incoming.text
        or current.edited_ts != incoming.edited_ts
        or current.thread_ts != incoming.thread_ts
        or current.reply_count != incoming.reply_count
        or current.files != incoming.files
    ):
        return True
    if incoming.reactions is not None and incoming.reactions != current.reactions:
        return True
    if incoming.user_name is not None and incoming.user_name != current.user_name:
        return True
    return False


def _merge(current: Message, incoming: Message) -> Message:
    """Take the incoming copy, keeping richer two-phase fields from current."""
    patch = {}
    if incoming.reactions is None and current.reactions is not None:
        patch["reactions"] = current.reactions
    if incoming.user_name is None and current.user_name is not None:
        patch["user_name"] = current.user_name
    if incoming.channel_name is None and current.channel_name is not None:
        patch["channel_name"] = current.channel_name
    if not patch:
        return incoming
    return incoming.model_copy(update=patch)


class MessageReconciler:
    """Pure merge of two message lists; never raises for data-shape reasons."""

    def __init__(self, duplicate_policy: DuplicatePolicy = DuplicatePolicy.KEEP_LAST):
        self.duplicate_policy = DuplicatePolicy(duplicate_policy)

    def reconcile(
        self,
        current: Sequence[Message],
        incoming: Sequence[Message],
        is_incremental_poll: bool,
        limit: Optional[int] = None,
    ) -> ReconciliationResult:
        current_index = self._index(current, "current")
        incoming_index = self._index(incoming, "incoming")
        changes = ChangeSet()

        replacements: Dict[MessageKey, Message] = {}
        added: List[Message] = []
        for key, message in incoming_index.items():
            existing = current_index.get(key)
            if existing is None:
                changes.added.add(key)
                added.append(message)
            elif _content_differs(existing, message):
                changes.updated.add(key)
                replacements[key] = _merge(existing, message)
            else:
                changes.unchanged.add(key)

        if not is_incremental_poll:
            changes.removed = set(current_index) - set(incoming_index)

        merged: List[Message] = []
        for key, message in current_index.items():
            if key in changes.removed:
                continue
            merged.append(replacements.get(key, message))
        merged.extend(added)

        # Remote results spanning several channels are not reliably ordered
        merged = sort_newest_first(merged)

        if not is_incremental_poll and limit is not None and len(merged) > limit:
            for message in merged[limit:]:
                key = message.key
                if key in changes.added:
                    changes.added.discard(key)
                else:
                    changes.updated.discard(key)
                    changes.unchanged.discard(key)
                    changes.removed.add(key)
            merged = merged[:limit]

        if not changes.is_empty:
            logger.debug(
                "Reconciled %d current with %d incoming (incremental=%s): %s",
                len(current_index),
                len(incoming_index),
                is_incremental_poll,
                changes.summary(),
            )
        return ReconciliationResult(messages=merged, changes=changes)

    def _index(
        self, messages: Iterable[Message], label: str
    ) -> Dict[MessageKey, Message]:
        index: Dict[MessageKey, Message] = {}
        for message in messages:
            if not isinstance(message, Message):
                logger.warning(
                    "Skipping malformed %s entry of type %s",
                    label,
                    type(message).__name__,
                )
                continue
            key = message.key
            if key in index:
                logger.warning(
                    "Duplicate message identity %s in %s batch (%s)",
                    key,
                    label,
                    self.duplicate_policy.value,
                )
                if self.duplicate_policy is DuplicatePolicy.KEEP_FIRST:
                    continue
                # Keep the position of the first sighting, the content of the last
            index[key] = message
        return index


message_reconciler = MessageReconciler()
