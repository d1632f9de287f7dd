"""Explicit observable state container for search results."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Generic, List, Optional, TypeVar

from slacksearch.core.exceptions import FetchErrorKind
from slacksearch.live.models import FetchParams, Message
from slacksearch.live.reactions import ReactionLoadProgress
from slacksearch.live.reconciler import ChangeSet, UpdateStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")
Listener = Callable[[T], None]


class ObservableStore(Generic[T]):
    """Holds one snapshot value and notifies subscribers on every change.

    Listeners are called synchronously, in subscription order. A failing
    listener is logged and does not prevent the others from running.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._listeners: List[Listener[T]] = []

    def get_snapshot(self) -> T:
        return self._value

    def subscribe(self, listener: Listener[T], emit_current: bool = False) -> Callable[[], None]:
        self._listeners.append(listener)
        if emit_current:
            self._call(listener, self._value)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set(self, value: T) -> None:
        self._value = value
        for listener in list(self._listeners):
            self._call(listener, value)

    def update(self, updater: Callable[[T], T]) -> T:
        value = updater(self._value)
        self.set(value)
        return value

    @staticmethod
    def _call(listener: Listener[T], value: T) -> None:
        try:
            listener(value)
        except Exception:
            logger.exception("Store listener %r failed", listener)


@dataclass(frozen=True)
class SearchState:
    """Snapshot of what the presentation layer displays."""

    messages: List[Message] = field(default_factory=list)
    params: Optional[FetchParams] = None
    is_loading: bool = False
    error: Optional[str] = None
    error_kind: Optional[FetchErrorKind] = None
    reaction_progress: ReactionLoadProgress = field(default_factory=ReactionLoadProgress)
    last_changes: ChangeSet = field(default_factory=ChangeSet)
    update_strategy: UpdateStrategy = UpdateStrategy.NONE

    def evolve(self, **changes) -> "SearchState":
        return replace(self, **changes)


class SearchStateStore(ObservableStore[SearchState]):
    def __init__(self, initial: Optional[SearchState] = None):
        super().__init__(initial or SearchState())

    @property
    def messages(self) -> List[Message]:
        return self.get_snapshot().messages
