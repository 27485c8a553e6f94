"""In-process pub/sub for chat lifecycle events.

Listeners subscribe under a chat id or under ``"*"``. Delivery is synchronous
on the emitting thread: chat-scoped listeners first, then wildcard listeners as
a separate notification (a listener registered both ways hears the event
twice). Within one scope a listener is registered at most once; subscribing it
again is a no-op. One listener raising does not stop delivery to the rest.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional

from narratrix.logging import get_logger

logger = get_logger(__name__)

WILDCARD = "*"

EventSource = Literal["user", "system"]


class ChatEventType(str, Enum):
    BEFORE_USER_MESSAGE = "before_user_message"
    AFTER_USER_MESSAGE = "after_user_message"
    BEFORE_PARTICIPANT_MESSAGE = "before_participant_message"
    AFTER_PARTICIPANT_MESSAGE = "after_participant_message"
    AFTER_ALL_PARTICIPANTS = "after_all_participants"
    MESSAGE_COUNT = "message_count"


@dataclass
class ChatEvent:
    """A transient lifecycle notification; ``source="system"`` never triggers agents."""

    type: ChatEventType
    chat_id: str
    message: Optional[str] = None
    participant_id: Optional[str] = None
    message_count: Optional[int] = None
    user_character_id: Optional[str] = None
    source: EventSource = "user"

    def __post_init__(self) -> None:
        self.type = ChatEventType(self.type)
        if self.source not in ("user", "system"):
            raise ValueError(f"invalid event source: {self.source!r}")

    @property
    def is_system(self) -> bool:
        return self.source == "system"


ChatEventListener = Callable[[ChatEvent], Any]


class EventBus:
    def __init__(self) -> None:
        self._listeners: Dict[str, List[ChatEventListener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, listener: ChatEventListener, chat_id: str = WILDCARD) -> Callable[[], None]:
        """Register ``listener`` for ``chat_id`` and return its unsubscribe function.

        Calling the returned function more than once is a no-op.
        """
        with self._lock:
            scope = self._listeners.setdefault(chat_id, [])
            if listener not in scope:
                scope.append(listener)

        subscribed = True

        def unsubscribe() -> None:
            nonlocal subscribed
            if not subscribed:
                return
            subscribed = False
            with self._lock:
                scope = self._listeners.get(chat_id)
                if scope is None:
                    return
                try:
                    scope.remove(listener)
                except ValueError:
                    return
                if not scope:
                    del self._listeners[chat_id]

        return unsubscribe

    def emit(self, event: ChatEvent) -> None:
        if event.chat_id != WILDCARD:
            self._deliver(event.chat_id, event)
        self._deliver(WILDCARD, event)

    def _deliver(self, scope: str, event: ChatEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.get(scope, ()))
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:
                logger.error(
                    "event_listener_failed",
                    scope=scope,
                    event_type=event.type.value,
                    chat_id=event.chat_id,
                    error=str(exc),
                    exc_info=True,
                )

    def listener_count(self, chat_id: Optional[str] = None) -> int:
        with self._lock:
            if chat_id is not None:
                return len(self._listeners.get(chat_id, ()))
            return sum(len(scope) for scope in self._listeners.values())

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()


__all__ = [
    "WILDCARD",
    "ChatEvent",
    "ChatEventListener",
    "ChatEventType",
    "EventBus",
]
