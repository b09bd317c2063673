"""
Notification type context

Records which kind of notification (handshake, heartbeat, event, query) the
current dispatch is producing, so the payload builder can stamp the right
``type`` without every caller threading it through.

The value lives in a ``ContextVar``: each thread and each asyncio task sees its
own value, and ``notification_scope`` always restores the previous value, so a
pooled worker never carries a stale kind into its next dispatch.
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from enum import Enum
from typing import Iterator, Optional


class NotificationType(str, Enum):
    """Notification kinds from the subscriptions backport, with their wire codes."""

    HANDSHAKE = "handshake"
    HEARTBEAT = "heartbeat"
    EVENT_NOTIFICATION = "event-notification"
    QUERY_STATUS = "query-status"
    QUERY_EVENT = "query-event"

    @property
    def carries_events(self) -> bool:
        """Handshakes and heartbeats have no triggering events."""
        return self not in (NotificationType.HANDSHAKE, NotificationType.HEARTBEAT)


_current_type: ContextVar[Optional[NotificationType]] = ContextVar("fhir_notification_type", default=None)


def set_current(notification_type: NotificationType) -> Token:
    """Set the notification type for the current context; returns a token for ``clear``."""
    return _current_type.set(notification_type)


def current_or_default() -> NotificationType:
    """The current notification type, or EVENT_NOTIFICATION when none is set."""
    return _current_type.get() or NotificationType.EVENT_NOTIFICATION


def clear(token: Optional[Token] = None) -> None:
    """Restore the value before ``set_current`` (or unset it when no token is given)."""
    if token is not None:
        _current_type.reset(token)
    else:
        _current_type.set(None)


@contextmanager
def notification_scope(notification_type: NotificationType) -> Iterator[NotificationType]:
    """
    Run a block with ``notification_type`` as the current type.

    Usage:
        with notification_scope(NotificationType.HEARTBEAT):
            dispatcher.dispatch(topic, [], RestOperation.UPDATE)
    """
    token = set_current(notification_type)
    try:
        yield notification_type
    finally:
        clear(token)
