"""Notification gating and chat delivery."""

from .events import DEFAULT_MINUTE_GATES, EventKind, NotificationEvent
from .gate import Destination, GateRecord, MessageSink, NotificationGate
from .render import render_event

__all__ = [
    "DEFAULT_MINUTE_GATES",
    "Destination",
    "EventKind",
    "GateRecord",
    "MessageSink",
    "NotificationEvent",
    "NotificationGate",
    "render_event",
]
