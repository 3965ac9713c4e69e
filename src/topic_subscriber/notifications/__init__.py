"""
Notification topics and the WebSocket subscription engine.

Provides SubscriptionEngine, list_available_topics, and the Topic /
NotificationEvent models.
"""
from .engine import EngineState, SubscriptionEngine, parse_frame
from .models import NotificationEvent, Topic, format_notification
from .topics import group_topics, list_available_topics

__all__: list[str] = [
    "EngineState",
    "NotificationEvent",
    "SubscriptionEngine",
    "Topic",
    "format_notification",
    "group_topics",
    "list_available_topics",
    "parse_frame",
]
