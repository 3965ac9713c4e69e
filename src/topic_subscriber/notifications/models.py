"""
Data models for notification topics and received notifications.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

OTHER_GROUP = "Other"


@dataclass(frozen=True)
class Topic:
    """
    A notification topic offered by the platform.

    Attributes:
        name: Dot-delimited hierarchical id, e.g. "v2.users.{id}.presence"
        description: Human-readable description from the topic listing
    """

    name: str
    description: str = ""

    @property
    def grouping_key(self) -> str:
        """Third dot-delimited segment of the name, or "Other" for shorter names."""
        parts = self.name.split(".")
        if len(parts) < 3 or not parts[2]:
            return OTHER_GROUP
        return parts[2]


@dataclass(frozen=True)
class NotificationEvent:
    """
    One inbound notification frame.

    Attributes:
        topic: Topic name the frame was published on (None if the frame had none)
        received_at: UTC time the frame was read from the socket
        payload: The whole parsed JSON object of the frame
    """

    topic: Optional[str]
    received_at: datetime
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "received_at": self.received_at.isoformat(),
            "payload": self.payload,
        }


def format_notification(event: NotificationEvent) -> str:
    """
    Render one console line: "<received_at ISO-8601> [<topic>] <compact JSON payload>".
    """
    payload = json.dumps(event.payload, ensure_ascii=False, separators=(",", ":"))
    return f"{event.received_at.isoformat()} [{event.topic or ''}] {payload}"
