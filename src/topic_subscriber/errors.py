"""
Exception types raised by the topic subscriber.

Configuration and authentication failures propagate to the caller as hard
failures. Frame parse failures are isolated inside the receive loop and only
reach the diagnostic hook.
"""

from __future__ import annotations


class TopicSubscriberError(RuntimeError):
    """Base class for expected failures with a user-facing message."""


class ConfigurationMissing(TopicSubscriberError):
    """settings.json is absent, unparseable or incomplete."""


class ConfigurationInvalid(TopicSubscriberError):
    """An environment setting (GENESYS_*) has an unusable value."""


class AuthenticationFailed(TopicSubscriberError):
    """The PKCE flow failed; re-invoke get_token() to restart it."""


class SubscriptionFailed(TopicSubscriberError):
    """The notification socket could not be opened or the subscribe frame not sent."""


class TopicListingFailed(TopicSubscriberError):
    """The available-topics REST call failed."""


class ConcurrentOperationError(TopicSubscriberError):
    """subscribe()/unsubscribe() called while another engine operation is in progress."""


class FrameParseError(TopicSubscriberError):
    """A single inbound frame could not be turned into a notification."""

    def __init__(self, message: str, *, raw: object = None) -> None:
        super().__init__(message)
        self.raw = raw
