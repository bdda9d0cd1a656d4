"""Error taxonomy for the dispatch pipeline.

Only configuration problems are raised out of channel handlers. Provider failures
(timeouts, non-2xx responses, SDK errors) are reported through a failed
``DeliveryResult`` and retried by the dispatcher.
"""


class NotificationError(Exception):
    """Base class for notification service errors."""


class ChannelConfigurationError(NotificationError):
    """A handler is missing settings it needs; retrying cannot succeed until an operator fixes it."""

    def __init__(self, channel: str, message: str):
        self.channel = channel
        super().__init__(message)


class HandlerNotFoundError(NotificationError):
    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"No handler found for channel: {channel}")


class DestinationNotFoundError(NotificationError):
    def __init__(self, destination_id):
        self.destination_id = destination_id
        super().__init__(f"Webhook destination {destination_id} not found")


class SettingDecryptionError(NotificationError):
    """Raised when an encrypted admin setting cannot be decrypted."""
