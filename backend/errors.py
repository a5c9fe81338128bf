# backend/errors.py


class SchedulerError(Exception):
    """Base class for everything the bot raises on purpose."""


class TransportError(SchedulerError):
    """Inbound event could not be parsed into a channel message."""


class CredentialError(SchedulerError):
    """No usable bearer token for an outbound API."""


class CalendarApiError(SchedulerError):
    """The calendar API was reachable with a token but did not create the event."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ChannelDeliveryError(SchedulerError):
    """A reply could not be delivered back through its channel."""


class AuthenticationError(SchedulerError):
    """Inbound request did not carry a valid channel token."""
