"""Error taxonomy shared by the supervisor, connectors and HTTP layer."""

from typing import Optional


class GatewayError(Exception):
    """Base class for gateway errors."""


class LibraryLoadFailure(GatewayError):
    """Browser automation library could not be imported. Fatal at startup (exit 1)."""


class BrowserLaunchFailure(GatewayError):
    """Every executable strategy failed to launch a browser. Retried by the supervisor."""

    def __init__(self, message: str, attempts: Optional[list] = None):
        super().__init__(message)
        self.attempts = attempts or []


class NotConnected(GatewayError):
    """Send attempted on a channel whose status is not CONNECTED."""

    def __init__(self, channel_id: str, status: str = ""):
        super().__init__(f"channel {channel_id} is not connected (status={status or 'unknown'})")
        self.channel_id = channel_id
        self.status = status


class AuthFailure(GatewayError):
    """Persisted credentials were rejected. Terminal for the channel until a session reset."""


class DeliveryError(GatewayError):
    """Underlying connection failed to deliver a message."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class MediaError(GatewayError):
    """Media payload could not be loaded (bad base64, failed download, missing source)."""
