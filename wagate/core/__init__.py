"""Core utilities: errors, structured logging, metrics."""

from wagate.core.errors import (
    AuthFailure,
    BrowserLaunchFailure,
    DeliveryError,
    GatewayError,
    LibraryLoadFailure,
    MediaError,
    NotConnected,
)
from wagate.core.metrics import Metrics, get_metrics

__all__ = [
    "GatewayError",
    "LibraryLoadFailure",
    "BrowserLaunchFailure",
    "NotConnected",
    "AuthFailure",
    "DeliveryError",
    "MediaError",
    "Metrics",
    "get_metrics",
]
