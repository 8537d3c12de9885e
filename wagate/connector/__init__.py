"""Connections: the capability protocol, the Playwright WhatsApp Web implementation, executable and media helpers."""

from wagate.connector.base import Connection, ConnectionFactory, MediaPayload
from wagate.connector.executable import ExecutableResolver
from wagate.connector.whatsapp_web import WhatsAppWebConnection, ensure_backend_available, make_connection_factory

__all__ = [
    "Connection",
    "ConnectionFactory",
    "MediaPayload",
    "ExecutableResolver",
    "WhatsAppWebConnection",
    "ensure_backend_available",
    "make_connection_factory",
]
