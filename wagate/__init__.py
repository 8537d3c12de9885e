"""wagate: HTTP gateway for WhatsApp Web channels with per-channel supervision and reconnect backoff."""

__version__ = "0.1.0"
