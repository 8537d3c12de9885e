"""Event enum and payload type for connection callbacks consumed by the channel FSM."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ChannelEvent(str, Enum):
    """Events emitted by a connection object (one at a time per channel)."""

    QR = "qr"  # pairing artifact ready
    AUTHENTICATED = "authenticated"  # credentials accepted; READY follows
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"
    INIT_FAILED = "init_failed"  # initialize() raised (browser launch, navigation)
    MESSAGE = "message"  # incoming message; no status change


@dataclass
class ConnectionEvent:
    """Tagged event from a connection. artifact is set for QR, reason for DISCONNECTED/AUTH_FAILURE/INIT_FAILED."""

    kind: ChannelEvent
    artifact: Optional[str] = None
    reason: Optional[str] = None
    payload: Any = None
    ts: float = field(default_factory=time.time)

    @classmethod
    def qr(cls, artifact: str) -> "ConnectionEvent":
        return cls(ChannelEvent.QR, artifact=artifact)

    @classmethod
    def authenticated(cls) -> "ConnectionEvent":
        return cls(ChannelEvent.AUTHENTICATED)

    @classmethod
    def ready(cls) -> "ConnectionEvent":
        return cls(ChannelEvent.READY)

    @classmethod
    def disconnected(cls, reason: str = "") -> "ConnectionEvent":
        return cls(ChannelEvent.DISCONNECTED, reason=reason)

    @classmethod
    def auth_failure(cls, reason: str = "") -> "ConnectionEvent":
        return cls(ChannelEvent.AUTH_FAILURE, reason=reason)

    @classmethod
    def init_failed(cls, reason: str = "") -> "ConnectionEvent":
        return cls(ChannelEvent.INIT_FAILED, reason=reason)

    @classmethod
    def message(cls, payload: Any) -> "ConnectionEvent":
        return cls(ChannelEvent.MESSAGE, payload=payload)
