"""Per-channel runtime state owned by the supervisor."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from wagate.connector.base import Connection
from wagate.fsm.channel_fsm import ChannelFSM, ChannelStatus


@dataclass
class ChannelState:
    """One channel: status FSM, its single connection, pairing artifact and retry bookkeeping."""

    id: str
    fsm: ChannelFSM = field(default_factory=ChannelFSM)
    connection: Optional[Connection] = None
    pairing_artifact: Optional[str] = None
    retry_count: int = 0
    retries_exhausted: bool = False
    last_state: Optional[str] = None  # last live state reported by the connection
    last_error: Optional[str] = None
    next_retry_delay_ms: Optional[int] = None
    next_retry_at: Optional[float] = None
    retry_handle: Optional[asyncio.TimerHandle] = None
    resetting: bool = False
    teardown: Optional[asyncio.Task] = None  # pending destroy of the previous connection
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def status(self) -> ChannelStatus:
        return self.fsm.current

    @property
    def connected(self) -> bool:
        return self.fsm.current == ChannelStatus.CONNECTED

    @property
    def initializing(self) -> bool:
        return self.fsm.current == ChannelStatus.INITIALIZING

    def touch(self) -> None:
        self.updated_at = time.time()

    def clear_retry(self) -> None:
        if self.retry_handle is not None:
            self.retry_handle.cancel()
        self.retry_handle = None
        self.next_retry_delay_ms = None
        self.next_retry_at = None

    def reset(self) -> None:
        """Back to a fresh, never-started channel (connection must already be released)."""
        self.clear_retry()
        self.fsm.reset()
        self.pairing_artifact = None
        self.retry_count = 0
        self.retries_exhausted = False
        self.last_state = None
        self.last_error = None
        self.touch()

    def snapshot(self) -> Dict[str, Any]:
        """JSON-serializable view for status handlers."""
        return {
            "id": self.id,
            "status": self.status.value,
            "pairing_artifact": self.pairing_artifact,
            "retry_count": self.retry_count,
            "retries_exhausted": self.retries_exhausted,
            "connected": self.connected,
            "initializing": self.initializing,
            "has_connection": self.connection is not None,
            "last_state": self.last_state,
            "last_error": self.last_error,
            "next_retry_delay_ms": self.next_retry_delay_ms,
            "next_retry_at": self.next_retry_at,
            "updated_at": self.updated_at,
        }
