"""Connection protocol: the capability interface every channel connection implements."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from wagate.fsm.events import ConnectionEvent

EventListener = Callable[[ConnectionEvent], None]


@dataclass
class MediaPayload:
    """Binary media with its MIME type; filename is used for documents."""

    data: bytes
    mimetype: str
    filename: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


class Connection(Protocol):
    """A stateful messaging connection owned by exactly one channel."""

    def on_event(self, listener: EventListener) -> None:
        """Register the callback that receives every ConnectionEvent."""
        ...

    async def initialize(self) -> None:
        """Launch and begin pairing/restoring. Raises on launch failure."""
        ...

    async def destroy(self) -> None:
        """Release all resources. Safe to call more than once."""
        ...

    async def get_state(self) -> Optional[str]:
        """Live state string reported by the backend (e.g. CONNECTED, UNPAIRED, OPENING)."""
        ...

    async def send_message(self, recipient: str, text: str) -> str:
        """Send text; return the opaque message id."""
        ...

    async def send_media(self, recipient: str, media: MediaPayload, caption: Optional[str] = None) -> str:
        """Send media; return the opaque message id."""
        ...

    async def logout(self) -> None:
        """Invalidate the persisted session on the backend side."""
        ...


# (channel_id, session_dir) -> fresh Connection
ConnectionFactory = Callable[[str, Path], Connection]
