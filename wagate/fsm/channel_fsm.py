"""Channel lifecycle FSM: UNINITIALIZED -> INITIALIZING -> AWAITING_PAIRING -> CONNECTED -> DISCONNECTED | AUTH_FAILED.

Transition implementation (engine/supervisor.py):
- UNINITIALIZED -> INITIALIZING: start_channel
- INITIALIZING -> AWAITING_PAIRING: QR event
- INITIALIZING -> CONNECTED: READY event (restored session, no pairing needed)
- INITIALIZING -> DISCONNECTED: INIT_FAILED / DISCONNECTED event, or stop_channel
- INITIALIZING -> AUTH_FAILED: AUTH_FAILURE event (persisted session rejected)
- AWAITING_PAIRING -> AWAITING_PAIRING: QR event (code rotated)
- AWAITING_PAIRING -> CONNECTED: READY event
- AWAITING_PAIRING -> DISCONNECTED: DISCONNECTED event or stop_channel
- AWAITING_PAIRING -> AUTH_FAILED: AUTH_FAILURE event
- CONNECTED -> DISCONNECTED: DISCONNECTED event or stop_channel
- CONNECTED -> AUTH_FAILED: AUTH_FAILURE event
- DISCONNECTED -> INITIALIZING: backoff retry timer or explicit start_channel
- AUTH_FAILED -> INITIALIZING: explicit start_channel (operator); never automatic
- any -> UNINITIALIZED: reset() on session reset
"""

import enum
import logging
from typing import Callable, Optional

from wagate.fsm.events import ChannelEvent

logger = logging.getLogger(__name__)


class ChannelStatus(str, enum.Enum):
    """Channel lifecycle states. AUTH_FAILED is terminal for automatic retries."""

    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    AWAITING_PAIRING = "AWAITING_PAIRING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    AUTH_FAILED = "AUTH_FAILED"


# Valid transitions: from_state -> set of allowed to_states
_TRANSITIONS: dict[ChannelStatus, set[ChannelStatus]] = {
    ChannelStatus.UNINITIALIZED: {ChannelStatus.INITIALIZING},
    ChannelStatus.INITIALIZING: {
        ChannelStatus.AWAITING_PAIRING,
        ChannelStatus.CONNECTED,
        ChannelStatus.DISCONNECTED,
        ChannelStatus.AUTH_FAILED,
    },
    ChannelStatus.AWAITING_PAIRING: {
        ChannelStatus.AWAITING_PAIRING,
        ChannelStatus.CONNECTED,
        ChannelStatus.DISCONNECTED,
        ChannelStatus.AUTH_FAILED,
    },
    ChannelStatus.CONNECTED: {ChannelStatus.DISCONNECTED, ChannelStatus.AUTH_FAILED},
    ChannelStatus.DISCONNECTED: {ChannelStatus.INITIALIZING},
    ChannelStatus.AUTH_FAILED: {ChannelStatus.INITIALIZING},
}

# States in which a live connection object exists and is making progress
HEALTHY_STATES = frozenset(
    {ChannelStatus.INITIALIZING, ChannelStatus.AWAITING_PAIRING, ChannelStatus.CONNECTED}
)


def next_status(current: ChannelStatus, event: ChannelEvent) -> Optional[ChannelStatus]:
    """
    Pure transition function: status reached from current on event, or None when the event
    does not change status (AUTHENTICATED, MESSAGE, or an event that does not apply in current).
    """
    live = current in HEALTHY_STATES
    if event == ChannelEvent.QR:
        if current in (ChannelStatus.INITIALIZING, ChannelStatus.AWAITING_PAIRING):
            return ChannelStatus.AWAITING_PAIRING
        return None
    if event == ChannelEvent.READY:
        if current in (ChannelStatus.INITIALIZING, ChannelStatus.AWAITING_PAIRING):
            return ChannelStatus.CONNECTED
        return None
    if event in (ChannelEvent.DISCONNECTED, ChannelEvent.INIT_FAILED):
        return ChannelStatus.DISCONNECTED if live else None
    if event == ChannelEvent.AUTH_FAILURE:
        return ChannelStatus.AUTH_FAILED if live else None
    return None


class ChannelFSM:
    """Holds one channel's status and validates transitions against the table."""

    def __init__(
        self,
        on_transition: Optional[Callable[[ChannelStatus, ChannelStatus], None]] = None,
    ):
        self._current = ChannelStatus.UNINITIALIZED
        self._on_transition = on_transition

    @property
    def current(self) -> ChannelStatus:
        return self._current

    def can_transition_to(self, to_state: ChannelStatus) -> bool:
        """Check if transition from current state to to_state is valid."""
        return to_state in _TRANSITIONS.get(self._current, set())

    def transition(self, to_state: ChannelStatus) -> bool:
        """
        Transition to new state if valid. Returns True on success, False otherwise.
        Calls on_transition(from, to) callback if provided.
        """
        if not self.can_transition_to(to_state):
            logger.warning(
                "Invalid transition: %s -> %s (allowed: %s)",
                self._current.value,
                to_state.value,
                [s.value for s in _TRANSITIONS.get(self._current, set())],
            )
            return False
        from_state = self._current
        self._current = to_state
        logger.debug("State: %s -> %s", from_state.value, to_state.value)
        if self._on_transition:
            try:
                self._on_transition(from_state, to_state)
            except Exception as e:
                logger.debug("on_transition callback error: %s", e)
        return True

    def apply(self, event: ChannelEvent) -> Optional[ChannelStatus]:
        """Apply event via next_status. Returns the new status, or None when status is unchanged."""
        to_state = next_status(self._current, event)
        if to_state is None:
            return None
        return to_state if self.transition(to_state) else None

    def is_healthy(self) -> bool:
        """True when a live connection is initializing, pairing or connected."""
        return self._current in HEALTHY_STATES

    def is_terminal(self) -> bool:
        """True when no automatic retry may move the channel (AUTH_FAILED)."""
        return self._current == ChannelStatus.AUTH_FAILED

    def reset(self) -> None:
        """Force back to UNINITIALIZED (session reset); bypasses the table."""
        from_state = self._current
        self._current = ChannelStatus.UNINITIALIZED
        logger.debug("State reset: %s -> %s", from_state.value, self._current.value)
