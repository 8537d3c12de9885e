"""FSM package: channel lifecycle status, connection events, transition function."""

from wagate.fsm.channel_fsm import HEALTHY_STATES, ChannelFSM, ChannelStatus, next_status
from wagate.fsm.events import ChannelEvent, ConnectionEvent

__all__ = [
    "ChannelFSM",
    "ChannelStatus",
    "ChannelEvent",
    "ConnectionEvent",
    "HEALTHY_STATES",
    "next_status",
]
