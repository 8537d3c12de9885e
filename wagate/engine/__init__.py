"""Channel engine: per-channel state, backoff policy, and the supervisor that owns them."""

from .backoff import BackoffPolicy
from .channel import ChannelState
from .supervisor import ChannelSupervisor

__all__ = ["BackoffPolicy", "ChannelState", "ChannelSupervisor"]
