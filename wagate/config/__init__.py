"""YAML + environment configuration."""

from wagate.config.settings import (
    get_backoff_config,
    get_browser_config,
    get_channels_config,
    get_server_config,
    get_session_config,
    read_config,
)

__all__ = [
    "read_config",
    "get_server_config",
    "get_channels_config",
    "get_backoff_config",
    "get_browser_config",
    "get_session_config",
]
