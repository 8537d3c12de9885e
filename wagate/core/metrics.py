"""Simple in-memory per-channel counters: sends, failures, received messages, reconnects, pairing codes."""

import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

COUNTERS = (
    "messages_sent",
    "send_failures",
    "messages_received",
    "reconnects_scheduled",
    "pairing_codes",
)


class Metrics:
    """In-memory counters keyed by channel id; log on demand."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[str, int]] = {}

    def inc(self, channel_id: str, name: str, amount: int = 1) -> int:
        if name not in COUNTERS:
            raise KeyError(f"unknown counter {name!r}")
        with self._lock:
            per_channel = self._counters.setdefault(channel_id, {k: 0 for k in COUNTERS})
            per_channel[name] += amount
            return per_channel[name]

    def get(self, channel_id: str, name: str) -> int:
        with self._lock:
            return self._counters.get(channel_id, {}).get(name, 0)

    def channel_snapshot(self, channel_id: str) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters.get(channel_id) or {k: 0 for k in COUNTERS})

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {cid: dict(c) for cid, c in self._counters.items()}

    def reset(self, channel_id: Optional[str] = None) -> None:
        with self._lock:
            if channel_id is None:
                self._counters.clear()
            else:
                self._counters.pop(channel_id, None)

    def log_snapshot(self) -> None:
        """Log current metrics snapshot."""
        with self._lock:
            parts = []
            for cid in sorted(self._counters):
                c = self._counters[cid]
                parts.append(f"{cid}:" + ",".join(f"{k}={c[k]}" for k in COUNTERS if c[k]))
        logger.info("metrics " + (" ".join(parts) if parts else "empty"))


_global_metrics: Optional[Metrics] = None


def get_metrics() -> Metrics:
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = Metrics()
    return _global_metrics
