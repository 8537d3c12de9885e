"""Reconnect backoff policy shared by every channel."""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """delay(n) = min(base_delay_ms * multiplier**n, cap_delay_ms); at most max_retries scheduled attempts."""

    base_delay_ms: int = 5000
    multiplier: float = 2.0
    cap_delay_ms: int = 120000
    max_retries: int = 5

    def __post_init__(self):
        if self.base_delay_ms < 0 or self.cap_delay_ms < 0:
            raise ValueError("backoff delays must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("backoff multiplier must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    def delay_ms(self, retry_count: int) -> int:
        """Delay before the attempt that follows retry_count previous attempts."""
        if retry_count < 0:
            retry_count = 0
        # Cap before exponentiation grows unbounded
        delay = float(self.base_delay_ms)
        for _ in range(retry_count):
            delay *= self.multiplier
            if delay >= self.cap_delay_ms:
                return int(self.cap_delay_ms)
        return int(min(delay, self.cap_delay_ms))

    def allows_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "BackoffPolicy":
        """Build from get_backoff_config() output."""
        cfg = cfg or {}
        return cls(
            base_delay_ms=int(cfg.get("base_delay_ms", cls.base_delay_ms)),
            multiplier=float(cfg.get("multiplier", cls.multiplier)),
            cap_delay_ms=int(cfg.get("cap_delay_ms", cls.cap_delay_ms)),
            max_retries=int(cfg.get("max_retries", cls.max_retries)),
        )
