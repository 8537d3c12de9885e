"""Structured logging for channel transitions, scheduled reconnects and message deliveries."""

import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)


def _ensure_trace_id(extra: dict) -> str:
    trace_id = extra.get("trace_id")
    if not trace_id:
        trace_id = str(uuid.uuid4())[:8]
        extra["trace_id"] = trace_id
    return trace_id


def _format(kind: str, extra: dict) -> str:
    return kind + " " + " ".join(f"{k}={v}" for k, v in sorted(extra.items()))


def log_channel_transition(
    channel_id: str,
    from_status: str,
    to_status: str,
    event: str,
    trace_id: Optional[str] = None,
    reason: Optional[str] = None,
    extra: Optional[dict] = None,
) -> None:
    """Log channel status transition: trace_id, channel, from_status, to_status, event, reason."""
    extra = extra or {}
    if trace_id:
        extra["trace_id"] = trace_id
    _ensure_trace_id(extra)
    extra["channel"] = channel_id
    extra["from_status"] = from_status
    extra["to_status"] = to_status
    extra["event"] = event
    if reason:
        extra["reason"] = reason
    logger.info(_format("channel_transition", extra))


def log_retry_scheduled(
    channel_id: str,
    attempt: int,
    max_retries: int,
    delay_ms: int,
    reason: Optional[str] = None,
    extra: Optional[dict] = None,
) -> None:
    """Log a scheduled reconnect attempt."""
    extra = extra or {}
    _ensure_trace_id(extra)
    extra["channel"] = channel_id
    extra["attempt"] = f"{attempt}/{max_retries}"
    extra["delay_ms"] = delay_ms
    if reason:
        extra["reason"] = reason
    logger.info(_format("retry_scheduled", extra))


def log_delivery(
    channel_id: str,
    recipient: str,
    kind: str,
    message_id: Optional[str] = None,
    error: Optional[str] = None,
    extra: Optional[dict] = None,
) -> None:
    """Log message delivery outcome (kind=text|media). Failures log at warning."""
    extra = extra or {}
    _ensure_trace_id(extra)
    extra["channel"] = channel_id
    extra["to"] = recipient
    extra["kind"] = kind
    if message_id:
        extra["message_id"] = message_id
    if error:
        extra["error"] = error
        logger.warning(_format("delivery_failed", extra))
        return
    logger.info(_format("delivery", extra))
