"""Channel supervisor: owns every channel's connection, status, pairing artifact and reconnect schedule.

Single event loop, no locks: all state is mutated synchronously between awaits, so a channel never
holds two live connections. A replaced connection is destroyed in a background task kept on the channel
(ChannelState.teardown); the next connection initializes only after that task finishes, since both use
the same session directory. Connection callbacks are routed through handle_event(); events from a
connection that is no longer the channel's current one are dropped.
"""

import asyncio
import logging
import math
import shutil
import time
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

from wagate.connector.base import Connection, ConnectionFactory, MediaPayload
from wagate.core.errors import AuthFailure, DeliveryError, NotConnected
from wagate.core.logging_utils import log_channel_transition, log_delivery, log_retry_scheduled
from wagate.core.metrics import Metrics
from wagate.engine.backoff import BackoffPolicy
from wagate.engine.channel import ChannelState
from wagate.fsm.channel_fsm import HEALTHY_STATES, ChannelStatus
from wagate.fsm.events import ChannelEvent, ConnectionEvent

logger = logging.getLogger(__name__)

_DEFAULT_POLL_INTERVAL_MS = 1000
_DEFAULT_REFRESH_TIMEOUT_SEC = 5.0


class ChannelSupervisor:
    """Manages N independently addressable channels keyed by a string id."""

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        backoff: Optional[BackoffPolicy] = None,
        session_root: Optional[str] = None,
        qr_poll_interval_ms: int = _DEFAULT_POLL_INTERVAL_MS,
        status_refresh_timeout_sec: float = _DEFAULT_REFRESH_TIMEOUT_SEC,
        metrics: Optional[Metrics] = None,
    ):
        self._factory = connection_factory
        self._backoff = backoff or BackoffPolicy()
        self._session_root = Path(session_root or ".wagate_auth")
        self._poll_interval_ms = max(1, int(qr_poll_interval_ms))
        self._refresh_timeout = status_refresh_timeout_sec
        self.metrics = metrics or Metrics()
        self._channels: Dict[str, ChannelState] = {}
        self._tasks: set = set()
        self._closed = False

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    # ------------------------------------------------------------------ channels

    def channel(self, channel_id: Any) -> ChannelState:
        """Return the channel, creating it (UNINITIALIZED, not started) on first access."""
        cid = str(channel_id)
        ch = self._channels.get(cid)
        if ch is None:
            ch = ChannelState(id=cid)
            self._channels[cid] = ch
            logger.debug("channel %s created", cid)
        return ch

    def get_channel(self, channel_id: Any) -> Optional[ChannelState]:
        return self._channels.get(str(channel_id))

    def channel_ids(self) -> List[str]:
        return sorted(self._channels)

    def session_dir(self, channel_id: Any) -> Path:
        """Persistent session directory for a channel (browser profile, credentials)."""
        return self._session_root / f"session-{channel_id}"

    # ------------------------------------------------------------------ lifecycle

    def start_channel(self, channel_id: Any, explicit: bool = True) -> bool:
        """
        Start the channel's connection unless a healthy one already exists. Returns True when a new
        connection was created. Does not wait for initialization.

        explicit=True (operator request) restores the retry budget of a channel that exhausted its
        retries or failed authentication; scheduled retries pass explicit=False.
        """
        if self._closed:
            logger.warning("start_channel(%s) ignored: supervisor is shut down", channel_id)
            return False
        ch = self.channel(channel_id)
        if ch.resetting:
            logger.info("channel %s: session reset in progress; start ignored", ch.id)
            return False
        if ch.connection is not None and ch.fsm.is_healthy():
            logger.info("channel %s: already %s; start is a no-op", ch.id, ch.status.value)
            return False

        if explicit and (ch.retries_exhausted or ch.status == ChannelStatus.AUTH_FAILED):
            logger.info("channel %s: explicit start restores retry budget (was %s)", ch.id, ch.retry_count)
            ch.retry_count = 0
            ch.retries_exhausted = False
        ch.clear_retry()

        self._drop_connection(ch)
        if ch.status in HEALTHY_STATES:
            # Status says live but the connection is gone; close the books before restarting
            self._set_status(ch, ChannelStatus.DISCONNECTED, "restart")

        conn = self._factory(ch.id, self.session_dir(ch.id))
        ch.connection = conn
        ch.pairing_artifact = None
        conn.on_event(partial(self.handle_event, ch.id, conn))
        self._set_status(ch, ChannelStatus.INITIALIZING, "start")
        self._spawn(self._bring_up(ch.id, conn, ch.teardown))
        return True

    def stop_channel(self, channel_id: Any, reason: str = "stopped") -> bool:
        """Tear down the channel's connection without scheduling a retry. Returns True if anything changed."""
        ch = self.get_channel(channel_id)
        if ch is None:
            return False
        changed = ch.retry_handle is not None
        ch.clear_retry()
        if ch.connection is not None:
            self._drop_connection(ch)
            changed = True
        ch.pairing_artifact = None
        if ch.status in HEALTHY_STATES:
            ch.last_error = reason
            self._set_status(ch, ChannelStatus.DISCONNECTED, "stop", reason=reason)
            changed = True
        return changed

    async def reset_session(self, channel_id: Any) -> None:
        """Operator action: log out, discard the persisted session directory, and start clean."""
        ch = self.channel(channel_id)
        ch.resetting = True
        try:
            ch.clear_retry()
            conn = ch.connection
            ch.connection = None
            if conn is not None:
                try:
                    await conn.logout()
                except Exception as e:
                    logger.warning("channel %s: logout during reset failed: %s", ch.id, e)
                await self._destroy(ch.id, conn)
            await self._await_teardown(ch)
            path = self.session_dir(ch.id)
            if path.exists():
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, partial(shutil.rmtree, path, True))
                logger.info("channel %s: session directory %s removed", ch.id, path)
            from_status = ch.status.value
            ch.reset()
            log_channel_transition(ch.id, from_status, ch.status.value, "session_reset")
        finally:
            ch.resetting = False
        self.start_channel(ch.id)

    async def shutdown(self) -> None:
        """Cancel pending retries, destroy every connection, wait for background tasks."""
        self._closed = True
        conns = []
        for ch in self._channels.values():
            ch.clear_retry()
            if ch.connection is not None:
                conns.append((ch.id, ch.connection))
                ch.connection = None
        for cid, conn in conns:
            await self._destroy(cid, conn)
        for ch in self._channels.values():
            await self._await_teardown(ch)
        pending = [t for t in self._tasks if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.metrics.log_snapshot()
        logger.info("supervisor shut down (%s channels)", len(self._channels))

    # ------------------------------------------------------------------ queries

    async def get_status(self, channel_id: Any, refresh: bool = True) -> Dict[str, Any]:
        """
        Last known status, pairing artifact and retry count. When refresh is set and a connection
        exists, last_state is refreshed from the live connection (bounded wait; failures keep the cache).
        """
        ch = self.channel(channel_id)
        conn = ch.connection
        if refresh and conn is not None:
            try:
                state = await asyncio.wait_for(conn.get_state(), timeout=self._refresh_timeout)
                if state is not None and ch.connection is conn:
                    ch.last_state = str(state)
            except Exception as e:
                logger.debug("channel %s: live state refresh failed (%s); using cached", ch.id, e)
        return ch.snapshot()

    async def wait_for_pairing_artifact(
        self,
        channel_id: Any,
        timeout_ms: int,
        interval_ms: Optional[int] = None,
    ) -> Optional[str]:
        """
        Poll the pairing artifact every interval_ms until present or timeout_ms elapsed.
        Returns the artifact or None. Returns early (None) once the channel is CONNECTED or AUTH_FAILED.
        """
        interval = max(1, int(interval_ms or self._poll_interval_ms))
        attempts = max(0, math.ceil(max(0, timeout_ms) / interval))
        cid = str(channel_id)
        for _ in range(attempts):
            ch = self.channel(cid)
            if ch.pairing_artifact:
                return ch.pairing_artifact
            if ch.status in (ChannelStatus.CONNECTED, ChannelStatus.AUTH_FAILED):
                return None
            await asyncio.sleep(interval / 1000.0)
        return self.channel(cid).pairing_artifact

    # ------------------------------------------------------------------ delivery

    def _connected_connection(self, channel_id: Any) -> Connection:
        ch = self.get_channel(channel_id)
        if ch is None:
            raise NotConnected(str(channel_id), ChannelStatus.UNINITIALIZED.value)
        if ch.status != ChannelStatus.CONNECTED or ch.connection is None:
            raise NotConnected(ch.id, ch.status.value)
        return ch.connection

    async def send_message(self, channel_id: Any, recipient: str, text: str) -> str:
        """Send text. Raises NotConnected (connection untouched) or DeliveryError. Returns message id."""
        conn = self._connected_connection(channel_id)
        cid = str(channel_id)
        try:
            message_id = await conn.send_message(recipient, text)
        except Exception as e:
            self.metrics.inc(cid, "send_failures")
            log_delivery(cid, recipient, "text", error=str(e))
            raise DeliveryError(str(e) or e.__class__.__name__, cause=e) from e
        self.metrics.inc(cid, "messages_sent")
        log_delivery(cid, recipient, "text", message_id=message_id)
        return "" if message_id is None else str(message_id)

    async def send_media(
        self,
        channel_id: Any,
        recipient: str,
        media: MediaPayload,
        caption: Optional[str] = None,
    ) -> str:
        """Send media. Same failure semantics as send_message."""
        conn = self._connected_connection(channel_id)
        cid = str(channel_id)
        try:
            message_id = await conn.send_media(recipient, media, caption)
        except Exception as e:
            self.metrics.inc(cid, "send_failures")
            log_delivery(cid, recipient, "media", error=str(e))
            raise DeliveryError(str(e) or e.__class__.__name__, cause=e) from e
        self.metrics.inc(cid, "messages_sent")
        log_delivery(cid, recipient, "media", message_id=message_id, extra={"mimetype": media.mimetype})
        return "" if message_id is None else str(message_id)

    # ------------------------------------------------------------------ events

    def handle_event(self, channel_id: str, conn: Connection, event: ConnectionEvent) -> None:
        """Consume one connection event: status transition plus its side effects."""
        ch = self._channels.get(channel_id)
        if ch is None or ch.connection is not conn:
            logger.debug("channel %s: dropping %s from stale connection", channel_id, event.kind.value)
            return

        if event.kind == ChannelEvent.MESSAGE:
            self.metrics.inc(ch.id, "messages_received")
            logger.info("channel %s: message received %s", ch.id, _summarize(event.payload))
            return
        if event.kind == ChannelEvent.AUTHENTICATED:
            logger.info("channel %s: authenticated", ch.id)
            return

        from_status = ch.status
        to_status = ch.fsm.apply(event.kind)
        if to_status is None:
            logger.debug(
                "channel %s: %s ignored in %s", ch.id, event.kind.value, from_status.value
            )
            return
        ch.touch()

        if to_status == ChannelStatus.AWAITING_PAIRING:
            ch.pairing_artifact = event.artifact
            ch.last_state = "UNPAIRED"
            self.metrics.inc(ch.id, "pairing_codes")
        elif to_status == ChannelStatus.CONNECTED:
            ch.pairing_artifact = None
            ch.last_state = "CONNECTED"
            ch.retry_count = 0
            ch.retries_exhausted = False
            ch.last_error = None
            ch.clear_retry()
        elif to_status == ChannelStatus.DISCONNECTED:
            ch.pairing_artifact = None
            ch.last_state = None
            ch.last_error = event.reason or event.kind.value
            self._drop_connection(ch)
        elif to_status == ChannelStatus.AUTH_FAILED:
            ch.pairing_artifact = None
            ch.last_state = None
            ch.last_error = event.reason or event.kind.value
            ch.clear_retry()
            self._drop_connection(ch)

        log_channel_transition(
            ch.id, from_status.value, to_status.value, event.kind.value, reason=event.reason
        )
        if to_status == ChannelStatus.DISCONNECTED:
            self._schedule_retry(ch, ch.last_error)
        elif to_status == ChannelStatus.AUTH_FAILED:
            logger.error(
                "channel %s: authentication failed (%s); no automatic retry, reset the session",
                ch.id,
                ch.last_error,
            )

    # ------------------------------------------------------------------ internals

    def _set_status(self, ch: ChannelState, to_status: ChannelStatus, event: str, reason: Optional[str] = None) -> None:
        from_status = ch.status
        if ch.fsm.transition(to_status):
            ch.touch()
            log_channel_transition(ch.id, from_status.value, to_status.value, event, reason=reason)

    def _schedule_retry(self, ch: ChannelState, reason: Optional[str]) -> None:
        ch.clear_retry()
        if self._closed:
            return
        if not self._backoff.allows_retry(ch.retry_count):
            ch.retries_exhausted = True
            logger.warning(
                "channel %s: %s consecutive reconnects failed; giving up until explicit restart",
                ch.id,
                ch.retry_count,
            )
            return
        delay_ms = self._backoff.delay_ms(ch.retry_count)
        ch.retry_count += 1
        ch.next_retry_delay_ms = delay_ms
        ch.next_retry_at = time.time() + delay_ms / 1000.0
        loop = asyncio.get_running_loop()
        ch.retry_handle = loop.call_later(delay_ms / 1000.0, self._fire_retry, ch.id)
        self.metrics.inc(ch.id, "reconnects_scheduled")
        log_retry_scheduled(ch.id, ch.retry_count, self._backoff.max_retries, delay_ms, reason=reason)

    def _fire_retry(self, channel_id: str) -> None:
        ch = self._channels.get(channel_id)
        if ch is None:
            return
        ch.retry_handle = None
        ch.next_retry_at = None
        if ch.status != ChannelStatus.DISCONNECTED or ch.connection is not None:
            logger.debug("channel %s: retry skipped in %s", channel_id, ch.status.value)
            return
        logger.info("channel %s: reconnect attempt %s/%s", channel_id, ch.retry_count, self._backoff.max_retries)
        self.start_channel(channel_id, explicit=False)

    def _drop_connection(self, ch: ChannelState) -> None:
        conn = ch.connection
        ch.connection = None
        if conn is not None:
            ch.teardown = self._spawn(self._destroy(ch.id, conn, after=ch.teardown))

    async def _await_teardown(self, ch: ChannelState) -> None:
        task = ch.teardown
        if task is not None and not task.done():
            await asyncio.shield(task)
        if ch.teardown is task:
            ch.teardown = None

    async def _bring_up(self, channel_id: str, conn: Connection, teardown: Optional[asyncio.Task]) -> None:
        if teardown is not None and not teardown.done():
            await asyncio.shield(teardown)
        ch = self._channels.get(channel_id)
        if ch is None or ch.connection is not conn:
            logger.debug("channel %s: connection replaced before initialize; skipped", channel_id)
            return
        if ch.teardown is teardown:
            ch.teardown = None
        try:
            await conn.initialize()
        except asyncio.CancelledError:
            raise
        except AuthFailure as e:
            logger.warning("channel %s: stored credentials rejected: %s", channel_id, e)
            self.handle_event(channel_id, conn, ConnectionEvent.auth_failure(str(e) or "auth failure"))
        except Exception as e:
            logger.warning("channel %s: initialize failed: %s", channel_id, e)
            self.handle_event(channel_id, conn, ConnectionEvent.init_failed(str(e) or e.__class__.__name__))

    async def _destroy(self, channel_id: str, conn: Connection, after: Optional[asyncio.Task] = None) -> None:
        # Teardowns of one channel run in order, so the latest one finishing means all have
        if after is not None and not after.done():
            await asyncio.shield(after)
        try:
            await conn.destroy()
        except Exception as e:
            logger.warning("channel %s: destroy failed: %s", channel_id, e)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def _summarize(payload: Any) -> str:
    if isinstance(payload, dict):
        body = str(payload.get("body") or "")
        return f"from={payload.get('from')} body={body[:80]!r}"
    return repr(payload)[:120]
