"""WhatsApp Web connection driven by Playwright: persistent per-channel Chromium profile, QR pairing, send.

The browser profile directory is the channel's persisted session; reopening it restores the login
without pairing. A watch task polls the page and turns what it sees into ConnectionEvents.
"""

import asyncio
import logging
import mimetypes
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from wagate.connector.base import EventListener, MediaPayload
from wagate.connector.executable import ExecutableResolver
from wagate.core.errors import BrowserLaunchFailure, DeliveryError, LibraryLoadFailure, NotConnected
from wagate.fsm.events import ConnectionEvent

logger = logging.getLogger(__name__)

WHATSAPP_WEB_URL = "https://web.whatsapp.com/"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# The QR container carries the raw pairing payload in data-ref
QR_REF_SELECTOR = "div[data-ref]"

LOGIN_MARKERS = (
    'div[data-testid="chat-list"]',
    'div[aria-label="Chat list"]',
    'header[data-testid="chatlist-header"]',
    'div[data-testid="chat-list-search"]',
    "#pane-side",
)

COMPOSE_SELECTORS = (
    'footer div[contenteditable="true"]',
    'div[data-testid="conversation-compose-box-input"]',
)

SEND_SELECTORS = (
    'button[aria-label="Send"]',
    'span[data-icon="send"]',
    '[data-testid="send"]',
    '[data-testid="compose-btn-send"]',
)

ATTACH_SELECTORS = (
    'span[data-icon="plus"]',
    'span[data-icon="attach-menu-plus"]',
    'div[title="Attach"]',
    'button[title="Attach"]',
)

INVALID_NUMBER_MARKERS = (
    'div[data-testid="popup-contents"]',
    'div[data-animate-modal-popup="true"]',
)

UNREAD_CHATS_JS = """
() => {
  const rows = Array.from(document.querySelectorAll('#pane-side [role="listitem"], #pane-side [role="row"]'));
  const out = [];
  for (const row of rows) {
    const badge = row.querySelector('span[aria-label*="unread"]');
    if (!badge) continue;
    const title = row.querySelector('span[title]');
    const n = parseInt((badge.textContent || '1').trim(), 10);
    out.push({ from: title ? title.getAttribute('title') : null, unread: isNaN(n) ? 1 : n });
  }
  return out;
}
"""

# Written into the profile once a login completed; its presence means "restoring", not "pairing"
AUTH_MARKER_FILE = ".wagate-authenticated"


def ensure_backend_available() -> None:
    """Raise LibraryLoadFailure when Playwright cannot be imported."""
    try:
        import playwright.async_api  # noqa: F401
    except ImportError as e:
        raise LibraryLoadFailure(f"playwright is not importable: {e}") from e


def recipient_phone(recipient: str) -> str:
    """'5511999990000@c.us' / '+55 11 99999-0000' -> '5511999990000'. Group ids are rejected."""
    raw = (recipient or "").strip()
    if raw.endswith("@g.us"):
        raise ValueError("group recipients are not supported by the browser connection")
    local = raw.split("@", 1)[0]
    digits = "".join(ch for ch in local if ch.isdigit())
    if not digits:
        raise ValueError(f"invalid recipient: {recipient!r}")
    return digits


class WhatsAppWebConnection:
    """One Chromium profile + one WhatsApp Web tab for one channel."""

    def __init__(
        self,
        channel_id: str,
        session_dir: Path,
        browser_cfg: Optional[Dict[str, Any]] = None,
        resolver: Optional[ExecutableResolver] = None,
    ):
        cfg = browser_cfg or {}
        self.channel_id = channel_id
        self.session_dir = Path(session_dir)
        self._headless = bool(cfg.get("headless", True))
        self._args = list(cfg.get("args") or ["--no-sandbox", "--disable-dev-shm-usage"])
        self._launch_timeout_ms = int(cfg.get("launch_timeout_ms", 120000))
        self._nav_timeout_ms = int(cfg.get("navigation_timeout_ms", 120000))
        self._watch_interval = float(cfg.get("watch_interval_sec", 1.0))
        self._send_timeout_ms = int(cfg.get("send_timeout_ms", 60000))
        self._resolver = resolver or ExecutableResolver.from_config(cfg)

        self._listeners: List[EventListener] = []
        self._playwright = None
        self._context = None
        self._page = None
        self._watch_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._closed = False
        self._ready = False
        self._restoring = False
        self._last_qr: Optional[str] = None
        self._unread: Dict[str, int] = {}
        self.executable_path: Optional[str] = None

    # ------------------------------------------------------------------ events

    def on_event(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: ConnectionEvent) -> None:
        logger.debug("[%s] emit %s", self.channel_id, event.kind.value)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("[%s] event listener raised on %s", self.channel_id, event.kind.value)

    # ------------------------------------------------------------------ lifecycle

    async def initialize(self) -> None:
        from playwright.async_api import async_playwright

        self.session_dir.mkdir(parents=True, exist_ok=True)
        self._restoring = (self.session_dir / AUTH_MARKER_FILE).exists()
        self._playwright = await async_playwright().start()
        try:
            self._context = await self._launch()
            pages = self._context.pages
            self._page = pages[0] if pages else await self._context.new_page()
            self._page.on("close", lambda _page: self._on_page_closed())
            logger.info(
                "[%s] browser up (executable=%s, restoring=%s); loading %s",
                self.channel_id,
                self.executable_path or "(auto)",
                self._restoring,
                WHATSAPP_WEB_URL,
            )
            await self._page.goto(WHATSAPP_WEB_URL, wait_until="domcontentloaded", timeout=self._nav_timeout_ms)
        except Exception:
            await self.destroy()
            raise
        self._watch_task = asyncio.get_running_loop().create_task(self._watch())

    async def _launch(self):
        """Try each executable strategy; the last one lets Playwright pick its bundled browser."""
        attempts = []
        for path in self._resolver.launch_candidates():
            try:
                context = await self._playwright.chromium.launch_persistent_context(
                    user_data_dir=str(self.session_dir),
                    executable_path=path,
                    headless=self._headless,
                    args=self._args,
                    timeout=self._launch_timeout_ms,
                    viewport={"width": 1280, "height": 900},
                    user_agent=DEFAULT_USER_AGENT,
                )
                self.executable_path = path
                return context
            except Exception as e:
                attempts.append({"executable": path or "(auto)", "error": str(e)})
                logger.warning("[%s] browser launch failed with %s: %s", self.channel_id, path or "(auto)", e)
        raise BrowserLaunchFailure(
            f"could not launch a browser after {len(attempts)} attempt(s)", attempts=attempts
        )

    async def destroy(self) -> None:
        self._closed = True
        task = self._watch_task
        self._watch_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        if self._context is not None:
            try:
                await self._context.close()
            except Exception as e:
                logger.debug("[%s] context close: %s", self.channel_id, e)
            self._context = None
            self._page = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug("[%s] playwright stop: %s", self.channel_id, e)
            self._playwright = None

    async def logout(self) -> None:
        """Clear cookies and web storage so the next start requires pairing."""
        marker = self.session_dir / AUTH_MARKER_FILE
        if marker.exists():
            marker.unlink()
        if self._page is None or self._page.is_closed():
            return
        await self._page.context.clear_cookies()
        await self._page.evaluate(
            """
            () => {
              try { localStorage.clear(); } catch (e) {}
              try { sessionStorage.clear(); } catch (e) {}
              try {
                if (window.indexedDB && indexedDB.databases) {
                  return indexedDB.databases().then(dbs => {
                    dbs.forEach(db => { try { indexedDB.deleteDatabase(db.name); } catch (e) {} });
                  });
                }
              } catch (e) {}
              return null;
            }
            """
        )
        self._ready = False

    def _on_page_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._emit(ConnectionEvent.disconnected("page closed"))

    # ------------------------------------------------------------------ watch

    async def _watch(self) -> None:
        """Poll the page: login markers -> READY, QR payload -> QR, QR after login -> DISCONNECTED."""
        while not self._closed:
            try:
                if await self._is_logged_in():
                    if not self._ready:
                        self._on_login()
                    else:
                        await self._check_unread()
                else:
                    ref = await self._read_qr_ref()
                    if ref:
                        if self._ready:
                            self._ready = False
                            self._closed = True
                            self._emit(ConnectionEvent.disconnected("LOGOUT"))
                            return
                        if self._restoring:
                            self._closed = True
                            self._emit(ConnectionEvent.auth_failure("stored session rejected; pairing requested"))
                            return
                        if ref != self._last_qr:
                            self._last_qr = ref
                            self._emit(ConnectionEvent.qr(ref))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._closed:
                    return
                self._closed = True
                logger.warning("[%s] watch failed: %s", self.channel_id, e)
                self._emit(ConnectionEvent.disconnected(f"browser error: {e}"))
                return
            await asyncio.sleep(self._watch_interval)

    def _on_login(self) -> None:
        self._ready = True
        self._restoring = True
        self._last_qr = None
        try:
            (self.session_dir / AUTH_MARKER_FILE).write_text(str(time.time()), encoding="utf-8")
        except OSError as e:
            logger.warning("[%s] could not write auth marker: %s", self.channel_id, e)
        self._emit(ConnectionEvent.authenticated())
        self._emit(ConnectionEvent.ready())

    async def _is_logged_in(self) -> bool:
        page = self._page
        if page is None or page.is_closed():
            raise ConnectionError("page is closed")
        for marker in LOGIN_MARKERS:
            if await page.locator(marker).count() > 0:
                return True
        return False

    async def _read_qr_ref(self) -> Optional[str]:
        loc = self._page.locator(QR_REF_SELECTOR)
        if await loc.count() == 0:
            return None
        ref = await loc.first.get_attribute("data-ref")
        return ref or None

    async def _check_unread(self) -> None:
        """Emit MESSAGE for chats whose unread badge grew since the last poll."""
        if self._send_lock.locked():
            return
        rows = await self._page.evaluate(UNREAD_CHATS_JS) or []
        current: Dict[str, int] = {}
        for row in rows:
            name = row.get("from") or "?"
            count = int(row.get("unread") or 1)
            current[name] = count
            if count > self._unread.get(name, 0):
                self._emit(ConnectionEvent.message({"from": name, "unread": count, "body": ""}))
        self._unread = current

    # ------------------------------------------------------------------ queries / send

    async def get_state(self) -> Optional[str]:
        if self._closed:
            raise ConnectionError("connection closed")
        if await self._is_logged_in():
            return "CONNECTED"
        if await self._read_qr_ref():
            return "UNPAIRED"
        return "OPENING"

    def _require_ready(self):
        if not self._ready or self._page is None or self._page.is_closed():
            raise NotConnected(self.channel_id, "not ready")
        return self._page

    async def _open_chat(self, phone: str, text: Optional[str] = None):
        page = self._require_ready()
        url = f"{WHATSAPP_WEB_URL}send?phone={phone}"
        if text:
            url += f"&text={quote(text, safe='')}"
        await page.goto(url, wait_until="domcontentloaded", timeout=self._send_timeout_ms)
        compose = page.locator(", ".join(COMPOSE_SELECTORS)).first
        invalid = page.locator(", ".join(INVALID_NUMBER_MARKERS)).first
        deadline = time.time() + self._send_timeout_ms / 1000.0
        while time.time() < deadline:
            if await compose.count() > 0 and await compose.is_visible():
                return page
            if await invalid.count() > 0 and await invalid.is_visible():
                text_content = (await invalid.inner_text()).strip()
                raise DeliveryError(f"recipient rejected: {text_content[:200] or phone}")
            await asyncio.sleep(0.5)
        raise DeliveryError(f"chat with {phone} did not open within {self._send_timeout_ms}ms")

    async def _click_first(self, page, selectors, what: str) -> None:
        for sel in selectors:
            loc = page.locator(sel).first
            try:
                await loc.wait_for(state="visible", timeout=5000)
            except Exception:
                continue
            await loc.click()
            return
        raise DeliveryError(f"{what} button not found")

    @staticmethod
    def _message_id(phone: str) -> str:
        return f"true_{phone}@c.us_{uuid.uuid4().hex[:20].upper()}"

    async def send_message(self, recipient: str, text: str) -> str:
        phone = recipient_phone(recipient)
        async with self._send_lock:
            page = await self._open_chat(phone, text)
            await self._click_first(page, SEND_SELECTORS, "send")
            await page.wait_for_timeout(1500)
        return self._message_id(phone)

    async def send_media(self, recipient: str, media: MediaPayload, caption: Optional[str] = None) -> str:
        phone = recipient_phone(recipient)
        is_visual = media.mimetype.startswith(("image/", "video/"))
        name = media.filename or ("file" + _extension_for(media.mimetype))
        async with self._send_lock:
            page = await self._open_chat(phone)
            await self._click_first(page, ATTACH_SELECTORS, "attach")
            selector = 'input[type="file"][accept*="image"]' if is_visual else 'input[type="file"]'
            inputs = page.locator(selector)
            if await inputs.count() == 0:
                inputs = page.locator('input[type="file"]')
            await inputs.first.set_input_files(
                files=[{"name": name, "mimeType": media.mimetype, "buffer": media.data}]
            )
            if caption:
                caption_box = page.locator('div[aria-label="Add a caption"], div[contenteditable="true"][data-lexical-editor="true"]').last
                try:
                    await caption_box.wait_for(state="visible", timeout=10000)
                    await caption_box.click()
                    await page.keyboard.type(caption)
                except Exception as e:
                    logger.warning("[%s] caption box not found; sending without caption: %s", self.channel_id, e)
            await self._click_first(page, SEND_SELECTORS, "send")
            await page.wait_for_timeout(2500)
        return self._message_id(phone)


def _extension_for(mimetype: str) -> str:
    return mimetypes.guess_extension(mimetype) or ""


def make_connection_factory(
    browser_cfg: Optional[Dict[str, Any]] = None,
    resolver: Optional[ExecutableResolver] = None,
):
    """ConnectionFactory for the supervisor: one WhatsAppWebConnection per (channel, session dir)."""
    shared_resolver = resolver or ExecutableResolver.from_config(browser_cfg)

    def factory(channel_id: str, session_dir: Path) -> WhatsAppWebConnection:
        return WhatsAppWebConnection(channel_id, session_dir, browser_cfg, shared_resolver)

    return factory
