"""FastAPI app: health, pairing (QR), connect, send text/media, logout/session reset, browser diagnostics.

Every handler addresses one channel via the `port` query parameter (default: the listen port). Handlers
only read supervisor state or start work on it; connection initialization never blocks a request except
/qr, which waits a bounded time for the pairing code.
"""

import hmac
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from wagate import __version__
from wagate.connector.executable import ExecutableResolver
from wagate.connector.media import load_media
from wagate.core.errors import DeliveryError, MediaError, NotConnected
from wagate.engine.supervisor import ChannelSupervisor
from wagate.fsm.channel_fsm import ChannelStatus
from wagate.server.qr import render_qr_png

logger = logging.getLogger(__name__)

SERVICE_NAME = "wagate (whatsapp-web/playwright)"

MSG_NOT_CONNECTED = "WhatsApp não está conectado"
MSG_SENT = "Mensagem enviada com sucesso"
MSG_QR_UNAVAILABLE = "QR code não disponível"
MSG_CONNECTED = "Canal conectado com sucesso"
MSG_ALREADY_CONNECTED = "Canal já conectado"
MSG_TEST_OK = "Conexão WhatsApp OK"
MSG_NOT_FOUND = "Endpoint não encontrado"
MSG_SESSION_RESET = "Sessão removida; novo pareamento iniciado"
MSG_MISSING_FIELDS = "Campos 'to' e 'message' são obrigatórios"
MSG_MISSING_TO = "Campo 'to' é obrigatório"
MSG_INVALID_JSON = "Corpo JSON inválido"
MSG_UNAUTHORIZED = "Token de API inválido ou ausente"

AVAILABLE_ENDPOINTS = [
    "/health",
    "/status",
    "/connect",
    "/qr",
    "/qr.png",
    "/test",
    "/send",
    "/sendMedia",
    "/logout",
    "/session/reset",
    "/debug/chrome",
]


class Unauthorized(Exception):
    """API token missing or wrong."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _fail(status_code: int, error: str, **extra: Any) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": error}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def _json_body(request: Request) -> Dict[str, Any]:
    """Parsed JSON object body; empty body -> {}. Raises ValueError on malformed JSON or non-object."""
    raw = await request.body()
    if not raw.strip():
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object")
    return data


def create_app(
    supervisor: ChannelSupervisor,
    resolver: Optional[ExecutableResolver] = None,
    default_channel: str = "3000",
    api_token: Optional[str] = None,
    qr_wait_ms: int = 10000,
    cors_origins: Optional[List[str]] = None,
    eager_channels: Optional[Iterable[str]] = None,
) -> FastAPI:
    """Build the FastAPI app around an injected supervisor. Eager channels start on app startup; shutdown destroys all connections."""
    resolver = resolver or ExecutableResolver()
    eager = [str(c) for c in (eager_channels or [])]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for cid in eager:
            supervisor.start_channel(cid)
        logger.info("API ready (default channel=%s, eager=%s, auth=%s)", default_channel, eager, bool(api_token))
        yield
        await supervisor.shutdown()
        logger.info("API stopped")

    app = FastAPI(
        title="wagate",
        description="HTTP front-end for WhatsApp Web channels driven by a headless browser",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.state.supervisor = supervisor

    def require_token(request: Request) -> None:
        if not api_token:
            return
        header = request.headers.get("authorization") or ""
        if header.lower().startswith("bearer "):
            supplied = header[7:].strip()
        else:
            supplied = (request.headers.get("x-api-token") or "").strip()
        if not supplied or not hmac.compare_digest(supplied.encode(), api_token.encode()):
            raise Unauthorized()

    def channel_id(port: Optional[str] = Query(None, description="Channel id (defaults to the listen port)")) -> str:
        return str(port).strip() if port not in (None, "") else str(default_channel)

    protected = [Depends(require_token)]

    # ------------------------------------------------------------------ error mapping

    @app.exception_handler(Unauthorized)
    async def _unauthorized(request: Request, exc: Unauthorized) -> JSONResponse:
        return _fail(401, MSG_UNAUTHORIZED)

    @app.exception_handler(NotConnected)
    async def _not_connected(request: Request, exc: NotConnected) -> JSONResponse:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return _fail(400, MSG_NOT_CONNECTED, status=exc.status)

    @app.exception_handler(MediaError)
    async def _media_error(request: Request, exc: MediaError) -> JSONResponse:
        return _fail(400, str(exc))

    @app.exception_handler(DeliveryError)
    async def _delivery_error(request: Request, exc: DeliveryError) -> JSONResponse:
        return _fail(500, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _fail(400, "invalid request", detail=json.loads(json.dumps(exc.errors(), default=str)))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _fail(404, MSG_NOT_FOUND, available_endpoints=AVAILABLE_ENDPOINTS)
        if exc.status_code == 405:
            return _fail(405, "Method not allowed")
        return _fail(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s failed", request.method, request.url.path)
        return _fail(500, str(exc) or exc.__class__.__name__)

    # ------------------------------------------------------------------ health / status

    @app.get("/")
    @app.get("/health")
    async def get_health(cid: str = Depends(channel_id)) -> Dict[str, Any]:
        """
        Liveness plus the channel's cached status; never touches the live connection. lastState follows
        connection events (UNPAIRED on a QR code, CONNECTED on ready); /status refreshes it live.
        """
        snap = await supervisor.get_status(cid, refresh=False)
        return {
            "success": True,
            "status": "OK",
            "connected": snap["connected"],
            "initializing": snap["initializing"],
            "lastState": snap["last_state"],
            "channel": snap,
            "service": SERVICE_NAME,
            "metrics": supervisor.metrics.channel_snapshot(cid),
            "timestamp": _now_iso(),
        }

    @app.get("/status", dependencies=protected)
    async def get_status(cid: str = Depends(channel_id)) -> Dict[str, Any]:
        snap = await supervisor.get_status(cid)
        return {
            "success": True,
            "connected": snap["connected"],
            "initializing": snap["initializing"],
            "status": snap["status"],
            "lastState": snap["last_state"],
            "retryCount": snap["retry_count"],
            "lastError": snap["last_error"],
            "nextRetryDelayMs": snap["next_retry_delay_ms"],
            "timestamp": _now_iso(),
        }

    @app.get("/test", dependencies=protected)
    async def get_test(cid: str = Depends(channel_id)) -> Dict[str, Any]:
        snap = await supervisor.get_status(cid, refresh=False)
        return {
            "success": True,
            "message": MSG_TEST_OK,
            "connected": snap["connected"],
            "initializing": snap["initializing"],
            "timestamp": _now_iso(),
        }

    # ------------------------------------------------------------------ lifecycle

    @app.api_route("/connect", methods=["GET", "POST"], dependencies=protected)
    async def connect(cid: str = Depends(channel_id)) -> Dict[str, Any]:
        """Start the channel in the background; returns immediately."""
        started = supervisor.start_channel(cid)
        ch = supervisor.channel(cid)
        return {
            "success": True,
            "message": MSG_CONNECTED if started or not ch.connected else MSG_ALREADY_CONNECTED,
            "started": started,
            "status": ch.status.value,
            "channel": cid,
            "timestamp": _now_iso(),
        }

    @app.api_route("/logout", methods=["GET", "POST"], dependencies=protected)
    @app.api_route("/session/reset", methods=["GET", "POST"], dependencies=protected)
    async def reset_session(cid: str = Depends(channel_id)) -> Dict[str, Any]:
        """Log out, delete the persisted session and start a fresh pairing."""
        await supervisor.reset_session(cid)
        return {
            "success": True,
            "message": MSG_SESSION_RESET,
            "channel": cid,
            "status": supervisor.channel(cid).status.value,
            "timestamp": _now_iso(),
        }

    # ------------------------------------------------------------------ pairing

    async def _pairing_code(cid: str) -> Optional[str]:
        ch = supervisor.channel(cid)
        if ch.pairing_artifact or ch.connected:
            return ch.pairing_artifact
        if ch.status != ChannelStatus.AUTH_FAILED:
            supervisor.start_channel(cid)
        return await supervisor.wait_for_pairing_artifact(cid, qr_wait_ms)

    @app.get("/qr", dependencies=protected)
    async def get_qr(cid: str = Depends(channel_id)) -> Dict[str, Any]:
        """Current pairing code; starts the channel and waits up to qr_wait_ms when none is available yet."""
        code = await _pairing_code(cid)
        ch = supervisor.channel(cid)
        return {
            "success": True,
            "qr": code or MSG_QR_UNAVAILABLE,
            "status": ch.status.value,
            "connected": ch.connected,
            "initializing": ch.initializing,
            "timestamp": _now_iso(),
        }

    @app.get("/qr.png", dependencies=protected)
    async def get_qr_png(cid: str = Depends(channel_id)) -> Response:
        code = await _pairing_code(cid)
        if not code:
            return PlainTextResponse(MSG_QR_UNAVAILABLE, status_code=404)
        return Response(content=render_qr_png(code), media_type="image/png", headers={"Cache-Control": "no-store"})

    # ------------------------------------------------------------------ delivery

    @app.post("/send", dependencies=protected)
    async def send(request: Request, cid: str = Depends(channel_id)) -> JSONResponse:
        try:
            body = await _json_body(request)
        except ValueError:
            return _fail(400, MSG_INVALID_JSON)
        to = str(body.get("to") or "").strip()
        text = body.get("message")
        if text is None:
            text = body.get("text")
        if not to or text is None or str(text) == "":
            return _fail(400, MSG_MISSING_FIELDS)
        t0 = time.perf_counter()
        message_id = await supervisor.send_message(cid, to, str(text))
        logger.debug("send on %s took %.0fms", cid, (time.perf_counter() - t0) * 1000)
        return JSONResponse(
            status_code=200,
            content={"success": True, "message": MSG_SENT, "to": to, "id": message_id, "timestamp": _now_iso()},
        )

    @app.post("/sendMedia", dependencies=protected)
    async def send_media(request: Request, cid: str = Depends(channel_id)) -> JSONResponse:
        try:
            body = await _json_body(request)
        except ValueError:
            return _fail(400, MSG_INVALID_JSON)
        to = str(body.get("to") or "").strip()
        if not to:
            return _fail(400, MSG_MISSING_TO)
        # Refuse early so a large download is not wasted on a channel that cannot send
        ch = supervisor.get_channel(cid)
        if ch is None or not ch.connected:
            raise NotConnected(cid, ch.status.value if ch else ChannelStatus.UNINITIALIZED.value)
        media = await load_media(
            media_url=body.get("mediaUrl"),
            media_base64=body.get("mediaBase64"),
            mimetype=body.get("mimeType") or body.get("mimetype"),
            filename=body.get("filename"),
        )
        message_id = await supervisor.send_media(cid, to, media, body.get("caption"))
        return JSONResponse(
            status_code=200,
            content={"success": True, "message": MSG_SENT, "to": to, "id": message_id, "timestamp": _now_iso()},
        )

    # ------------------------------------------------------------------ diagnostics

    @app.get("/debug/chrome", dependencies=protected)
    async def debug_chrome() -> Dict[str, Any]:
        """Executable resolution report: env overrides, cache directories, candidates checked."""
        return {"success": True, "timestamp": _now_iso(), **resolver.diagnostics()}

    return app


def build_supervisor(config: dict, metrics=None) -> ChannelSupervisor:
    """Supervisor wired to the Playwright connection factory from config sections."""
    from wagate.config.settings import get_backoff_config, get_browser_config, get_channels_config, get_session_config
    from wagate.connector.whatsapp_web import make_connection_factory
    from wagate.engine.backoff import BackoffPolicy

    browser_cfg = get_browser_config(config)
    channels_cfg = get_channels_config(config)
    resolver = ExecutableResolver.from_config(browser_cfg)
    return ChannelSupervisor(
        make_connection_factory(browser_cfg, resolver),
        backoff=BackoffPolicy.from_config(get_backoff_config(config)),
        session_root=get_session_config(config)["data_dir"],
        qr_poll_interval_ms=channels_cfg["qr_poll_interval_ms"],
        status_refresh_timeout_sec=channels_cfg["status_refresh_timeout_sec"],
        metrics=metrics,
    )


def run_server(config: dict) -> None:
    """Start the API server (host/port from config; PORT/HOST env override). Blocks until stopped."""
    import uvicorn

    from wagate.config.settings import get_browser_config, get_channels_config, get_server_config
    from wagate.core.metrics import get_metrics

    server_cfg = get_server_config(config)
    channels_cfg = get_channels_config(config)
    supervisor = build_supervisor(config, metrics=get_metrics())
    app = create_app(
        supervisor,
        resolver=ExecutableResolver.from_config(get_browser_config(config)),
        default_channel=channels_cfg["default"],
        api_token=server_cfg["api_token"],
        qr_wait_ms=channels_cfg["qr_wait_ms"],
        cors_origins=server_cfg["cors_origins"],
        eager_channels=channels_cfg["eager"],
    )
    host = server_cfg["host"]
    port = server_cfg["port"]
    logger.info("API server on %s:%s (default channel=%s)", host, port, channels_cfg["default"])
    uvicorn.run(app, host=host, port=int(port), log_level="info")
