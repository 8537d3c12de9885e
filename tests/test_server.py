"""HTTP API tests: FastAPI app over an in-memory supervisor (httpx ASGITransport / TestClient)."""

import asyncio
import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from fakes import settle
from wagate.connector.executable import ExecutableResolver
from wagate.fsm.events import ConnectionEvent
from wagate.server.app import AVAILABLE_ENDPOINTS, create_app

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def _app(supervisor, **kwargs):
    resolver = ExecutableResolver(overrides=[], cache_dirs=[], which=lambda name: None, well_known=[])
    kwargs.setdefault("default_channel", "3000")
    kwargs.setdefault("qr_wait_ms", 100)
    return create_app(supervisor, resolver=resolver, **kwargs)


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


async def _connect(supervisor, fake_factory, channel_id: str = "3000"):
    supervisor.start_channel(channel_id)
    await settle()
    conn = fake_factory.last(channel_id)
    conn.emit(ConnectionEvent.qr("ABC123"))
    conn.emit(ConnectionEvent.ready())
    return conn


class TestHealthAndStatus:
    @pytest.mark.asyncio
    async def test_health(self, supervisor, fake_factory):
        async with _client(_app(supervisor)) as client:
            for path in ("/health", "/"):
                r = await client.get(path)
                assert r.status_code == 200
                body = r.json()
                assert body["success"] is True
                assert body["status"] == "OK"
                assert body["connected"] is False
                assert body["initializing"] is False
                assert body["channel"]["id"] == "3000"
                assert body["metrics"]["messages_sent"] == 0
                assert "timestamp" in body
        assert fake_factory.created == []

    @pytest.mark.asyncio
    async def test_health_last_state_follows_events(self, supervisor, fake_factory):
        conn = await _connect(supervisor, fake_factory)
        async with _client(_app(supervisor)) as client:
            body = (await client.get("/health")).json()
        assert body["connected"] is True
        assert body["lastState"] == "CONNECTED"
        assert "get_state" not in conn.calls
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_status_reports_retry_count(self, supervisor, fake_factory):
        conn = await _connect(supervisor, fake_factory)
        conn.emit(ConnectionEvent.disconnected("NAVIGATION"))
        async with _client(_app(supervisor)) as client:
            r = await client.get("/status")
        body = r.json()
        assert body["success"] is True
        assert body["status"] == "DISCONNECTED"
        assert body["connected"] is False
        assert body["retryCount"] == 1
        assert body["lastError"] == "NAVIGATION"
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_port_query_selects_channel(self, supervisor, fake_factory):
        await _connect(supervisor, fake_factory, "3001")
        async with _client(_app(supervisor)) as client:
            default = (await client.get("/status")).json()
            other = (await client.get("/status", params={"port": "3001"})).json()
        assert default["connected"] is False
        assert other["connected"] is True

    @pytest.mark.asyncio
    async def test_test_endpoint(self, supervisor):
        async with _client(_app(supervisor)) as client:
            r = await client.get("/test")
        assert r.json()["message"] == "Conexão WhatsApp OK"


class TestConnectAndPairing:
    @pytest.mark.asyncio
    async def test_connect_starts_once(self, supervisor, fake_factory):
        async with _client(_app(supervisor)) as client:
            first = await client.post("/connect")
            second = await client.get("/connect")
        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["message"] == "Canal conectado com sucesso"
        assert first.json()["started"] is True
        assert second.json()["started"] is False
        assert len(fake_factory.created) == 1

    @pytest.mark.asyncio
    async def test_qr_waits_for_code(self, supervisor, fake_factory):
        supervisor.start_channel("3000")
        await settle()
        conn = fake_factory.last("3000")
        asyncio.get_running_loop().call_later(0.02, conn.emit, ConnectionEvent.qr("ABC123"))
        async with _client(_app(supervisor, qr_wait_ms=1000)) as client:
            r = await client.get("/qr")
        body = r.json()
        assert body["success"] is True
        assert body["qr"] == "ABC123"
        assert body["connected"] is False

    @pytest.mark.asyncio
    async def test_qr_starts_channel_and_reports_unavailable(self, supervisor, fake_factory):
        async with _client(_app(supervisor)) as client:
            r = await client.get("/qr")
        assert r.status_code == 200
        assert r.json()["qr"] == "QR code não disponível"
        assert len(fake_factory.created) == 1

    @pytest.mark.asyncio
    async def test_qr_when_connected_does_not_wait(self, supervisor, fake_factory):
        await _connect(supervisor, fake_factory)
        async with _client(_app(supervisor, qr_wait_ms=5000)) as client:
            r = await asyncio.wait_for(client.get("/qr"), timeout=2.0)
        assert r.json()["connected"] is True
        assert r.json()["qr"] == "QR code não disponível"

    @pytest.mark.asyncio
    async def test_qr_png(self, supervisor, fake_factory):
        supervisor.start_channel("3000")
        await settle()
        fake_factory.last("3000").emit(ConnectionEvent.qr("2@abc,def,ghi"))
        async with _client(_app(supervisor)) as client:
            r = await client.get("/qr.png")
        assert r.status_code == 200
        assert r.headers["content-type"] == "image/png"
        assert r.content.startswith(PNG_SIGNATURE)

    @pytest.mark.asyncio
    async def test_qr_png_unavailable(self, supervisor):
        async with _client(_app(supervisor)) as client:
            r = await client.get("/qr.png")
        assert r.status_code == 404
        assert r.headers["content-type"].startswith("text/plain")


class TestSend:
    @pytest.mark.asyncio
    async def test_send_while_connected(self, supervisor, fake_factory):
        conn = await _connect(supervisor, fake_factory)
        async with _client(_app(supervisor)) as client:
            r = await client.post("/send", json={"to": "5511999990000@c.us", "message": "Olá"})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["message"] == "Mensagem enviada com sucesso"
        assert body["to"] == "5511999990000@c.us"
        assert body["id"]
        assert ("send_message", "5511999990000@c.us", "Olá") in conn.calls

    @pytest.mark.asyncio
    async def test_send_while_disconnected(self, supervisor, fake_factory):
        conn = await _connect(supervisor, fake_factory)
        conn.emit(ConnectionEvent.disconnected("NAVIGATION"))
        async with _client(_app(supervisor)) as client:
            r = await client.post("/send", json={"to": "5511999990000@c.us", "message": "Olá"})
        assert r.status_code == 400
        assert r.json()["success"] is False
        assert r.json()["error"] == "WhatsApp não está conectado"
        assert not any(isinstance(c, tuple) for c in conn.calls)
        await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_send_text_alias_and_port(self, supervisor, fake_factory):
        conn = await _connect(supervisor, fake_factory, "3001")
        async with _client(_app(supervisor)) as client:
            r = await client.post("/send?port=3001", json={"to": "5511@c.us", "text": "hi"})
        assert r.status_code == 200
        assert ("send_message", "5511@c.us", "hi") in conn.calls

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"to": "5511@c.us"}, {"message": "hi"}, {"to": "", "message": "hi"}])
    async def test_send_missing_fields(self, supervisor, payload):
        async with _client(_app(supervisor)) as client:
            r = await client.post("/send", json=payload)
        assert r.status_code == 400
        assert r.json()["success"] is False

    @pytest.mark.asyncio
    async def test_send_invalid_json(self, supervisor):
        async with _client(_app(supervisor)) as client:
            r = await client.post("/send", content=b"{not json", headers={"Content-Type": "application/json"})
        assert r.status_code == 400
        assert r.json()["error"] == "Corpo JSON inválido"

    @pytest.mark.asyncio
    async def test_send_delivery_error(self, supervisor, fake_factory):
        conn = await _connect(supervisor, fake_factory)
        conn.fail_send = RuntimeError("chat not found")
        async with _client(_app(supervisor)) as client:
            r = await client.post("/send", json={"to": "5511@c.us", "message": "hi"})
        assert r.status_code == 500
        assert r.json() == {"success": False, "error": "chat not found"}

    @pytest.mark.asyncio
    async def test_send_method_not_allowed(self, supervisor):
        async with _client(_app(supervisor)) as client:
            r = await client.get("/send")
        assert r.status_code == 405
        assert r.json()["success"] is False


class TestSendMedia:
    @pytest.mark.asyncio
    async def test_send_media_base64(self, supervisor, fake_factory):
        conn = await _connect(supervisor, fake_factory)
        payload = {
            "to": "5511@c.us",
            "mediaBase64": base64.b64encode(PNG_SIGNATURE + b"rest").decode(),
            "mimeType": "image/png",
            "filename": "x.png",
            "caption": "legenda",
        }
        async with _client(_app(supervisor)) as client:
            r = await client.post("/sendMedia", json=payload)
        assert r.status_code == 200
        assert r.json()["success"] is True
        assert ("send_media", "5511@c.us", "image/png", 12, "legenda") in conn.calls

    @pytest.mark.asyncio
    async def test_send_media_not_connected(self, supervisor):
        async with _client(_app(supervisor)) as client:
            r = await client.post("/sendMedia", json={"to": "5511@c.us", "mediaBase64": "AAAA"})
        assert r.status_code == 400
        assert r.json()["error"] == "WhatsApp não está conectado"

    @pytest.mark.asyncio
    async def test_send_media_bad_payload(self, supervisor, fake_factory):
        await _connect(supervisor, fake_factory)
        async with _client(_app(supervisor)) as client:
            missing = await client.post("/sendMedia", json={"to": "5511@c.us"})
            bad = await client.post("/sendMedia", json={"to": "5511@c.us", "mediaBase64": "!!!"})
        assert missing.status_code == 400
        assert bad.status_code == 400
        assert bad.json()["success"] is False


class TestSessionAndDiagnostics:
    @pytest.mark.asyncio
    async def test_logout_and_reset(self, supervisor, fake_factory):
        first = await _connect(supervisor, fake_factory)
        async with _client(_app(supervisor)) as client:
            r = await client.post("/logout")
            assert r.status_code == 200
            assert r.json()["status"] == "INITIALIZING"
            r = await client.get("/session/reset")
            assert r.status_code == 200
        assert first.logged_out is True
        assert len(fake_factory.created) == 3

    @pytest.mark.asyncio
    async def test_debug_chrome(self, supervisor):
        async with _client(_app(supervisor)) as client:
            r = await client.get("/debug/chrome")
        body = r.json()
        assert body["success"] is True
        assert body["resolved"] is None
        assert "CHROME_BIN" in body["env"]
        assert body["candidates"] == []

    @pytest.mark.asyncio
    async def test_unknown_endpoint(self, supervisor):
        async with _client(_app(supervisor)) as client:
            r = await client.get("/nope")
        assert r.status_code == 404
        body = r.json()
        assert body["success"] is False
        assert body["error"] == "Endpoint não encontrado"
        assert body["available_endpoints"] == AVAILABLE_ENDPOINTS


class TestAuthAndCors:
    @pytest.mark.asyncio
    async def test_token_required_when_configured(self, supervisor):
        async with _client(_app(supervisor, api_token="s3cret")) as client:
            assert (await client.get("/status")).status_code == 401
            assert (await client.get("/status", headers={"Authorization": "Bearer wrong"})).status_code == 401
            assert (await client.get("/status", headers={"Authorization": "Bearer s3cret"})).status_code == 200
            assert (await client.get("/status", headers={"X-API-Token": "s3cret"})).status_code == 200
            assert (await client.get("/health")).status_code == 200
            r = await client.post("/send", json={"to": "5511@c.us", "message": "hi"})
        assert r.status_code == 401
        assert r.json()["success"] is False

    @pytest.mark.asyncio
    async def test_cors_preflight(self, supervisor):
        async with _client(_app(supervisor)) as client:
            r = await client.options(
                "/send",
                headers={"Origin": "https://app.example.com", "Access-Control-Request-Method": "POST"},
            )
        assert r.status_code == 200
        assert r.headers["access-control-allow-origin"] == "*"
        assert "POST" in r.headers["access-control-allow-methods"]


class TestLifespan:
    def test_eager_channels_started_and_destroyed(self, supervisor, fake_factory):
        app = _app(supervisor, eager_channels=["3001"])
        with TestClient(app) as client:
            r = client.get("/health", params={"port": "3001"})
            assert r.status_code == 200
            assert r.json()["channel"]["has_connection"] is True
        assert [c.channel_id for c in fake_factory.created] == ["3001"]
        assert fake_factory.created[0].destroyed is True
