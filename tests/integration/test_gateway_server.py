"""
Integration tests for GatewayServer.

These tests verify the gateway protocol end to end:
- Dispatch of every message type, including error envelopes
- A real WebSocket listener on an ephemeral port
- The HTTP health/info side channel
- Lifecycle (bind failure, idempotent stop, session cleanup)

The browser is replaced by a mocked launcher and upstream HTTP by
httpx.MockTransport, so no Chromium or network access is needed.
"""

import base64
import json
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from websockets.asyncio.client import connect

from core.browser_sessions import BrowserHandle, BrowserLauncher, BrowserSessionManager
from core.config_loader import AppConfig, SearchSettings
from core.exceptions import GatewayError
from core.search_pipeline import SearchPipeline
from gateway_server import SERVER_VERSION, GatewayServer

PAGE_TEXT = "Example Domain " * 1000


class MockLauncher(BrowserLauncher):
    """Launcher handing out mocked browser handles."""

    def __init__(self) -> None:
        self.released: List[BrowserHandle] = []
        self.closed = False

    async def launch(self) -> BrowserHandle:
        page = MagicMock()
        page.goto = AsyncMock()
        page.evaluate = AsyncMock(return_value=PAGE_TEXT)
        page.content = AsyncMock(return_value="<html></html>")
        page.screenshot = AsyncMock(return_value=b"\x89PNG\r\n")
        return BrowserHandle(browser=MagicMock(), context=MagicMock(), page=page)

    async def release(self, handle: BrowserHandle) -> None:
        self.released.append(handle)

    async def close(self) -> None:
        self.closed = True


def upstream(request: httpx.Request) -> httpx.Response:
    if request.url.host == "reader.example":
        return httpx.Response(200, content=b"Extracted article body text.")
    body = {
        "results": [
            {"title": "Python", "url": "https://python.org/", "content": "Official site"},
            {"title": "Docs", "url": "https://docs.python.org/", "content": "Documentation"},
        ]
    }
    return httpx.Response(200, content=json.dumps(body).encode())


def make_config(browser_enabled: bool = True, search_enabled: bool = True) -> AppConfig:
    config = AppConfig()
    config.gateway.port = 0
    config.browser.enabled = browser_enabled
    config.resources.max_browser_sessions = 2
    config.search = SearchSettings(
        enabled=search_enabled,
        instances=["https://searx.example"],
        reader_url="https://reader.example/",
    )
    return config


def make_server(
    config: Optional[AppConfig] = None, launcher: Optional[MockLauncher] = None
) -> GatewayServer:
    config = config or make_config()
    manager = None
    if config.browser.enabled:
        manager = BrowserSessionManager(
            config.browser,
            max_sessions=config.resources.max_browser_sessions,
            launcher=launcher or MockLauncher(),
        )
    pipeline = SearchPipeline(config.search, transport=httpx.MockTransport(upstream))
    return GatewayServer(config, browser_manager=manager, search_pipeline=pipeline)


class TestGatewayDispatch:
    """Dispatch-level tests (no socket)."""

    async def _send(self, server: GatewayServer, message: Dict[str, Any]) -> Dict[str, Any]:
        return await server.dispatch(json.dumps(message))

    @pytest.mark.asyncio
    async def test_ping(self) -> None:
        server = make_server()
        assert await self._send(server, {"type": "ping", "id": "p1"}) == {"type": "pong", "id": "p1"}

    @pytest.mark.asyncio
    async def test_browser_lifecycle(self) -> None:
        launcher = MockLauncher()
        server = make_server(launcher=launcher)

        created = await self._send(server, {"type": "browser.create", "id": 1})
        assert created["type"] == "browser.created"
        assert created["id"] == 1
        session_id = created["payload"]["sessionId"]

        navigated = await self._send(
            server,
            {"type": "browser.navigate", "id": 2, "payload": {"sessionId": session_id, "url": "https://example.com"}},
        )
        assert navigated == {"type": "browser.navigated", "id": 2, "payload": {"success": True}}

        content = await self._send(
            server, {"type": "browser.content", "id": 3, "payload": {"sessionId": session_id}}
        )
        assert content["type"] == "browser.content"
        assert len(content["payload"]["content"]) == 5000
        assert content["payload"]["content"] == PAGE_TEXT[:5000]

        screenshot = await self._send(
            server, {"type": "browser.screenshot", "id": 4, "payload": {"sessionId": session_id}}
        )
        assert screenshot["payload"]["format"] == "png"
        assert base64.b64decode(screenshot["payload"]["data"]) == b"\x89PNG\r\n"

        listed = await self._send(server, {"type": "browser.list", "id": 5})
        assert listed == {"type": "browser.sessions", "id": 5, "payload": {"sessions": [session_id]}}

        closed = await self._send(
            server, {"type": "browser.close", "id": 6, "payload": {"sessionId": session_id}}
        )
        assert closed == {"type": "browser.closed", "id": 6, "payload": {"success": True}}

        closed_again = await self._send(
            server, {"type": "browser.close", "id": 7, "payload": {"sessionId": session_id}}
        )
        assert closed_again == {"type": "browser.closed", "id": 7, "payload": {"success": True}}
        assert len(launcher.released) == 1

    @pytest.mark.asyncio
    async def test_browser_disabled(self) -> None:
        server = make_server(make_config(browser_enabled=False))

        response = await self._send(server, {"type": "browser.create", "id": 9})

        assert response == {"type": "error", "id": 9, "error": "Browser service is disabled"}
        assert server.health_payload()["browser"] == "disabled"

    @pytest.mark.asyncio
    async def test_session_cap_error(self) -> None:
        server = make_server()
        await self._send(server, {"type": "browser.create", "id": 1})
        await self._send(server, {"type": "browser.create", "id": 2})

        response = await self._send(server, {"type": "browser.create", "id": 3})

        assert response == {"type": "error", "id": 3, "error": "Maximum browser sessions reached (2)"}

    @pytest.mark.asyncio
    async def test_unknown_session(self) -> None:
        server = make_server()

        response = await self._send(
            server,
            {"type": "browser.navigate", "id": "n", "payload": {"sessionId": "ghost", "url": "https://x.example"}},
        )

        assert response == {"type": "error", "id": "n", "error": "Session not found: ghost"}

    @pytest.mark.asyncio
    async def test_unsafe_navigation_rejected(self) -> None:
        server = make_server()
        created = await self._send(server, {"type": "browser.create", "id": 1})
        session_id = created["payload"]["sessionId"]

        response = await self._send(
            server,
            {"type": "browser.navigate", "id": 2, "payload": {"sessionId": session_id, "url": "javascript:alert(1)"}},
        )

        assert response == {
            "type": "error",
            "id": 2,
            "error": "Refusing to navigate to unsafe URL: javascript:alert(1)",
        }
        server.browser_manager.get_session(session_id).handle.page.goto.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_type(self) -> None:
        server = make_server()

        response = await self._send(server, {"type": "browser.teleport", "id": 11})

        assert response == {"type": "error", "id": 11, "error": "Unknown message type: browser.teleport"}

    @pytest.mark.asyncio
    async def test_malformed_frame(self) -> None:
        server = make_server()

        assert await server.dispatch("{not json") == {"type": "error", "error": "Invalid message format"}
        assert await server.dispatch('{"id": 4}') == {
            "type": "error",
            "id": 4,
            "error": "Invalid message format",
        }

    @pytest.mark.asyncio
    async def test_missing_parameter(self) -> None:
        server = make_server()

        response = await self._send(server, {"type": "browser.content", "id": 12, "payload": {}})

        assert response == {"type": "error", "id": 12, "error": "Missing required parameter: sessionId"}

    @pytest.mark.asyncio
    async def test_non_finite_timeout(self) -> None:
        server = make_server()

        response = await server.dispatch(
            '{"type": "browser.navigate", "id": 13, '
            '"payload": {"sessionId": "s1", "url": "https://x.example", "timeout": Infinity}}'
        )

        assert response == {"type": "error", "id": 13, "error": "Parameter timeout must be a number"}

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_envelope(self) -> None:
        server = make_server()
        created = await self._send(server, {"type": "browser.create", "id": 1})
        session_id = created["payload"]["sessionId"]
        session = server.browser_manager.get_session(session_id)
        session.handle.page.goto.side_effect = RuntimeError("net::ERR_NAME_NOT_RESOLVED")

        response = await self._send(
            server,
            {"type": "browser.navigate", "id": 2, "payload": {"sessionId": session_id, "url": "https://nx.example"}},
        )

        assert response == {"type": "error", "id": 2, "error": "net::ERR_NAME_NOT_RESOLVED"}

    @pytest.mark.asyncio
    async def test_search(self) -> None:
        server = make_server()

        response = await self._send(
            server, {"type": "search", "id": "s", "payload": {"query": "python", "count": 2}}
        )

        assert response["type"] == "search.results"
        assert response["id"] == "s"
        payload = response["payload"]
        assert payload["count"] == 2
        assert payload["externalContent"]["untrusted"] is True
        assert "Extracted article body text." in payload["results"][0]["content"]

        again = await self._send(
            server, {"type": "search", "id": "t", "payload": {"query": "Python", "count": 2}}
        )
        assert again["payload"]["cached"] is True

    @pytest.mark.asyncio
    async def test_search_disabled(self) -> None:
        server = make_server(make_config(search_enabled=False))

        response = await self._send(server, {"type": "search", "id": 1, "payload": {"query": "python"}})

        assert response == {"type": "error", "id": 1, "error": "Search service is disabled"}

    def test_builds_components_from_config(self) -> None:
        server = GatewayServer(make_config(browser_enabled=False))

        assert server.browser_manager is None
        assert server.search_pipeline is not None
        assert not server.browser_enabled


class TestGatewayServer:
    """Tests against a live listener."""

    @pytest.fixture
    async def server(self) -> GatewayServer:
        """Start a gateway on an ephemeral port."""
        server = make_server()
        await server.start()
        yield server
        await server.stop()

    @pytest.mark.asyncio
    async def test_websocket_round_trip(self, server: GatewayServer) -> None:
        async with connect(f"ws://127.0.0.1:{server.port}/ws") as ws:
            welcome = json.loads(await ws.recv())
            assert welcome["type"] == "connected"

            await ws.send(json.dumps({"type": "ping", "id": 42}))
            assert json.loads(await ws.recv()) == {"type": "pong", "id": 42}

            await ws.send("garbage")
            assert json.loads(await ws.recv()) == {"type": "error", "error": "Invalid message format"}

            # Application errors keep the connection open
            await ws.send(json.dumps({"type": "ping", "id": 43}))
            assert json.loads(await ws.recv()) == {"type": "pong", "id": 43}

    @pytest.mark.asyncio
    async def test_concurrent_requests_correlated_by_id(self, server: GatewayServer) -> None:
        async with connect(f"ws://127.0.0.1:{server.port}/ws") as ws:
            await ws.recv()

            for i in range(5):
                await ws.send(json.dumps({"type": "ping", "id": i}))
            replies = [json.loads(await ws.recv()) for _ in range(5)]

        assert sorted(reply["id"] for reply in replies) == [0, 1, 2, 3, 4]
        assert all(reply["type"] == "pong" for reply in replies)

    @pytest.mark.asyncio
    async def test_health_endpoint(self, server: GatewayServer) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://127.0.0.1:{server.port}/health")

        assert response.status_code == 200
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"] == SERVER_VERSION
        assert body["browser"] == "enabled"
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_info_endpoint(self, server: GatewayServer) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://127.0.0.1:{server.port}/anything")

        assert response.status_code == 200
        assert response.json() == {
            "name": "Mobile Gateway",
            "version": SERVER_VERSION,
            "status": "running",
        }

    @pytest.mark.asyncio
    async def test_bind_failure(self, server: GatewayServer) -> None:
        config = make_config()
        config.gateway.port = server.port
        other = make_server(config)

        with pytest.raises(GatewayError, match="Failed to bind"):
            await other.start()
        await other.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_sessions(self) -> None:
        launcher = MockLauncher()
        server = make_server(launcher=launcher)
        await server.start()

        async with connect(f"ws://127.0.0.1:{server.port}/ws") as ws:
            await ws.recv()
            await ws.send(json.dumps({"type": "browser.create", "id": 1}))
            created = json.loads(await ws.recv())
            assert created["type"] == "browser.created"

        await server.stop()
        await server.stop()

        assert server.port is None
        assert len(launcher.released) == 1
        assert launcher.closed
        assert server.browser_manager.list_sessions() == []

    @pytest.mark.asyncio
    async def test_stop_before_start_keeps_gateway_usable(self) -> None:
        launcher = MockLauncher()
        server = make_server(launcher=launcher)

        await server.stop()
        assert not launcher.closed

        await server.start()
        try:
            created = await server.dispatch(json.dumps({"type": "browser.create", "id": 1}))
            assert created["type"] == "browser.created"
        finally:
            await server.stop()

        assert launcher.closed
