#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Mobile Gateway Server.

This module implements the local control plane: a WebSocket listener that
routes JSON envelopes to the browser session manager and the search
pipeline, plus a small HTTP side channel (health and info) on the same port.
"""

import asyncio
import base64
import dataclasses
import json
import logging
import signal
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union
from urllib.parse import urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from core.browser_sessions import BrowserSessionManager
from core.config_loader import AppConfig, load_gateway_config, resolve_executable_path
from core.content_guard import MAX_CONTENT_LENGTH
from core.exceptions import GatewayError, MalformedMessage, ServiceDisabled
from core.logger import ROOT_LOGGER_NAME, get_logger, set_verbose, setup_logger
from core.messages import (
    InboundMessage,
    MessageType,
    ResponseType,
    decode_envelope,
    encode,
    error_response,
    parse_message,
    success_response,
)
from core.search_pipeline import SearchPipeline

SERVER_NAME = "Mobile Gateway"
SERVER_VERSION = "mobile-1.0.0"
HEALTH_PATH = "/health"
WELCOME_MESSAGE = "Mobile Gateway connected"
MAX_FRAME_BYTES = 2_000_000

Handler = Callable[[InboundMessage], Awaitable[Dict[str, Any]]]


class GatewayServer:
    """
    WebSocket gateway over a browser session manager and a search pipeline.

    The server holds no cache or session state of its own; it decodes
    envelopes, routes them and owns the connection lifecycle.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        browser_manager: Optional[BrowserSessionManager] = None,
        search_pipeline: Optional[SearchPipeline] = None,
    ) -> None:
        """
        Initialize gateway server.

        Args:
            config: Application configuration (defaults if omitted)
            browser_manager: Session manager (built from config when the
                browser is enabled and none is given)
            search_pipeline: Search pipeline (built from config if omitted)
        """
        self.config = config or AppConfig()
        self.logger = get_logger("mobile_gateway.gateway_server")

        if browser_manager is None and self.config.browser.enabled:
            browser_settings = dataclasses.replace(
                self.config.browser,
                executable_path=resolve_executable_path(self.config.browser.executable_path),
            )
            browser_manager = BrowserSessionManager(
                browser_settings, max_sessions=self.config.resources.max_browser_sessions
            )
        self.browser_manager = browser_manager

        self.search_pipeline = search_pipeline or SearchPipeline(
            self.config.search,
            max_concurrency=self.config.resources.max_search_concurrency,
        )

        self._handlers: Dict[MessageType, Handler] = {
            MessageType.PING: self._handle_ping,
            MessageType.BROWSER_CREATE: self._handle_browser_create,
            MessageType.BROWSER_NAVIGATE: self._handle_browser_navigate,
            MessageType.BROWSER_CONTENT: self._handle_browser_content,
            MessageType.BROWSER_CLOSE: self._handle_browser_close,
            MessageType.BROWSER_SCREENSHOT: self._handle_browser_screenshot,
            MessageType.BROWSER_LIST: self._handle_browser_list,
            MessageType.SEARCH: self._handle_search,
        }
        missing = [t.value for t in MessageType if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler registered for message types: {missing}")

        self._server: Optional[Server] = None
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._running = False

    @property
    def browser_enabled(self) -> bool:
        return self.config.browser.enabled and self.browser_manager is not None

    @property
    def port(self) -> Optional[int]:
        """Port the listener is bound to (None before start)."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self) -> None:
        """
        Bind the listener and start background maintenance.

        Raises:
            GatewayError: If the address cannot be bound (port in use,
                permission denied)
        """
        if self._server is not None:
            return

        host = self.config.gateway.host
        port = self.config.gateway.port

        try:
            self._server = await serve(
                self._handle_connection,
                host,
                port,
                process_request=self._process_request,
                max_size=MAX_FRAME_BYTES,
            )
        except OSError as e:
            raise GatewayError(f"Failed to bind {host}:{port}: {e.strerror or e}") from e

        self.search_pipeline.start()
        self._running = True

        self.logger.info(
            f"Mobile Gateway listening on ws://{host}:{self.port}{self.config.gateway.websocket_path} "
            f"(browser {'enabled' if self.browser_enabled else 'disabled'}, "
            f"search {'enabled' if self.search_pipeline.enabled else 'disabled'})"
        )

    async def stop(self) -> None:
        """
        Close the listener, shut down sessions and release resources.

        Does nothing unless the gateway is running, so it is safe to call
        more than once or before start().
        """
        if not self._running:
            return
        self._running = False

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.browser_manager is not None:
            await self.browser_manager.shutdown()

        await self.search_pipeline.close()
        self.logger.info("Mobile Gateway stopped")

    # HTTP side channel

    def health_payload(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "version": SERVER_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "browser": "enabled" if self.browser_enabled else "disabled",
        }

    def info_payload(self) -> Dict[str, Any]:
        return {"name": SERVER_NAME, "version": SERVER_VERSION, "status": "running"}

    @staticmethod
    def _json_response(status: int, reason: str, payload: Dict[str, Any]) -> Response:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        headers = Headers()
        headers["Content-Type"] = "application/json"
        headers["Content-Length"] = str(len(body))
        headers["Cache-Control"] = "no-store"
        headers["Access-Control-Allow-Origin"] = "*"
        headers["Access-Control-Allow-Methods"] = "GET"
        headers["Access-Control-Allow-Headers"] = "Content-Type"
        return Response(status, reason, headers, body)

    async def _process_request(
        self, connection: ServerConnection, request: Request
    ) -> Optional[Response]:
        """
        Answer plain HTTP requests; let WebSocket upgrades on the ws path through.
        """
        path = urlsplit(request.path).path
        upgrade = str(request.headers.get("Upgrade") or "").lower()

        if upgrade == "websocket":
            if path == self.config.gateway.websocket_path:
                return None
            return self._json_response(404, "Not Found", {"error": f"No WebSocket endpoint at {path}"})

        if path == HEALTH_PATH:
            return self._json_response(200, "OK", self.health_payload())
        return self._json_response(200, "OK", self.info_payload())

    # WebSocket connections

    async def _handle_connection(self, connection: ServerConnection) -> None:
        peer = connection.remote_address
        self.logger.info(f"Client connected: {peer}")

        try:
            await connection.send(
                encode(
                    {"type": ResponseType.CONNECTED.value, "message": WELCOME_MESSAGE}
                )
            )
            async for raw in connection:
                task = asyncio.create_task(self._respond(connection, raw))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except ConnectionClosed:
            pass
        finally:
            self.logger.info(f"Client disconnected: {peer}")

    async def _respond(self, connection: ServerConnection, raw: Union[str, bytes]) -> None:
        response = await self.dispatch(raw)
        try:
            await connection.send(encode(response))
        except ConnectionClosed:
            self.logger.debug(f"Dropped response for closed connection: {response.get('type')}")

    async def dispatch(self, raw: Union[str, bytes]) -> Dict[str, Any]:
        """
        Handle one raw inbound frame and produce exactly one response envelope.

        Application errors become an error envelope carrying the request id
        (omitted when none could be parsed); they never raise.

        Args:
            raw: Raw frame text

        Returns:
            Outbound envelope dictionary
        """
        try:
            envelope = decode_envelope(raw)
        except MalformedMessage as e:
            self.logger.debug(f"Rejected malformed frame: {e}")
            return error_response(None, str(e))

        message_id = envelope.get("id")
        try:
            message = parse_message(envelope)
            self.logger.debug(f"Dispatching {message.type.value} (id={message_id})")
            return await self._handlers[message.type](message)
        except (GatewayError, ValueError) as e:
            self.logger.debug(f"Request {message_id} failed: {e}")
            return error_response(message_id, str(e))
        except Exception as e:
            self.logger.error(f"Unexpected error handling request {message_id}: {e}", exc_info=True)
            return error_response(message_id, str(e) or type(e).__name__)

    # Handlers

    def _require_browser(self) -> BrowserSessionManager:
        if not self.browser_enabled:
            raise ServiceDisabled("Browser service is disabled")
        return self.browser_manager

    async def _handle_ping(self, message: InboundMessage) -> Dict[str, Any]:
        return success_response(ResponseType.PONG, message.id)

    async def _handle_browser_create(self, message: InboundMessage) -> Dict[str, Any]:
        manager = self._require_browser()
        session = await manager.create_session(message.params.session_id)
        return success_response(
            ResponseType.BROWSER_CREATED, message.id, {"sessionId": session.id}
        )

    async def _handle_browser_navigate(self, message: InboundMessage) -> Dict[str, Any]:
        manager = self._require_browser()
        params = message.params
        await manager.navigate(
            params.session_id, params.url, wait_until=params.wait_until, timeout_ms=params.timeout_ms
        )
        return success_response(ResponseType.BROWSER_NAVIGATED, message.id, {"success": True})

    async def _handle_browser_content(self, message: InboundMessage) -> Dict[str, Any]:
        manager = self._require_browser()
        content = await manager.get_text_content(message.params.session_id)
        return success_response(
            ResponseType.BROWSER_CONTENT, message.id, {"content": content[:MAX_CONTENT_LENGTH]}
        )

    async def _handle_browser_close(self, message: InboundMessage) -> Dict[str, Any]:
        manager = self._require_browser()
        await manager.close_session(message.params.session_id)
        return success_response(ResponseType.BROWSER_CLOSED, message.id, {"success": True})

    async def _handle_browser_screenshot(self, message: InboundMessage) -> Dict[str, Any]:
        manager = self._require_browser()
        params = message.params
        image = await manager.screenshot(
            params.session_id, full_page=params.full_page, image_format=params.image_format
        )
        return success_response(
            ResponseType.BROWSER_SCREENSHOT,
            message.id,
            {"data": base64.b64encode(image).decode("ascii"), "format": params.image_format},
        )

    async def _handle_browser_list(self, message: InboundMessage) -> Dict[str, Any]:
        manager = self._require_browser()
        return success_response(
            ResponseType.BROWSER_SESSIONS, message.id, {"sessions": manager.list_sessions()}
        )

    async def _handle_search(self, message: InboundMessage) -> Dict[str, Any]:
        params = message.params
        payload = await self.search_pipeline.search(
            params.query,
            count=params.count,
            language=params.language,
            fetch_content=params.fetch_content,
        )
        return success_response(ResponseType.SEARCH_RESULTS, message.id, payload)


async def main() -> None:
    """Main entry point for the gateway server."""
    setup_logger(name=ROOT_LOGGER_NAME, log_level=logging.INFO)
    logger = get_logger("mobile_gateway.gateway_server")

    config = load_gateway_config()
    if config.gateway.verbose:
        set_verbose(True)

    server = GatewayServer(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; KeyboardInterrupt still stops the loop
            pass

    try:
        await server.start()
        await stop_event.wait()
        logger.info("Shutdown signal received")
    except GatewayError as e:
        logger.error(f"Server error: {e}")
        raise SystemExit(1) from e
    finally:
        await server.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
