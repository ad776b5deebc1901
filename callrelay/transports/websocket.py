"""WebSocket transport for callrelay.

Provides the client (outbound) transport on the ``websockets`` library and
an ``aiohttp`` server for inbound connections. The server answers HTTP
requests (the Twilio incoming-call webhook) on the **same** port as the
media stream endpoint.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import aiohttp
import aiohttp.web as aioweb
import websockets.asyncio.client
from loguru import logger
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from callrelay.errors import LinkClosedError
from callrelay.transports.base import BaseTransport

ConnectionHandler = Callable[["WebSocketServerTransport"], Awaitable[None]]
# Returns (status, content_type, body)
HTTPHandler = Callable[[aioweb.Request], Awaitable[tuple[int, str, str]]]


def _is_open(ws: Any) -> bool:
    return ws is not None and ws.state is State.OPEN


class WebSocketClientTransport(BaseTransport):
    """WebSocket client transport for connecting to a remote endpoint.

    Used for the Realtime API connection: callrelay connects as a client
    and presents the credential in ``headers`` on the upgrade request.
    """

    def __init__(
        self,
        url: str | None = None,
        headers: dict[str, str] | None = None,
        **ws_kwargs: Any,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._ws: Any | None = None
        self._ws_kwargs = ws_kwargs

    async def connect(self, **kwargs) -> None:
        url = kwargs.get("url", self._url)
        if not url:
            raise ValueError("WebSocket URL is required")
        self._url = url
        logger.info(f"Connecting to WebSocket: {url}")
        self._ws = await websockets.asyncio.client.connect(
            url,
            additional_headers=self._headers,
            **self._ws_kwargs,
        )
        logger.info(f"Connected to {url}")

    async def send(self, data: bytes | str) -> None:
        if not self._ws:
            raise LinkClosedError("Not connected")
        await self._ws.send(data)

    async def recv(self) -> bytes | str:
        if not self._ws:
            raise LinkClosedError("Not connected")
        return await self._ws.recv()

    async def disconnect(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None
            logger.info("WebSocket client disconnected")

    def is_connected(self) -> bool:
        return _is_open(self._ws)


class WebSocketServerTransport(BaseTransport):
    """WebSocket server transport that wraps an already-accepted connection.

    Used for the telephony-side connection: Twilio connects to callrelay's
    server, and this transport wraps that accepted WebSocket.
    """

    def __init__(self, websocket: Any = None) -> None:
        self._ws = websocket

    async def connect(self, **kwargs) -> None:
        ws = kwargs.get("websocket")
        if ws:
            self._ws = ws
        if not self._ws:
            raise ValueError("An accepted WebSocket connection is required")
        logger.info("Provider WebSocket connection accepted")

    async def send(self, data: bytes | str) -> None:
        if not self._ws:
            raise LinkClosedError("Not connected")
        await self._ws.send(data)

    async def recv(self) -> bytes | str:
        if not self._ws:
            raise LinkClosedError("Not connected")
        return await self._ws.recv()

    async def disconnect(self) -> None:
        if self._ws:
            try:
                await self._ws.close()
            except ConnectionClosed:
                pass
            self._ws = None
            logger.info("Provider WebSocket disconnected")

    def is_connected(self) -> bool:
        return _is_open(self._ws)


class WebSocketServer:
    """aiohttp server that accepts telephony connections.

    WebSocket upgrades on ``path`` are dispatched to a handler callback,
    which receives a ``WebSocketServerTransport`` wrapping the accepted
    connection. Plain HTTP requests on any path go to ``http_handler`` so
    the TwiML webhook and the media stream share one port (and one ngrok
    tunnel).

    Usage:
        async def on_connection(transport: WebSocketServerTransport):
            ...

        server = WebSocketServer(host="0.0.0.0", port=5050, handler=on_connection)
        await server.start()
        # ... later
        await server.stop()
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 5050,
        path: str = "/",
        handler: ConnectionHandler | None = None,
        http_handler: HTTPHandler | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.path = path
        self._handler = handler
        self._http_handler = http_handler
        self._runner: aioweb.AppRunner | None = None

    def _path_allowed(self, request_path: str) -> bool:
        if not self.path or self.path == "/":
            return True
        return request_path.split("?", 1)[0] == self.path

    async def _dispatch(self, transport: WebSocketServerTransport) -> None:
        if self._handler is None:
            logger.warning("No handler registered for incoming connections")
            return
        try:
            await self._handler(transport)
        except Exception as e:
            logger.error(f"Handler error: {e}")

    async def _ws_handler(self, request: aioweb.Request) -> aioweb.WebSocketResponse:
        """Handle WebSocket upgrade requests."""
        ws = aioweb.WebSocketResponse()
        await ws.prepare(request)

        if not self._path_allowed(request.path):
            logger.warning(f"Rejected connection to {request.path} (expected {self.path})")
            await ws.close()
            return ws

        # Wrap aiohttp WS in a shim so the server transport can use it
        shim = _AiohttpWebSocketShim(ws)
        await self._dispatch(WebSocketServerTransport(websocket=shim))
        return ws

    async def _http_handler_wrapper(self, request: aioweb.Request) -> aioweb.Response:
        """Handle plain HTTP requests via the user-supplied http_handler."""
        if self._http_handler:
            try:
                status, content_type, body = await self._http_handler(request)
                return aioweb.Response(
                    status=status,
                    text=body,
                    content_type=content_type,
                )
            except Exception as e:
                logger.error(f"HTTP handler error: {e}")
                return aioweb.Response(status=500, text="Internal Server Error")
        return aioweb.Response(status=404, text="Not Found")

    async def _route_handler(self, request: aioweb.Request) -> aioweb.StreamResponse:
        """Route handler: upgrade to WS if requested, else serve HTTP."""
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return await self._ws_handler(request)
        return await self._http_handler_wrapper(request)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the server."""
        logger.info(f"Starting HTTP+WS server on {self.host}:{self.port}{self.path}")
        app = aioweb.Application()
        app.router.add_route("*", "/{path_info:.*}", self._route_handler)

        self._runner = aioweb.AppRunner(app)
        await self._runner.setup()
        site = aioweb.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Server listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Server stopped")

    async def serve_forever(self) -> None:
        """Start and run the server until cancelled."""
        await self.start()
        try:
            await asyncio.Future()  # Run forever
        finally:
            await self.stop()


class _AiohttpWebSocketShim:
    """Thin shim that makes an ``aiohttp.WebSocketResponse`` look like a
    ``websockets`` server connection so that :class:`WebSocketServerTransport`
    can use it unchanged.
    """

    def __init__(self, ws: aioweb.WebSocketResponse) -> None:
        self._ws = ws
        self.state = State.OPEN

    async def send(self, data: bytes | str) -> None:
        if self._ws.closed:
            self.state = State.CLOSED
            raise ConnectionClosed(None, None)
        try:
            if isinstance(data, bytes):
                await self._ws.send_bytes(data)
            else:
                await self._ws.send_str(data)
        except ConnectionResetError as e:
            self.state = State.CLOSED
            raise ConnectionClosed(None, None) from e

    async def recv(self) -> bytes | str:
        msg = await self._ws.receive()
        if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
            return msg.data
        self.state = State.CLOSED
        raise ConnectionClosed(None, None)

    async def close(self) -> None:
        self.state = State.CLOSED
        await self._ws.close()
