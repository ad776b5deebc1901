"""FastAPI server for callrelay.

Serves the incoming-call TwiML webhook and the Twilio Media Stream
WebSocket on one ASGI app, plus status and health endpoints.

Requires: pip install callrelay[server]
"""

from typing import Any

from loguru import logger
from websockets.exceptions import ConnectionClosed

from callrelay.bridge import RealtimeBridge
from callrelay.config import RelayConfig, load_config
from callrelay.errors import LinkClosedError
from callrelay.transports.base import BaseTransport


def _fastapi_available() -> bool:
    try:
        import fastapi  # noqa: F401
        import uvicorn  # noqa: F401
        return True
    except ImportError:
        return False


def create_app(config: RelayConfig | dict | str | None = None, bridge: RealtimeBridge | None = None) -> Any:
    """Create a FastAPI application with the call-setup and stream endpoints.

    Args:
        config: Relay configuration (YAML path, dict, or RelayConfig).
        bridge: An existing bridge to serve; built from ``config`` if omitted.

    Returns:
        A FastAPI application instance.

    Requires: pip install callrelay[server]
    """
    if not _fastapi_available():
        raise ImportError(
            "FastAPI server requires fastapi and uvicorn. "
            "Install with: pip install callrelay[server]"
        )

    from fastapi import FastAPI, Request, WebSocket
    from fastapi.responses import JSONResponse, Response

    if bridge is None:
        bridge = RealtimeBridge(load_config(config))
    relay_config = bridge.config

    app = FastAPI(
        title="callrelay",
        description="Twilio Media Streams to OpenAI Realtime API bridge",
        version="0.1.0",
    )

    @app.get("/")
    async def index():
        return JSONResponse({"message": "Twilio Media Stream Server is running!"})

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok", "active_calls": bridge.sessions.active_count})

    @app.get("/status")
    async def status():
        sessions = []
        for s in bridge.sessions.all_sessions:
            sessions.append({
                "session_id": s.session_id,
                "stream_sid": s.stream_sid,
                "call_sid": s.call_sid,
                "is_active": s.is_active,
                "duration_ms": s.duration_ms,
                "pending_marks": len(s.mark_queue),
            })
        return JSONResponse({
            "model": relay_config.realtime.model,
            "voice": relay_config.realtime.voice,
            "active_calls": bridge.sessions.active_count,
            "sessions": sessions,
        })

    @app.api_route(relay_config.server.incoming_call_path, methods=["GET", "POST"])
    async def incoming_call(request: Request):
        host = request.headers.get("host", request.url.hostname or "")
        return Response(content=bridge.incoming_call_twiml(host), media_type="text/xml")

    @app.websocket(relay_config.server.stream_path)
    async def media_stream(websocket: WebSocket):
        await websocket.accept()
        logger.info(f"Provider WebSocket connected: {websocket.client}")
        await bridge.handle_telephony_connection(_FastAPIWebSocketAdapter(websocket))

    return app


class _FastAPIWebSocketAdapter(BaseTransport):
    """Adapter to make FastAPI's WebSocket work with the transport interface."""

    def __init__(self, ws) -> None:
        self._ws = ws
        self._connected = True

    async def connect(self, **kwargs) -> None:
        pass  # Already accepted by FastAPI

    async def send(self, data: bytes | str) -> None:
        if not self._connected:
            raise LinkClosedError("Not connected")
        from fastapi import WebSocketDisconnect

        try:
            if isinstance(data, bytes):
                await self._ws.send_bytes(data)
            else:
                await self._ws.send_text(data)
        except (WebSocketDisconnect, RuntimeError) as e:
            self._connected = False
            raise LinkClosedError(f"WebSocket send failed: {e}") from e

    async def recv(self) -> bytes | str:
        if not self._connected:
            raise LinkClosedError("Not connected")
        msg = await self._ws.receive()
        if msg["type"] == "websocket.disconnect":
            self._connected = False
            raise LinkClosedError(f"WebSocket closed with code {msg.get('code')}")
        if msg.get("text") is not None:
            return msg["text"]
        if msg.get("bytes") is not None:
            return msg["bytes"]
        raise LinkClosedError(f"Unexpected WebSocket message type: {msg['type']}")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        try:
            await self._ws.close()
        except (RuntimeError, ConnectionClosed):
            pass

    def is_connected(self) -> bool:
        return self._connected


def run_server(config: RelayConfig | dict | str | None = None, host: str | None = None, port: int | None = None) -> None:
    """Run the callrelay server with uvicorn.

    Args:
        config: Relay configuration.
        host: Override the listen host.
        port: Override the listen port.
    """
    if not _fastapi_available():
        raise ImportError(
            "FastAPI server requires fastapi and uvicorn. "
            "Install with: pip install callrelay[server]"
        )

    import uvicorn

    relay_config = load_config(config)
    app = create_app(relay_config)

    uvicorn.run(
        app,
        host=host or relay_config.server.listen_host,
        port=port or relay_config.server.listen_port,
    )
