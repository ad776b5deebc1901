"""callrelay - Central bridge orchestrator.

The RealtimeBridge class accepts telephony connections and wires each one
to its own Realtime API connection:
- Telephony transport + Twilio serializer (caller side)
- Realtime transport + Realtime serializer (assistant side)
- A BridgeSession holding the per-call playback/interruption state

It runs two receive loops per call:
1. telephony_loop: Twilio -> BridgeSession -> Realtime API
2. realtime_loop:  Realtime API -> BridgeSession -> Twilio

The telephony loop decides the session's lifetime. When it ends the
Realtime link is closed. When the Realtime link ends first the call stays
up until Twilio hangs up; caller audio is simply no longer forwarded.
The Realtime link connects in its own task, so Twilio frames are handled
from the start and caller audio that arrives before it opens is dropped.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Callable

import aiohttp.web as aioweb
from loguru import logger
from websockets.exceptions import ConnectionClosed

from callrelay.config import RelayConfig, load_config
from callrelay.errors import LinkClosedError
from callrelay.session import BridgeSession, SessionStore
from callrelay.transports.base import BaseTransport
from callrelay.transports.websocket import WebSocketClientTransport, WebSocketServer
from callrelay.twiml import build_connect_twiml, stream_url_for

# Builds the (not yet connected) transport for one Realtime API connection
RealtimeTransportFactory = Callable[[RelayConfig], BaseTransport]


def default_realtime_transport(config: RelayConfig) -> BaseTransport:
    return WebSocketClientTransport(
        url=config.realtime.endpoint,
        headers=config.realtime.headers(),
    )


class RealtimeBridge:
    """Bridge between Twilio Media Streams and the OpenAI Realtime API.

    Usage (config-driven):
        bridge = RealtimeBridge("relay.yaml")
        bridge.run()

    Usage (programmatic):
        bridge = RealtimeBridge({"listen_port": 5050, "api_key": "sk-..."})
        bridge.run()

    Raises:
        ConfigError: If no Realtime API key is configured.
    """

    def __init__(
        self,
        config: RelayConfig | dict | str | Path | None = None,
        realtime_transport_factory: RealtimeTransportFactory = default_realtime_transport,
    ) -> None:
        self.config = load_config(config)
        self.config.require_api_key()
        self.sessions = SessionStore()
        self._realtime_transport_factory = realtime_transport_factory
        self._server: WebSocketServer | None = None

    # ------------------------------------------------------------------
    # Main run loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start the bridge (blocking). Runs the asyncio event loop."""
        logger.info(f"callrelay starting on port {self.config.server.listen_port}")
        try:
            asyncio.run(self.run_async())
        except KeyboardInterrupt:
            logger.info("callrelay stopped by user")

    async def run_async(self) -> None:
        """Start the bridge (async). Use this if you manage your own event loop."""
        server_config = self.config.server
        self._server = WebSocketServer(
            host=server_config.listen_host,
            port=server_config.listen_port,
            path=server_config.stream_path,
            handler=self.handle_telephony_connection,
            http_handler=self.handle_http,
        )
        await self._server.serve_forever()

    # ------------------------------------------------------------------
    # HTTP (call setup) handling
    # ------------------------------------------------------------------

    async def handle_http(self, request: aioweb.Request) -> tuple[int, str, str]:
        """Serve the status route and the incoming-call TwiML webhook."""
        if request.path == "/":
            body = json.dumps({"message": "Twilio Media Stream Server is running!"})
            return 200, "application/json", body
        if request.path == "/health":
            body = json.dumps({"status": "ok", "active_calls": self.sessions.active_count})
            return 200, "application/json", body
        if request.path == self.config.server.incoming_call_path:
            return 200, "text/xml", self.incoming_call_twiml(request.host)
        return 404, "text/plain", "Not Found"

    def incoming_call_twiml(self, request_host: str) -> str:
        """TwiML that connects the call to this server's media stream."""
        server_config = self.config.server
        host = server_config.public_host or request_host
        return build_connect_twiml(
            stream_url_for(host, server_config.stream_path),
            prompts=self.config.call_setup.prompts,
            pause_seconds=self.config.call_setup.pause_seconds,
        )

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def handle_telephony_connection(self, telephony: BaseTransport) -> None:
        """Run one call from Twilio connect to hang-up."""
        session = self.sessions.create(telephony=telephony, config=self.config)
        logger.info("Client connected")

        # The Twilio stream is served while the Realtime handshake runs
        realtime = self._realtime_transport_factory(self.config)
        link_task = asyncio.create_task(self._run_realtime_link(session, realtime))

        try:
            await self._telephony_loop(session)
        finally:
            if not link_task.done():
                link_task.cancel()
            await asyncio.gather(link_task, return_exceptions=True)

            if realtime.is_connected():
                await realtime.disconnect()

            self.sessions.remove(session.session_id)
            logger.info(
                f"Session ended: {session.session_id} "
                f"(duration: {session.duration_ms}ms, "
                f"frames in/out: {session.media_frames_in}/{session.media_frames_out})"
            )

    async def _run_realtime_link(self, session: BridgeSession, realtime: BaseTransport) -> None:
        """Connect the Realtime link, then configure it and pump its events.

        Caller audio is dropped until the connect completes; the session only
        sees the transport once it is open.
        """
        try:
            await realtime.connect()
        except Exception as e:
            # Keep the call up; caller audio is dropped while the link is down
            logger.error(f"Failed to connect to the Realtime API: {e}")
            return
        if not session.is_active:
            return

        session.realtime = realtime
        logger.info("Connected to the OpenAI Realtime API")

        setup = asyncio.create_task(session.initialize_realtime())
        try:
            await self._realtime_loop(session)
        finally:
            if not setup.done():
                setup.cancel()
            await asyncio.gather(setup, return_exceptions=True)

    # ------------------------------------------------------------------
    # Receive loops
    # ------------------------------------------------------------------

    async def _telephony_loop(self, session: BridgeSession) -> None:
        """Twilio -> BridgeSession. Ends when the caller's stream closes."""
        telephony = session.telephony
        try:
            while session.is_active and telephony.is_connected():
                raw = await telephony.recv()
                await session.handle_telephony_message(raw)
        except (ConnectionClosed, LinkClosedError):
            logger.info("Client disconnected.")
        except Exception as e:
            logger.error(f"Telephony loop error on session {session.session_id}: {e}")
        finally:
            session.end()

    async def _realtime_loop(self, session: BridgeSession) -> None:
        """Realtime API -> BridgeSession. Ending does not close the call."""
        realtime = session.realtime
        if realtime is None:
            return
        try:
            while session.is_active and realtime.is_connected():
                raw = await realtime.recv()
                await session.handle_realtime_message(raw)
        except (ConnectionClosed, LinkClosedError):
            logger.info("Disconnected from the OpenAI Realtime API")
        except Exception as e:
            logger.error(f"Error in the OpenAI WebSocket on session {session.session_id}: {e}")
