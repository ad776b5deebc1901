"""Bridge session management for callrelay.

Each active call gets a BridgeSession that owns the two link handles
(telephony and Realtime API) and the playback/interruption state shared
between them. The SessionStore manages all active sessions.

Per call the state is:

- ``stream_sid``: set by the Twilio ``start`` event, stamped on every
  outbound telephony message. Nothing is sent to Twilio before it is known.
- ``latest_media_timestamp``: timestamp (ms) of the last caller audio frame.
- ``response_start_timestamp``: ``latest_media_timestamp`` when the current
  assistant response started streaming, or None between responses.
- ``last_assistant_item``: the response item currently playing.
- ``mark_queue``: one token per audio chunk sent to Twilio, popped as
  Twilio acknowledges playback.

The last three are reset together when the caller barges in.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import assert_never

from loguru import logger
from websockets.exceptions import ConnectionClosed

from callrelay.config import RelayConfig
from callrelay.core.events import (
    AudioDelta,
    MarkAcknowledged,
    MediaReceived,
    RealtimeEvent,
    ServerNotice,
    ServiceError,
    SessionCreated,
    SpeechStarted,
    StreamStarted,
    StreamStopped,
    TelephonyEvent,
    TelephonyNotice,
)
from callrelay.errors import LinkClosedError, MalformedMessageError
from callrelay.serializers.realtime import RealtimeSerializer
from callrelay.serializers.twilio import RESPONSE_MARK, TwilioSerializer
from callrelay.transports.base import BaseTransport


@dataclass
class BridgeSession:
    """Represents a single call flowing through the bridge.

    The session never blocks on either peer: every cross-link action is a
    single send. All handlers run on one event loop, so the state below is
    only ever mutated by one handler at a time.
    """

    telephony: BaseTransport
    realtime: BaseTransport | None = None
    config: RelayConfig = field(default_factory=RelayConfig)

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Serializers for each link
    telephony_serializer: TwilioSerializer = field(default_factory=TwilioSerializer)
    realtime_serializer: RealtimeSerializer = field(default_factory=RealtimeSerializer)

    # Playback / interruption state
    stream_sid: str | None = None
    call_sid: str = ""
    latest_media_timestamp: int = 0
    last_assistant_item: str | None = None
    mark_queue: deque[str] = field(default_factory=deque)
    response_start_timestamp: int | None = None

    # Realtime session setup
    session_configured: bool = False
    greeting_sent: bool = False
    _realtime_ready: asyncio.Event = field(default_factory=asyncio.Event)

    # Lifecycle
    is_active: bool = True
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None

    # Counters
    media_frames_in: int = 0
    media_frames_out: int = 0

    # ------------------------------------------------------------------
    # Link state
    # ------------------------------------------------------------------

    @property
    def realtime_open(self) -> bool:
        return self.realtime is not None and self.realtime.is_connected()

    @property
    def duration_ms(self) -> int:
        """Call duration in milliseconds."""
        end = self.ended_at or time.time()
        return int((end - self.started_at) * 1000)

    def end(self) -> None:
        """Mark the session as ended."""
        if self.is_active:
            self.is_active = False
            self.ended_at = time.time()

    # ------------------------------------------------------------------
    # Realtime session setup
    # ------------------------------------------------------------------

    async def initialize_realtime(self) -> None:
        """Send ``session.update`` once the Realtime session is ready.

        Waits for ``session.created``; if it does not arrive within
        ``realtime.session_ready_timeout`` seconds the update is sent anyway.
        Then sends the greeting, if enabled.
        """
        timeout = self.config.realtime.session_ready_timeout
        try:
            await asyncio.wait_for(self._realtime_ready.wait(), timeout)
        except TimeoutError:
            logger.warning(
                f"No session.created within {timeout}s on session "
                f"{self.session_id}; sending session.update anyway"
            )

        await self.send_session_update()
        if self.config.greeting.enabled:
            await self.send_greeting()

    async def send_session_update(self) -> None:
        message = self.realtime_serializer.build_session_update(self.config.realtime)
        logger.info(f"Sending session update: {message}")
        if await self._send_realtime(message):
            self.session_configured = True

    async def send_greeting(self) -> None:
        """Ask the assistant to speak first. Runs at most once per session."""
        if self.greeting_sent:
            return
        self.greeting_sent = True
        serializer = self.realtime_serializer
        item = serializer.build_user_text_item(self.config.greeting.text)
        if self.config.logging.show_timing_math:
            logger.info(f"Sending initial conversation item: {item}")
        await self._send_realtime(item)
        await self._send_realtime(serializer.build_response_create())

    # ------------------------------------------------------------------
    # Telephony link
    # ------------------------------------------------------------------

    async def handle_telephony_message(self, raw: bytes | str | dict) -> None:
        """Decode and handle one message from Twilio.

        Malformed messages are logged and dropped; the link stays open.
        """
        try:
            event = await self.telephony_serializer.deserialize(raw)
        except MalformedMessageError as e:
            logger.warning(f"Error parsing message: {e}. Message: {str(raw)[:200]}")
            return
        await self.handle_telephony_event(event)

    async def handle_telephony_event(self, event: TelephonyEvent) -> None:
        if isinstance(event, MediaReceived):
            await self._on_media(event)
        elif isinstance(event, StreamStarted):
            self._on_stream_started(event)
        elif isinstance(event, MarkAcknowledged):
            self._on_mark(event)
        elif isinstance(event, StreamStopped):
            logger.info(f"Stream stopped: {self.stream_sid} (session {self.session_id})")
        elif isinstance(event, TelephonyNotice):
            logger.info(f"Received non-media event: {event.kind}")
        else:
            assert_never(event)

    def _on_stream_started(self, event: StreamStarted) -> None:
        self.stream_sid = event.stream_sid
        self.call_sid = event.call_sid
        self.latest_media_timestamp = 0
        self.response_start_timestamp = None
        logger.info(f"Incoming stream has started {self.stream_sid}")

    async def _on_media(self, event: MediaReceived) -> None:
        self.latest_media_timestamp = event.timestamp
        self.media_frames_in += 1
        if self.config.logging.show_timing_math:
            logger.info(
                f"Received media message with timestamp: {self.latest_media_timestamp}ms"
            )
        if self.realtime_open:
            await self._send_realtime(
                self.realtime_serializer.build_audio_append(event.payload)
            )

    def _on_mark(self, event: MarkAcknowledged) -> None:
        if self.mark_queue:
            self.mark_queue.popleft()

    # ------------------------------------------------------------------
    # Realtime link
    # ------------------------------------------------------------------

    async def handle_realtime_message(self, raw: bytes | str | dict) -> None:
        """Decode and handle one Realtime API server event.

        Unparsable events are logged and discarded.
        """
        try:
            event = await self.realtime_serializer.deserialize(raw)
        except MalformedMessageError as e:
            logger.error(f"Error processing OpenAI message: {e}. Raw message: {str(raw)[:200]}")
            return
        await self.handle_realtime_event(event)

    async def handle_realtime_event(self, event: RealtimeEvent) -> None:
        log_types = self.config.logging.log_event_types

        if isinstance(event, AudioDelta):
            await self._on_audio_delta(event)
        elif isinstance(event, SpeechStarted):
            if "input_audio_buffer.speech_started" in log_types:
                logger.info("Received event: input_audio_buffer.speech_started")
            await self.handle_speech_started()
        elif isinstance(event, SessionCreated):
            if "session.created" in log_types:
                logger.info(f"Received event: session.created {event.session}")
            self._realtime_ready.set()
        elif isinstance(event, ServiceError):
            logger.error(
                f"Realtime API error on session {self.session_id}: "
                f"{event.error_type} {event.code}: {event.message}"
            )
        elif isinstance(event, ServerNotice):
            if event.kind in log_types:
                logger.info(f"Received event: {event.kind} {event.payload}")
        else:
            assert_never(event)

    async def _on_audio_delta(self, event: AudioDelta) -> None:
        if self.stream_sid is None:
            logger.debug("Dropping assistant audio received before the stream started")
            return

        sent = await self._send_telephony(
            self.telephony_serializer.build_media_message(self.stream_sid, event.delta)
        )
        if not sent:
            return
        self.media_frames_out += 1

        if self.response_start_timestamp is None:
            self.response_start_timestamp = self.latest_media_timestamp
            if self.config.logging.show_timing_math:
                logger.info(
                    f"Setting start timestamp for new response: "
                    f"{self.response_start_timestamp}ms"
                )

        if event.item_id:
            self.last_assistant_item = event.item_id

        await self._send_mark()

    async def _send_mark(self) -> None:
        if self.stream_sid is None:
            return
        sent = await self._send_telephony(
            self.telephony_serializer.build_mark_message(self.stream_sid, RESPONSE_MARK)
        )
        if sent:
            self.mark_queue.append(RESPONSE_MARK)

    async def handle_speech_started(self) -> None:
        """Interrupt the assistant when the caller starts talking.

        Only acts while a response is in flight (unacknowledged marks and a
        known response start). Truncates the playing item at the point the
        caller actually heard, clears Twilio's playback buffer and resets
        the response state.
        """
        if not self.mark_queue or self.response_start_timestamp is None:
            return

        elapsed = self.latest_media_timestamp - self.response_start_timestamp
        if self.config.logging.show_timing_math:
            logger.info(
                f"Calculating elapsed time for truncation: {self.latest_media_timestamp} - "
                f"{self.response_start_timestamp} = {elapsed}ms"
            )

        if self.last_assistant_item:
            truncate = self.realtime_serializer.build_truncate(self.last_assistant_item, elapsed)
            if self.config.logging.show_timing_math:
                logger.info(f"Sending truncation event: {truncate}")
            await self._send_realtime(truncate)

        if self.stream_sid is not None:
            await self._send_telephony(
                self.telephony_serializer.build_clear_message(self.stream_sid)
            )

        self.mark_queue.clear()
        self.last_assistant_item = None
        self.response_start_timestamp = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send_realtime(self, message: str) -> bool:
        """Send to the Realtime API. Returns False if the link is gone."""
        if self.realtime is None:
            return False
        try:
            await self.realtime.send(message)
        except (ConnectionClosed, LinkClosedError) as e:
            logger.warning(f"Realtime link closed, dropping message on session {self.session_id}: {e}")
            return False
        return True

    async def _send_telephony(self, message: str) -> bool:
        """Send to Twilio. Returns False if the caller's stream is gone."""
        try:
            await self.telephony.send(message)
        except (ConnectionClosed, LinkClosedError) as e:
            logger.warning(f"Telephony link closed, dropping message on session {self.session_id}: {e}")
            return False
        return True


class SessionStore:
    """Store for active bridge sessions.

    Sessions are only touched from the event loop thread, so no locking is
    needed.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, BridgeSession] = {}

    def create(self, **kwargs) -> BridgeSession:
        """Create and store a new session."""
        session = BridgeSession(**kwargs)
        self._sessions[session.session_id] = session
        logger.info(f"Session created: {session.session_id}")
        return session

    def remove(self, session_id: str) -> None:
        """Remove a session from the store."""
        session = self._sessions.pop(session_id, None)
        if session:
            session.end()
            logger.info(
                f"Session removed: {session.session_id} "
                f"(duration: {session.duration_ms}ms)"
            )

    @property
    def active_count(self) -> int:
        """Number of active sessions."""
        return sum(1 for s in self._sessions.values() if s.is_active)

    @property
    def all_sessions(self) -> list[BridgeSession]:
        """All stored sessions."""
        return list(self._sessions.values())
