"""Twilio Media Streams WebSocket serializer.

Translates between Twilio's Media Streams WebSocket protocol and callrelay's
telephony events. Twilio streams audio as base64-encoded mu-law at 8kHz
over JSON WebSocket messages; payloads are passed through still encoded.

Protocol reference:
    https://www.twilio.com/docs/voice/media-streams/websocket-messages
"""

from __future__ import annotations

import json

from pydantic import ValidationError

from callrelay.core.events import (
    MarkAcknowledged,
    MediaReceived,
    StreamStarted,
    StreamStopped,
    TelephonyEvent,
    TelephonyNotice,
)
from callrelay.errors import MalformedMessageError
from callrelay.serializers.base import BaseSerializer

# Name carried by every mark the bridge sends after an audio chunk.
RESPONSE_MARK = "responsePart"


class TwilioSerializer(BaseSerializer):
    """Serializer for the Twilio Media Streams WebSocket protocol.

    Twilio sends JSON messages with an ``event`` field that indicates the
    message type. Outbound messages must carry the ``streamSid`` announced in
    the ``start`` event; the session owns that value and passes it in.
    """

    @property
    def name(self) -> str:
        return "twilio"

    # ------------------------------------------------------------------
    # Deserialization (provider -> callrelay events)
    # ------------------------------------------------------------------

    async def deserialize(self, raw: bytes | str | dict) -> TelephonyEvent:
        """Parse a Twilio Media Streams message into a telephony event.

        Message types handled:
            * ``start`` -- stream metadata; produces :class:`StreamStarted`.
            * ``media`` -- audio payload; produces :class:`MediaReceived`.
            * ``mark``  -- playback checkpoint; produces :class:`MarkAcknowledged`.
            * ``stop``  -- stream ended; produces :class:`StreamStopped`.

        Anything else (including ``connected`` and ``dtmf``) is surfaced as a
        :class:`TelephonyNotice`.
        """
        msg = self._parse_message(raw)
        event_type = msg.get("event", "")

        try:
            if event_type == "start":
                return self._handle_start(msg)
            if event_type == "media":
                return self._handle_media(msg)
            if event_type == "mark":
                return self._handle_mark(msg)
            if event_type == "stop":
                return self._handle_stop(msg)
        except (AttributeError, ValidationError) as e:
            raise MalformedMessageError(
                f"Malformed Twilio '{event_type}' message: {e}", raw
            ) from e

        return TelephonyNotice(kind=str(event_type), payload=msg)

    # ------------------------------------------------------------------
    # Outbound message builders
    # ------------------------------------------------------------------

    def build_media_message(self, stream_sid: str, payload: str) -> str:
        """Build a Twilio ``media`` message carrying base64 audio."""
        return json.dumps(
            {
                "event": "media",
                "streamSid": stream_sid,
                "media": {"payload": payload},
            }
        )

    def build_mark_message(self, stream_sid: str, name: str = RESPONSE_MARK) -> str:
        """Build a Twilio ``mark`` control message.

        When all audio sent before the mark has been played, Twilio fires a
        ``mark`` event back with the same name.
        """
        return json.dumps(
            {
                "event": "mark",
                "streamSid": stream_sid,
                "mark": {"name": name},
            }
        )

    def build_clear_message(self, stream_sid: str) -> str:
        """Build a Twilio ``clear`` control message.

        Sending this message instructs Twilio to discard any buffered audio
        that has not yet been played to the caller. Used for barge-in.
        """
        return json.dumps(
            {
                "event": "clear",
                "streamSid": stream_sid,
            }
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _handle_start(self, msg: dict) -> StreamStarted:
        start_data = msg.get("start") or {}
        return StreamStarted(
            stream_sid=start_data.get("streamSid") or msg.get("streamSid"),
            call_sid=start_data.get("callSid", ""),
            account_sid=start_data.get("accountSid", ""),
            custom_parameters=start_data.get("customParameters") or {},
            media_format=start_data.get("mediaFormat") or {},
        )

    def _handle_media(self, msg: dict) -> MediaReceived:
        media_data = msg.get("media") or {}
        return MediaReceived(
            timestamp=media_data.get("timestamp"),
            payload=media_data.get("payload"),
            track=media_data.get("track", "inbound"),
            chunk=media_data.get("chunk"),
        )

    def _handle_mark(self, msg: dict) -> MarkAcknowledged:
        mark_data = msg.get("mark") or {}
        return MarkAcknowledged(name=mark_data.get("name", ""))

    def _handle_stop(self, msg: dict) -> StreamStopped:
        stop_data = msg.get("stop") or {}
        return StreamStopped(call_sid=stop_data.get("callSid", ""))
