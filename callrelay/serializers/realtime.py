"""OpenAI Realtime API serializer.

Translates between the Realtime API's JSON event protocol and callrelay's
realtime events, and builds the client events the bridge sends.

Protocol reference:
    https://platform.openai.com/docs/api-reference/realtime
"""

from __future__ import annotations

import json

from pydantic import ValidationError

from callrelay.config import RealtimeConfig
from callrelay.core.events import (
    AudioDelta,
    RealtimeEvent,
    ServerNotice,
    ServiceError,
    SessionCreated,
    SpeechStarted,
)
from callrelay.errors import MalformedMessageError
from callrelay.serializers.base import BaseSerializer


class RealtimeSerializer(BaseSerializer):
    """Serializer for the OpenAI Realtime API WebSocket protocol.

    Server events carry their kind in the ``type`` field. Only the kinds that
    drive the bridge get dedicated events; everything else becomes a
    :class:`ServerNotice` for logging.
    """

    @property
    def name(self) -> str:
        return "openai_realtime"

    # ------------------------------------------------------------------
    # Deserialization (server events -> callrelay events)
    # ------------------------------------------------------------------

    async def deserialize(self, raw: bytes | str | dict) -> RealtimeEvent:
        """Parse a Realtime API server event.

        Message types handled:
            * ``response.audio.delta`` with a non-empty ``delta`` --
              :class:`AudioDelta`.
            * ``input_audio_buffer.speech_started`` -- :class:`SpeechStarted`.
            * ``session.created`` -- :class:`SessionCreated`.
            * ``error`` -- :class:`ServiceError`.
        """
        msg = self._parse_message(raw)
        kind = msg.get("type", "")

        try:
            if kind == "response.audio.delta" and msg.get("delta"):
                return AudioDelta(
                    delta=msg["delta"],
                    item_id=msg.get("item_id"),
                    response_id=msg.get("response_id"),
                )
            if kind == "input_audio_buffer.speech_started":
                return SpeechStarted(
                    audio_start_ms=msg.get("audio_start_ms"),
                    item_id=msg.get("item_id"),
                )
            if kind == "session.created":
                return SessionCreated(session=msg.get("session") or {})
            if kind == "error":
                error = msg.get("error") or {}
                return ServiceError(
                    code=error.get("code"),
                    message=error.get("message") or "",
                    error_type=error.get("type") or "",
                )
        except (AttributeError, ValidationError) as e:
            raise MalformedMessageError(
                f"Malformed Realtime '{kind}' event: {e}", raw
            ) from e

        return ServerNotice(kind=str(kind), payload=msg)

    # ------------------------------------------------------------------
    # Client event builders
    # ------------------------------------------------------------------

    def build_session_update(self, settings: RealtimeConfig) -> str:
        """Build the ``session.update`` event that configures the session."""
        return json.dumps(
            {
                "type": "session.update",
                "session": {
                    "turn_detection": {"type": settings.turn_detection},
                    "input_audio_format": settings.audio_format,
                    "output_audio_format": settings.audio_format,
                    "voice": settings.voice,
                    "instructions": settings.instructions,
                    "modalities": list(settings.modalities),
                    "temperature": settings.temperature,
                },
            }
        )

    def build_audio_append(self, audio: str) -> str:
        """Build an ``input_audio_buffer.append`` event with base64 audio."""
        return json.dumps({"type": "input_audio_buffer.append", "audio": audio})

    def build_truncate(self, item_id: str, audio_end_ms: int) -> str:
        """Build a ``conversation.item.truncate`` event.

        Tells the service the assistant item was only heard up to
        ``audio_end_ms``; audio past that point is discarded.
        """
        return json.dumps(
            {
                "type": "conversation.item.truncate",
                "item_id": item_id,
                "content_index": 0,
                "audio_end_ms": audio_end_ms,
            }
        )

    def build_user_text_item(self, text: str) -> str:
        """Build a ``conversation.item.create`` event with a user text message."""
        return json.dumps(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": text}],
                },
            }
        )

    def build_response_create(self) -> str:
        """Build a ``response.create`` event."""
        return json.dumps({"type": "response.create"})
