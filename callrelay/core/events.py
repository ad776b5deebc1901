"""Event model for callrelay.

Each link decodes its wire messages into one closed set of events: the
telephony side into :data:`TelephonyEvent`, the Realtime API side into
:data:`RealtimeEvent`. The bridge session dispatches over these unions and
handles every member explicitly.
"""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, Field


class Event(BaseModel):
    """Base event that all callrelay events inherit from."""

    received_at: float = Field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Telephony side (Twilio Media Streams)
# ---------------------------------------------------------------------------


class StreamStarted(Event):
    """The telephony provider opened a new media stream."""

    stream_sid: str
    call_sid: str = ""
    account_sid: str = ""
    custom_parameters: dict[str, Any] = Field(default_factory=dict)
    media_format: dict[str, Any] = Field(default_factory=dict)


class MediaReceived(Event):
    """A chunk of caller audio.

    ``timestamp`` is milliseconds since the start of the stream and
    ``payload`` is base64 audio passed through without decoding.
    """

    timestamp: int
    payload: str
    track: str = "inbound"
    chunk: int | None = None


class MarkAcknowledged(Event):
    """The provider finished playing audio up to a previously sent mark."""

    name: str = ""


class StreamStopped(Event):
    """The media stream ended (caller hung up or the call was redirected)."""

    call_sid: str = ""


class TelephonyNotice(Event):
    """Any other provider message (``connected``, ``dtmf``, unknown kinds)."""

    kind: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


TelephonyEvent = (
    StreamStarted
    | MediaReceived
    | MarkAcknowledged
    | StreamStopped
    | TelephonyNotice
)


# ---------------------------------------------------------------------------
# Realtime API side
# ---------------------------------------------------------------------------


class SessionCreated(Event):
    """The Realtime session is initialized and ready for session.update."""

    session: dict[str, Any] = Field(default_factory=dict)


class AudioDelta(Event):
    """A partial chunk of assistant audio for the current response."""

    delta: str
    item_id: str | None = None
    response_id: str | None = None


class SpeechStarted(Event):
    """Server VAD detected the caller starting to speak."""

    audio_start_ms: int | None = None
    item_id: str | None = None


class ServiceError(Event):
    """An ``error`` event reported by the Realtime API."""

    code: str | None = None
    message: str = ""
    error_type: str = ""


class ServerNotice(Event):
    """Lifecycle and diagnostic events that carry no bridge state."""

    kind: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


RealtimeEvent = (
    SessionCreated
    | AudioDelta
    | SpeechStarted
    | ServiceError
    | ServerNotice
)
