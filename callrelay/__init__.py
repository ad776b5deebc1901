"""callrelay - Bridge Twilio Media Streams to the OpenAI Realtime API.

Relays caller audio to a Realtime API session and the assistant's audio back
to the caller, with mark-based playback tracking and barge-in truncation.

Quick start:
    $ pip install callrelay[server]
    $ export OPENAI_API_KEY=sk-...
    $ callrelay run --port 5050

Programmatic:
    from callrelay import RealtimeBridge

    bridge = RealtimeBridge({"listen_port": 5050, "voice": "alloy"})
    bridge.run()
"""

__version__ = "0.1.0"

# Core
from callrelay.bridge import RealtimeBridge
from callrelay.config import (
    CallSetupConfig,
    GreetingConfig,
    LoggingConfig,
    RealtimeConfig,
    RelayConfig,
    ServerConfig,
    load_config,
)
from callrelay.errors import ConfigError, LinkClosedError, MalformedMessageError, RelayError
from callrelay.session import BridgeSession, SessionStore

# Events
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

# Serializers
from callrelay.serializers.realtime import RealtimeSerializer
from callrelay.serializers.twilio import TwilioSerializer

# Transports
from callrelay.transports.base import BaseTransport
from callrelay.transports.websocket import (
    WebSocketClientTransport,
    WebSocketServer,
    WebSocketServerTransport,
)

__all__ = [
    # Core
    "RealtimeBridge",
    "RelayConfig",
    "ServerConfig",
    "RealtimeConfig",
    "GreetingConfig",
    "CallSetupConfig",
    "LoggingConfig",
    "load_config",
    "BridgeSession",
    "SessionStore",
    # Errors
    "RelayError",
    "ConfigError",
    "MalformedMessageError",
    "LinkClosedError",
    # Events
    "TelephonyEvent",
    "StreamStarted",
    "MediaReceived",
    "MarkAcknowledged",
    "StreamStopped",
    "TelephonyNotice",
    "RealtimeEvent",
    "SessionCreated",
    "AudioDelta",
    "SpeechStarted",
    "ServiceError",
    "ServerNotice",
    # Serializers
    "TwilioSerializer",
    "RealtimeSerializer",
    # Transports
    "BaseTransport",
    "WebSocketClientTransport",
    "WebSocketServerTransport",
    "WebSocketServer",
]
