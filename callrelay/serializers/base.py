"""Base serializer interface for callrelay.

Each link has a serializer that converts between its JSON wire format and
the event model. Serializers are pure message translators with no I/O.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from callrelay.errors import MalformedMessageError


class BaseSerializer(ABC):
    """Abstract base class for link serializers.

    Key principles:
    - Serializers do NO I/O (no network calls, no file access)
    - They are stateless (call state lives in BridgeSession)
    - Undecodable input raises :class:`MalformedMessageError`; the caller
      decides whether to drop the message
    """

    @abstractmethod
    async def deserialize(self, raw: bytes | str | dict) -> Any:
        """Parse one raw message from the link into an event.

        Args:
            raw: The raw message from the WebSocket. Could be:
                - bytes: UTF-8 encoded JSON
                - str: JSON text message
                - dict: already-parsed JSON

        Raises:
            MalformedMessageError: If the message is not valid JSON or lacks
                the fields its event kind requires.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of this serializer (e.g., 'twilio')."""
        ...

    @staticmethod
    def _parse_message(raw: bytes | str | dict) -> dict[str, Any]:
        """Normalise the raw WebSocket frame into a dict."""
        if isinstance(raw, dict):
            return raw
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            msg = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedMessageError(f"Invalid JSON: {e}", raw) from e
        if not isinstance(msg, dict):
            raise MalformedMessageError(
                f"Expected a JSON object, got {type(msg).__name__}", raw
            )
        return msg
