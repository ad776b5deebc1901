"""Base transport interface for callrelay.

Transports handle the raw WebSocket connection lifecycle for one link.
They are responsible for connecting, sending, receiving, and disconnecting.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseTransport(ABC):
    """Abstract base class for transport connections.

    Transports manage the network connection to either the telephony provider
    or the Realtime API. They handle connection lifecycle and raw message I/O.
    """

    @abstractmethod
    async def connect(self, **kwargs) -> None:
        """Establish the transport connection.

        Args:
            **kwargs: Transport-specific connection parameters.
        """
        ...

    @abstractmethod
    async def send(self, data: bytes | str) -> None:
        """Send data over the transport.

        Raises:
            LinkClosedError: If the transport is not connected.
        """
        ...

    @abstractmethod
    async def recv(self) -> bytes | str:
        """Receive the next message from the transport.

        Raises:
            LinkClosedError: If the transport is not connected.
            websockets.exceptions.ConnectionClosed: If the peer closed.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the transport connection gracefully."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport is currently connected."""
        ...
