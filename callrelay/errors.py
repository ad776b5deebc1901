"""Exception types raised by callrelay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all callrelay errors."""


class ConfigError(RelayError):
    """The configuration is missing a required value or is invalid."""


class MalformedMessageError(RelayError):
    """A frame received from one of the links could not be decoded.

    Carries the raw frame so the caller can log it before dropping it.
    """

    def __init__(self, message: str, raw: bytes | str | dict | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class LinkClosedError(RelayError):
    """A send or receive was attempted on a link that is not connected."""
