"""Exceptions raised by lmbridge."""

from __future__ import annotations


class LaMarzoccoError(Exception):
    """Base class for all lmbridge errors."""


class InstallationKeyError(LaMarzoccoError, ValueError):
    """Raised when installation key material is missing or malformed."""


class RequestError(LaMarzoccoError):
    """An HTTP exchange completed with a non-success status.

    *payload* is the parsed JSON error body, or the raw response text when
    the body is not JSON.
    """

    def __init__(self, status: int, payload: object) -> None:
        super().__init__(f"HTTP {status}: {payload!r}")
        self.status = status
        self.payload = payload


class AuthenticationError(RequestError):
    """Raised when sign-in, token refresh or client registration is rejected."""


class ApiError(RequestError):
    """Raised when an authenticated API call is rejected."""


class TransportError(LaMarzoccoError, ConnectionError):
    """Raised when no HTTP response was received at all.

    Unlike :class:`RequestError` there is no ``status``; the underlying
    ``aiohttp`` or timeout exception is chained as ``__cause__``.
    """
