"""Internal HTTP helpers shared by the session and the API client."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator

import aiohttp

from lmbridge._constants import HTTP_TIMEOUT
from lmbridge.exceptions import ApiError, RequestError, TransportError

_LOGGER = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def open_session(
    shared: aiohttp.ClientSession | None,
) -> AsyncIterator[aiohttp.ClientSession]:
    """Yield *shared* if given, otherwise a short-lived session closed on exit."""
    if shared is not None:
        yield shared
        return
    async with aiohttp.ClientSession() as session:
        yield session


async def request_json(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: object = None,
    error_cls: type[RequestError] = ApiError,
) -> object:
    """Perform one HTTP exchange and return the decoded response body.

    *body* is sent as JSON when not ``None``.  A non-2xx status raises
    *error_cls* carrying the status and decoded payload; a failure to get
    any response raises :class:`TransportError`.  Bytes that do not decode
    are replaced rather than raised.
    """
    _LOGGER.debug("%s %s", method, url)
    try:
        async with session.request(
            method,
            url,
            json=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
        ) as resp:
            status = resp.status
            text = await resp.text(errors="replace")
    except (aiohttp.ClientError, TimeoutError) as e:
        raise TransportError(f"{method} {url} failed: {e!r}") from e

    payload = _decode_body(text)
    if not 200 <= status < 300:
        _LOGGER.debug("%s %s returned HTTP %s", method, url, status)
        raise error_cls(status, payload)
    return payload


def _decode_body(text: str) -> object:
    """Decode a response body as JSON, falling back to the raw text."""
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text
