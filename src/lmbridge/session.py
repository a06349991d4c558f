"""Token lifecycle for the La Marzocco cloud.

:class:`TokenManager` owns the one :class:`SessionToken` a client holds.
It signs in on first use, refreshes the token shortly before it expires
and falls back to a fresh sign-in when the refresh token is rejected.
Renewal is single-flight: concurrent callers wait on the same lock and
reuse the token the first caller obtained.
"""

from __future__ import annotations

import asyncio
import base64
import enum
import json
import logging
import time
from dataclasses import dataclass

import aiohttp

from lmbridge._constants import (
    API_BASE,
    DEFAULT_TOKEN_LIFETIME,
    REFRESH_PATH,
    REGISTER_PATH,
    SIGNIN_PATH,
    TOKEN_EXPIRY_BUFFER,
)
from lmbridge._crypto import ParsedInstallationKey, derive_public_key, proof_headers
from lmbridge._http import open_session, request_json
from lmbridge.exceptions import AuthenticationError, LaMarzoccoError

_LOGGER = logging.getLogger(__name__)


class SessionState(enum.Enum):
    """Where a :class:`TokenManager` is in its sign-in cycle."""

    UNAUTHENTICATED = "unauthenticated"
    SIGNING_IN = "signing_in"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class SessionToken:
    """An access/refresh token pair and the access token's expiry."""

    access_token: str
    refresh_token: str
    expires_at: float
    """Unix timestamp (seconds)."""

    def is_fresh(self, buffer: float = TOKEN_EXPIRY_BUFFER) -> bool:
        """True if the access token stays valid for more than *buffer* seconds."""
        return time.time() < self.expires_at - buffer


class TokenManager:
    """Holds the session of one account on one installation.

    Args:
        username: La Marzocco account email.
        password: Account password.
        installation_key: Validated installation key (see
            :func:`lmbridge.parse_installation_key`).
        base_url: API root, defaults to the production customer-app API.
        http_session: Optional shared :class:`aiohttp.ClientSession`.  When
            omitted a short-lived session is opened per request.
    """

    def __init__(
        self,
        username: str,
        password: str,
        installation_key: ParsedInstallationKey,
        *,
        base_url: str = API_BASE,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._username = username
        self._password = password
        self._key = installation_key
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._token: SessionToken | None = None
        self._state = SessionState.UNAUTHENTICATED
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        """Current position in the sign-in cycle."""
        return self._state

    @property
    def token(self) -> SessionToken | None:
        """The token currently held, if any."""
        return self._token

    # ------------------------------------------------------------------
    # Token acquisition
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        """Return a valid access token, signing in or refreshing as needed.

        Returns the cached token without any network call while it is
        fresh.  Raises :class:`AuthenticationError` if neither refresh nor
        sign-in succeeds, in which case the session is left
        unauthenticated.
        """
        token = self._token
        if token is not None and token.is_fresh():
            return token.access_token

        async with self._lock:
            # Re-check after acquiring the lock: another task may have already
            # renewed while we were waiting.
            token = self._token
            if token is not None and token.is_fresh():
                return token.access_token

            if token is None:
                new_token = await self._sign_in_or_reset()
            else:
                self._state = SessionState.REFRESHING
                try:
                    new_token = await self._refresh()
                except AuthenticationError as e:
                    _LOGGER.warning(
                        "Token refresh rejected (HTTP %s), signing in again", e.status
                    )
                    new_token = await self._sign_in_or_reset()
                except BaseException:
                    self._state = SessionState.AUTHENTICATED
                    raise

            self._token = new_token
            self._state = SessionState.AUTHENTICATED
            return new_token.access_token

    async def _sign_in_or_reset(self) -> SessionToken:
        try:
            return await self._sign_in()
        except BaseException:
            self._token = None
            self._state = SessionState.UNAUTHENTICATED
            raise

    async def sign_in(self) -> SessionToken:
        """Sign in with the account credentials and store the new token.

        Waits for any renewal already in progress.  Raises
        :class:`AuthenticationError` with the HTTP status and payload on
        rejection; no retry is attempted.
        """
        async with self._lock:
            return await self._sign_in()

    async def _sign_in(self) -> SessionToken:
        _LOGGER.debug("Signing in as %s", self._username)
        previous = self._state
        self._state = SessionState.SIGNING_IN
        try:
            async with open_session(self._http) as session:
                payload = await request_json(
                    session,
                    "POST",
                    f"{self._base_url}{SIGNIN_PATH}",
                    headers=proof_headers(self._key),
                    body={"username": self._username, "password": self._password},
                    error_cls=AuthenticationError,
                )
        except BaseException:
            self._state = previous
            raise
        token = _token_from_payload(payload)
        self._token = token
        self._state = SessionState.AUTHENTICATED
        return token

    async def refresh_token(self) -> SessionToken:
        """Exchange the held refresh token for a new token pair.

        The held token is replaced only once the new one has been
        received.  Raises :class:`ValueError` when there is no session to
        refresh, :class:`AuthenticationError` when the refresh is rejected.
        """
        async with self._lock:
            return await self._refresh()

    async def _refresh(self) -> SessionToken:
        current = self._token
        if current is None:
            raise ValueError("No session to refresh. Call sign_in() first.")

        _LOGGER.debug("Refreshing access token")
        async with open_session(self._http) as session:
            payload = await request_json(
                session,
                "POST",
                f"{self._base_url}{REFRESH_PATH}",
                headers=proof_headers(self._key),
                body={"username": self._username, "refreshToken": current.refresh_token},
                error_cls=AuthenticationError,
            )
        token = _token_from_payload(payload, fallback_refresh=current.refresh_token)
        self._token = token
        self._state = SessionState.AUTHENTICATED
        return token

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_client(self) -> object:
        """Bind this installation's public key to the cloud account.

        Performed once, when the installation key is first generated.
        Returns the decoded response body.
        """
        _LOGGER.debug("Registering installation %s", self._key.installation_id)
        public_key = derive_public_key(self._key.private_key)
        async with open_session(self._http) as session:
            return await request_json(
                session,
                "POST",
                f"{self._base_url}{REGISTER_PATH}",
                headers=proof_headers(self._key),
                body={"pk": public_key, "installationId": self._key.installation_id},
                error_cls=AuthenticationError,
            )


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _token_from_payload(payload: object, *, fallback_refresh: str = "") -> SessionToken:
    """Build a :class:`SessionToken` from a sign-in or refresh response."""
    if not isinstance(payload, dict) or not isinstance(payload.get("accessToken"), str):
        raise LaMarzoccoError("Authentication response did not contain an access token.")
    access = payload["accessToken"]
    refresh = payload.get("refreshToken") or fallback_refresh
    return SessionToken(access, str(refresh), _expiry_of(access, payload))


def _expiry_of(access_token: str, payload: dict[str, object]) -> float:
    """Work out when *access_token* expires.

    Prefers the JWT ``exp`` claim, then an ``expiresIn`` field in the
    response, then :data:`DEFAULT_TOKEN_LIFETIME`.
    """
    exp = _decode_jwt_exp(access_token)
    if exp is not None:
        return exp
    expires_in = payload.get("expiresIn", payload.get("expires_in"))
    if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
        return time.time() + float(expires_in)
    return time.time() + DEFAULT_TOKEN_LIFETIME


def _decode_jwt_exp(token: str) -> float | None:
    """Extract the ``exp`` claim from a JWT without verifying the signature.

    Returns the expiry as a Unix timestamp (float), or ``None`` if the token
    cannot be decoded (e.g. not a JWT, malformed base64, missing claim).
    """
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        # base64url padding: length must be a multiple of 4
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))
        return float(payload["exp"])
    except Exception:
        return None
