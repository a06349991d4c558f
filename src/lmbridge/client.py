"""La Marzocco cloud API client.

Provides authenticated access to a La Marzocco espresso machine through
the vendor's customer cloud.  The :class:`Client` class is the main entry
point; every device operation goes through :meth:`Client.api_call`::

    import asyncio
    from lmbridge import Client, extract_power_from_dashboard, generate_installation_key

    key = generate_installation_key("my-installation-id")
    client = Client("email@example.com", "password", key)
    await client.register_client()  # once, when the key is new

    dashboard = await client.get_dashboard("MR012345")
    print(extract_power_from_dashboard(dashboard))
    await client.set_power("MR012345", True)
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from pathlib import Path

import aiohttp

from lmbridge._constants import (
    API_BASE,
    CHANGE_MODE_PATH,
    CONFIG_DIR,
    CRED_FILE,
    DASHBOARD_PATH,
    KEY_FILE,
)
from lmbridge._crypto import (
    ParsedInstallationKey,
    generate_installation_key,
    parse_installation_key,
)
from lmbridge._http import open_session, request_json
from lmbridge.dashboard import power_mode
from lmbridge.exceptions import ApiError, InstallationKeyError, LaMarzoccoError
from lmbridge.session import SessionToken, TokenManager

_LOGGER = logging.getLogger(__name__)


class Client:
    """La Marzocco cloud API client.

    The installation key is validated on construction; a malformed key
    raises :class:`~lmbridge.exceptions.InstallationKeyError`.  Use
    :meth:`from_saved` to build a client from the files written by the
    ``lmbridge login`` command.

    One client holds exactly one session.
    """

    def __init__(
        self,
        username: str,
        password: str,
        installation_key: Mapping[str, object],
        *,
        serial: str = "",
        base_url: str = API_BASE,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._username = username
        self._password = password
        self._serial = serial
        self._key = parse_installation_key(installation_key)
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._tokens = TokenManager(
            username,
            password,
            self._key,
            base_url=self._base_url,
            http_session=http_session,
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_saved(cls) -> Client:
        """Load a client from previously saved credentials and installation key.

        Raises :class:`FileNotFoundError` if either file does not exist and
        :class:`~lmbridge.exceptions.LaMarzoccoError` if one is corrupt.
        """
        if not CRED_FILE.exists():
            raise FileNotFoundError(
                f"No saved credentials at {CRED_FILE}. Run `lmbridge login` first."
            )
        if not KEY_FILE.exists():
            raise FileNotFoundError(
                f"No installation key at {KEY_FILE}. Run `lmbridge login` first."
            )
        creds = _read_json(CRED_FILE, LaMarzoccoError, "Saved credentials")
        if not isinstance(creds, dict):
            raise LaMarzoccoError(f"Saved credentials at {CRED_FILE} must be an object.")
        key = _read_json(KEY_FILE, InstallationKeyError, "Installation key")
        return cls(
            str(creds.get("username", "")),
            str(creds.get("password", "")),
            key,
            serial=str(creds.get("serial", "")),
        )

    def save_credentials(self) -> None:
        """Persist account credentials to ``~/.config/lmbridge/credentials.json``."""
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        creds = {"username": self._username, "password": self._password, "serial": self._serial}
        CRED_FILE.write_text(json.dumps(creds, indent=2))
        CRED_FILE.chmod(0o600)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def serial(self) -> str:
        """Serial number of the configured machine."""
        return self._serial

    @property
    def installation_id(self) -> str:
        """Identifier of this installation."""
        return self._key.installation_id

    @property
    def installation_key(self) -> ParsedInstallationKey:
        """The validated installation key."""
        return self._key

    @property
    def tokens(self) -> TokenManager:
        """The session backing this client."""
        return self._tokens

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def register_client(self) -> object:
        """Register this installation's public key with the account."""
        return await self._tokens.register_client()

    async def sign_in(self) -> SessionToken:
        """Sign in and replace the held session token."""
        return await self._tokens.sign_in()

    async def refresh_token(self) -> SessionToken:
        """Refresh the held session token."""
        return await self._tokens.refresh_token()

    async def get_access_token(self) -> str:
        """Return a valid access token, renewing the session if needed."""
        return await self._tokens.get_access_token()

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    async def api_call(self, url: str, method: str = "GET", body: object = None) -> object:
        """Perform an authenticated call and return the decoded JSON body.

        *url* may be absolute or a path relative to the API base.  *body*
        is sent as JSON when not ``None``.

        Raises :class:`~lmbridge.exceptions.ApiError` on a non-success
        status and :class:`~lmbridge.exceptions.TransportError` when no
        response is received.
        """
        if url.startswith("/"):
            url = f"{self._base_url}{url}"
        token = await self.get_access_token()
        headers = {"Authorization": f"Bearer {token}"}
        async with open_session(self._http) as session:
            return await request_json(
                session, method, url, headers=headers, body=body, error_cls=ApiError
            )

    async def get_dashboard(self, serial: str | None = None) -> object:
        """Fetch the raw dashboard of the machine with the given serial number."""
        serial = self._require_serial(serial)
        return await self.api_call(
            f"{self._base_url}{DASHBOARD_PATH.format(serial=serial)}", method="GET"
        )

    async def set_power(self, serial: str | None, enabled: bool) -> object:
        """Switch the machine on (``BrewingMode``) or off (``StandBy``).

        Success means the cloud accepted the command, not that the machine
        has changed state; poll :meth:`get_dashboard` to confirm.
        """
        serial = self._require_serial(serial)
        _LOGGER.debug("Setting power of %s to %s", serial, enabled)
        return await self.api_call(
            f"{self._base_url}{CHANGE_MODE_PATH.format(serial=serial)}",
            method="POST",
            body={"mode": power_mode(enabled)},
        )

    def _require_serial(self, serial: str | None) -> str:
        serial = serial or self._serial
        if not serial:
            raise ValueError("No machine serial. Pass one or run `lmbridge login`.")
        return serial


# ---------------------------------------------------------------------------
# Installation key persistence
# ---------------------------------------------------------------------------


def load_or_create_installation_key(path: Path | None = None) -> tuple[dict[str, str], bool]:
    """Load the installation key at *path*, generating it if absent.

    Returns ``(key, created)``.  A new key gets a lowercase UUID4
    installation id and is written with ``0600`` permissions; the caller
    should :meth:`~Client.register_client` it.  An existing key is
    validated before it is returned.
    """
    path = path or KEY_FILE
    if path.exists():
        key = _read_json(path, InstallationKeyError, "Installation key")
        parse_installation_key(key)
        return key, False

    key = generate_installation_key(str(uuid.uuid4()).lower())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(key, indent=2))
    path.chmod(0o600)
    _LOGGER.debug("Created installation key %s at %s", key["installation_id"], path)
    return key, True


def _read_json(path: Path, error_cls: type[LaMarzoccoError], what: str) -> object:
    """Read *path* as JSON, raising *error_cls* when it does not parse."""
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise error_cls(f"{what} at {path} is not valid JSON: {e}") from e
