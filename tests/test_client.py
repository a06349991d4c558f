"""Tests for lmbridge.client."""

from __future__ import annotations

import json
import time
from typing import Any
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from aioresponses import aioresponses

from lmbridge._constants import API_BASE
from lmbridge.client import Client, load_or_create_installation_key
from lmbridge.exceptions import (
    ApiError,
    AuthenticationError,
    InstallationKeyError,
    LaMarzoccoError,
    TransportError,
)
from lmbridge.session import SessionToken

_DASHBOARD_URL = f"{API_BASE}/things/SERIAL123/dashboard"
_MODE_URL = f"{API_BASE}/things/SERIAL123/command/CoffeeMachineChangeMode"


class _Recorder:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def __call__(self, url: object, **kwargs: Any) -> None:
        self.calls.append(kwargs)


@pytest.fixture
def client(installation_key: dict[str, str]) -> Client:
    return Client("user", "pass", installation_key, serial="SERIAL123")


def _authenticate(client: Client, access_token: str = "token-x") -> None:
    client.tokens._token = SessionToken(access_token, "refresh", time.time() + 3600)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestClientInit:
    def test_parses_installation_key(self, client):
        assert client.installation_id == "test-installation"
        assert len(client.installation_key.secret) == 32

    @pytest.mark.parametrize("raw", [None, {}, {"installation_id": "x"}])
    def test_invalid_key_raises(self, raw):
        with pytest.raises(InstallationKeyError):
            Client("user", "pass", raw)  # type: ignore[arg-type]

    def test_serial_property(self, client):
        assert client.serial == "SERIAL123"


class TestClientFromSaved:
    def test_no_credentials_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr("lmbridge.client.CRED_FILE", tmp_path / "nonexistent.json")
        with pytest.raises(FileNotFoundError, match="No saved credentials"):
            Client.from_saved()

    def test_no_key_file(self, tmp_path, monkeypatch):
        cred_file = tmp_path / "credentials.json"
        cred_file.write_text(json.dumps({"username": "u", "password": "p", "serial": "S"}))
        monkeypatch.setattr("lmbridge.client.CRED_FILE", cred_file)
        monkeypatch.setattr("lmbridge.client.KEY_FILE", tmp_path / "missing.json")
        with pytest.raises(FileNotFoundError, match="No installation key"):
            Client.from_saved()

    def test_loads_credentials_and_key(self, tmp_path, monkeypatch, installation_key):
        cred_file = tmp_path / "credentials.json"
        key_file = tmp_path / "installation_key.json"
        cred_file.write_text(json.dumps({"username": "u", "password": "p", "serial": "SN999"}))
        key_file.write_text(json.dumps(installation_key))
        monkeypatch.setattr("lmbridge.client.CRED_FILE", cred_file)
        monkeypatch.setattr("lmbridge.client.KEY_FILE", key_file)

        client = Client.from_saved()

        assert client.serial == "SN999"
        assert client.installation_id == "test-installation"

    def test_corrupt_key_rejected(self, tmp_path, monkeypatch):
        cred_file = tmp_path / "credentials.json"
        key_file = tmp_path / "installation_key.json"
        cred_file.write_text(json.dumps({"username": "u", "password": "p", "serial": "S"}))
        key_file.write_text(json.dumps({"installation_id": "x"}))
        monkeypatch.setattr("lmbridge.client.CRED_FILE", cred_file)
        monkeypatch.setattr("lmbridge.client.KEY_FILE", key_file)

        with pytest.raises(InstallationKeyError):
            Client.from_saved()

    @pytest.mark.parametrize("content", ["", '{"installation_id": "x", "secr'])
    def test_unparsable_key_file(self, tmp_path, monkeypatch, content):
        cred_file = tmp_path / "credentials.json"
        key_file = tmp_path / "installation_key.json"
        cred_file.write_text(json.dumps({"username": "u", "password": "p", "serial": "S"}))
        key_file.write_text(content)
        monkeypatch.setattr("lmbridge.client.CRED_FILE", cred_file)
        monkeypatch.setattr("lmbridge.client.KEY_FILE", key_file)

        with pytest.raises(InstallationKeyError, match="not valid JSON"):
            Client.from_saved()

    @pytest.mark.parametrize("content", ["", '{"username": "u"', "[]"])
    def test_unparsable_credentials_file(self, tmp_path, monkeypatch, installation_key, content):
        cred_file = tmp_path / "credentials.json"
        key_file = tmp_path / "installation_key.json"
        cred_file.write_text(content)
        key_file.write_text(json.dumps(installation_key))
        monkeypatch.setattr("lmbridge.client.CRED_FILE", cred_file)
        monkeypatch.setattr("lmbridge.client.KEY_FILE", key_file)

        with pytest.raises(LaMarzoccoError, match="Saved credentials"):
            Client.from_saved()


class TestClientSaveCredentials:
    def test_save_and_permissions(self, tmp_path, monkeypatch, client):
        cred_dir = tmp_path / "config"
        cred_file = cred_dir / "credentials.json"
        monkeypatch.setattr("lmbridge.client.CONFIG_DIR", cred_dir)
        monkeypatch.setattr("lmbridge.client.CRED_FILE", cred_file)

        client.save_credentials()

        data = json.loads(cred_file.read_text())
        assert data == {"username": "user", "password": "pass", "serial": "SERIAL123"}
        assert (cred_file.stat().st_mode & 0o777) == 0o600


class TestLoadOrCreateInstallationKey:
    def test_creates_when_missing(self, tmp_path):
        path = tmp_path / "keys" / "installation_key.json"
        key, created = load_or_create_installation_key(path)

        assert created is True
        assert json.loads(path.read_text()) == key
        assert (path.stat().st_mode & 0o777) == 0o600
        installation_id = key["installation_id"]
        assert installation_id == installation_id.lower()
        assert len(installation_id) == 36

    def test_loads_existing(self, tmp_path, installation_key):
        path = tmp_path / "installation_key.json"
        path.write_text(json.dumps(installation_key))

        key, created = load_or_create_installation_key(path)

        assert created is False
        assert key == installation_key

    def test_second_call_reuses_key(self, tmp_path):
        path = tmp_path / "installation_key.json"
        first, _ = load_or_create_installation_key(path)
        second, created = load_or_create_installation_key(path)
        assert created is False
        assert first == second

    def test_existing_invalid_key_raises(self, tmp_path):
        path = tmp_path / "installation_key.json"
        path.write_text(json.dumps({"installation_id": "x"}))
        with pytest.raises(InstallationKeyError):
            load_or_create_installation_key(path)

    @pytest.mark.parametrize("content", ["", '{"installation_id": "x", "secr'])
    def test_unparsable_key_file_raises(self, tmp_path, content):
        path = tmp_path / "installation_key.json"
        path.write_text(content)
        with pytest.raises(InstallationKeyError, match="not valid JSON"):
            load_or_create_installation_key(path)
        assert path.read_text() == content

    def test_default_path(self, tmp_path, monkeypatch):
        key_file = tmp_path / "default.json"
        monkeypatch.setattr("lmbridge.client.KEY_FILE", key_file)
        _, created = load_or_create_installation_key()
        assert created is True
        assert key_file.exists()


# ---------------------------------------------------------------------------
# Authentication delegation
# ---------------------------------------------------------------------------


class TestClientAuthentication:
    async def test_get_access_token_signs_in(self, client):
        with aioresponses() as m:
            m.post(
                f"{API_BASE}/auth/signin",
                payload={"accessToken": "token-a", "refreshToken": "token-r"},
            )
            token = await client.get_access_token()

        assert token == "token-a"
        assert client.tokens.token.refresh_token == "token-r"

    async def test_register_client_posts_init(self, client):
        recorder = _Recorder()
        with aioresponses() as m:
            m.post(f"{API_BASE}/auth/init", payload={}, callback=recorder)
            await client.register_client()

        (call,) = recorder.calls
        assert call["headers"]["X-App-Installation-Id"] == "test-installation"
        assert call["json"]["pk"]

    async def test_sign_in_and_refresh_delegate(self, client):
        token = SessionToken("a", "r", time.time() + 3600)
        with (
            patch.object(client.tokens, "sign_in", AsyncMock(return_value=token)) as sign_in,
            patch.object(client.tokens, "refresh_token", AsyncMock(return_value=token)) as refresh,
        ):
            assert await client.sign_in() is token
            assert await client.refresh_token() is token

        sign_in.assert_awaited_once()
        refresh.assert_awaited_once()


# ---------------------------------------------------------------------------
# API calls
# ---------------------------------------------------------------------------


class TestApiCall:
    async def test_sends_authorization_header_and_body(self, client):
        recorder = _Recorder()
        with (
            patch.object(client, "get_access_token", AsyncMock(return_value="token-x")),
            aioresponses() as m,
        ):
            m.post("https://example.com/test", payload={"ok": True}, callback=recorder)
            result = await client.api_call("https://example.com/test", "POST", {"value": 123})

        assert result == {"ok": True}
        (call,) = recorder.calls
        assert call["headers"]["Authorization"] == "Bearer token-x"
        assert call["json"] == {"value": 123}

    async def test_no_body_when_none(self, client):
        _authenticate(client)
        recorder = _Recorder()
        with aioresponses() as m:
            m.get(_DASHBOARD_URL, payload={}, callback=recorder)
            await client.api_call(_DASHBOARD_URL)

        assert recorder.calls[0]["json"] is None

    async def test_relative_path(self, client):
        _authenticate(client)
        with aioresponses() as m:
            m.get(_DASHBOARD_URL, payload={"widgets": []})
            result = await client.api_call("/things/SERIAL123/dashboard")

        assert result == {"widgets": []}

    async def test_error_status_raises_api_error(self, client):
        _authenticate(client)
        with aioresponses() as m:
            m.get(_DASHBOARD_URL, status=404, payload={"message": "not found"})
            with pytest.raises(ApiError) as exc_info:
                await client.api_call(_DASHBOARD_URL)

        assert exc_info.value.status == 404
        assert exc_info.value.payload == {"message": "not found"}

    async def test_non_json_error_payload(self, client):
        _authenticate(client)
        with aioresponses() as m:
            m.get(_DASHBOARD_URL, status=502, body="Bad Gateway")
            with pytest.raises(ApiError) as exc_info:
                await client.api_call(_DASHBOARD_URL)

        assert exc_info.value.status == 502
        assert exc_info.value.payload == "Bad Gateway"

    async def test_undecodable_error_payload(self, client):
        _authenticate(client)
        with aioresponses() as m:
            m.get(_DASHBOARD_URL, status=502, body=b"<html>\xff proxy error</html>")
            with pytest.raises(ApiError) as exc_info:
                await client.api_call(_DASHBOARD_URL)

        assert exc_info.value.status == 502
        assert "proxy error" in exc_info.value.payload

    async def test_transport_error(self, client):
        _authenticate(client)
        with aioresponses() as m:
            m.get(_DASHBOARD_URL, exception=aiohttp.ServerDisconnectedError())
            with pytest.raises(TransportError):
                await client.api_call(_DASHBOARD_URL)

    async def test_timeout_is_transport_error(self, client):
        _authenticate(client)
        with aioresponses() as m:
            m.get(_DASHBOARD_URL, exception=TimeoutError())
            with pytest.raises(TransportError):
                await client.api_call(_DASHBOARD_URL)

    async def test_empty_body_returns_none(self, client):
        _authenticate(client)
        with aioresponses() as m:
            m.post(_MODE_URL, status=204, body="")
            assert await client.api_call(_MODE_URL, "POST", {"mode": "StandBy"}) is None

    async def test_token_failure_skips_request(self, client):
        with aioresponses() as m:
            m.post(f"{API_BASE}/auth/signin", status=401, payload={"message": "bad creds"})
            with pytest.raises(AuthenticationError):
                await client.api_call(_DASHBOARD_URL)
            assert all(method == "POST" for method, _ in m.requests)


class TestGetDashboard:
    async def test_calls_api_call_with_dashboard_endpoint(self, client):
        with patch.object(client, "api_call", AsyncMock(return_value={"widgets": []})) as api_call:
            result = await client.get_dashboard("SERIAL123")

        assert result == {"widgets": []}
        api_call.assert_awaited_once_with(_DASHBOARD_URL, method="GET")

    async def test_defaults_to_configured_serial(self, client):
        with patch.object(client, "api_call", AsyncMock(return_value={})) as api_call:
            await client.get_dashboard()
        assert "/things/SERIAL123/dashboard" in api_call.await_args.args[0]

    async def test_without_serial_raises(self, installation_key):
        client = Client("u", "p", installation_key)
        with pytest.raises(ValueError, match="No machine serial"):
            await client.get_dashboard()

    async def test_over_http(self, client):
        _authenticate(client, "token-d")
        dashboard = {"widgets": [{"code": "CMMachineStatus", "output": {"mode": "StandBy"}}]}
        with aioresponses() as m:
            m.get(_DASHBOARD_URL, payload=dashboard)
            assert await client.get_dashboard("SERIAL123") == dashboard

    @pytest.mark.parametrize("body", [None, [], "maintenance"])
    async def test_non_object_body_returned_as_is(self, client, body):
        with patch.object(client, "api_call", AsyncMock(return_value=body)):
            assert await client.get_dashboard() == body


class TestSetPower:
    async def test_posts_brewing_mode_or_standby(self, client):
        with patch.object(client, "api_call", AsyncMock(return_value={"ok": True})) as api_call:
            await client.set_power("SERIAL123", True)
            await client.set_power("SERIAL123", False)

        first, second = api_call.await_args_list
        assert first.kwargs["body"] == {"mode": "BrewingMode"}
        assert second.kwargs["body"] == {"mode": "StandBy"}
        assert first.kwargs["method"] == "POST"
        assert first.args[0] == _MODE_URL

    async def test_over_http(self, client):
        _authenticate(client)
        recorder = _Recorder()
        with aioresponses() as m:
            m.post(_MODE_URL, payload={"status": "Accepted"}, callback=recorder)
            result = await client.set_power("SERIAL123", True)

        assert result == {"status": "Accepted"}
        assert recorder.calls[0]["json"] == {"mode": "BrewingMode"}
        assert recorder.calls[0]["headers"]["Authorization"] == "Bearer token-x"
