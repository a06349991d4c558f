"""Shared fixtures for lmbridge tests."""

from __future__ import annotations

import pytest

from lmbridge._crypto import ParsedInstallationKey, generate_installation_key, parse_installation_key


@pytest.fixture(scope="session")
def installation_key() -> dict[str, str]:
    return generate_installation_key("test-installation")


@pytest.fixture
def parsed_key(installation_key: dict[str, str]) -> ParsedInstallationKey:
    return parse_installation_key(installation_key)
