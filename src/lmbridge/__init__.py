"""Python API and CLI for controlling La Marzocco espresso machines via the cloud."""

from lmbridge._crypto import (
    ParsedInstallationKey,
    generate_installation_key,
    generate_request_proof,
    parse_installation_key,
)
from lmbridge.client import Client, load_or_create_installation_key
from lmbridge.dashboard import extract_power_from_dashboard
from lmbridge.exceptions import (
    ApiError,
    AuthenticationError,
    InstallationKeyError,
    LaMarzoccoError,
    RequestError,
    TransportError,
)
from lmbridge.session import SessionState, SessionToken, TokenManager

__all__ = [
    "ApiError",
    "AuthenticationError",
    "Client",
    "InstallationKeyError",
    "LaMarzoccoError",
    "ParsedInstallationKey",
    "RequestError",
    "SessionState",
    "SessionToken",
    "TokenManager",
    "TransportError",
    "extract_power_from_dashboard",
    "generate_installation_key",
    "generate_request_proof",
    "load_or_create_installation_key",
    "parse_installation_key",
]
