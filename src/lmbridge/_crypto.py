"""Internal cryptographic helpers for La Marzocco cloud authentication."""

from __future__ import annotations

import base64
import binascii
import secrets
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass

from Crypto.Hash import SHA256
from Crypto.PublicKey import ECC

from lmbridge._constants import (
    HEADER_INSTALLATION_ID,
    HEADER_NONCE,
    HEADER_REQUEST_PROOF,
    HEADER_TIMESTAMP,
    SECRET_LENGTH,
)
from lmbridge.exceptions import InstallationKeyError


@dataclass(frozen=True)
class ParsedInstallationKey:
    """Validated, decoded view of a stored installation key."""

    installation_id: str
    secret: bytes
    """Shared proof secret, always exactly 32 bytes."""

    private_key: bytes
    """DER-encoded P-256 private key."""


def generate_installation_key(installation_id: str) -> dict[str, str]:
    """Generate a fresh installation key for *installation_id*.

    The result is a plain dict ready to be written as JSON.  It must be
    generated once per installation and reused afterwards.
    """
    private_key = ECC.generate(curve="P-256")
    der: bytes = private_key.export_key(format="DER")
    return {
        "installation_id": installation_id,
        "secret": base64.b64encode(secrets.token_bytes(SECRET_LENGTH)).decode("ascii"),
        "private_key": base64.b64encode(der).decode("ascii"),
    }


def parse_installation_key(raw: object) -> ParsedInstallationKey:
    """Validate and decode a stored installation key.

    Raises :class:`InstallationKeyError` if *raw* is not a mapping, or if
    ``installation_id``, ``secret`` or ``private_key`` is missing or
    malformed.
    """
    if not isinstance(raw, Mapping):
        raise InstallationKeyError("Installation key must be an object.")

    installation_id = raw.get("installation_id")
    if not isinstance(installation_id, str) or not installation_id:
        raise InstallationKeyError("Installation key is missing 'installation_id'.")

    secret = _decode_field(raw, "secret")
    if len(secret) != SECRET_LENGTH:
        raise InstallationKeyError(
            f"Installation key 'secret' must decode to {SECRET_LENGTH} bytes, got {len(secret)}."
        )

    private_key = _decode_field(raw, "private_key")
    return ParsedInstallationKey(installation_id, secret, private_key)


def _decode_field(raw: Mapping[str, object], name: str) -> bytes:
    value = raw.get(name)
    if not isinstance(value, str) or not value:
        raise InstallationKeyError(f"Installation key is missing '{name}'.")
    try:
        decoded = base64.b64decode(value, validate=True)
    except binascii.Error:
        raise InstallationKeyError(f"Installation key '{name}' is not valid base64.") from None
    if not decoded:
        raise InstallationKeyError(f"Installation key '{name}' is empty.")
    return decoded


def derive_public_key(private_key: bytes) -> str:
    """Return the base64 DER (SubjectPublicKeyInfo) public key for *private_key*."""
    try:
        key = ECC.import_key(private_key)
    except (ValueError, IndexError, TypeError) as e:
        raise InstallationKeyError(f"Installation key 'private_key' is unusable: {e}") from e
    if not key.has_private():
        raise InstallationKeyError("Installation key 'private_key' holds a public key.")
    der: bytes = key.public_key().export_key(format="DER")
    return base64.b64encode(der).decode("ascii")


def generate_request_proof(message: str, secret: bytes) -> str:
    """Return the base64 request proof of *message* keyed by *secret*.

    Each UTF-8 byte ``b`` of the message is folded into a working copy of
    the secret: slot ``i = b % 32`` becomes ``b ^ work[i]`` rotated left by
    ``work[i + 1] & 7`` bits.  The proof is ``base64(SHA256(work))``.

    Deterministic: the server recomputes the same value from the secret it
    holds, so the exact bytes of *message* matter.
    """
    work = bytearray(secret)
    size = len(work)
    for byte in message.encode("utf-8"):
        i = byte % size
        shift = work[(i + 1) % size] & 7
        work[i] = _rotl8(byte ^ work[i], shift)
    return base64.b64encode(SHA256.new(bytes(work)).digest()).decode("ascii")


def _rotl8(value: int, shift: int) -> int:
    return ((value << shift) | (value >> (8 - shift))) & 0xFF


def proof_headers(key: ParsedInstallationKey) -> dict[str, str]:
    """Build the installation headers for one request.

    A new nonce and timestamp are generated on every call; the proof is
    computed over ``{installation_id}.{nonce}.{timestamp}``.
    """
    nonce = str(uuid.uuid4()).lower()
    timestamp = str(int(time.time() * 1000))
    proof = generate_request_proof(f"{key.installation_id}.{nonce}.{timestamp}", key.secret)
    return {
        HEADER_INSTALLATION_ID: key.installation_id,
        HEADER_NONCE: nonce,
        HEADER_TIMESTAMP: timestamp,
        HEADER_REQUEST_PROOF: proof,
    }
