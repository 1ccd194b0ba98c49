"""Authenticated encryption of canonical payloads at rest.

AES-256-GCM with a fresh 96-bit random nonce per message. The stored
object is an ``EnvelopeV1`` JSON document; ``keccak256(ciphertext)`` is
bound into the on-ledger commitment as the encrypted URI hash.

Decryption fails closed: any tag mismatch, wrong key length, unknown
version/algorithm or malformed field raises EnvelopeIntegrityError and no
plaintext is ever returned.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import pydantic
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from calibra.errors import EnvelopeIntegrityError

from .hashing import keccak256, to_hex
from .models import EnvelopeV1

KEY_BYTES = 32
NONCE_BYTES = 12
DEFAULT_KEY_ENV = "CALIBRA_SUBMISSION_ENC_KEY_BASE64"


# ---------------------------------------------------------------------------
# Key providers
# ---------------------------------------------------------------------------


@runtime_checkable
class KeyProvider(Protocol):
    """Source of the symmetric master key."""

    def get_key(self) -> bytes:
        ...


class StaticKeyProvider:
    """Key injected directly (tests, secrets managers)."""

    def __init__(self, key: bytes):
        self._key = bytes(key)

    def get_key(self) -> bytes:
        return self._key


class EnvKeyProvider:
    """Reads a base64 key from the environment on every call.

    Nothing is cached, so a rotated environment takes effect immediately.
    """

    def __init__(self, env_var: str = DEFAULT_KEY_ENV):
        self.env_var = env_var

    def get_key(self) -> bytes:
        raw = os.environ.get(self.env_var, "")
        if not raw:
            raise EnvelopeIntegrityError(f"Missing {self.env_var}", code="missing_key")
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EnvelopeIntegrityError(f"{self.env_var} is not valid base64", code="bad_key") from e


def generate_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def _load_cipher(keys: KeyProvider) -> AESGCM:
    key = keys.get_key()
    if len(key) != KEY_BYTES:
        raise EnvelopeIntegrityError(f"key must be {KEY_BYTES} bytes", code="bad_key")
    return AESGCM(key)


# ---------------------------------------------------------------------------
# Envelope encode / decode
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SealedEnvelope:
    envelope: EnvelopeV1
    ciphertext: bytes

    @property
    def encrypted_uri_hash(self) -> str:
        return to_hex(keccak256(self.ciphertext))

    def to_bytes(self) -> bytes:
        return serialize_envelope(self.envelope)


def serialize_envelope(envelope: EnvelopeV1) -> bytes:
    return json.dumps(envelope.model_dump(mode="json"), separators=(",", ":")).encode("utf-8")


_ENVELOPE_VERSIONS: dict[int, type[EnvelopeV1]] = {
    1: EnvelopeV1,
}


def parse_envelope(raw: bytes | str | dict[str, Any]) -> EnvelopeV1:
    """Parse a stored envelope, dispatching on its version tag.

    Unknown versions are rejected rather than parsed best-effort.
    """
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EnvelopeIntegrityError("envelope is not valid JSON") from e
    if not isinstance(data, dict):
        raise EnvelopeIntegrityError("envelope must be an object")

    version = data.get("v")
    model = _ENVELOPE_VERSIONS.get(version) if isinstance(version, int) and not isinstance(version, bool) else None
    if model is None:
        raise EnvelopeIntegrityError(f"Unsupported envelope version: {version!r}", code="unsupported_envelope")
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise EnvelopeIntegrityError("Unsupported envelope", code="unsupported_envelope") from e


def _b64decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EnvelopeIntegrityError(f"{field} is not valid base64") from e


def encrypt(keys: KeyProvider, plaintext: bytes) -> SealedEnvelope:
    """Encrypt canonical bytes under the current key with a fresh nonce."""
    cipher = _load_cipher(keys)
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = cipher.encrypt(nonce, plaintext, None)
    envelope = EnvelopeV1(
        iv_b64=base64.b64encode(nonce).decode("ascii"),
        ct_b64=base64.b64encode(ciphertext).decode("ascii"),
    )
    return SealedEnvelope(envelope=envelope, ciphertext=ciphertext)


def envelope_ciphertext(envelope: EnvelopeV1) -> bytes:
    return _b64decode(envelope.ct_b64, "ct_b64")


def decrypt(keys: KeyProvider, envelope: EnvelopeV1 | bytes | str | dict[str, Any]) -> bytes:
    """Authenticate and decrypt an envelope. Fails closed."""
    if not isinstance(envelope, EnvelopeV1):
        envelope = parse_envelope(envelope)

    nonce = _b64decode(envelope.iv_b64, "iv_b64")
    if len(nonce) != NONCE_BYTES:
        raise EnvelopeIntegrityError(f"nonce must be {NONCE_BYTES} bytes")
    ciphertext = envelope_ciphertext(envelope)
    if not ciphertext:
        raise EnvelopeIntegrityError("empty ciphertext")

    cipher = _load_cipher(keys)
    try:
        return cipher.decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise EnvelopeIntegrityError("envelope authentication failed") from e


__all__ = [
    "DEFAULT_KEY_ENV",
    "KEY_BYTES",
    "NONCE_BYTES",
    "EnvKeyProvider",
    "KeyProvider",
    "SealedEnvelope",
    "StaticKeyProvider",
    "decrypt",
    "encrypt",
    "envelope_ciphertext",
    "generate_key",
    "parse_envelope",
    "serialize_envelope",
]
