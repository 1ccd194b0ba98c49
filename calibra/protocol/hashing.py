"""Hashing and identifier helpers shared by every protocol component.

All digests are keccak256 (as used by the ledger), represented on the wire
as lowercase ``0x``-prefixed hex. Addresses are 20-byte hex, normalized to
lowercase.
"""

from __future__ import annotations

import re

from eth_utils import keccak

from calibra.errors import ValidationError

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_BYTES32_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


def keccak256(data: bytes) -> bytes:
    """Return the 32-byte keccak256 digest of ``data``."""
    return keccak(data)


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def is_hex_address(value: str) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def is_bytes32_hex(value: str) -> bool:
    return isinstance(value, str) and bool(_BYTES32_RE.match(value))


def normalize_address(value: str, field: str = "address") -> str:
    """Validate and lowercase a 20-byte hex address."""
    raw = (value or "").strip()
    if not is_hex_address(raw):
        raise ValidationError(f"Invalid {field}", code=f"invalid_{field}")
    return raw.lower()


def normalize_bytes32(value: str, field: str = "bytes32") -> str:
    """Validate and lowercase a 32-byte hex value."""
    raw = (value or "").strip()
    if not is_bytes32_hex(raw):
        raise ValidationError(f"Invalid {field}", code=f"invalid_{field}")
    return raw.lower()


def bytes32_from_hex(value: str, field: str = "bytes32") -> bytes:
    return bytes.fromhex(normalize_bytes32(value, field)[2:])


def address_bytes(address: str) -> bytes:
    return bytes.fromhex(normalize_address(address)[2:])


def batch_id_to_hash(batch_id: str) -> str:
    """Derive the fixed-width ledger lookup key for a batch id."""
    if not batch_id or not batch_id.strip():
        raise ValidationError("Missing batchId", code="invalid_batch_id")
    return to_hex(keccak256(batch_id.encode("utf-8")))


def compute_hash(text: str) -> str:
    """keccak256 over the exact UTF-8 bytes of ``text``."""
    return to_hex(keccak256(text.encode("utf-8")))


__all__ = [
    "address_bytes",
    "batch_id_to_hash",
    "bytes32_from_hex",
    "compute_hash",
    "is_bytes32_hex",
    "is_hex_address",
    "keccak256",
    "normalize_address",
    "normalize_bytes32",
    "to_hex",
]
