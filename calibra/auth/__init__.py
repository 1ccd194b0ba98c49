"""Wallet authentication."""

from calibra.protocol.hashing import is_bytes32_hex, is_hex_address, normalize_address

from .nonces import NonceChallenge, NonceService, build_auth_message, recover_signer

__all__ = [
    "NonceChallenge",
    "NonceService",
    "build_auth_message",
    "is_bytes32_hex",
    "is_hex_address",
    "normalize_address",
    "recover_signer",
]
