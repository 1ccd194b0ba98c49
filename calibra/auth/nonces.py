"""Wallet login: single-use nonce challenge signed as an EIP-191 message.

Flow:
  1. ``issue(address)`` stores a fresh nonce (replacing any previous one)
     and returns the exact message the wallet must sign.
  2. ``authenticate(address, signature)`` rebuilds that message from the
     stored nonce, recovers the signer and deletes the nonce.

Fail-closed: a missing, expired or already-consumed nonce and any
signature problem reject the request.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import bittensor as bt
from eth_account import Account
from eth_account.messages import encode_defunct

from calibra.database.repository import NonceRepository
from calibra.errors import NonceExpiredError, NonceMissingError, SignatureMismatchError
from calibra.protocol.hashing import normalize_address

DEFAULT_NONCE_TTL = 600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_expiry(expires_at: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2026-01-01T00:10:00.000Z."""
    expires_at = expires_at.astimezone(timezone.utc)
    return expires_at.strftime("%Y-%m-%dT%H:%M:%S.") + f"{expires_at.microsecond // 1000:03d}Z"


def build_auth_message(address: str, nonce: str, expires_at: datetime) -> str:
    return f"Login\nAddress: {address}\nNonce: {nonce}\nExpires: {format_expiry(expires_at)}"


def recover_signer(message: str, signature: str) -> str:
    """Lowercase address that produced ``signature`` over ``message``."""
    try:
        signer = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        raise SignatureMismatchError("signature could not be recovered") from e
    return signer.lower()


@dataclass
class NonceChallenge:
    address: str
    nonce: str
    expires_at: datetime
    message: str


class NonceService:
    """Issues and redeems login nonces backed by ``auth_nonces``."""

    def __init__(
        self,
        nonces: NonceRepository,
        ttl_seconds: int = DEFAULT_NONCE_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.nonces = nonces
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def issue(self, address: str) -> NonceChallenge:
        address = normalize_address(address)
        nonce = "0x" + secrets.token_hex(32)
        expires_at = self._clock() + timedelta(seconds=self.ttl_seconds)
        # Millisecond precision so the message can be rebuilt from storage.
        expires_at = expires_at.replace(microsecond=(expires_at.microsecond // 1000) * 1000)
        await self.nonces.upsert(address, nonce, expires_at)
        bt.logging.debug({"calibra_auth": {"event": "nonce_issued", "address": address[:10]}})
        return NonceChallenge(address, nonce, expires_at, build_auth_message(address, nonce, expires_at))

    async def authenticate(self, address: str, signature: str) -> str:
        """Verify a signed challenge. Returns the authenticated address."""
        address = normalize_address(address)
        short = address[:10]

        stored = await self.nonces.get(address)
        if stored is None:
            bt.logging.warning({"calibra_auth": {"event": "auth_failed", "address": short, "reason": "missing_nonce"}})
            raise NonceMissingError("no nonce issued for this address")
        if self._clock() > stored.expires_at:
            bt.logging.warning({"calibra_auth": {"event": "auth_failed", "address": short, "reason": "expired_nonce"}})
            raise NonceExpiredError("nonce expired, request a new one")

        message = build_auth_message(address, stored.nonce, stored.expires_at)
        signer = recover_signer(message, signature)
        if signer != address:
            bt.logging.warning({"calibra_auth": {"event": "auth_failed", "address": short, "reason": "bad_signature"}})
            raise SignatureMismatchError("signature does not match address")

        if not await self.nonces.consume(address, stored.nonce):
            # Lost a race with a concurrent login using the same nonce.
            raise NonceMissingError("nonce already used")
        bt.logging.info({"calibra_auth": {"event": "authenticated", "address": short}})
        return address


__all__ = [
    "DEFAULT_NONCE_TTL",
    "NonceChallenge",
    "NonceService",
    "build_auth_message",
    "format_expiry",
    "recover_signer",
]
