"""LedgerClient backed by the deployed protocol contract over JSON-RPC.

Reads are plain ``eth_call``s. Writes are signed locally with the
configured account and sent once; a failed send is surfaced, never
resent, so a commitment cannot be duplicated by this client.
"""

from __future__ import annotations

from typing import Any

import bittensor as bt
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, Web3Exception

from calibra.errors import ExternalDependencyError, ForbiddenError, NotFoundError, StateError
from calibra.protocol.hashing import normalize_address, normalize_bytes32, to_hex
from calibra.protocol.models import BatchInfo, Commitment, ProviderSummary, RevealItem

ZERO_BYTES32 = "0x" + "00" * 32


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[tuple[str, str]] | None = None, view: bool = False) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view" if view else "nonpayable",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs or []],
    }


PROTOCOL_ABI: list[dict] = [
    _fn("getBatch", [("batchIdHash", "bytes32")], [
        ("exists", "bool"), ("operator", "address"), ("funder", "address"),
        ("windowStart", "uint64"), ("windowEnd", "uint64"), ("revealDeadline", "uint64"),
        ("seedHash", "bytes32"), ("seedRevealed", "bool"), ("mixBlockNumber", "uint64"),
        ("randomness", "bytes32"), ("specHash", "bytes32"), ("funded", "bool"),
        ("finalized", "bool"), ("bounty", "uint256"), ("joinBond", "uint256"),
    ], view=True),
    _fn("getProviderSummary", [("batchIdHash", "bytes32"), ("provider", "address")], [
        ("joined", "bool"), ("joinedAt", "uint64"), ("commitCount", "uint32"),
        ("revealedCount", "uint32"), ("lastCommitAt", "uint64"), ("bond", "uint256"),
        ("bondSettled", "bool"), ("payout", "uint256"), ("payoutClaimed", "bool"),
    ], view=True),
    _fn("getCommitCount", [("batchIdHash", "bytes32"), ("provider", "address")], [("", "uint32")], view=True),
    _fn("getCommit", [("batchIdHash", "bytes32"), ("provider", "address"), ("commitIndex", "uint32")], [
        ("commitHash", "bytes32"), ("committedAt", "uint64"), ("revealed", "bool"),
        ("root", "bytes32"), ("salt", "bytes32"), ("publicUriHash", "bytes32"),
    ], view=True),
    _fn("getSelectedCommitIndex", [("batchIdHash", "bytes32"), ("provider", "address")], [("", "uint32")], view=True),
    _fn("join", [("batchIdHash", "bytes32")]),
    _fn("commit", [("batchIdHash", "bytes32"), ("commitHash", "bytes32"), ("encryptedUriHash", "bytes")]),
    _fn("revealCommits", [
        ("batchIdHash", "bytes32"), ("commitIndices", "uint32[]"), ("roots", "bytes32[]"),
        ("salts", "bytes32[]"), ("publicUris", "bytes[]"),
    ]),
    _fn("lockRandomness", [("batchIdHash", "bytes32")]),
    _fn("revealSeed", [("batchIdHash", "bytes32"), ("seed", "bytes32")]),
    _fn("finalize", [
        ("batchIdHash", "bytes32"), ("providers", "address[]"), ("payouts", "uint256[]"),
        ("selectedCommitIndices", "uint32[]"), ("scoresHash", "bytes32"),
    ]),
]


def _b32(value: bytes | str) -> str:
    return to_hex(value) if isinstance(value, (bytes, bytearray)) else str(value).lower()


def _nonzero(value: bytes | str) -> str | None:
    h = _b32(value)
    return None if h == ZERO_BYTES32 else h


class Web3LedgerClient:
    """Contract-backed LedgerClient bound to one signing account."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str | None = None,
        timeout: float = 30.0,
        w3: Any = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address), abi=PROTOCOL_ABI,
        )
        self._account = Account.from_key(private_key) if private_key else None

    @property
    def address(self) -> str | None:
        return self._account.address.lower() if self._account else None

    # -- Plumbing --

    async def _call(self, name: str, *args: Any) -> Any:
        try:
            return await getattr(self.contract.functions, name)(*args).call()
        except ContractLogicError as e:
            raise StateError(f"{name} reverted: {e}", code="ledger_revert") from e
        except (Web3Exception, OSError) as e:
            raise ExternalDependencyError("ledger", name, str(e)) from e

    async def _transact(self, name: str, sender: str, *args: Any) -> Any:
        if self._account is None:
            raise ExternalDependencyError("ledger", name, "no signing account configured", retryable=False)
        if normalize_address(sender, "sender") != self.address:
            raise ForbiddenError(f"client is bound to {self.address}, not {sender}")
        try:
            fn = getattr(self.contract.functions, name)(*args)
            tx = await fn.build_transaction({
                "from": self._account.address,
                "nonce": await self.w3.eth.get_transaction_count(self._account.address),
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        except ContractLogicError as e:
            raise StateError(f"{name} reverted: {e}", code="ledger_revert") from e
        except (Web3Exception, OSError) as e:
            # Not retried: the transaction may already be in the mempool.
            raise ExternalDependencyError("ledger", name, str(e), retryable=False) from e
        if receipt.get("status") != 1:
            raise StateError(f"{name} transaction reverted", code="ledger_revert")
        bt.logging.info({"calibra_ledger_rpc": {"event": name, "tx": _b32(tx_hash)[:18]}})
        return receipt

    # -- Reads --

    async def get_batch(self, batch_hash: str) -> BatchInfo | None:
        batch_hash = normalize_bytes32(batch_hash, "batch_hash")
        res = await self._call("getBatch", batch_hash)
        if not res[0]:
            return None
        seed_revealed = bool(res[7])
        return BatchInfo(
            batch_hash=batch_hash,
            operator=str(res[1]).lower(),
            funder=str(res[2]).lower(),
            window_start=int(res[3]),
            window_end=int(res[4]),
            reveal_deadline=int(res[5]),
            seed_hash=_nonzero(res[6]),
            seed_revealed=seed_revealed,
            randomness_locked=int(res[8]) > 0,
            seed=_nonzero(res[9]) if seed_revealed else None,
            funded=bool(res[11]),
            finalized=bool(res[12]),
            bounty=int(res[13]),
            join_bond=int(res[14]),
        )

    async def get_commit_count(self, batch_hash: str, provider: str) -> int:
        return int(await self._call(
            "getCommitCount",
            normalize_bytes32(batch_hash, "batch_hash"),
            AsyncWeb3.to_checksum_address(normalize_address(provider, "provider")),
        ))

    async def get_commit(self, batch_hash: str, provider: str, index: int) -> Commitment:
        provider = normalize_address(provider, "provider")
        if index >= await self.get_commit_count(batch_hash, provider):
            raise NotFoundError(f"no commit at index {index}")
        res = await self._call(
            "getCommit",
            normalize_bytes32(batch_hash, "batch_hash"),
            AsyncWeb3.to_checksum_address(provider),
            index,
        )
        revealed = bool(res[2])
        return Commitment(
            provider=provider,
            index=index,
            commit_hash=_b32(res[0]),
            committed_at=int(res[1]),
            revealed=revealed,
            root=_b32(res[3]) if revealed else None,
            salt=_b32(res[4]) if revealed else None,
            # The contract keeps the encrypted uri hash in the same slot until reveal.
            encrypted_uri_hash=_b32(res[5]),
            public_uri_hash=_b32(res[5]) if revealed else None,
        )

    async def get_selected_commit_index(self, batch_hash: str, provider: str) -> int:
        return int(await self._call(
            "getSelectedCommitIndex",
            normalize_bytes32(batch_hash, "batch_hash"),
            AsyncWeb3.to_checksum_address(normalize_address(provider, "provider")),
        ))

    async def get_provider_summary(self, batch_hash: str, provider: str) -> ProviderSummary:
        provider = normalize_address(provider, "provider")
        res = await self._call(
            "getProviderSummary",
            normalize_bytes32(batch_hash, "batch_hash"),
            AsyncWeb3.to_checksum_address(provider),
        )
        return ProviderSummary(
            provider=provider,
            joined=bool(res[0]),
            joined_at=int(res[1]) or None,
            commit_count=int(res[2]),
            revealed_count=int(res[3]),
            last_commit_at=int(res[4]) or None,
            bond=int(res[5]),
            payout=int(res[7]),
        )

    # -- Writes --

    async def join(self, batch_hash: str, sender: str) -> None:
        await self._transact("join", sender, normalize_bytes32(batch_hash, "batch_hash"))

    async def commit(
        self, batch_hash: str, sender: str, commit_hash: str, encrypted_uri_hash: str,
    ) -> int:
        batch_hash = normalize_bytes32(batch_hash, "batch_hash")
        await self._transact(
            "commit", sender, batch_hash,
            normalize_bytes32(commit_hash, "commit_hash"),
            bytes.fromhex(normalize_bytes32(encrypted_uri_hash, "encrypted_uri_hash")[2:]),
        )
        # One writer per provider per batch, so the newest index is ours.
        return await self.get_commit_count(batch_hash, sender) - 1

    async def reveal_commits(
        self, batch_hash: str, sender: str, items: list[RevealItem],
    ) -> None:
        await self._transact(
            "revealCommits", sender,
            normalize_bytes32(batch_hash, "batch_hash"),
            [i.index for i in items],
            [normalize_bytes32(i.root, "root") for i in items],
            [normalize_bytes32(i.salt, "salt") for i in items],
            [bytes.fromhex(normalize_bytes32(i.public_uri_hash, "public_uri_hash")[2:]) for i in items],
        )

    async def lock_randomness(self, batch_hash: str, sender: str) -> None:
        await self._transact("lockRandomness", sender, normalize_bytes32(batch_hash, "batch_hash"))

    async def reveal_seed(self, batch_hash: str, sender: str, seed: str) -> None:
        await self._transact(
            "revealSeed", sender,
            normalize_bytes32(batch_hash, "batch_hash"),
            normalize_bytes32(seed, "seed"),
        )

    async def finalize(
        self,
        batch_hash: str,
        sender: str,
        providers: list[str],
        payouts: list[int],
        selected_indices: list[int],
        scores_hash: str,
    ) -> None:
        await self._transact(
            "finalize", sender,
            normalize_bytes32(batch_hash, "batch_hash"),
            [AsyncWeb3.to_checksum_address(normalize_address(p, "provider")) for p in providers],
            list(payouts),
            list(selected_indices),
            normalize_bytes32(scores_hash, "scores_hash"),
        )


__all__ = ["PROTOCOL_ABI", "Web3LedgerClient"]
