"""In-memory LedgerClient with the full phase machine.

Reference implementation of the ledger's rules, used for tests and local
development. Every method runs to completion without awaiting, so on a
single event loop each call is atomic, matching the ledger's single global
sequencer.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

import bittensor as bt

from calibra.errors import (
    AlreadyFinalizedError,
    AlreadyJoinedError,
    AlreadyRevealedError,
    CommitmentMismatchError,
    ForbiddenError,
    NotFoundError,
    SeedNotRevealedError,
    StateError,
    ValidationError,
)
from calibra.protocol.commitment import verify_commitment
from calibra.protocol.hashing import (
    bytes32_from_hex,
    keccak256,
    normalize_address,
    normalize_bytes32,
    to_hex,
)
from calibra.protocol.models import BatchInfo, Commitment, ProviderSummary, RevealItem
from calibra.protocol.selector import selected_index

from .phase import (
    COMMIT_PHASES,
    FINALIZE_PHASES,
    JOIN_PHASES,
    REVEAL_PHASES,
    require_phase,
    validate_windows,
)


def _short(address: str) -> str:
    return address[:10] if address else "none"


@dataclass
class _ProviderState:
    joined_at: int
    bond: int
    commits: list[Commitment] = field(default_factory=list)
    payout: int = 0


@dataclass
class _BatchState:
    info: BatchInfo
    providers: dict[str, _ProviderState] = field(default_factory=dict)


class InMemoryLedger:
    """Ledger reference implementation.

    ``clock`` returns unix seconds; tests inject a controllable clock to
    walk a batch through its phases.
    """

    def __init__(self, clock: Callable[[], int] | None = None):
        self._clock = clock or (lambda: int(time.time()))
        self._batches: dict[str, _BatchState] = {}

    def now(self) -> int:
        return int(self._clock())

    # -- Operator setup (batch CRUD lives outside the core) --

    def create_batch(
        self,
        batch_hash: str,
        *,
        operator: str,
        window_start: int,
        window_end: int,
        reveal_deadline: int,
        seed_hash: str | None = None,
        join_bond: int = 0,
    ) -> BatchInfo:
        batch_hash = normalize_bytes32(batch_hash, "batch_hash")
        if batch_hash in self._batches:
            raise StateError(f"batch {batch_hash} already exists", code="batch_exists")
        validate_windows(window_start, window_end, reveal_deadline)
        operator = normalize_address(operator, "operator")
        info = BatchInfo(
            batch_hash=batch_hash,
            operator=operator,
            funder=operator,
            window_start=window_start,
            window_end=window_end,
            reveal_deadline=reveal_deadline,
            seed_hash=normalize_bytes32(seed_hash, "seed_hash") if seed_hash else None,
            join_bond=join_bond,
        )
        self._batches[batch_hash] = _BatchState(info=info)
        bt.logging.info({"calibra_ledger": {"event": "batch_created", "batch": batch_hash[:10]}})
        return info.model_copy()

    def fund_batch(self, batch_hash: str, funder: str, bounty: int) -> None:
        state = self._state(batch_hash)
        if state.info.funded:
            raise StateError("batch already funded", code="already_funded")
        if bounty <= 0:
            raise ValidationError("bounty must be positive", code="invalid_bounty")
        state.info.funder = normalize_address(funder, "funder")
        state.info.bounty = bounty
        state.info.funded = True
        bt.logging.info({"calibra_ledger": {"event": "batch_funded", "batch": state.info.batch_hash[:10], "bounty": bounty}})

    # -- LedgerClient interface --

    async def get_batch(self, batch_hash: str) -> BatchInfo | None:
        state = self._batches.get(normalize_bytes32(batch_hash, "batch_hash"))
        return state.info.model_copy() if state else None

    async def join(self, batch_hash: str, sender: str) -> None:
        state = self._state(batch_hash)
        sender = normalize_address(sender, "sender")
        now = self.now()
        require_phase(state.info, now, "join", JOIN_PHASES)
        if sender in state.providers:
            raise AlreadyJoinedError(f"{_short(sender)} already joined")
        state.providers[sender] = _ProviderState(joined_at=now, bond=state.info.join_bond)
        bt.logging.info({"calibra_ledger": {"event": "joined", "provider": _short(sender)}})

    async def commit(
        self, batch_hash: str, sender: str, commit_hash: str, encrypted_uri_hash: str,
    ) -> int:
        state = self._state(batch_hash)
        sender = normalize_address(sender, "sender")
        now = self.now()
        require_phase(state.info, now, "commit", COMMIT_PHASES)
        provider = state.providers.get(sender)
        if provider is None:
            raise StateError(f"{_short(sender)} has not joined", code="not_joined")

        index = len(provider.commits)
        provider.commits.append(Commitment(
            provider=sender,
            index=index,
            commit_hash=normalize_bytes32(commit_hash, "commit_hash"),
            committed_at=now,
            encrypted_uri_hash=normalize_bytes32(encrypted_uri_hash, "encrypted_uri_hash"),
        ))
        bt.logging.info({"calibra_ledger": {"event": "committed", "provider": _short(sender), "index": index}})
        return index

    async def reveal_commits(
        self, batch_hash: str, sender: str, items: list[RevealItem],
    ) -> None:
        state = self._state(batch_hash)
        sender = normalize_address(sender, "sender")
        require_phase(state.info, self.now(), "reveal", REVEAL_PHASES)
        provider = state.providers.get(sender)
        if provider is None:
            raise StateError(f"{_short(sender)} has not joined", code="not_joined")
        if not items:
            raise ValidationError("nothing to reveal", code="empty_reveal")

        # Check everything first: a failing item reverts the whole call and
        # leaves every index unrevealed.
        seen: set[int] = set()
        checked: list[tuple[Commitment, str, str, str]] = []
        for item in items:
            if item.index in seen:
                raise ValidationError(f"duplicate index {item.index}", code="duplicate_index")
            seen.add(item.index)
            if item.index >= len(provider.commits):
                raise NotFoundError(f"no commit at index {item.index}")
            commitment = provider.commits[item.index]
            if commitment.revealed:
                raise AlreadyRevealedError(f"commit index {item.index} already revealed")
            if not verify_commitment(state.info.batch_hash, item.root, item.salt, commitment.commit_hash):
                bt.logging.warning({"calibra_ledger": {"event": "reveal_mismatch", "provider": _short(sender), "index": item.index}})
                raise CommitmentMismatchError(f"reveal for index {item.index} does not match commit hash")
            checked.append((
                commitment,
                normalize_bytes32(item.root, "root"),
                normalize_bytes32(item.salt, "salt"),
                normalize_bytes32(item.public_uri_hash, "public_uri_hash"),
            ))

        for commitment, root, salt, public_uri_hash in checked:
            commitment.revealed = True
            commitment.root = root
            commitment.salt = salt
            commitment.public_uri_hash = public_uri_hash
        bt.logging.info({"calibra_ledger": {"event": "revealed", "provider": _short(sender), "indices": sorted(seen)}})

    async def lock_randomness(self, batch_hash: str, sender: str) -> None:
        state = self._state(batch_hash)
        self._require_operator(state, sender)
        if state.info.randomness_locked:
            raise StateError("randomness already locked", code="already_locked")
        if state.info.finalized:
            raise AlreadyFinalizedError("batch already finalized")
        state.info.randomness_locked = True
        bt.logging.info({"calibra_ledger": {"event": "randomness_locked", "batch": state.info.batch_hash[:10]}})

    async def reveal_seed(self, batch_hash: str, sender: str, seed: str) -> None:
        state = self._state(batch_hash)
        self._require_operator(state, sender)
        seed = normalize_bytes32(seed, "seed")
        if not state.info.randomness_locked:
            raise StateError("lock randomness before revealing the seed", code="randomness_not_locked")
        if state.info.seed_revealed:
            raise StateError("seed already revealed", code="seed_already_revealed")
        if self.now() < state.info.window_end:
            raise StateError("seed can only be revealed after the window ends", code="window_open")
        if state.info.seed_hash and to_hex(keccak256(bytes32_from_hex(seed))) != state.info.seed_hash:
            raise CommitmentMismatchError("seed does not match the registered seed hash")
        state.info.seed = seed
        state.info.seed_revealed = True
        bt.logging.info({"calibra_ledger": {"event": "seed_revealed", "batch": state.info.batch_hash[:10]}})

    async def get_commit_count(self, batch_hash: str, provider: str) -> int:
        state = self._state(batch_hash)
        p = state.providers.get(normalize_address(provider, "provider"))
        return len(p.commits) if p else 0

    async def get_commit(self, batch_hash: str, provider: str, index: int) -> Commitment:
        state = self._state(batch_hash)
        p = state.providers.get(normalize_address(provider, "provider"))
        if p is None or not 0 <= index < len(p.commits):
            raise NotFoundError(f"no commit at index {index}")
        return p.commits[index].model_copy()

    async def get_selected_commit_index(self, batch_hash: str, provider: str) -> int:
        state = self._state(batch_hash)
        if not state.info.seed_revealed or not state.info.seed:
            raise SeedNotRevealedError("seed not revealed")
        count = await self.get_commit_count(batch_hash, provider)
        return selected_index(state.info.seed, provider, count)

    async def get_provider_summary(self, batch_hash: str, provider: str) -> ProviderSummary:
        state = self._state(batch_hash)
        provider = normalize_address(provider, "provider")
        p = state.providers.get(provider)
        if p is None:
            return ProviderSummary(provider=provider)
        return ProviderSummary(
            provider=provider,
            joined=True,
            joined_at=p.joined_at,
            commit_count=len(p.commits),
            revealed_count=sum(1 for c in p.commits if c.revealed),
            last_commit_at=p.commits[-1].committed_at if p.commits else None,
            bond=p.bond,
            payout=p.payout,
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
        state = self._state(batch_hash)
        self._require_operator(state, sender)
        if state.info.finalized:
            raise AlreadyFinalizedError(f"batch {state.info.batch_hash} already finalized")
        require_phase(state.info, self.now(), "finalize", FINALIZE_PHASES)
        if not state.info.seed_revealed:
            raise SeedNotRevealedError("seed not revealed")
        if not state.info.funded:
            raise StateError("batch not funded", code="not_funded")
        normalize_bytes32(scores_hash, "scores_hash")

        if not (len(providers) == len(payouts) == len(selected_indices)) or not providers:
            raise ValidationError("providers, payouts and indices must be non-empty and parallel", code="invalid_finalize")
        normalized = [normalize_address(p, "provider") for p in providers]
        if len(set(normalized)) != len(normalized):
            raise ValidationError("duplicate provider", code="invalid_finalize")
        if any(p < 0 for p in payouts) or sum(payouts) > state.info.bounty:
            raise ValidationError("payouts exceed bounty", code="invalid_finalize")

        for provider, index in zip(normalized, selected_indices):
            count = len(state.providers[provider].commits) if provider in state.providers else 0
            if count == 0 or selected_index(state.info.seed, provider, count) != index:
                raise ValidationError(f"bad selected index for {_short(provider)}", code="invalid_finalize")

        for provider, payout in zip(normalized, payouts):
            state.providers[provider].payout = payout
        state.info.finalized = True
        bt.logging.info({"calibra_ledger": {"event": "finalized", "batch": state.info.batch_hash[:10], "providers": len(normalized)}})

    # -- Helpers --

    def _state(self, batch_hash: str) -> _BatchState:
        state = self._batches.get(normalize_bytes32(batch_hash, "batch_hash"))
        if state is None:
            raise NotFoundError("Batch not found on ledger")
        return state

    def _require_operator(self, state: _BatchState, sender: str) -> None:
        if normalize_address(sender, "sender") != state.info.operator:
            raise ForbiddenError("only the operator may do this")


__all__ = ["InMemoryLedger"]
