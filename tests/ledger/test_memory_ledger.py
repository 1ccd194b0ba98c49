"""Tests for the in-memory ledger phase machine."""

import pytest

from calibra.errors import (
    AlreadyFinalizedError,
    AlreadyJoinedError,
    AlreadyRevealedError,
    CommitmentMismatchError,
    ForbiddenError,
    NotFoundError,
    PhaseError,
    SeedNotRevealedError,
    StateError,
    ValidationError,
)
from calibra.ledger.interface import LedgerClient
from calibra.ledger.memory import InMemoryLedger
from calibra.protocol.commitment import build_commitment
from calibra.protocol.hashing import batch_id_to_hash, compute_hash, keccak256, to_hex
from calibra.protocol.models import RevealItem
from calibra.protocol.selector import selected_index

from conftest import REVEAL_DEADLINE, WINDOW_END, WINDOW_START

SEED = "0x" + "42" * 32
URI_HASH = "0x" + "ee" * 32
PUBLIC_URI_HASH = "0x" + "dd" * 32


async def _commit(ledger, batch_hash, account, payload: bytes):
    parts = build_commitment(batch_hash, payload)
    index = await ledger.commit(batch_hash, account.address, parts.commit_hash, URI_HASH)
    return index, parts


def _reveal_item(index, parts):
    return RevealItem(index=index, root=parts.root, salt=parts.salt, public_uri_hash=PUBLIC_URI_HASH)


class TestSetup:

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryLedger(), LedgerClient)

    def test_bad_windows_rejected(self, operator):
        ledger = InMemoryLedger()
        with pytest.raises(ValidationError):
            ledger.create_batch(
                batch_id_to_hash("x"), operator=operator.address,
                window_start=10, window_end=10, reveal_deadline=20,
            )

    def test_duplicate_batch(self, ledger, operator, batch_hash):
        with pytest.raises(StateError):
            ledger.create_batch(
                batch_hash, operator=operator.address,
                window_start=WINDOW_START, window_end=WINDOW_END, reveal_deadline=REVEAL_DEADLINE,
            )

    @pytest.mark.asyncio
    async def test_unknown_batch(self, ledger):
        assert await ledger.get_batch(batch_id_to_hash("missing")) is None
        with pytest.raises(NotFoundError):
            await ledger.join(batch_id_to_hash("missing"), "0x" + "11" * 20)

    @pytest.mark.asyncio
    async def test_fund(self, ledger, batch_hash, operator):
        ledger.fund_batch(batch_hash, operator.address, 1000)
        batch = await ledger.get_batch(batch_hash)
        assert batch.funded and batch.bounty == 1000
        with pytest.raises(StateError):
            ledger.fund_batch(batch_hash, operator.address, 1000)

    @pytest.mark.asyncio
    async def test_returned_batch_is_a_copy(self, ledger, batch_hash):
        batch = await ledger.get_batch(batch_hash)
        batch.finalized = True
        assert not (await ledger.get_batch(batch_hash)).finalized


@pytest.mark.asyncio
class TestJoinAndCommit:

    async def test_join_once(self, ledger, batch_hash, provider_a):
        await ledger.join(batch_hash, provider_a.address)
        with pytest.raises(AlreadyJoinedError):
            await ledger.join(batch_hash, provider_a.address)
        summary = await ledger.get_provider_summary(batch_hash, provider_a.address)
        assert summary.joined and summary.commit_count == 0

    async def test_commit_requires_join(self, ledger, clock, batch_hash, provider_a):
        clock.set(WINDOW_START)
        with pytest.raises(StateError) as exc:
            await _commit(ledger, batch_hash, provider_a, b"x")
        assert exc.value.code == "not_joined"

    async def test_commit_before_window(self, ledger, batch_hash, provider_a):
        await ledger.join(batch_hash, provider_a.address)
        with pytest.raises(PhaseError) as exc:
            await _commit(ledger, batch_hash, provider_a, b"x")
        assert exc.value.phase == "prewindow"

    async def test_commit_at_window_end_rejected(self, ledger, clock, batch_hash, provider_a):
        await ledger.join(batch_hash, provider_a.address)
        clock.set(WINDOW_END)
        with pytest.raises(PhaseError):
            await _commit(ledger, batch_hash, provider_a, b"x")

    async def test_indices_are_sequential(self, ledger, clock, batch_hash, provider_a):
        await ledger.join(batch_hash, provider_a.address)
        clock.set(WINDOW_START)
        indices = [(await _commit(ledger, batch_hash, provider_a, bytes([i])))[0] for i in range(3)]
        assert indices == [0, 1, 2]
        assert await ledger.get_commit_count(batch_hash, provider_a.address) == 3
        commit = await ledger.get_commit(batch_hash, provider_a.address, 1)
        assert commit.index == 1 and not commit.revealed
        assert commit.encrypted_uri_hash == URI_HASH

    async def test_get_commit_out_of_range(self, ledger, batch_hash, provider_a):
        with pytest.raises(NotFoundError):
            await ledger.get_commit(batch_hash, provider_a.address, 0)

    async def test_join_after_deadline_rejected(self, ledger, clock, batch_hash, provider_a):
        clock.set(REVEAL_DEADLINE + 1)
        with pytest.raises(PhaseError):
            await ledger.join(batch_hash, provider_a.address)


@pytest.mark.asyncio
class TestReveal:

    async def _two_commits(self, ledger, clock, batch_hash, account):
        await ledger.join(batch_hash, account.address)
        clock.set(WINDOW_START + 1)
        first = await _commit(ledger, batch_hash, account, b"first")
        second = await _commit(ledger, batch_hash, account, b"second")
        return first, second

    async def test_reveal_in_window(self, ledger, clock, batch_hash, provider_a):
        (i0, p0), _ = await self._two_commits(ledger, clock, batch_hash, provider_a)
        clock.set(WINDOW_END)
        await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0)])
        commit = await ledger.get_commit(batch_hash, provider_a.address, i0)
        assert commit.revealed
        assert commit.root == p0.root and commit.salt == p0.salt
        assert commit.public_uri_hash == PUBLIC_URI_HASH

    async def test_reveal_during_commit_phase_rejected(self, ledger, clock, batch_hash, provider_a):
        (i0, p0), _ = await self._two_commits(ledger, clock, batch_hash, provider_a)
        with pytest.raises(PhaseError):
            await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0)])

    async def test_reveal_after_deadline_rejected(self, ledger, clock, batch_hash, provider_a):
        (i0, p0), _ = await self._two_commits(ledger, clock, batch_hash, provider_a)
        clock.set(REVEAL_DEADLINE + 1)
        with pytest.raises(PhaseError):
            await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0)])

    async def test_double_reveal(self, ledger, clock, batch_hash, provider_a):
        (i0, p0), _ = await self._two_commits(ledger, clock, batch_hash, provider_a)
        clock.set(REVEAL_DEADLINE)
        await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0)])
        with pytest.raises(AlreadyRevealedError):
            await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0)])

    async def test_mismatch_is_atomic_and_retryable(self, ledger, clock, batch_hash, provider_a):
        (i0, p0), (i1, p1) = await self._two_commits(ledger, clock, batch_hash, provider_a)
        clock.set(WINDOW_END + 5)
        wrong = RevealItem(index=i1, root=p1.root, salt=p0.salt, public_uri_hash=PUBLIC_URI_HASH)
        with pytest.raises(CommitmentMismatchError):
            await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0), wrong])
        assert not (await ledger.get_commit(batch_hash, provider_a.address, i0)).revealed
        await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0), _reveal_item(i1, p1)])
        summary = await ledger.get_provider_summary(batch_hash, provider_a.address)
        assert summary.revealed_count == 2

    async def test_bad_public_uri_hash_reveals_nothing(self, ledger, clock, batch_hash, provider_a):
        (i0, p0), (i1, p1) = await self._two_commits(ledger, clock, batch_hash, provider_a)
        clock.set(WINDOW_END)
        bad = RevealItem(index=i1, root=p1.root, salt=p1.salt, public_uri_hash="0xbad")
        with pytest.raises(ValidationError):
            await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0), bad])
        for index in (i0, i1):
            assert not (await ledger.get_commit(batch_hash, provider_a.address, index)).revealed
        await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0), _reveal_item(i1, p1)])
        assert (await ledger.get_provider_summary(batch_hash, provider_a.address)).revealed_count == 2

    async def test_duplicate_and_unknown_indices(self, ledger, clock, batch_hash, provider_a):
        (i0, p0), _ = await self._two_commits(ledger, clock, batch_hash, provider_a)
        clock.set(WINDOW_END)
        with pytest.raises(ValidationError):
            await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(i0, p0)] * 2)
        with pytest.raises(NotFoundError):
            await ledger.reveal_commits(batch_hash, provider_a.address, [_reveal_item(7, p0)])
        with pytest.raises(ValidationError):
            await ledger.reveal_commits(batch_hash, provider_a.address, [])


@pytest.mark.asyncio
class TestRandomness:

    async def test_lock_then_reveal_seed(self, ledger, clock, batch_hash, operator):
        await ledger.lock_randomness(batch_hash, operator.address)
        clock.set(WINDOW_END)
        await ledger.reveal_seed(batch_hash, operator.address, SEED)
        batch = await ledger.get_batch(batch_hash)
        assert batch.randomness_locked and batch.seed_revealed and batch.seed == SEED

    async def test_seed_before_lock(self, ledger, clock, batch_hash, operator):
        clock.set(WINDOW_END)
        with pytest.raises(StateError) as exc:
            await ledger.reveal_seed(batch_hash, operator.address, SEED)
        assert exc.value.code == "randomness_not_locked"

    async def test_seed_during_window(self, ledger, clock, batch_hash, operator):
        await ledger.lock_randomness(batch_hash, operator.address)
        clock.set(WINDOW_START)
        with pytest.raises(StateError) as exc:
            await ledger.reveal_seed(batch_hash, operator.address, SEED)
        assert exc.value.code == "window_open"

    async def test_only_operator(self, ledger, batch_hash, provider_a):
        with pytest.raises(ForbiddenError):
            await ledger.lock_randomness(batch_hash, provider_a.address)

    async def test_lock_twice(self, ledger, batch_hash, operator):
        await ledger.lock_randomness(batch_hash, operator.address)
        with pytest.raises(StateError):
            await ledger.lock_randomness(batch_hash, operator.address)

    async def test_seed_hash_binding(self, clock, operator):
        ledger = InMemoryLedger(clock=clock)
        batch_hash = batch_id_to_hash("seeded")
        ledger.create_batch(
            batch_hash, operator=operator.address,
            window_start=WINDOW_START, window_end=WINDOW_END, reveal_deadline=REVEAL_DEADLINE,
            seed_hash=to_hex(keccak256(bytes.fromhex(SEED[2:]))),
        )
        await ledger.lock_randomness(batch_hash, operator.address)
        clock.set(WINDOW_END)
        with pytest.raises(CommitmentMismatchError):
            await ledger.reveal_seed(batch_hash, operator.address, "0x" + "43" * 32)
        await ledger.reveal_seed(batch_hash, operator.address, SEED)

    async def test_selection_needs_seed(self, ledger, batch_hash, provider_a):
        with pytest.raises(SeedNotRevealedError):
            await ledger.get_selected_commit_index(batch_hash, provider_a.address)


@pytest.mark.asyncio
class TestFinalize:

    async def _ready(self, ledger, clock, batch_hash, operator, provider):
        ledger.fund_batch(batch_hash, operator.address, 1_000)
        await ledger.join(batch_hash, provider.address)
        clock.set(WINDOW_START)
        for i in range(3):
            await _commit(ledger, batch_hash, provider, bytes([i]))
        await ledger.lock_randomness(batch_hash, operator.address)
        clock.set(WINDOW_END)
        await ledger.reveal_seed(batch_hash, operator.address, SEED)
        return selected_index(SEED, provider.address, 3)

    async def test_finalize_is_terminal(self, ledger, clock, batch_hash, operator, provider_a):
        idx = await self._ready(ledger, clock, batch_hash, operator, provider_a)
        assert await ledger.get_selected_commit_index(batch_hash, provider_a.address) == idx
        clock.set(REVEAL_DEADLINE + 1)
        args = ([provider_a.address], [1_000], [idx], compute_hash("{}"))
        await ledger.finalize(batch_hash, operator.address, *args)
        assert (await ledger.get_batch(batch_hash)).finalized
        assert (await ledger.get_provider_summary(batch_hash, provider_a.address)).payout == 1_000
        with pytest.raises(AlreadyFinalizedError):
            await ledger.finalize(batch_hash, operator.address, *args)

    async def test_finalize_during_reveal_rejected(self, ledger, clock, batch_hash, operator, provider_a):
        idx = await self._ready(ledger, clock, batch_hash, operator, provider_a)
        with pytest.raises(PhaseError):
            await ledger.finalize(batch_hash, operator.address, [provider_a.address], [1_000], [idx], compute_hash("{}"))

    async def test_wrong_index_or_overpay(self, ledger, clock, batch_hash, operator, provider_a):
        idx = await self._ready(ledger, clock, batch_hash, operator, provider_a)
        clock.set(REVEAL_DEADLINE + 1)
        with pytest.raises(ValidationError):
            await ledger.finalize(batch_hash, operator.address, [provider_a.address], [1_000], [(idx + 1) % 3], compute_hash("{}"))
        with pytest.raises(ValidationError):
            await ledger.finalize(batch_hash, operator.address, [provider_a.address], [1_001], [idx], compute_hash("{}"))
        assert not (await ledger.get_batch(batch_hash)).finalized

    async def test_non_operator(self, ledger, clock, batch_hash, operator, provider_a):
        idx = await self._ready(ledger, clock, batch_hash, operator, provider_a)
        clock.set(REVEAL_DEADLINE + 1)
        with pytest.raises(ForbiddenError):
            await ledger.finalize(batch_hash, provider_a.address, [provider_a.address], [1_000], [idx], compute_hash("{}"))
