"""A full batch lifecycle through the services and the in-memory ledger."""

import pytest

from calibra.errors import AlreadyFinalizedError
from calibra.protocol.commitment import verify_commitment
from calibra.protocol.selector import selected_index

from conftest import PAYLOAD, REVEAL_DEADLINE, WINDOW_END, WINDOW_START, open_harness

SEED = "0x" + "5e" * 32


@pytest.mark.asyncio
async def test_commit_reveal_finalize(ledger, keys, clock, tmp_path, batch_id, batch_hash, operator, provider_a, provider_b):
    h = await open_harness(ledger, keys, clock, tmp_path)
    ledger.fund_batch(batch_hash, operator.address, 100_000_000)
    for account in (provider_a, provider_b):
        await ledger.join(batch_hash, account.address)

    # Two revisions per provider inside the window.
    clock.set(WINDOW_START + 10)
    receipts = {}
    for account in (provider_a, provider_b):
        first = await h.service.commit(await h.service.upload(batch_id, batch_hash, account.address, PAYLOAD))
        clock.set(clock() + 1)
        revised = [{"schedule_key": "JFK-0900", "probabilities": {"on_time": 65, "delayed": 35}}]
        second = await h.service.commit(await h.service.upload(batch_id, batch_hash, account.address, revised))
        assert (first.commit_index, second.commit_index) == (0, 1)
        receipts[account.address.lower()] = [first, second]

    await ledger.lock_randomness(batch_hash, operator.address)
    clock.set(WINDOW_END)
    await ledger.reveal_seed(batch_hash, operator.address, SEED)

    # Each provider reveals only the revision the seed picked.
    for provider, (first, second) in receipts.items():
        item = await h.service.reveal_selected(batch_hash, provider)
        assert item.index == selected_index(SEED, provider, 2)
        commit = await ledger.get_commit(batch_hash, provider, item.index)
        assert commit.revealed
        assert verify_commitment(batch_hash, commit.root, commit.salt, commit.commit_hash)
        other = await ledger.get_commit(batch_hash, provider, 1 - item.index)
        assert not other.revealed

    clock.set(REVEAL_DEADLINE + 1)
    prepared = await h.finalizer.prepare(operator.address, batch_id)
    assert prepared.params.payouts == [50_000_000, 50_000_000]
    assert prepared.params.selected_indices == [selected_index(SEED, p, 2) for p in prepared.params.providers]

    await h.finalizer.submit(operator.address, batch_id)
    batch = await ledger.get_batch(batch_hash)
    assert batch.finalized
    with pytest.raises(AlreadyFinalizedError):
        await ledger.finalize(
            batch_hash, operator.address, prepared.params.providers, prepared.params.payouts,
            prepared.params.selected_indices, prepared.params.scores_hash,
        )

    report = await h.auditor.build_report(batch_hash)
    assert report.finalized and not report.orphans and not report.unavailable
    for audit in report.providers:
        selected = [c for c in audit.commits if c.selected]
        assert len(selected) == 1 and selected[0].revealed and selected[0].reveal_verified
