"""
test_custody.py - Unit tests for asset custody

Tests:
- RecordingCustody journal and abort
- InMemoryCustody balance checks at propose time
- Commit credits, abort refunds
- Unknown tickets
- Repeated batches applied once per salt
"""

import pytest
from decimal import Decimal

from lending import (
    AssetCustody,
    CustodyRejected,
    InMemoryCustody,
    RecordingCustody,
    SYSTEM_WALLET,
    TransferInstruction,
)


def transfer(amount, source="alice", dest="pool:USD", asset="USD"):
    return TransferInstruction(asset, Decimal(amount), source, dest)


class TestRecordingCustody:
    """Tests for RecordingCustody."""

    def test_commit_journals(self):
        custody = RecordingCustody()
        ticket = custody.propose([transfer("100")])
        custody.commit(ticket)
        assert len(custody.journal) == 1
        assert custody.instructions() == [transfer("100")]

    def test_abort(self):
        custody = RecordingCustody()
        ticket = custody.propose([transfer("100")])
        custody.abort(ticket)
        assert custody.journal == []
        assert custody.aborted == [ticket]

    def test_commit_twice(self):
        custody = RecordingCustody()
        ticket = custody.propose([transfer("100")])
        custody.commit(ticket)
        with pytest.raises(CustodyRejected):
            custody.commit(ticket)

    def test_identical_batches_get_distinct_tickets(self):
        custody = RecordingCustody()
        assert custody.propose([transfer("1")]) != custody.propose([transfer("1")])

    def test_is_asset_custody(self):
        assert isinstance(RecordingCustody(), AssetCustody)


class TestInMemoryCustody:
    """Tests for InMemoryCustody."""

    @pytest.fixture
    def custody(self):
        c = InMemoryCustody()
        c.fund("alice", "USD", Decimal("1000"))
        return c

    def test_fund(self, custody):
        assert custody.balance("alice", "USD") == Decimal("1000")
        assert custody.balance(SYSTEM_WALLET, "USD") == Decimal("-1000")

    def test_propose_holds_commit_credits(self, custody):
        ticket = custody.propose([transfer("400")])
        assert custody.balance("alice", "USD") == Decimal("600")
        assert custody.balance("pool:USD", "USD") == 0
        custody.commit(ticket)
        assert custody.balance("pool:USD", "USD") == Decimal("400")

    def test_abort_refunds(self, custody):
        ticket = custody.propose([transfer("400")])
        custody.abort(ticket)
        assert custody.balance("alice", "USD") == Decimal("1000")
        custody.abort(ticket)
        assert custody.balance("alice", "USD") == Decimal("1000")

    def test_insufficient_balance_rejected(self, custody):
        with pytest.raises(CustodyRejected, match="alice"):
            custody.propose([transfer("1000.01")])
        assert custody.balance("alice", "USD") == Decimal("1000")

    def test_outflows_aggregated_per_wallet(self, custody):
        with pytest.raises(CustodyRejected):
            custody.propose([transfer("600"), transfer("600", dest="bob")])
        assert custody.balance("alice", "USD") == Decimal("1000")

    def test_pending_batches_cannot_double_spend(self, custody):
        custody.propose([transfer("700")])
        with pytest.raises(CustodyRejected):
            custody.propose([transfer("700", dest="bob")])

    def test_unknown_ticket(self, custody):
        with pytest.raises(CustodyRejected, match="Unknown"):
            custody.commit("nope")

    def test_total_supply_conserved(self, custody):
        custody.commit(custody.propose([transfer("250", dest="bob")]))
        assert custody.total_supply("USD") == Decimal("1000")

    def test_is_asset_custody(self, custody):
        assert isinstance(custody, AssetCustody)

    def test_repeated_batch_applied_once(self, custody):
        for _ in range(2):
            custody.commit(custody.propose([transfer("100")]))
        assert custody.balance("alice", "USD") == Decimal("900")
        assert custody.balance("pool:USD", "USD") == Decimal("100")
        assert len(custody.journal) == 1

    def test_pending_duplicate_settles_as_noop(self, custody):
        first = custody.propose([transfer("100")])
        second = custody.propose([transfer("100")])
        assert first != second
        assert custody.balance("alice", "USD") == Decimal("900")
        custody.commit(second)
        custody.commit(first)
        assert custody.balance("pool:USD", "USD") == Decimal("100")

    def test_distinct_salts_both_apply(self, custody):
        custody.commit(custody.propose([transfer("100")], salt="op-1"))
        custody.commit(custody.propose([transfer("100")], salt="op-2"))
        assert custody.balance("alice", "USD") == Decimal("800")
        assert len(custody.journal) == 2

    def test_aborted_batch_can_be_proposed_again(self, custody):
        custody.abort(custody.propose([transfer("100")]))
        custody.commit(custody.propose([transfer("100")]))
        assert custody.balance("alice", "USD") == Decimal("900")
        assert custody.balance("pool:USD", "USD") == Decimal("100")

    def test_repeated_funding_issues_each_time(self, custody):
        custody.fund("alice", "USD", Decimal("1000"))
        assert custody.balance("alice", "USD") == Decimal("2000")

