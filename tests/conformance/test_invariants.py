"""
Invariant Conformance Tests

INVARIANT: Pools stay solvent and agree with their loans.

    ∀ reachable states S, ∀ pools P:
        P.total_borrowed <= P.total_supply
        P.total_borrowed == Σ debt(L) for loans L drawn from P
        custody(pool wallet of P) == P.available_liquidity
        custody(collateral wallet of P) == P.total_collateral

and credit scores never decrease.

Reachable states are produced by random sequences of deposits, withdrawals,
borrows, repayments, price moves, time steps and liquidations. Rejected
operations are part of the sequence: they must leave the invariants intact.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import timedelta
from decimal import Decimal

from lending import LendingError, collateral_wallet

from tests.helpers import (
    approx_equal, build_funded, custody_matches_pool, pool_debt_matches_loans,
)


# =============================================================================
# STRATEGIES
# =============================================================================

OPERATIONS = ["deposit", "withdraw", "borrow", "borrow_more", "repay",
              "advance", "price", "liquidate"]

operation = st.tuples(
    st.sampled_from(OPERATIONS),
    st.decimals(min_value=Decimal("1"), max_value=Decimal("6000"), places=2),
)


def _open_loans(protocol):
    return [lid for lid in protocol.list_loans() if protocol.get_loan(lid).is_active]


def _apply(setup, op, amount):
    p = setup.protocol
    loans = _open_loans(p)
    if op == "deposit":
        setup.custody.fund(setup.lender, "USD", amount)
        p.deposit(setup.lender, "USD", amount)
    elif op == "withdraw":
        p.withdraw(setup.lender, "USD", amount)
    elif op == "borrow":
        p.borrow(setup.borrower, "ETH", amount * 2, "USD", amount)
    elif op == "borrow_more" and loans:
        p.borrow_more(setup.borrower, loans[0], amount / 10)
    elif op == "repay" and loans:
        p.repay(setup.borrower, loans[-1], amount)
    elif op == "advance":
        p.advance_time(p.current_time + timedelta(days=int(amount) % 120))
    elif op == "price":
        price = Decimal("0.2") + (amount % Decimal("1.3"))
        p.set_price("ETH", price)
    elif op == "liquidate":
        for loan_id in p.find_bad_loans():
            limit = p.assess(loan_id).max_liquidatable
            p.liquidate(loan_id, min(amount, limit), setup.liquidator)
            break


def _check(setup, scores_before):
    p = setup.protocol
    for asset in ("USD", "ETH"):
        pool = p.get_pool(asset)
        assert pool.total_borrowed <= pool.total_supply + Decimal("1e-9")
        assert pool.total_borrowed >= 0
        assert pool_debt_matches_loans(p, asset)
        assert custody_matches_pool(p, setup.custody, asset)
        assert approx_equal(
            setup.custody.balance(collateral_wallet(asset), asset), pool.total_collateral,
        )
    for lid in p.list_loans():
        loan = p.get_loan(lid)
        assert loan.collateral_amount >= 0
        if not loan.is_active:
            assert loan.total_debt == 0
    score = p.get_credit_record(setup.borrower).credit_score
    assert score >= scores_before
    return score


# =============================================================================
# PROPERTIES
# =============================================================================

class TestPoolInvariants:
    """Random operation sequences never break pool bookkeeping."""

    @given(st.lists(operation, min_size=1, max_size=25))
    @settings(max_examples=50, deadline=None)
    def test_random_sequences(self, ops):
        """
        PROPERTY: After every operation, accepted or rejected, all pool
        invariants hold and the borrower's score has not gone down.
        """
        setup = build_funded(collateral=Decimal("100000"))
        score = _check(setup, 0)
        for op, amount in ops:
            try:
                _apply(setup, op, amount)
            except (LendingError, ValueError):
                pass
            score = _check(setup, score)

    @given(
        borrow=st.decimals(min_value=Decimal("100"), max_value=Decimal("7500"), places=2),
        days=st.integers(min_value=1, max_value=730),
    )
    @settings(max_examples=50, deadline=None)
    def test_interest_capitalised_on_both_sides(self, borrow, days):
        """
        PROPERTY: Capitalising interest grows supply and borrowings by the
        same amount, so liquidity is unchanged.
        """
        setup = build_funded()
        p = setup.protocol
        loan_id = p.borrow(setup.borrower, "ETH", Decimal("10000"), "USD", borrow)
        liquidity = p.get_liquidity("USD")
        p.advance_time(p.current_time + timedelta(days=days))
        p.repay(setup.borrower, loan_id, Decimal("1"))
        assert approx_equal(p.get_liquidity("USD"), liquidity + 1)
        assert pool_debt_matches_loans(p, "USD")


class TestSolvencyEdges:
    """Direct checks at the solvency boundary."""

    def test_borrow_entire_pool(self):
        setup = build_funded(collateral=Decimal("20000"))
        p = setup.protocol
        p.borrow(setup.borrower, "ETH", Decimal("20000"), "USD", Decimal("10000"))
        assert p.get_liquidity("USD") == 0
        assert p.get_utilization("USD") == 1
        _check(setup, 0)

    def test_write_off_keeps_pool_consistent(self):
        setup = build_funded(collateral=Decimal("2000"))
        p = setup.protocol
        loan_id = p.borrow(setup.borrower, "ETH", Decimal("2000"), "USD", Decimal("1000"))
        p.set_price("ETH", Decimal("0.25"))
        result = p.liquidate(loan_id, Decimal("600"), setup.liquidator)
        assert result.written_off == Decimal("400")
        assert p.get_pool("USD").bad_debt == Decimal("400")
        assert p.get_total_supply("USD") == Decimal("9600")
        _check(setup, 0)
