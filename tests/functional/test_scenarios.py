"""
test_scenarios.py - End-to-end lending scenarios

Scenarios:
- A: Borrow up to max loan-to-value, then one unit more is refused
- B: Health factor of exactly 1 is eligible for liquidation
- C: Full-close band caps a liquidation at the whole debt
- D: A score-200 borrower gets a lower threshold and a cheaper rate
"""

import pytest
from decimal import Decimal

from lending import (
    ExceedsLiquidationLimit,
    ExceedsMaxBorrow,
    LoanStatus,
    RiskParameters,
    calculate_health_factor,
    calculate_max_liquidatable,
)

from tests.helpers import approx_equal, build_funded, custody_matches_pool, pool_debt_matches_loans


class TestScenarioA:
    """Borrow to the loan-to-value limit."""

    def test_borrow_to_limit(self):
        setup = build_funded()
        p = setup.protocol
        assert p.get_total_supply("USD") == Decimal("10000")
        assert p.get_total_borrowed("USD") == 0

        loan_id = p.borrow(setup.borrower, "ETH", Decimal("10000"), "USD", Decimal("7500"))
        assert p.get_total_borrowed("USD") == Decimal("7500")
        assert p.assess(loan_id).loan_to_value == Decimal("0.75")

        with pytest.raises(ExceedsMaxBorrow):
            p.borrow_more(setup.borrower, loan_id, Decimal("1"))
        assert p.get_total_borrowed("USD") == Decimal("7500")
        assert pool_debt_matches_loans(p, "USD")
        assert custody_matches_pool(p, setup.custody, "USD")


class TestScenarioB:
    """Health factor boundary."""

    def test_pure_boundary(self):
        hf = calculate_health_factor(Decimal("10000"), Decimal("9000"), Decimal("0.9"))
        assert hf == Decimal("1")

    def test_protocol_boundary(self):
        risk = RiskParameters(base_liquidation_threshold=Decimal("0.9"))
        setup = build_funded(risk=risk)
        p = setup.protocol
        loan_id = p.borrow(setup.borrower, "ETH", Decimal("10000"), "USD", Decimal("7200"))
        assert not p.is_liquidatable(loan_id)

        p.set_price("ETH", Decimal("0.8"))
        assert p.get_health_factor(loan_id) == 1
        assert p.is_liquidatable(loan_id)
        assert p.assess(loan_id).max_liquidatable == Decimal("3600")

        result = p.liquidate(loan_id, Decimal("1000"), setup.liquidator)
        assert result.status == LoanStatus.PARTIALLY_LIQUIDATED
        assert result.health_factor_after > 1


class TestScenarioC:
    """Full-close band."""

    def test_pure_cap(self):
        params = RiskParameters()
        assert calculate_max_liquidatable(Decimal("1000"), Decimal("0.4"), params) == Decimal("1000")

    def test_protocol_cap(self):
        setup = build_funded(collateral=Decimal("2000"))
        p = setup.protocol
        loan_id = p.borrow(setup.borrower, "ETH", Decimal("2000"), "USD", Decimal("1000"))
        p.set_price("ETH", Decimal("0.25"))
        assert p.get_health_factor(loan_id) == Decimal("0.4")
        assert p.assess(loan_id).max_liquidatable == Decimal("1000")

        with pytest.raises(ExceedsLiquidationLimit):
            p.liquidate(loan_id, Decimal("1001"), setup.liquidator)

        result = p.liquidate(loan_id, Decimal("1000"), setup.liquidator)
        assert result.status == LoanStatus.CLOSED
        assert result.collateral_seized == Decimal("2000")
        assert result.shortfall_value == Decimal("550")
        assert result.written_off == 0
        assert p.get_total_borrowed("USD") == 0
        assert setup.custody.balance(setup.liquidator, "ETH") == Decimal("2000")
        assert p.get_credit_record(setup.borrower).open_loan_ids == frozenset()


class TestScenarioD:
    """Credit score relaxes threshold and discounts the rate."""

    def test_score_200_benefits(self):
        setup = build_funded()
        p = setup.protocol
        for _ in range(10):
            loan_id = p.borrow(setup.borrower, "ETH", Decimal("1000"), "USD", Decimal("100"))
            p.repay(setup.borrower, loan_id, Decimal("100"))

        record = p.get_credit_record(setup.borrower)
        assert record.credit_score == 200
        assert record.paid_off == 10

        baseline = setup.lender
        assert p.get_credit_record(baseline).credit_score == 0
        assert p.get_liquidation_threshold(baseline) == Decimal("0.80")
        assert p.get_liquidation_threshold(setup.borrower) == Decimal("0.70")
        assert approx_equal(
            p.quote_borrow_rate(baseline, "USD") - p.quote_borrow_rate(setup.borrower, "USD"),
            Decimal("0.02"),
        )

    def test_discount_applied_to_new_loan(self):
        setup = build_funded()
        p = setup.protocol
        for _ in range(10):
            loan_id = p.borrow(setup.borrower, "ETH", Decimal("1000"), "USD", Decimal("100"))
            p.repay(setup.borrower, loan_id, Decimal("100"))

        # max loan-to-value drops to 0.65 at score 200
        with pytest.raises(ExceedsMaxBorrow):
            p.borrow(setup.borrower, "ETH", Decimal("10000"), "USD", Decimal("7000"))
        loan_id = p.borrow(setup.borrower, "ETH", Decimal("10000"), "USD", Decimal("6000"))
        # pool rate at 60% utilization is 0.05; score discount 0.02
        assert p.get_loan(loan_id).interest_rate == Decimal("0.03")
