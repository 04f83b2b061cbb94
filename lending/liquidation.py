"""
liquidation.py - Liquidation of unhealthy loans

A liquidator repays part of an unhealthy loan's debt and receives the
equivalent collateral plus a bonus.

Key Formulas:
    collateral_seized = repay_amount * price_debt / price_collateral * (1 + bonus)
    seizure is capped at loan.collateral_amount; the uncovered part is the shortfall

Preconditions:
    - loan not CLOSED
    - health_factor <= 1
    - 0 < repay_amount <= max_liquidatable (50% / 100% by health band)

Postconditions:
    - debt reduced by repay_amount (interest first, then principal)
    - CLOSED if debt reaches zero, else PARTIALLY_LIQUIDATED
    - health factor strictly higher than before; a seizure that takes all of
      the collateral closes the loan and writes off any remaining debt
    - without a capped seizure, health only improves while
      collateral_value > debt_value * (1 + bonus); see risk.py for the
      liquidation window

LiquidationEngine.evaluate() is pure: it returns the new loan snapshot and
every amount the caller needs to update pools, records and custody.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
import logging

from .core import (
    ExceedsLiquidationLimit, HealthNotImproved, LoanClosed, NotLiquidatable,
    PartialSeizureShortfall, QUANTITY_EPSILON,
    to_decimal,
)
from .loan import (
    Loan, LoanStatus,
    apply_repayment, remove_collateral, with_status, write_off_debt,
)
from .risk import RiskParameters, assess_loan, calculate_max_liquidatable


logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")


@dataclass(frozen=True, slots=True)
class LiquidationResult:
    """
    Immutable outcome of one liquidation.

    Collateral amounts are in collateral-asset units; shortfall_value and
    written_off are in debt-price terms and debt-asset units respectively.
    """
    loan: Loan
    repaid: Decimal
    interest_paid: Decimal
    principal_paid: Decimal
    collateral_seized: Decimal
    bonus_collateral: Decimal
    shortfall_collateral: Decimal
    shortfall_value: Decimal
    written_off: Decimal
    health_factor_before: Decimal
    health_factor_after: Decimal

    @property
    def status(self) -> LoanStatus:
        return self.loan.status

    @property
    def has_shortfall(self) -> bool:
        return self.shortfall_collateral > _ZERO


def calculate_collateral_seized(
    repay_amount: Decimal,
    debt_price: Decimal,
    collateral_price: Decimal,
    liquidation_bonus: Decimal,
) -> Decimal:
    """
    Collateral owed to a liquidator for repaying repay_amount.

    Example:
        # repay 3000 USD against collateral priced at 0.9 -> about 3500 units
        seized = calculate_collateral_seized(
            Decimal("3000"), Decimal("1"), Decimal("0.9"), Decimal("0.05")
        )
    """
    if collateral_price <= _ZERO:
        raise ValueError(f"collateral_price must be positive, got {collateral_price}")
    return repay_amount * debt_price / collateral_price * (_ONE + liquidation_bonus)


class LiquidationEngine:
    """
    Computes liquidation outcomes.

    Args:
        params: Risk parameters (close factors, bonus, thresholds)
        raise_on_shortfall: If True, a seizure that would exceed the loan's
            collateral raises PartialSeizureShortfall instead of committing a
            capped seizure.
    """

    def __init__(self, params: RiskParameters | None = None, raise_on_shortfall: bool = False) -> None:
        self.params = params if params is not None else RiskParameters()
        self.raise_on_shortfall = raise_on_shortfall

    def evaluate(
        self,
        loan: Loan,
        repay_amount: Decimal,
        collateral_price: Decimal,
        debt_price: Decimal,
        credit_score: int,
    ) -> LiquidationResult:
        """
        Validate and compute a liquidation against an up-to-date loan.

        The loan's accrued_interest must already include interest up to now.

        Raises:
            ValueError: If repay_amount is not positive
            LoanClosed: If the loan is closed
            NotLiquidatable: If health_factor > 1
            ExceedsLiquidationLimit: If repay_amount is above the close-factor cap
            PartialSeizureShortfall: On capped seizure when raise_on_shortfall is set
            HealthNotImproved: If the post-liquidation health factor would not
                be strictly higher
        """
        repay_amount = to_decimal(repay_amount)
        if not repay_amount.is_finite() or repay_amount <= _ZERO:
            raise ValueError(f"Repay amount must be positive, got {repay_amount}")
        if loan.status == LoanStatus.CLOSED:
            raise LoanClosed(f"Loan {loan.loan_id} is closed")

        before = assess_loan(loan, collateral_price, debt_price, credit_score, self.params)
        if not before.liquidatable:
            raise NotLiquidatable(
                f"Loan {loan.loan_id} is healthy (health factor {before.health_factor})"
            )
        cap = calculate_max_liquidatable(loan.total_debt, before.health_factor, self.params)
        if repay_amount > cap:
            raise ExceedsLiquidationLimit(
                f"Cannot repay {repay_amount} on loan {loan.loan_id}: "
                f"limit is {cap} at health factor {before.health_factor}"
            )

        allocation = apply_repayment(loan, repay_amount)
        owed = calculate_collateral_seized(
            repay_amount, debt_price, collateral_price, self.params.liquidation_bonus
        )
        base = repay_amount * debt_price / collateral_price

        # a seizure leaving only dust takes all of the collateral
        exhausted = owed + QUANTITY_EPSILON >= loan.collateral_amount
        seized = loan.collateral_amount if exhausted else owed
        shortfall_collateral = _ZERO
        if owed > loan.collateral_amount + QUANTITY_EPSILON:
            shortfall_collateral = owed - loan.collateral_amount
        shortfall_value = shortfall_collateral * collateral_price

        if shortfall_collateral > _ZERO and self.raise_on_shortfall:
            raise PartialSeizureShortfall(
                f"Loan {loan.loan_id}: seizure of {owed} exceeds collateral "
                f"{loan.collateral_amount} (shortfall value {shortfall_value})",
                shortfall_collateral,
                shortfall_value,
            )

        updated = remove_collateral(allocation.loan, seized)
        written_off = _ZERO
        if shortfall_collateral > _ZERO:
            logger.warning(
                "partial seizure shortfall on loan %s: owed %s, seized %s, shortfall value %s",
                loan.loan_id, owed, seized, shortfall_value,
            )
        if exhausted and updated.status != LoanStatus.CLOSED:
            updated, written_off = write_off_debt(updated)
            logger.warning(
                "loan %s has no collateral left; writing off %s", loan.loan_id, written_off,
            )
        elif updated.status != LoanStatus.CLOSED:
            updated = with_status(updated, LoanStatus.PARTIALLY_LIQUIDATED)

        after = assess_loan(updated, collateral_price, debt_price, credit_score, self.params)
        if not after.health_factor > before.health_factor:
            raise HealthNotImproved(
                f"Liquidating {repay_amount} on loan {loan.loan_id} would move health factor "
                f"from {before.health_factor} to {after.health_factor}"
            )

        return LiquidationResult(
            loan=updated,
            repaid=allocation.amount_applied,
            interest_paid=allocation.interest_paid,
            principal_paid=allocation.principal_paid,
            collateral_seized=seized,
            bonus_collateral=max(_ZERO, seized - base),
            shortfall_collateral=shortfall_collateral,
            shortfall_value=shortfall_value,
            written_off=written_off,
            health_factor_before=before.health_factor,
            health_factor_after=after.health_factor,
        )
