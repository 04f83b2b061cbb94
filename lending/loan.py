"""
loan.py - Collateralized loans

A Loan locks an amount of one asset as collateral against debt drawn from
another asset's pool. Interest accrues lazily: nothing happens between
touches, and each touch brings accrued_interest up to the current time.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS:
   - Loan: Immutable snapshot; principal, interest and collateral change
     only by producing a new Loan

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - calculate_pending_interest(principal, rate, start, end)

3. TRANSITION FUNCTIONS (accrue_interest / apply_repayment / ...):
   - Take a Loan and explicit inputs, return a new Loan (or a typed result)

Key Formulas:
    pending_interest = principal * rate * elapsed_days / 365
    total_debt = principal + accrued_interest
    repayment order: accrued interest first, then principal
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Optional

from .core import (
    AssetId, LoanClosed, LoanId, QUANTITY_EPSILON, UserId,
    to_decimal, year_fraction,
)


_ZERO = Decimal("0")


class LoanStatus(str, Enum):
    """Lifecycle status of a loan."""
    OPEN = "OPEN"
    PARTIALLY_LIQUIDATED = "PARTIALLY_LIQUIDATED"
    CLOSED = "CLOSED"


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Loan:
    """
    Immutable snapshot of one loan.

    borrower_id never changes; holder_id is whoever currently holds the loan
    document and is the party allowed to repay, top up, or draw more.
    interest_rate is the annual rate applied to the next accrual period;
    interest_rate_at_origination is kept for reporting.
    origination_balance is the baseline for credit-score tiers.
    """
    loan_id: LoanId
    borrower_id: UserId
    holder_id: UserId
    collateral_asset_id: AssetId
    collateral_amount: Decimal
    debt_asset_id: AssetId
    principal: Decimal
    accrued_interest: Decimal
    interest_rate_at_origination: Decimal
    interest_rate: Decimal
    status: LoanStatus
    origination_balance: Decimal
    origination_date: datetime
    last_update_timestamp: datetime
    score_tiers_awarded: FrozenSet[Decimal] = frozenset()
    total_interest_paid: Decimal = _ZERO
    total_principal_paid: Decimal = _ZERO
    version: int = 0

    def __post_init__(self):
        """Convert float values to Decimal to ensure type consistency."""
        for name in ('collateral_amount', 'principal', 'accrued_interest',
                     'interest_rate_at_origination', 'interest_rate', 'origination_balance',
                     'total_interest_paid', 'total_principal_paid'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        if not isinstance(self.status, LoanStatus):
            object.__setattr__(self, 'status', LoanStatus(self.status))

    @property
    def total_debt(self) -> Decimal:
        return self.principal + self.accrued_interest

    @property
    def is_active(self) -> bool:
        return self.status != LoanStatus.CLOSED


@dataclass(frozen=True, slots=True)
class RepaymentAllocation:
    """
    How a payment was split across a loan.

    excess is the part of the payment beyond total debt; it is not applied
    and should be returned to the payer.
    """
    loan: Loan
    interest_paid: Decimal
    principal_paid: Decimal
    excess: Decimal

    @property
    def amount_applied(self) -> Decimal:
        return self.interest_paid + self.principal_paid


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_pending_interest(
    principal: Decimal,
    annual_rate: Decimal,
    start: datetime,
    end: datetime,
) -> Decimal:
    """
    Simple interest on principal between two timestamps.

    Args:
        principal: Outstanding principal
        annual_rate: Annual rate as a decimal fraction
        start: Last accrual time
        end: Accrual target time

    Returns:
        Interest amount (zero when no time has passed)

    Raises:
        ValueError: If end is before start

    Example:
        # 1000 at 7.3% for 10 days -> roughly 2.00
        interest = calculate_pending_interest(
            Decimal("1000"), Decimal("0.073"),
            datetime(2025, 1, 1), datetime(2025, 1, 11),
        )
    """
    if end == start or principal <= _ZERO:
        return _ZERO
    return principal * annual_rate * year_fraction(start, end)


# ============================================================================
# TRANSITION FUNCTIONS
# ============================================================================

def create_loan(
    loan_id: LoanId,
    borrower_id: UserId,
    collateral_asset_id: AssetId,
    collateral_amount: Decimal,
    debt_asset_id: AssetId,
    principal: Decimal,
    interest_rate: Decimal,
    timestamp: datetime,
) -> Loan:
    """
    Originate an OPEN loan held by its borrower.

    Raises:
        ValueError: If collateral or principal is not positive, or the rate is negative
    """
    collateral_amount = to_decimal(collateral_amount)
    principal = to_decimal(principal)
    interest_rate = to_decimal(interest_rate)
    if collateral_amount <= _ZERO:
        raise ValueError(f"collateral_amount must be positive, got {collateral_amount}")
    if principal <= _ZERO:
        raise ValueError(f"principal must be positive, got {principal}")
    if interest_rate < _ZERO:
        raise ValueError(f"interest_rate must be non-negative, got {interest_rate}")
    return Loan(
        loan_id=loan_id,
        borrower_id=borrower_id,
        holder_id=borrower_id,
        collateral_asset_id=collateral_asset_id,
        collateral_amount=collateral_amount,
        debt_asset_id=debt_asset_id,
        principal=principal,
        accrued_interest=_ZERO,
        interest_rate_at_origination=interest_rate,
        interest_rate=interest_rate,
        status=LoanStatus.OPEN,
        origination_balance=principal,
        origination_date=timestamp,
        last_update_timestamp=timestamp,
    )


def _require_active(loan: Loan) -> None:
    if loan.status == LoanStatus.CLOSED:
        raise LoanClosed(f"Loan {loan.loan_id} is closed")


def accrue_interest(loan: Loan, now: datetime) -> tuple[Loan, Decimal]:
    """
    Bring accrued_interest up to `now` at the loan's current rate.

    Returns:
        (updated loan, interest added by this call)
    """
    if loan.status == LoanStatus.CLOSED or now == loan.last_update_timestamp:
        if now < loan.last_update_timestamp:
            raise ValueError(f"Cannot accrue backwards: {now} < {loan.last_update_timestamp}")
        return replace(loan, last_update_timestamp=now), _ZERO
    interest = calculate_pending_interest(
        loan.principal, loan.interest_rate, loan.last_update_timestamp, now
    )
    return replace(
        loan,
        accrued_interest=loan.accrued_interest + interest,
        last_update_timestamp=now,
    ), interest


def reprice(loan: Loan, interest_rate: Decimal) -> Loan:
    """Set the rate for the next accrual period."""
    interest_rate = to_decimal(interest_rate)
    if interest_rate < _ZERO:
        raise ValueError(f"interest_rate must be non-negative, got {interest_rate}")
    if interest_rate == loan.interest_rate:
        return loan
    return replace(loan, interest_rate=interest_rate)


def apply_repayment(loan: Loan, amount: Decimal) -> RepaymentAllocation:
    """
    Apply a payment: accrued interest first, then principal.

    A loan whose debt reaches zero is CLOSED. Otherwise the status is left
    as it was.

    Raises:
        ValueError: If amount is not positive
        LoanClosed: If the loan is already closed
    """
    amount = to_decimal(amount)
    if not amount.is_finite() or amount <= _ZERO:
        raise ValueError(f"Repayment amount must be positive, got {amount}")
    _require_active(loan)

    interest_paid = min(amount, loan.accrued_interest)
    principal_paid = min(amount - interest_paid, loan.principal)
    excess = amount - interest_paid - principal_paid

    accrued = loan.accrued_interest - interest_paid
    principal = loan.principal - principal_paid
    status = loan.status
    if accrued + principal < QUANTITY_EPSILON:
        accrued = _ZERO
        principal = _ZERO
        status = LoanStatus.CLOSED

    updated = replace(
        loan,
        accrued_interest=accrued,
        principal=principal,
        status=status,
        total_interest_paid=loan.total_interest_paid + interest_paid,
        total_principal_paid=loan.total_principal_paid + principal_paid,
    )
    return RepaymentAllocation(
        loan=updated,
        interest_paid=interest_paid,
        principal_paid=principal_paid,
        excess=excess,
    )


def increase_principal(loan: Loan, amount: Decimal) -> Loan:
    """Draw more against an active loan; the score baseline grows with it."""
    amount = to_decimal(amount)
    if not amount.is_finite() or amount <= _ZERO:
        raise ValueError(f"Borrow amount must be positive, got {amount}")
    _require_active(loan)
    return replace(
        loan,
        principal=loan.principal + amount,
        origination_balance=loan.origination_balance + amount,
    )


def add_collateral(loan: Loan, amount: Decimal) -> Loan:
    amount = to_decimal(amount)
    if not amount.is_finite() or amount <= _ZERO:
        raise ValueError(f"Collateral amount must be positive, got {amount}")
    _require_active(loan)
    return replace(loan, collateral_amount=loan.collateral_amount + amount)


def remove_collateral(loan: Loan, amount: Decimal) -> Loan:
    """Take collateral out of a loan (seizure or release on close)."""
    amount = to_decimal(amount)
    if amount < _ZERO:
        raise ValueError(f"Collateral amount must be non-negative, got {amount}")
    if amount > loan.collateral_amount + QUANTITY_EPSILON:
        raise ValueError(
            f"Cannot remove {amount} collateral from loan {loan.loan_id} "
            f"holding {loan.collateral_amount}"
        )
    remaining = loan.collateral_amount - amount
    if remaining < QUANTITY_EPSILON:
        remaining = _ZERO
    return replace(loan, collateral_amount=remaining)


def write_off_debt(loan: Loan) -> tuple[Loan, Decimal]:
    """
    Close a loan whose remaining debt cannot be recovered.

    Returns:
        (closed loan, debt written off)
    """
    debt = loan.total_debt
    return replace(
        loan,
        principal=_ZERO,
        accrued_interest=_ZERO,
        status=LoanStatus.CLOSED,
    ), debt


def with_status(loan: Loan, status: LoanStatus) -> Loan:
    if loan.status == status:
        return loan
    return replace(loan, status=status)


def transfer_holder(loan: Loan, new_holder: UserId) -> Loan:
    """Reassign the loan document; the borrower is unchanged."""
    if not new_holder:
        raise ValueError("new_holder cannot be empty")
    _require_active(loan)
    return replace(loan, holder_id=new_holder)


def award_score_tiers(loan: Loan, tiers: FrozenSet[Decimal]) -> Loan:
    if not tiers or tiers <= loan.score_tiers_awarded:
        return loan
    return replace(loan, score_tiers_awarded=loan.score_tiers_awarded | tiers)


def remaining_fraction(loan: Loan) -> Optional[Decimal]:
    """Debt left relative to the origination balance; None if the baseline is zero."""
    if loan.origination_balance <= _ZERO:
        return None
    return loan.total_debt / loan.origination_balance
