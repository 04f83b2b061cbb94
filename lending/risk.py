"""
risk.py - Loan risk assessment

Decides how much a user may borrow, how healthy a loan is, and how much of
it a liquidator may repay. Credit score relaxes both limits tier by tier.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit inputs):
   - CreditTier: score threshold -> collateral and interest discounts
   - RiskParameters: protocol-wide limits and the tier table
   - RiskAssessment: typed result of assess_loan()

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take all inputs explicitly (amounts, prices, score, parameters)
   - No protocol state, no price feed lookups

3. SCANNING:
   - iter_liquidatable(): lazy, restartable scan for loans a liquidator can act on

Key Formulas:
    collateral_value      = collateral_amount * price(collateral_asset)
    debt_value            = (principal + accrued_interest) * price(debt_asset)
    liquidation_threshold = base_threshold - collateral_discount(score)
    health_factor         = collateral_value * liquidation_threshold / debt_value
    max_ltv               = max_loan_to_value - collateral_discount(score)

health_factor is +Infinity when debt_value is zero. A loan is liquidatable
when health_factor <= 1.

Liquidation window:
    An uncapped seizure raises the health factor only while
    collateral_value > debt_value * (1 + liquidation_bonus), i.e. while
    health_factor > liquidation_threshold * (1 + liquidation_bonus). Below
    that ratio only a repayment that takes all of the collateral (closing the
    loan and writing off the rest) can succeed. A liquidatable loan whose
    close-factor cap does not reach that repayment is blocked: no liquidation
    can run until its price or debt moves.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional, Sequence, Tuple

import numpy as np

from .core import (
    ExceedsMaxBorrow, INFINITY, LoanId,
    to_decimal,
)
from .loan import Loan, LoanStatus


_ZERO = Decimal("0")
_ONE = Decimal("1")


# ============================================================================
# FROZEN DATACLASSES - Explicit Inputs for Pure Functions
# ============================================================================

@dataclass(frozen=True, slots=True)
class CreditTier:
    """
    Benefits unlocked at a credit score threshold.

    collateral_discount lowers both the liquidation threshold and the maximum
    loan-to-value; interest_discount is subtracted from the borrow rate.
    """
    min_score: int
    collateral_discount: Decimal
    interest_discount: Decimal

    def __post_init__(self):
        if not isinstance(self.collateral_discount, Decimal):
            object.__setattr__(self, 'collateral_discount', to_decimal(self.collateral_discount))
        if not isinstance(self.interest_discount, Decimal):
            object.__setattr__(self, 'interest_discount', to_decimal(self.interest_discount))
        if self.min_score < 0:
            raise ValueError(f"min_score must be non-negative, got {self.min_score}")
        if self.collateral_discount < 0 or self.interest_discount < 0:
            raise ValueError("Credit tier discounts must be non-negative")


DEFAULT_CREDIT_TIERS: Tuple[CreditTier, ...] = (
    CreditTier(100, Decimal("0.05"), Decimal("0.01")),
    CreditTier(200, Decimal("0.10"), Decimal("0.02")),
    CreditTier(300, Decimal("0.15"), Decimal("0.03")),
)


@dataclass(frozen=True, slots=True)
class RiskParameters:
    """
    Protocol-wide risk limits.

    close_factor_threshold splits the liquidation band: at or below it a
    liquidator may repay full_close_factor of the debt, above it (up to a
    health factor of 1) only partial_close_factor.
    """
    base_liquidation_threshold: Decimal = Decimal("0.80")
    max_loan_to_value: Decimal = Decimal("0.75")
    liquidation_bonus: Decimal = Decimal("0.05")
    close_factor_threshold: Decimal = Decimal("0.5")
    partial_close_factor: Decimal = Decimal("0.5")
    full_close_factor: Decimal = Decimal("1.0")
    credit_tiers: Tuple[CreditTier, ...] = DEFAULT_CREDIT_TIERS

    def __post_init__(self):
        """Convert float values to Decimal and validate ranges."""
        for name in ('base_liquidation_threshold', 'max_loan_to_value', 'liquidation_bonus',
                     'close_factor_threshold', 'partial_close_factor', 'full_close_factor'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        object.__setattr__(
            self, 'credit_tiers',
            tuple(sorted(self.credit_tiers, key=lambda t: t.min_score)),
        )

        if not (_ZERO < self.base_liquidation_threshold <= _ONE):
            raise ValueError(
                f"base_liquidation_threshold must be in (0, 1], got {self.base_liquidation_threshold}"
            )
        if not (_ZERO < self.max_loan_to_value <= self.base_liquidation_threshold):
            raise ValueError(
                f"max_loan_to_value must be in (0, base_liquidation_threshold], "
                f"got {self.max_loan_to_value}"
            )
        if self.liquidation_bonus < 0:
            raise ValueError(f"liquidation_bonus must be non-negative, got {self.liquidation_bonus}")
        if not (_ZERO < self.partial_close_factor <= self.full_close_factor <= _ONE):
            raise ValueError("close factors must satisfy 0 < partial <= full <= 1")
        if not (_ZERO <= self.close_factor_threshold <= _ONE):
            raise ValueError(
                f"close_factor_threshold must be in [0, 1], got {self.close_factor_threshold}"
            )


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    """
    Immutable result of assess_loan().

    All values are as of the prices and accrued interest passed in.
    """
    collateral_value: Decimal
    debt_value: Decimal
    liquidation_threshold: Decimal
    max_loan_to_value: Decimal
    loan_to_value: Decimal
    health_factor: Decimal
    liquidatable: bool
    max_liquidatable: Decimal
    liquidation_price: Decimal
    min_liquidatable: Decimal = _ZERO

    @property
    def liquidation_blocked(self) -> bool:
        """Eligible (health_factor <= 1) but no repay amount would raise health."""
        return self.liquidatable and self.max_liquidatable <= _ZERO

    @property
    def can_liquidate(self) -> bool:
        return self.liquidatable and self.max_liquidatable > _ZERO


# ============================================================================
# CREDIT TIERS
# ============================================================================

def credit_tier_for(score: int, params: RiskParameters) -> Optional[CreditTier]:
    """Highest tier whose min_score the score reaches, or None."""
    tier = None
    for candidate in params.credit_tiers:
        if score >= candidate.min_score:
            tier = candidate
    return tier


def collateral_discount(score: int, params: RiskParameters) -> Decimal:
    tier = credit_tier_for(score, params)
    return tier.collateral_discount if tier is not None else _ZERO


def interest_discount(score: int, params: RiskParameters) -> Decimal:
    tier = credit_tier_for(score, params)
    return tier.interest_discount if tier is not None else _ZERO


def calculate_liquidation_threshold(score: int, params: RiskParameters) -> Decimal:
    """
    Collateral fraction counted toward health, after the credit discount.

    A score-200 user with default parameters gets 0.80 - 0.10 = 0.70.
    """
    return max(_ZERO, params.base_liquidation_threshold - collateral_discount(score, params))


def calculate_max_loan_to_value(score: int, params: RiskParameters) -> Decimal:
    return max(_ZERO, params.max_loan_to_value - collateral_discount(score, params))


def calculate_loan_rate(pool_borrow_rate: Decimal, score: int, params: RiskParameters) -> Decimal:
    """Borrow rate charged to a user: pool rate less the credit discount, floored at zero."""
    return max(_ZERO, to_decimal(pool_borrow_rate) - interest_discount(score, params))


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_collateral_value(collateral_amount: Decimal, collateral_price: Decimal) -> Decimal:
    return collateral_amount * collateral_price


def calculate_debt_value(debt: Decimal, debt_price: Decimal) -> Decimal:
    return debt * debt_price


def calculate_health_factor(
    collateral_value: Decimal,
    debt_value: Decimal,
    liquidation_threshold: Decimal,
) -> Decimal:
    """
    Risk-adjusted collateral over debt.

    Returns Decimal("Infinity") when there is no debt.

    Example:
        >>> calculate_health_factor(Decimal("10000"), Decimal("9000"), Decimal("0.9"))
        Decimal('1')
    """
    if debt_value <= _ZERO:
        return INFINITY
    return collateral_value * liquidation_threshold / debt_value


def is_liquidatable(health_factor: Decimal) -> bool:
    return health_factor <= _ONE


def calculate_max_liquidatable(
    debt: Decimal,
    health_factor: Decimal,
    params: RiskParameters,
) -> Decimal:
    """
    Largest repayment a liquidator may make in one call.

    Hard cutoffs:
        health_factor > 1                         -> 0
        close_factor_threshold < hf <= 1          -> debt * partial_close_factor
        hf <= close_factor_threshold              -> debt * full_close_factor
    """
    if health_factor > _ONE:
        return _ZERO
    if health_factor <= params.close_factor_threshold:
        return debt * params.full_close_factor
    return debt * params.partial_close_factor


def calculate_liquidation_window(
    debt: Decimal,
    collateral_value: Decimal,
    debt_price: Decimal,
    health_factor: Decimal,
    params: RiskParameters,
) -> Tuple[Decimal, Decimal]:
    """
    Repay amounts (debt-asset units) for which a liquidation can succeed.

    Returns:
        (min_repay, max_repay). min_repay 0 means any positive amount up to
        max_repay; min_repay > 0 is the smallest repayment that seizes all of
        the collateral. (0, 0) when nothing can run.
    """
    cap = calculate_max_liquidatable(debt, health_factor, params)
    if cap <= _ZERO:
        return _ZERO, _ZERO
    bonus_factor = _ONE + params.liquidation_bonus
    if collateral_value > calculate_debt_value(debt, debt_price) * bonus_factor:
        return _ZERO, cap
    exhausting = collateral_value / (debt_price * bonus_factor)
    if exhausting <= cap:
        return exhausting, cap
    return _ZERO, _ZERO


def calculate_liquidation_price(
    collateral_amount: Decimal,
    debt_value: Decimal,
    liquidation_threshold: Decimal,
) -> Decimal:
    """Collateral price at which the health factor reaches exactly 1."""
    if debt_value <= _ZERO:
        return _ZERO
    denominator = collateral_amount * liquidation_threshold
    if denominator <= _ZERO:
        return INFINITY
    return debt_value / denominator


def check_max_borrow(
    collateral_amount: Decimal,
    collateral_price: Decimal,
    debt_after: Decimal,
    debt_price: Decimal,
    score: int,
    params: RiskParameters,
) -> Decimal:
    """
    Gate a borrow on loan-to-value.

    Args:
        collateral_amount: Collateral backing the loan after the operation
        collateral_price: Unit price of the collateral asset
        debt_after: Total debt after the borrow (existing debt plus new amount)
        debt_price: Unit price of the debt asset
        score: Borrower's credit score
        params: Risk parameters

    Returns:
        The resulting loan-to-value

    Raises:
        ExceedsMaxBorrow: If debt_value / collateral_value would exceed the
            score-adjusted maximum
    """
    collateral_value = calculate_collateral_value(collateral_amount, collateral_price)
    debt_value = calculate_debt_value(debt_after, debt_price)
    max_ltv = calculate_max_loan_to_value(score, params)
    if collateral_value <= _ZERO:
        raise ExceedsMaxBorrow("Cannot borrow against zero collateral value")
    ltv = debt_value / collateral_value
    if ltv > max_ltv:
        raise ExceedsMaxBorrow(
            f"Loan-to-value {ltv} exceeds maximum {max_ltv} "
            f"(debt value {debt_value}, collateral value {collateral_value})"
        )
    return ltv


def calculate_available_to_borrow(
    collateral_amount: Decimal,
    collateral_price: Decimal,
    current_debt: Decimal,
    debt_price: Decimal,
    score: int,
    params: RiskParameters,
) -> Decimal:
    """Additional debt (in debt-asset units) that stays within max loan-to-value."""
    if debt_price <= _ZERO:
        return _ZERO
    capacity = calculate_collateral_value(collateral_amount, collateral_price) * \
        calculate_max_loan_to_value(score, params)
    headroom = capacity - calculate_debt_value(current_debt, debt_price)
    return max(_ZERO, headroom / debt_price)


def assess_loan(
    loan: Loan,
    collateral_price: Decimal,
    debt_price: Decimal,
    score: int,
    params: RiskParameters,
    pending_interest: Decimal = _ZERO,
) -> RiskAssessment:
    """
    Full risk picture for one loan.

    Args:
        loan: Loan snapshot
        collateral_price: Unit price of loan.collateral_asset_id
        debt_price: Unit price of loan.debt_asset_id
        score: Borrower's credit score
        params: Risk parameters
        pending_interest: Interest accrued since loan.last_update_timestamp
            that is not yet on the snapshot

    Returns:
        RiskAssessment
    """
    debt = loan.total_debt + pending_interest
    collateral_value = calculate_collateral_value(loan.collateral_amount, collateral_price)
    debt_value = calculate_debt_value(debt, debt_price)
    threshold = calculate_liquidation_threshold(score, params)
    hf = calculate_health_factor(collateral_value, debt_value, threshold)
    ltv = debt_value / collateral_value if collateral_value > _ZERO else (
        INFINITY if debt_value > _ZERO else _ZERO
    )
    liquidatable = loan.status != LoanStatus.CLOSED and is_liquidatable(hf)
    min_repay, max_repay = _ZERO, _ZERO
    if liquidatable:
        min_repay, max_repay = calculate_liquidation_window(
            debt, collateral_value, debt_price, hf, params
        )
    return RiskAssessment(
        collateral_value=collateral_value,
        debt_value=debt_value,
        liquidation_threshold=threshold,
        max_loan_to_value=calculate_max_loan_to_value(score, params),
        loan_to_value=ltv,
        health_factor=hf,
        liquidatable=liquidatable,
        max_liquidatable=max_repay,
        liquidation_price=calculate_liquidation_price(loan.collateral_amount, debt_value, threshold),
        min_liquidatable=min_repay,
    )


# ============================================================================
# STRESS TESTING
# ============================================================================

def stress_health_factors(
    collateral_value: Decimal,
    debt_value: Decimal,
    liquidation_threshold: Decimal,
    price_shocks: Sequence[float],
) -> np.ndarray:
    """
    Health factor under a vector of relative collateral price moves.

    Args:
        collateral_value: Current collateral value
        debt_value: Current debt value (held fixed)
        liquidation_threshold: Score-adjusted threshold
        price_shocks: Relative moves, e.g. [-0.5, -0.2, 0.0, 0.1]

    Returns:
        Float array of health factors, one per shock (inf when debt is zero)
    """
    shocks = np.asarray(price_shocks, dtype=float)
    shocked = float(collateral_value) * (1.0 + shocks)
    shocked = np.maximum(shocked, 0.0)
    if debt_value <= _ZERO:
        return np.full(shocks.shape, np.inf)
    return shocked * float(liquidation_threshold) / float(debt_value)


# ============================================================================
# SCANNING
# ============================================================================

def iter_liquidatable(
    loans: Iterable[Loan],
    assess_of: Callable[[Loan], RiskAssessment],
    include_blocked: bool = False,
) -> Iterator[LoanId]:
    """
    Lazily yield ids of active loans a liquidator can act on.

    assess_of is evaluated per loan at the moment it is reached, so a
    consumer that stops early never prices the rest. Pass a fresh iterable
    to restart the scan. Loans with health_factor <= 1 but an empty
    liquidation window are skipped unless include_blocked is set.
    """
    for loan in loans:
        if loan.status == LoanStatus.CLOSED:
            continue
        assessment = assess_of(loan)
        if assessment.can_liquidate or (include_blocked and assessment.liquidatable):
            yield loan.loan_id
