"""
pool.py - Per-asset liquidity pools

One Pool per asset tracks what lenders supplied, what borrowers drew, the
collateral posted in that asset, and the cumulative indices that express
supplier and borrower growth since creation.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS:
   - Pool: Immutable snapshot; every change yields a new instance

2. PURE FUNCTIONS (apply_* / accrue_indices / capitalize_interest):
   - Take a Pool and explicit inputs, return a new Pool
   - Raise before returning anything if the change is not allowed
   - Never touch locks, custody, or prices

Invariants:
    total_borrowed <= total_supply
    utilization = total_borrowed / total_supply  (0 when total_supply == 0)
    available_liquidity = total_supply - total_borrowed
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
import logging
from typing import Optional

from .core import (
    AssetId, InsufficientLiquidity, QUANTITY_EPSILON,
    to_decimal, year_fraction,
)
from .interest_rate import InterestRateModel, InterestRateParams


logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")

DEFAULT_RESERVE_FACTOR = Decimal("0.10")


# ============================================================================
# FROZEN DATACLASS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Pool:
    """
    Immutable snapshot of one asset's lending pool.

    total_supply includes interest capitalised from loans, so it grows with
    borrower payments even when no one deposits. reserves is the protocol's
    share of that interest and is part of total_supply.
    """
    asset_id: AssetId
    total_supply: Decimal
    total_borrowed: Decimal
    reserve_factor: Decimal
    liquidity_index: Decimal
    borrow_index: Decimal
    last_update_timestamp: datetime
    total_collateral: Decimal = _ZERO
    reserves: Decimal = _ZERO
    bad_debt: Decimal = _ZERO
    rate_params: InterestRateParams = InterestRateParams()
    version: int = 0

    def __post_init__(self):
        """Convert float values to Decimal to ensure type consistency."""
        for name in ('total_supply', 'total_borrowed', 'reserve_factor', 'liquidity_index',
                     'borrow_index', 'total_collateral', 'reserves', 'bad_debt'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))

    @property
    def utilization(self) -> Decimal:
        return calculate_utilization(self.total_borrowed, self.total_supply)

    @property
    def available_liquidity(self) -> Decimal:
        return self.total_supply - self.total_borrowed


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_utilization(total_borrowed: Decimal, total_supply: Decimal) -> Decimal:
    """Borrowed share of supply; zero for an empty pool."""
    if total_supply <= _ZERO:
        return _ZERO
    return total_borrowed / total_supply


def create_pool(
    asset_id: AssetId,
    timestamp: datetime,
    reserve_factor: Decimal = DEFAULT_RESERVE_FACTOR,
    rate_params: Optional[InterestRateParams] = None,
) -> Pool:
    """
    Create an empty pool with both indices at 1.

    Raises:
        ValueError: If asset_id is empty or reserve_factor is outside [0, 1)
    """
    if not asset_id or not asset_id.strip():
        raise ValueError("asset_id cannot be empty")
    reserve_factor = to_decimal(reserve_factor)
    if not (_ZERO <= reserve_factor < _ONE):
        raise ValueError(f"reserve_factor must be in [0, 1), got {reserve_factor}")
    return Pool(
        asset_id=asset_id,
        total_supply=_ZERO,
        total_borrowed=_ZERO,
        reserve_factor=reserve_factor,
        liquidity_index=_ONE,
        borrow_index=_ONE,
        last_update_timestamp=timestamp,
        rate_params=rate_params if rate_params is not None else InterestRateParams(),
    )


def accrue_indices(
    pool: Pool,
    now: datetime,
    model: Optional[InterestRateModel] = None,
) -> Pool:
    """
    Roll the pool's indices forward to `now`.

    Each index grows by (1 + rate * elapsed_years) at the rate implied by the
    current utilization. Calling again with the same `now` returns the pool
    unchanged, so repeated accrual within one timestamp is harmless.

    Args:
        pool: Current snapshot
        now: Target timestamp (must not precede last_update_timestamp)
        model: Rate model; defaults to one built from pool.rate_params

    Raises:
        ValueError: If now is before the pool's last update
    """
    if now == pool.last_update_timestamp:
        return pool
    dt = year_fraction(pool.last_update_timestamp, now)
    if model is None:
        model = InterestRateModel(pool.rate_params)

    u = pool.utilization
    borrow_rate = model.borrow_rate(u)
    supply_rate = model.supply_rate(u, pool.reserve_factor)

    logger.debug(
        "accrue %s: dt=%s u=%s borrow=%s supply=%s",
        pool.asset_id, dt, u, borrow_rate, supply_rate,
    )
    return replace(
        pool,
        liquidity_index=pool.liquidity_index * (_ONE + supply_rate * dt),
        borrow_index=pool.borrow_index * (_ONE + borrow_rate * dt),
        last_update_timestamp=now,
    )


def _require_positive(amount: Decimal, what: str) -> Decimal:
    amount = to_decimal(amount)
    if not amount.is_finite() or amount <= _ZERO:
        raise ValueError(f"{what} amount must be positive, got {amount}")
    return amount


def apply_deposit(pool: Pool, amount: Decimal) -> Pool:
    """Add lender supply."""
    amount = _require_positive(amount, "Deposit")
    return replace(pool, total_supply=pool.total_supply + amount)


def apply_withdraw(pool: Pool, amount: Decimal) -> Pool:
    """
    Remove lender supply.

    Raises:
        InsufficientLiquidity: If amount exceeds what is not lent out
    """
    amount = _require_positive(amount, "Withdraw")
    if amount > pool.available_liquidity:
        raise InsufficientLiquidity(
            f"Cannot withdraw {amount} {pool.asset_id}: only {pool.available_liquidity} available"
        )
    return replace(pool, total_supply=pool.total_supply - amount)


def apply_borrow(pool: Pool, amount: Decimal) -> Pool:
    """
    Draw liquidity for a loan.

    Raises:
        InsufficientLiquidity: If amount exceeds available liquidity
    """
    amount = _require_positive(amount, "Borrow")
    if amount > pool.available_liquidity:
        raise InsufficientLiquidity(
            f"Cannot borrow {amount} {pool.asset_id}: only {pool.available_liquidity} available"
        )
    return replace(pool, total_borrowed=pool.total_borrowed + amount)


def apply_repay(pool: Pool, amount: Decimal) -> Pool:
    """Return liquidity from a loan; never drives total_borrowed below zero."""
    amount = _require_positive(amount, "Repay")
    return replace(pool, total_borrowed=pool.total_borrowed - min(amount, pool.total_borrowed))


def capitalize_interest(pool: Pool, interest: Decimal) -> Pool:
    """
    Fold loan interest into the pool.

    The interest is owed by the borrower (total_borrowed grows) and owned by
    suppliers and the protocol (total_supply grows, reserves take the
    reserve_factor share).
    """
    interest = to_decimal(interest)
    if interest < _ZERO:
        raise ValueError(f"Interest cannot be negative, got {interest}")
    if interest == _ZERO:
        return pool
    return replace(
        pool,
        total_supply=pool.total_supply + interest,
        total_borrowed=pool.total_borrowed + interest,
        reserves=pool.reserves + interest * pool.reserve_factor,
    )


def apply_collateral_in(pool: Pool, amount: Decimal) -> Pool:
    """Record collateral posted in this asset."""
    amount = _require_positive(amount, "Collateral")
    return replace(pool, total_collateral=pool.total_collateral + amount)


def apply_collateral_out(pool: Pool, amount: Decimal) -> Pool:
    """Record collateral leaving the protocol (withdrawal or seizure)."""
    amount = _require_positive(amount, "Collateral")
    if amount > pool.total_collateral + QUANTITY_EPSILON:
        raise ValueError(
            f"Cannot release {amount} {pool.asset_id} collateral: only {pool.total_collateral} posted"
        )
    return replace(pool, total_collateral=max(_ZERO, pool.total_collateral - amount))


def write_off(pool: Pool, amount: Decimal) -> Pool:
    """
    Remove unrecoverable debt.

    Suppliers absorb the loss: total_supply and total_borrowed drop together,
    and the amount is recorded as bad debt.
    """
    amount = _require_positive(amount, "Write-off")
    amount = min(amount, pool.total_borrowed)
    logger.warning("write-off %s %s as bad debt", amount, pool.asset_id)
    return replace(
        pool,
        total_supply=pool.total_supply - amount,
        total_borrowed=pool.total_borrowed - amount,
        bad_debt=pool.bad_debt + amount,
    )
