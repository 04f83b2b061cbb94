"""
Core types and helpers for the lending core.

This module provides the foundational pieces every other module builds on:
1. Decimal context: deterministic arithmetic configured once at import
2. Constants: epsilon, day-count basis, wallet naming for custody
3. Type aliases: AssetId, UserId, LoanId
4. Exceptions: LendingError and the domain-specific error types
5. TransferInstruction: the unit of work handed to AssetCustody
6. Canonical hashing: content ids for custody batches and audit records

Nothing in here holds state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
import hashlib
from typing import Any, Optional, Sequence


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All balances, rates and prices are Decimal. The global context is set once
# at module load so that every calculation in the package rounds the same way.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_LENDING_DECIMAL_CONTEXT = getcontext()
_LENDING_DECIMAL_CONTEXT.prec = 50
_LENDING_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

# Health factor of a loan with no debt.
INFINITY = Decimal("Infinity")

# Actual/365 day count for interest and index accrual.
DAYS_PER_YEAR = Decimal("365")
SECONDS_PER_YEAR = DAYS_PER_YEAR * Decimal("86400")

# Issuance wallet for custody implementations; exempt from balance checks.
SYSTEM_WALLET = "system"

# Wallet prefixes used in TransferInstructions.
POOL_WALLET_PREFIX = "pool"
COLLATERAL_WALLET_PREFIX = "collateral"


# ============================================================================
# TYPE ALIASES
# ============================================================================

AssetId = str
UserId = str
LoanId = str


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """Base exception for all lending-related errors."""
    pass


class InsufficientLiquidity(LendingError):
    """Raised when a withdraw or borrow exceeds the pool's available liquidity."""
    pass


class InsufficientBalance(LendingError):
    """Raised when a user's deposit or free collateral cannot cover a debit."""
    pass


class ExceedsMaxBorrow(LendingError):
    """Raised when a borrow would push loan-to-value above the permitted maximum."""
    pass


class NotLiquidatable(LendingError):
    """Raised when a liquidation is attempted on a healthy or closed loan."""
    pass


class HealthNotImproved(LendingError):
    """
    Raised when a liquidation would not strictly raise the loan's health factor.

    The loan is eligible (health factor <= 1); the repay amount lies outside
    its liquidation window.
    """
    pass


class ExceedsLiquidationLimit(LendingError):
    """Raised when a liquidation repays more than the close-factor cap allows."""
    pass


class PartialSeizureShortfall(LendingError):
    """
    Raised when seizure would exceed the loan's collateral.

    Only raised when the protocol is configured to refuse capped seizures.
    Otherwise the shortfall is reported on the LiquidationResult.
    """

    def __init__(self, message: str, shortfall_collateral: Decimal, shortfall_value: Decimal):
        super().__init__(message)
        self.shortfall_collateral = shortfall_collateral
        self.shortfall_value = shortfall_value


class UnknownAsset(LendingError):
    """Raised when an asset has no pool or no price."""
    pass


class UnknownLoan(LendingError):
    """Raised when a loan id is not known to the protocol."""
    pass


class UnknownUser(LendingError):
    """Raised when a user id has no credit record."""
    pass


class LoanClosed(LendingError):
    """Raised when an operation targets a loan that is already closed."""
    pass


class Unauthorized(LendingError):
    """Raised when the caller is not the current holder of a loan."""
    pass


class CustodyRejected(LendingError):
    """Raised when the custody layer refuses a batch of transfer instructions."""
    pass


class ConcurrentModification(LendingError):
    """Raised when a snapshot changed between read and commit."""
    pass


# ============================================================================
# HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Convert int/float/str to Decimal via str() so floats keep their printed value."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def year_fraction(start: datetime, end: datetime) -> Decimal:
    """
    Elapsed time between two timestamps in years (Actual/365).

    Raises:
        ValueError: If end is before start
    """
    if end < start:
        raise ValueError(f"Cannot accrue backwards: {end} < {start}")
    seconds = Decimal(str((end - start).total_seconds()))
    return seconds / SECONDS_PER_YEAR


def pool_wallet(asset_id: AssetId) -> str:
    """Custody wallet holding an asset's lendable liquidity."""
    return f"{POOL_WALLET_PREFIX}:{asset_id}"


def collateral_wallet(asset_id: AssetId) -> str:
    """Custody wallet holding collateral posted in an asset."""
    return f"{COLLATERAL_WALLET_PREFIX}:{asset_id}"


# ============================================================================
# TRANSFER INSTRUCTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransferInstruction:
    """
    A single custody movement implied by a protocol operation.

    Attributes:
        asset_id: Asset being moved
        amount: Positive quantity
        source: Wallet debited
        dest: Wallet credited
        reason: Operation that produced the instruction (e.g. "deposit")
    """
    asset_id: AssetId
    amount: Decimal
    source: str
    dest: str
    reason: str = ""

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))
        if not self.asset_id or not self.asset_id.strip():
            raise ValueError("TransferInstruction asset_id cannot be empty")
        if not self.source or not self.dest:
            raise ValueError("TransferInstruction source and dest cannot be empty")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")
        if not self.amount.is_finite():
            raise ValueError(f"TransferInstruction amount must be finite, got {self.amount}")
        if self.amount <= QUANTITY_EPSILON:
            raise ValueError(f"TransferInstruction amount must be positive, got {self.amount}")

    def __repr__(self) -> str:
        return f"Transfer({self.amount} {self.asset_id}: {self.source}->{self.dest})"


# ============================================================================
# CANONICAL HASHING
# ============================================================================

def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """Deterministic string form of a value for hashing."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        if not value.is_finite():
            return f"D:{value}"
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(item) for item in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "<" + ",".join(_canonicalize(item) for item in sorted(value, key=str)) + ">"
    return f"R:{repr(value)}"


def compute_batch_id(
    instructions: Sequence[TransferInstruction],
    salt: Optional[str] = None,
) -> str:
    """
    Content hash of a batch of transfer instructions.

    Instruction order does not affect the hash. The salt distinguishes two
    batches with identical content (e.g. two deposits of the same amount).
    """
    parts = []
    if salt is not None:
        parts.append(f"salt:{salt}")
    ordered = sorted(
        instructions,
        key=lambda i: (i.asset_id, i.source, i.dest, _normalize_decimal(i.amount), i.reason),
    )
    for i in ordered:
        parts.append(f"move:{_normalize_decimal(i.amount)}|{i.asset_id}|{i.source}|{i.dest}|{i.reason}")
    content = "|".join(parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def compute_record_id(payload: Any) -> str:
    """Content hash of an arbitrary audit payload."""
    return hashlib.sha256(_canonicalize(payload).encode()).hexdigest()[:16]
