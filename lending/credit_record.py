"""
credit_record.py - Per-user, non-transferable credit record

A CreditRecord is the protocol's view of one account: what it has deposited
for lending, what free collateral it has posted, which loans it took, and its
repayment behaviour. The owning account is fixed when the record is created
and is never reassigned.

The credit score on a record only changes through the CreditScorer, and only
upwards.

All functions return new CreditRecord instances; nothing here mutates.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Mapping, Tuple

from .core import (
    AssetId, InsufficientBalance, LoanId, QUANTITY_EPSILON, UserId,
    to_decimal,
)


_ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class RepaymentEvent:
    """
    One payment against a loan, ordinary or via liquidation.

    remaining_balance is principal + accrued interest after the payment.
    """
    loan_id: LoanId
    amount: Decimal
    interest_paid: Decimal
    principal_paid: Decimal
    remaining_balance: Decimal
    timestamp: datetime
    via_liquidation: bool = False

    def __post_init__(self):
        for name in ('amount', 'interest_paid', 'principal_paid', 'remaining_balance'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))


@dataclass(frozen=True, slots=True)
class CreditRecord:
    """Immutable snapshot of a user's standing with the protocol."""
    user_id: UserId
    owner: str
    deposits: Mapping[AssetId, Decimal] = field(default_factory=dict)
    collateral: Mapping[AssetId, Decimal] = field(default_factory=dict)
    loan_ids: FrozenSet[LoanId] = frozenset()
    closed_loan_ids: FrozenSet[LoanId] = frozenset()
    credit_score: int = 0
    repayment_history: Tuple[RepaymentEvent, ...] = ()
    paid_off: int = 0
    defaults: int = 0
    version: int = 0

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("CreditRecord user_id cannot be empty")
        if not self.owner:
            raise ValueError("CreditRecord owner cannot be empty")
        if self.credit_score < 0:
            raise ValueError(f"credit_score must be non-negative, got {self.credit_score}")

    @property
    def open_loan_ids(self) -> FrozenSet[LoanId]:
        return self.loan_ids - self.closed_loan_ids

    def deposit_balance(self, asset_id: AssetId) -> Decimal:
        return self.deposits.get(asset_id, _ZERO)

    def collateral_balance(self, asset_id: AssetId) -> Decimal:
        return self.collateral.get(asset_id, _ZERO)


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def create_credit_record(user_id: UserId, owner: str) -> CreditRecord:
    """New record with zero score and no balances."""
    return CreditRecord(user_id=user_id, owner=owner)


def _credit(balances: Mapping[AssetId, Decimal], asset_id: AssetId, amount: Decimal) -> Dict[AssetId, Decimal]:
    updated = dict(balances)
    updated[asset_id] = updated.get(asset_id, _ZERO) + amount
    return updated


def _debit(
    balances: Mapping[AssetId, Decimal],
    asset_id: AssetId,
    amount: Decimal,
    what: str,
    user_id: UserId,
) -> Dict[AssetId, Decimal]:
    held = balances.get(asset_id, _ZERO)
    if amount > held + QUANTITY_EPSILON:
        raise InsufficientBalance(
            f"{user_id} has {held} {asset_id} {what}, cannot debit {amount}"
        )
    updated = dict(balances)
    remaining = held - amount
    if abs(remaining) < QUANTITY_EPSILON:
        del updated[asset_id]
    else:
        updated[asset_id] = remaining
    return updated


def _positive(amount: Decimal) -> Decimal:
    amount = to_decimal(amount)
    if not amount.is_finite() or amount <= _ZERO:
        raise ValueError(f"Amount must be positive, got {amount}")
    return amount


def credit_deposit(record: CreditRecord, asset_id: AssetId, amount: Decimal) -> CreditRecord:
    amount = _positive(amount)
    return replace(record, deposits=_credit(record.deposits, asset_id, amount))


def debit_deposit(record: CreditRecord, asset_id: AssetId, amount: Decimal) -> CreditRecord:
    """
    Reduce a deposit balance.

    Raises:
        InsufficientBalance: If the user has not deposited that much
    """
    amount = _positive(amount)
    return replace(
        record,
        deposits=_debit(record.deposits, asset_id, amount, "deposited", record.user_id),
    )


def credit_collateral(record: CreditRecord, asset_id: AssetId, amount: Decimal) -> CreditRecord:
    amount = _positive(amount)
    return replace(record, collateral=_credit(record.collateral, asset_id, amount))


def debit_collateral(record: CreditRecord, asset_id: AssetId, amount: Decimal) -> CreditRecord:
    """
    Reduce free collateral.

    Raises:
        InsufficientBalance: If the user has less free collateral than amount
    """
    amount = _positive(amount)
    return replace(
        record,
        collateral=_debit(record.collateral, asset_id, amount, "free collateral", record.user_id),
    )


def attach_loan(record: CreditRecord, loan_id: LoanId) -> CreditRecord:
    if loan_id in record.loan_ids:
        raise ValueError(f"Loan {loan_id} already attached to {record.user_id}")
    return replace(record, loan_ids=record.loan_ids | {loan_id})


def close_loan(record: CreditRecord, loan_id: LoanId, repaid_by_borrower: bool) -> CreditRecord:
    """Move a loan to the closed set; count it as paid off when the borrower settled it."""
    if loan_id not in record.loan_ids:
        raise ValueError(f"Loan {loan_id} does not belong to {record.user_id}")
    if loan_id in record.closed_loan_ids:
        return record
    return replace(
        record,
        closed_loan_ids=record.closed_loan_ids | {loan_id},
        paid_off=record.paid_off + (1 if repaid_by_borrower else 0),
    )


def record_repayment(record: CreditRecord, event: RepaymentEvent) -> CreditRecord:
    return replace(record, repayment_history=record.repayment_history + (event,))


def record_default(record: CreditRecord) -> CreditRecord:
    """Count one liquidation against the user."""
    return replace(record, defaults=record.defaults + 1)


def with_credit_score(record: CreditRecord, score: int) -> CreditRecord:
    """
    Set a new credit score.

    Raises:
        ValueError: If score would decrease
    """
    if score < record.credit_score:
        raise ValueError(
            f"Credit score cannot decrease: {record.credit_score} -> {score}"
        )
    if score == record.credit_score:
        return record
    return replace(record, credit_score=score)
