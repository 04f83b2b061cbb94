"""
credit_scorer.py - Credit score updates on repayment

The score moves only when a loan is repaid (by the borrower or through a
liquidation). Each repayment is measured as the fraction of the loan's
origination balance still outstanding; every tier whose threshold that
fraction has reached pays its increment once per loan.

Default tier table:
    remaining <= 75%  -> +5
    remaining <= 50%  -> +5
    remaining <= 25%  -> +5
    remaining == 0    -> +5

Scores never decrease and are capped at a configurable ceiling.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import FrozenSet, Optional, Sequence, Tuple

from .core import QUANTITY_EPSILON, to_decimal
from .credit_record import CreditRecord, with_credit_score
from .loan import Loan, award_score_tiers, remaining_fraction


logger = logging.getLogger(__name__)

DEFAULT_SCORE_CEILING = 1000


@dataclass(frozen=True, slots=True)
class ScoreTier:
    """Awarded once per loan when remaining debt / origination balance <= max_remaining_fraction."""
    max_remaining_fraction: Decimal
    increment: int

    def __post_init__(self):
        if not isinstance(self.max_remaining_fraction, Decimal):
            object.__setattr__(self, 'max_remaining_fraction', to_decimal(self.max_remaining_fraction))
        if self.max_remaining_fraction < 0:
            raise ValueError(
                f"max_remaining_fraction must be non-negative, got {self.max_remaining_fraction}"
            )
        if self.increment < 0:
            raise ValueError(f"increment must be non-negative, got {self.increment}")


DEFAULT_SCORE_TIERS: Tuple[ScoreTier, ...] = (
    ScoreTier(Decimal("0.75"), 5),
    ScoreTier(Decimal("0.50"), 5),
    ScoreTier(Decimal("0.25"), 5),
    ScoreTier(Decimal("0"), 5),
)


@dataclass(frozen=True, slots=True)
class ScoreUpdate:
    """Result of scoring one repayment."""
    previous_score: int
    new_score: int
    tiers_awarded: FrozenSet[Decimal]
    remaining_fraction: Optional[Decimal]

    @property
    def increment(self) -> int:
        return self.new_score - self.previous_score


def calculate_score_update(
    current_score: int,
    fraction_remaining: Optional[Decimal],
    already_awarded: FrozenSet[Decimal],
    tiers: Sequence[ScoreTier] = DEFAULT_SCORE_TIERS,
    ceiling: int = DEFAULT_SCORE_CEILING,
) -> ScoreUpdate:
    """
    Pure tier evaluation.

    Args:
        current_score: Score before this repayment
        fraction_remaining: Remaining debt over origination balance (None skips scoring)
        already_awarded: Tier thresholds this loan has already paid out
        tiers: Tier table
        ceiling: Maximum score

    Returns:
        ScoreUpdate; new_score >= current_score always holds
    """
    if fraction_remaining is None:
        return ScoreUpdate(current_score, current_score, frozenset(), None)

    awarded = set()
    increment = 0
    for tier in tiers:
        if tier.max_remaining_fraction in already_awarded:
            continue
        if fraction_remaining <= tier.max_remaining_fraction + QUANTITY_EPSILON:
            awarded.add(tier.max_remaining_fraction)
            increment += tier.increment

    new_score = max(current_score, min(ceiling, current_score + increment))
    return ScoreUpdate(current_score, new_score, frozenset(awarded), fraction_remaining)


class CreditScorer:
    """Applies the tier table to a borrower's record after a repayment."""

    def __init__(
        self,
        tiers: Sequence[ScoreTier] = DEFAULT_SCORE_TIERS,
        ceiling: int = DEFAULT_SCORE_CEILING,
    ) -> None:
        if ceiling < 0:
            raise ValueError(f"ceiling must be non-negative, got {ceiling}")
        thresholds = [t.max_remaining_fraction for t in tiers]
        if len(set(thresholds)) != len(thresholds):
            raise ValueError("Score tiers must have distinct thresholds")
        self.tiers = tuple(tiers)
        self.ceiling = ceiling

    def score_repayment(
        self,
        record: CreditRecord,
        loan: Loan,
        remaining_debt: Optional[Decimal] = None,
    ) -> Tuple[CreditRecord, Loan, ScoreUpdate]:
        """
        Score a loan that has just been repaid (partly or fully).

        Args:
            record: Borrower's record
            loan: Loan after the repayment was applied
            remaining_debt: Debt to measure instead of loan.total_debt; used
                when the loan was closed by a write-off rather than repaid

        Returns:
            (record with new score, loan with awarded tiers marked, ScoreUpdate)
        """
        if loan.borrower_id != record.user_id:
            raise ValueError(
                f"Loan {loan.loan_id} belongs to {loan.borrower_id}, not {record.user_id}"
            )
        if remaining_debt is None:
            fraction = remaining_fraction(loan)
        elif loan.origination_balance > 0:
            fraction = remaining_debt / loan.origination_balance
        else:
            fraction = None
        update = calculate_score_update(
            record.credit_score,
            fraction,
            loan.score_tiers_awarded,
            self.tiers,
            self.ceiling,
        )
        if update.increment:
            logger.info(
                "credit score %s: %d -> %d (loan %s, remaining %s)",
                record.user_id, update.previous_score, update.new_score,
                loan.loan_id, update.remaining_fraction,
            )
        return (
            with_credit_score(record, update.new_score),
            award_score_tiers(loan, update.tiers_awarded),
            update,
        )
