"""
interest_rate.py - Utilization-driven interest rate curve

Maps pool utilization to an annual borrow rate and derives the supply rate
lenders earn. The curve is kinked: a gentle slope up to the optimal
utilization, a steep slope above it to pull utilization back down.

Key Formulas:
    U <= U*:  borrow_rate = base + slope1 * U / U*
    U >  U*:  borrow_rate = base + slope1 + slope2 * (U - U*) / (1 - U*)
    supply_rate = borrow_rate * U * (1 - reserve_factor)

Both segments meet at U*, so the curve is continuous and non-decreasing.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict

import numpy as np

from .core import to_decimal


_ZERO = Decimal("0")
_ONE = Decimal("1")


@dataclass(frozen=True, slots=True)
class InterestRateParams:
    """
    Immutable parameter set for the kinked rate curve.

    Defaults are a conservative stablecoin-style curve: 2% at zero
    utilization, 6% at the 80% kink, 81% at full utilization.
    """
    base_rate: Decimal = Decimal("0.02")
    optimal_utilization: Decimal = Decimal("0.80")
    slope1: Decimal = Decimal("0.04")
    slope2: Decimal = Decimal("0.75")

    def __post_init__(self):
        """Convert float values to Decimal and validate ranges."""
        for name in ('base_rate', 'optimal_utilization', 'slope1', 'slope2'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))

        if self.base_rate < 0:
            raise ValueError(f"base_rate must be non-negative, got {self.base_rate}")
        if not (_ZERO < self.optimal_utilization < _ONE):
            raise ValueError(
                f"optimal_utilization must be in (0, 1), got {self.optimal_utilization}"
            )
        if self.slope1 < 0 or self.slope2 < 0:
            raise ValueError(
                f"slopes must be non-negative, got slope1={self.slope1}, slope2={self.slope2}"
            )

    @property
    def rate_at_optimal(self) -> Decimal:
        """Borrow rate exactly at the kink."""
        return self.base_rate + self.slope1

    @property
    def max_rate(self) -> Decimal:
        """Borrow rate at full utilization."""
        return self.base_rate + self.slope1 + self.slope2


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def clamp_utilization(utilization: Decimal) -> Decimal:
    """Clamp utilization into [0, 1]."""
    utilization = to_decimal(utilization)
    if utilization < _ZERO:
        return _ZERO
    if utilization > _ONE:
        return _ONE
    return utilization


def calculate_borrow_rate(utilization: Decimal, params: InterestRateParams) -> Decimal:
    """
    Annual borrow rate at a given utilization.

    Args:
        utilization: Pool utilization; values outside [0, 1] are clamped
        params: Curve parameters

    Returns:
        Annual rate as a decimal fraction (0.05 = 5%)

    Example:
        >>> calculate_borrow_rate(Decimal("0.4"), InterestRateParams())
        Decimal('0.04')
    """
    u = clamp_utilization(utilization)
    if u <= params.optimal_utilization:
        return params.base_rate + params.slope1 * u / params.optimal_utilization
    excess = (u - params.optimal_utilization) / (_ONE - params.optimal_utilization)
    return params.base_rate + params.slope1 + params.slope2 * excess


def calculate_supply_rate(
    utilization: Decimal,
    reserve_factor: Decimal,
    params: InterestRateParams,
) -> Decimal:
    """
    Annual rate earned by suppliers.

    Borrowers pay borrow_rate on the borrowed share of the pool; the protocol
    keeps reserve_factor of that and suppliers split the rest.
    """
    u = clamp_utilization(utilization)
    reserve_factor = to_decimal(reserve_factor)
    return calculate_borrow_rate(u, params) * u * (_ONE - reserve_factor)


# ============================================================================
# MODEL
# ============================================================================

class InterestRateModel:
    """Kinked interest rate model bound to one parameter set."""

    def __init__(self, params: InterestRateParams | None = None) -> None:
        self.params = params if params is not None else InterestRateParams()

    def borrow_rate(self, utilization: Decimal) -> Decimal:
        return calculate_borrow_rate(utilization, self.params)

    def supply_rate(self, utilization: Decimal, reserve_factor: Decimal) -> Decimal:
        return calculate_supply_rate(utilization, reserve_factor, self.params)

    def rate_curve(
        self,
        n_points: int = 101,
        reserve_factor: Decimal = Decimal("0"),
    ) -> Dict[str, np.ndarray]:
        """
        Sample the full curve for plotting or analysis.

        Returns:
            Dict of float arrays: utilization, borrow_rate, supply_rate
        """
        if n_points < 2:
            raise ValueError(f"n_points must be at least 2, got {n_points}")
        utilizations = np.linspace(0.0, 1.0, n_points)
        borrow_rates = np.array(
            [float(self.borrow_rate(Decimal(str(float(u))))) for u in utilizations]
        )
        supply_rates = np.array(
            [float(self.supply_rate(Decimal(str(float(u))), reserve_factor)) for u in utilizations]
        )
        return {
            "utilization": utilizations,
            "borrow_rate": borrow_rates,
            "supply_rate": supply_rates,
        }

    def __repr__(self) -> str:
        p = self.params
        return (
            f"InterestRateModel(base={p.base_rate}, kink={p.optimal_utilization}, "
            f"slope1={p.slope1}, slope2={p.slope2})"
        )
