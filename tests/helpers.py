"""
helpers.py - Builders and assertion helpers for lending tests

Shared by unit, conformance and functional tests:
- build_protocol / build_funded: plain builders, usable inside hypothesis tests
- approx_equal: Decimal comparison within a tolerance
- pool_debt_matches_loans: pool total_borrowed equals the sum of loan debts
- custody_matches_pool: custody pool wallet equals pool available liquidity
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from lending import (
    InMemoryCustody,
    LendingProtocol,
    ProtocolConfig,
    RiskParameters,
    StaticPriceFeed,
    pool_wallet,
)


T0 = datetime(2025, 1, 1)


@dataclass
class FundedSetup:
    protocol: LendingProtocol
    feed: StaticPriceFeed
    custody: InMemoryCustody
    lender: str
    borrower: str
    liquidator: str


def build_protocol(
    feed: Optional[StaticPriceFeed] = None,
    custody=None,
    risk: Optional[RiskParameters] = None,
    raise_on_shortfall: bool = False,
) -> LendingProtocol:
    """Protocol with USD and ETH pools, starting at T0."""
    feed = feed if feed is not None else StaticPriceFeed({"ETH": Decimal("1")})
    config = ProtocolConfig(
        risk=risk if risk is not None else RiskParameters(),
        raise_on_shortfall=raise_on_shortfall,
    )
    protocol = LendingProtocol(feed, custody=custody, config=config, initial_time=T0)
    protocol.create_pool("USD")
    protocol.create_pool("ETH")
    return protocol


def build_funded(
    supply: Decimal = Decimal("10000"),
    collateral: Decimal = Decimal("10000"),
    risk: Optional[RiskParameters] = None,
    raise_on_shortfall: bool = False,
) -> FundedSetup:
    """
    Lender supplies `supply` USD, borrower posts `collateral` ETH of free
    collateral and holds 100000 USD, liquidator holds 100000 USD.
    """
    feed = StaticPriceFeed({"ETH": Decimal("1")})
    custody = InMemoryCustody()
    protocol = build_protocol(feed=feed, custody=custody, risk=risk,
                              raise_on_shortfall=raise_on_shortfall)
    lender = protocol.register_user("0xlender")
    borrower = protocol.register_user("0xborrower")
    liquidator = "liquidator"

    custody.fund(lender, "USD", supply)
    custody.fund(borrower, "ETH", collateral)
    custody.fund(borrower, "USD", Decimal("100000"))
    custody.fund(liquidator, "USD", Decimal("100000"))

    protocol.deposit(lender, "USD", supply)
    protocol.deposit_collateral(borrower, "ETH", collateral)
    return FundedSetup(protocol, feed, custody, lender, borrower, liquidator)


def approx_equal(a: Decimal, b: Decimal, tolerance: Decimal = Decimal("1e-9")) -> bool:
    """Check two Decimals agree within tolerance."""
    return abs(Decimal(a) - Decimal(b)) <= tolerance


def pool_debt_matches_loans(protocol: LendingProtocol, asset_id: str) -> bool:
    """Pool total_borrowed equals the stored debt of every loan drawn from it."""
    total = sum(
        (protocol.get_loan(lid).total_debt for lid in protocol.list_loans()
         if protocol.get_loan(lid).debt_asset_id == asset_id),
        Decimal("0"),
    )
    return approx_equal(protocol.get_total_borrowed(asset_id), total)


def custody_matches_pool(protocol: LendingProtocol, custody: InMemoryCustody, asset_id: str) -> bool:
    """Tokens held in the pool wallet equal the pool's available liquidity."""
    return approx_equal(custody.balance(pool_wallet(asset_id), asset_id), protocol.get_liquidity(asset_id))
