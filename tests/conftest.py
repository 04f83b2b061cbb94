"""
conftest.py - Shared pytest fixtures for lending tests

Provides common fixtures used across unit, conformance and functional tests:
- Price feed and custody doubles
- Protocols with USD and ETH pools
- A funded setup: lender supply, borrower collateral, liquidator cash

The fixtures wrap the plain builders in tests.helpers so hypothesis tests,
which cannot take function-scoped fixtures, build the same setups.
"""

import pytest
from decimal import Decimal

from lending import InMemoryCustody, StaticPriceFeed

from tests.helpers import T0, build_funded, build_protocol  # noqa: F401


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def feed():
    """ETH and USD both at 1 so amounts and values coincide."""
    return StaticPriceFeed({"ETH": Decimal("1")})


@pytest.fixture
def custody():
    return InMemoryCustody()


@pytest.fixture
def protocol_factory():
    """Build a protocol with USD and ETH pools, starting at T0."""
    return build_protocol


@pytest.fixture
def protocol(feed):
    return build_protocol(feed=feed)


@pytest.fixture
def funded_factory():
    """Build a funded setup with custom supply, collateral or risk parameters."""
    return build_funded


@pytest.fixture
def funded():
    return build_funded()
