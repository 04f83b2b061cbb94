"""
test_pricing_source.py - Unit tests for price feeds

Tests:
- StaticPriceFeed lookups, updates and validation
- TimeSeriesPriceFeed point-in-time lookup
- Both satisfy the PriceFeed protocol
"""

import pytest
from datetime import datetime
from decimal import Decimal

from lending import PriceFeed, StaticPriceFeed, TimeSeriesPriceFeed, UnknownAsset


T0 = datetime(2025, 1, 1)
T1 = datetime(2025, 1, 2)
T2 = datetime(2025, 1, 3)


class TestStaticPriceFeed:
    """Tests for StaticPriceFeed."""

    def test_get_price(self):
        feed = StaticPriceFeed({"ETH": Decimal("2000")})
        assert feed.get_price("ETH") == Decimal("2000")

    def test_base_currency_is_one(self):
        assert StaticPriceFeed().get_price("USD") == Decimal("1")
        assert StaticPriceFeed(base_currency="EUR").get_price("EUR") == Decimal("1")

    def test_unknown_asset(self):
        with pytest.raises(UnknownAsset):
            StaticPriceFeed().get_price("BTC")

    def test_set_and_update(self):
        feed = StaticPriceFeed({"ETH": 2000})
        feed.set_price("ETH", Decimal("1800"))
        feed.update_prices({"BTC": "40000", "ETH": 1700})
        assert feed.get_price("ETH") == Decimal("1700")
        assert feed.get_price("BTC") == Decimal("40000")

    @pytest.mark.parametrize("price", ["0", "-1", "NaN", "Infinity"])
    def test_invalid_price(self, price):
        with pytest.raises(ValueError, match="positive"):
            StaticPriceFeed().set_price("ETH", Decimal(price))

    def test_invalid_update_is_all_or_nothing(self):
        feed = StaticPriceFeed({"ETH": Decimal("2000")})
        with pytest.raises(ValueError):
            feed.update_prices({"ETH": Decimal("1900"), "BTC": Decimal("0")})
        assert feed.get_price("ETH") == Decimal("2000")

    def test_is_price_feed(self):
        assert isinstance(StaticPriceFeed(), PriceFeed)


class TestTimeSeriesPriceFeed:
    """Tests for TimeSeriesPriceFeed."""

    @pytest.fixture
    def feed(self):
        return TimeSeriesPriceFeed({
            "ETH": [(T2, Decimal("1500")), (T0, Decimal("2000")), (T1, Decimal("1800"))],
        }, as_of=T0)

    def test_as_of_lookup(self, feed):
        assert feed.get_price("ETH") == Decimal("2000")
        feed.set_time(datetime(2025, 1, 2, 12))
        assert feed.get_price("ETH") == Decimal("1800")
        feed.set_time(T2)
        assert feed.get_price("ETH") == Decimal("1500")

    def test_before_first_observation(self, feed):
        with pytest.raises(UnknownAsset, match="at or before"):
            feed.get_price_at("ETH", datetime(2024, 12, 31))

    def test_unknown_asset(self, feed):
        with pytest.raises(UnknownAsset):
            feed.get_price("BTC")

    def test_base_currency(self, feed):
        assert feed.get_price("USD") == Decimal("1")

    def test_set_price_records_at_as_of(self, feed):
        feed.set_time(T1)
        feed.set_price("ETH", Decimal("1750"))
        assert feed.get_price_at("ETH", T1) == Decimal("1750")
        assert feed.get_price_at("ETH", T0) == Decimal("2000")

    def test_add_price_out_of_order(self, feed):
        feed.add_price("BTC", T1, Decimal("41000"))
        feed.add_price("BTC", T0, Decimal("40000"))
        assert feed.get_price_at("BTC", T0) == Decimal("40000")
        assert feed.get_price_at("BTC", T2) == Decimal("41000")

    def test_is_price_feed(self, feed):
        assert isinstance(feed, PriceFeed)
