"""
pricing_source.py - Price feeds for risk evaluation

The risk core reads prices through the PriceFeed protocol and never writes
them; set_price is the privileged entry point for whoever operates the feed.

Classes:
- PriceFeed: Protocol defining the feed interface
- StaticPriceFeed: Mutable spot prices (tests, admin-set oracles)
- TimeSeriesPriceFeed: Price history with a movable as-of time (simulations)

Prices are quoted in a common base currency; the base currency prices at 1.
"""

from __future__ import annotations
from bisect import bisect_right
from datetime import datetime
from decimal import Decimal
import threading
from typing import Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from .core import AssetId, UnknownAsset, to_decimal


def _validate_price(asset_id: AssetId, price) -> Decimal:
    price = to_decimal(price)
    if not price.is_finite() or price <= 0:
        raise ValueError(f"Price for {asset_id} must be positive and finite, got {price}")
    return price


@runtime_checkable
class PriceFeed(Protocol):
    """
    Protocol for price feeds.

    get_price raises UnknownAsset for an asset without a price.
    """

    def get_price(self, asset_id: AssetId) -> Decimal:
        """Current unit price of an asset."""
        ...

    def set_price(self, asset_id: AssetId, price: Decimal) -> None:
        """Privileged setter."""
        ...


class StaticPriceFeed:
    """
    Spot prices held in memory.

    Prices stay fixed until set_price/update_prices changes them.
    """

    def __init__(self, prices: Optional[Mapping[AssetId, Decimal]] = None, base_currency: str = "USD"):
        """
        Args:
            prices: Initial asset -> price map
            base_currency: Asset that always prices at 1
        """
        self.base_currency = base_currency
        self._lock = threading.Lock()
        self.prices: Dict[AssetId, Decimal] = {}
        for asset_id, price in (prices or {}).items():
            self.prices[asset_id] = _validate_price(asset_id, price)
        self.prices[base_currency] = Decimal("1")

    def get_price(self, asset_id: AssetId) -> Decimal:
        with self._lock:
            price = self.prices.get(asset_id)
        if price is None:
            raise UnknownAsset(f"No price for {asset_id}")
        return price

    def set_price(self, asset_id: AssetId, price: Decimal) -> None:
        price = _validate_price(asset_id, price)
        with self._lock:
            self.prices[asset_id] = price

    def update_prices(self, prices: Mapping[AssetId, Decimal]) -> None:
        """Set several prices at once."""
        validated = {a: _validate_price(a, p) for a, p in prices.items()}
        with self._lock:
            self.prices.update(validated)

    def __repr__(self):
        return f"StaticPriceFeed({len(self.prices)} prices, base={self.base_currency})"


class TimeSeriesPriceFeed:
    """
    Price history with point-in-time lookup.

    get_price returns the most recent observation at or before the feed's
    as-of time. set_price records an observation at the as-of time.

    Examples:
        feed = TimeSeriesPriceFeed({
            'ETH': [(t0, 2000), (t1, 1800), (t2, 1500)],
        }, as_of=t0)
        feed.set_time(t1)
        feed.get_price('ETH')   # 1800
    """

    def __init__(
        self,
        price_paths: Optional[Mapping[AssetId, List[Tuple[datetime, Decimal]]]] = None,
        as_of: Optional[datetime] = None,
        base_currency: str = "USD",
    ):
        self.base_currency = base_currency
        self.as_of = as_of or datetime(1970, 1, 1)
        self._lock = threading.Lock()
        self.price_history: Dict[AssetId, List[Tuple[datetime, Decimal]]] = {}
        for asset_id, path in (price_paths or {}).items():
            if not path:
                continue
            self.price_history[asset_id] = sorted(
                ((ts, _validate_price(asset_id, p)) for ts, p in path),
                key=lambda x: x[0],
            )

    def set_time(self, as_of: datetime) -> None:
        """Move the as-of time (backwards is allowed for what-if queries)."""
        self.as_of = as_of

    def add_price(self, asset_id: AssetId, timestamp: datetime, price: Decimal) -> None:
        """Record an observation at an explicit time."""
        price = _validate_price(asset_id, price)
        with self._lock:
            history = self.price_history.setdefault(asset_id, [])
            history.append((timestamp, price))
            history.sort(key=lambda x: x[0])

    def set_price(self, asset_id: AssetId, price: Decimal) -> None:
        self.add_price(asset_id, self.as_of, price)

    def get_price_at(self, asset_id: AssetId, timestamp: datetime) -> Decimal:
        """
        Price at or before `timestamp`.

        Raises:
            UnknownAsset: If there is no observation at or before timestamp
        """
        if asset_id == self.base_currency:
            return Decimal("1")
        with self._lock:
            history = list(self.price_history.get(asset_id, ()))
        if not history:
            raise UnknownAsset(f"No price history for {asset_id}")
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            raise UnknownAsset(f"No price for {asset_id} at or before {timestamp}")
        return history[idx - 1][1]

    def get_price(self, asset_id: AssetId) -> Decimal:
        return self.get_price_at(asset_id, self.as_of)

    def __repr__(self):
        observations = sum(len(h) for h in self.price_history.values())
        return (
            f"TimeSeriesPriceFeed({len(self.price_history)} assets, {observations} observations, "
            f"as_of={self.as_of.isoformat()})"
        )
