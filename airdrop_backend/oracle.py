# oracle.py
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import requests

from .errors import OracleUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    is_fallback: bool = False


class PriceOracle:
    """
    USD price of the native asset from a CoinGecko-style simple price API.

    A failed lookup never fails the webhook: the configured fallback price is
    returned instead and marked is_fallback so the settlement row shows the
    payout was priced with lower confidence.
    """

    def __init__(self, url: str, asset_id: str, fallback_price: Decimal, timeout: float = 5.0):
        self.url = url
        self.asset_id = asset_id
        self.fallback_price = fallback_price
        self.timeout = timeout

    def _fetch(self) -> Decimal:
        try:
            resp = requests.get(
                self.url,
                params={"ids": self.asset_id, "vs_currencies": "usd"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise OracleUnavailable(f"price request failed: {e}") from e

        entry = data.get(self.asset_id) if isinstance(data, dict) else None
        usd = entry.get("usd") if isinstance(entry, dict) else None
        if usd is None or isinstance(usd, bool):
            raise OracleUnavailable(f"no usd price for {self.asset_id!r} in response")
        try:
            price = Decimal(str(usd))
        except InvalidOperation:
            raise OracleUnavailable(f"unparsable usd price {usd!r}")
        if not price.is_finite() or price <= 0:
            raise OracleUnavailable(f"non-positive usd price {usd!r}")
        return price

    def fetch_native_usd_price(self) -> PriceQuote:
        try:
            return PriceQuote(self._fetch())
        except OracleUnavailable as e:
            logger.warning("[oracle] %s; using fallback price %s", e, self.fallback_price)
            return PriceQuote(self.fallback_price, is_fallback=True)
