import logging
from decimal import Decimal
from typing import Any, List, Optional, Tuple

import httpx

from dlmm_viewer.core.cache import CacheService, cache_key
from dlmm_viewer.core.config import Settings
from dlmm_viewer.core.decimal_math import to_decimal
from dlmm_viewer.core.errors import RateLimitError, ResponseShapeError
from dlmm_viewer.core.retry import fetch_price_with_retry, fetch_with_retry, is_sentinel
from dlmm_viewer.services.price_intervals import (
    PricePoint,
    determine_optimal_interval,
    widen_span,
)

logger = logging.getLogger(__name__)

ADDRESS_KINDS = ("pair", "token")


def _is_real_price(value: Any) -> bool:
    return value is not None and not is_sentinel(Decimal(value))


class PriceOracleService:
    """
    Current and historical prices.

    Spot prices come from the Jupiter price API, historical series from the
    Birdeye history endpoint. Responses are cached (spot_price_ttl for spot,
    aggregate_ttl for series) and identical concurrent requests share one
    network call.
    """

    def __init__(self, settings: Settings, cache: CacheService, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.cache = cache
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self):
        await self.client.aclose()

    async def current_pair_rate(self, token_a: str, token_b: str) -> Decimal:
        """
        Current price of token_a denominated in token_b.

        Returns Decimal(-1) once retries are exhausted; callers must treat
        that as "unknown".
        """
        value = await self.cache.get_or_fetch(
            cache_key("price:pair", token_a, token_b),
            lambda: self._fetch_spot(token_a, token_b),
            ttl=self.settings.spot_price_ttl,
            should_cache=_is_real_price,
        )
        return Decimal(value)

    async def current_usd_price(self, token: str) -> Decimal:
        """Current USD price of token, Decimal(-1) when unavailable"""
        value = await self.cache.get_or_fetch(
            cache_key("price:usd", token),
            lambda: self._fetch_spot(token, None),
            ttl=self.settings.spot_price_ttl,
            should_cache=_is_real_price,
        )
        return Decimal(value)

    async def historical_series(
        self,
        address: str,
        address_type: str,
        interval: str,
        time_from: int,
        time_to: int,
    ) -> List[PricePoint]:
        """
        Ordered price history for a pair or token.

        Raises after exhausting retries; callers decide on a fallback.
        """
        if address_type not in ADDRESS_KINDS:
            raise ValueError(f"address_type must be one of {ADDRESS_KINDS}")
        time_from, time_to = widen_span(int(time_from), int(time_to))

        items = await self.cache.get_or_fetch(
            cache_key("history", address, address_type, interval, time_from, time_to),
            lambda: fetch_with_retry(
                lambda: self._fetch_history(address, address_type, interval, time_from, time_to),
                max_attempts=self.settings.max_retries,
                base_delay=self.settings.initial_retry_delay,
                deadline=self.settings.retry_deadline,
            ),
            ttl=self.settings.aggregate_ttl,
        )
        return [PricePoint(unix_time=int(t), value=Decimal(v)) for t, v in items]

    async def series_for_span(
        self,
        address: str,
        address_type: str,
        time_from: int,
        time_to: int,
    ) -> Tuple[str, List[PricePoint]]:
        """Pick the interval for the span and fetch the series; returns (interval, series)"""
        interval = determine_optimal_interval(time_from, time_to)
        series = await self.historical_series(address, address_type, interval, time_from, time_to)
        return interval, series

    async def _fetch_spot(self, token: str, vs_token: Optional[str]) -> str:
        async def request() -> Decimal:
            params = {"ids": token}
            if vs_token:
                params["vsToken"] = vs_token
            response = await self.client.get(self.settings.jupiter_price_url, params=params)
            if response.status_code == 429:
                raise RateLimitError("Jupiter price API")
            response.raise_for_status()

            data = response.json()
            entry = (data.get("data") or {}).get(token) if isinstance(data, dict) else None
            if not isinstance(entry, dict) or entry.get("price") is None:
                raise ResponseShapeError("Jupiter price API", f"no price for {token}")
            try:
                return to_decimal(entry["price"])
            except ValueError as e:
                raise ResponseShapeError("Jupiter price API", str(e))

        description = f"price of {token} in {vs_token or 'USD'}"
        price = await fetch_price_with_retry(
            request,
            description=description,
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.initial_retry_delay,
            deadline=self.settings.retry_deadline,
        )
        logger.debug(f"Current {description}: {price}")
        return str(price)

    async def _fetch_history(
        self,
        address: str,
        address_type: str,
        interval: str,
        time_from: int,
        time_to: int,
    ) -> List[List[Any]]:
        response = await self.client.get(
            f"{self.settings.birdeye_base_url}/defi/history_price",
            params={
                "address": address,
                "address_type": address_type,
                "type": interval,
                "time_from": time_from,
                "time_to": time_to,
            },
            headers={"x-chain": "solana", "X-API-KEY": self.settings.birdeye_api_key},
        )
        if response.status_code == 429:
            raise RateLimitError("Birdeye history API")
        response.raise_for_status()

        data = response.json()
        items = (data.get("data") or {}).get("items") if isinstance(data, dict) else None
        if not isinstance(data, dict) or data.get("success") is False or not isinstance(items, list):
            raise ResponseShapeError("Birdeye history API", f"no items for {address}")

        points = []
        for item in items:
            try:
                points.append([int(item["unixTime"]), str(to_decimal(item["value"]))])
            except (KeyError, TypeError, ValueError) as e:
                raise ResponseShapeError("Birdeye history API", f"bad item {item!r}: {e}")

        logger.info(f"Fetched {len(points)} {interval} price points for {address_type} {address}")
        return sorted(points, key=lambda p: p[0])
