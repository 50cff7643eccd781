import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from dlmm_viewer.core.cache import CacheService, cache_key
from dlmm_viewer.core.config import Settings
from dlmm_viewer.core.errors import RateLimitError, ResponseShapeError
from dlmm_viewer.core.retry import fetch_with_retry

logger = logging.getLogger(__name__)


class MeteoraApiService:
    """
    Client for the DLMM indexer REST API.

    Records are returned as the indexer sends them (raw string-or-number
    amounts); mapping them onto position events is the normalizer's job.
    """

    def __init__(self, settings: Settings, cache: CacheService, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.cache = cache
        self.client = client or httpx.AsyncClient(
            base_url=settings.meteora_api_url,
            timeout=30.0,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()

    async def _get_json(self, path: str) -> Optional[Any]:
        """GET path; None on 404"""
        async def request():
            response = await self.client.get(path)
            if response.status_code == 404:
                return None
            if response.status_code == 429:
                raise RateLimitError("Meteora API")
            response.raise_for_status()
            try:
                return response.json()
            except ValueError as e:
                raise ResponseShapeError("Meteora API", f"{path}: {e}")

        return await fetch_with_retry(
            request,
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.initial_retry_delay,
            deadline=self.settings.retry_deadline,
        )

    async def _get_records(self, position: str, endpoint: str) -> List[Dict[str, Any]]:
        path = f"/position/{position}/{endpoint}"
        data = await self._get_json(path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ResponseShapeError("Meteora API", f"{path}: expected a list")
        return data

    async def get_deposits(self, position: str) -> List[Dict[str, Any]]:
        return await self._cached_records(position, "deposits")

    async def get_withdrawals(self, position: str) -> List[Dict[str, Any]]:
        return await self._cached_records(position, "withdraws")

    async def get_claim_fees(self, position: str) -> List[Dict[str, Any]]:
        return await self._cached_records(position, "claim_fees")

    async def _cached_records(self, position: str, endpoint: str) -> List[Dict[str, Any]]:
        return await self.cache.get_or_fetch(
            cache_key("meteora", endpoint, position),
            lambda: self._get_records(position, endpoint),
            ttl=self.settings.aggregate_ttl,
        )

    async def get_position_operations(self, position: str) -> Dict[str, List[Dict[str, Any]]]:
        """Deposits, withdrawals and claimed fees for a position, fetched together"""
        deposits, withdrawals, claim_fees = await asyncio.gather(
            self.get_deposits(position),
            self.get_withdrawals(position),
            self.get_claim_fees(position),
        )
        logger.info(
            f"Indexer returned {len(deposits)} deposits, {len(withdrawals)} withdrawals, "
            f"{len(claim_fees)} fee claims for {position}"
        )
        return {"deposits": deposits, "withdrawals": withdrawals, "claim_fees": claim_fees}

    async def get_position_meta(self, position: str) -> Optional[Dict[str, Any]]:
        """Position summary (owner, pair_address, claimed totals); None if unknown"""
        meta = await self.cache.get_or_fetch(
            cache_key("meteora", "position", position),
            lambda: self._get_json(f"/position/{position}"),
            ttl=self.settings.aggregate_ttl,
        )
        if meta is not None and not isinstance(meta, dict):
            raise ResponseShapeError("Meteora API", f"/position/{position}: expected an object")
        return meta
