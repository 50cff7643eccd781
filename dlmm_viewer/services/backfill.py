"""
Valuation backfill pass.

Attaches a reference-currency price (token Y priced in the reference mint)
to every snapshot of every position, one quote token at a time, so that
PositionBalance.value_in(reference) works across pairs.
"""
import asyncio
import bisect
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Dict, Iterable, List

from dlmm_viewer.core.decimal_math import safe_div
from dlmm_viewer.core.retry import is_sentinel
from dlmm_viewer.models.position import PositionLiquidityData
from dlmm_viewer.services.price_intervals import PricePoint, determine_optimal_interval, value_at
from dlmm_viewer.services.price_oracle import PriceOracleService

logger = logging.getLogger(__name__)

RateLookup = Callable[[int], Decimal]


def divide_series(numerator: List[PricePoint], denominator: List[PricePoint]) -> List[PricePoint]:
    """
    numerator / denominator at each numerator point, matched by equal unix
    time or else the nearest denominator point.
    """
    if not denominator:
        return []
    times = [p.unix_time for p in denominator]
    ratios = []
    for point in numerator:
        i = bisect.bisect_left(times, point.unix_time)
        if i == len(times) or (i > 0 and point.unix_time - times[i - 1] <= times[i] - point.unix_time):
            i -= 1
        ratios.append(PricePoint(point.unix_time, safe_div(point.value, denominator[i].value)))
    return ratios


class ValuationBackfill:
    def __init__(self, oracle: PriceOracleService, reference_mint: str):
        self.oracle = oracle
        self.reference_mint = reference_mint

    async def apply(self, positions: Iterable[PositionLiquidityData]) -> None:
        """Attach reference prices in place; positions quoted in the reference are skipped"""
        groups: Dict[str, List[PositionLiquidityData]] = defaultdict(list)
        for position in positions:
            if self.reference_mint in (position.token_x_mint, position.token_y_mint):
                continue
            groups[position.token_y_mint].append(position)

        await asyncio.gather(*(self._backfill_group(mint, group) for mint, group in groups.items()))

    async def _backfill_group(self, quote_mint: str, positions: List[PositionLiquidityData]) -> None:
        for position in positions:
            for balance in position.buckets.all():
                balance.set_reference_mint(self.reference_mint)

        times = sorted({t for p in positions for t in p.block_times()})
        if not times:
            return

        try:
            rate_at = await self._historical_rates(quote_mint, times[0], times[-1])
        except Exception as e:
            logger.warning(f"Historical reference prices unavailable for {quote_mint}: {e}")
            rate = await self._current_rate(quote_mint)
            if rate is None:
                logger.error(
                    f"No reference price for {quote_mint} in {self.reference_mint}; "
                    f"{len(positions)} positions left without reference values"
                )
                return
            logger.warning(f"Using current rate {rate} for all {len(times)} timestamps of {quote_mint}")
            rate_at = lambda _: rate

        for block_time in times:
            rate = rate_at(block_time)
            for position in positions:
                for balance in position.buckets.all():
                    balance.set_reference_price(block_time, rate)
        logger.info(f"Backfilled {len(times)} reference prices for {len(positions)} positions quoted in {quote_mint}")

    async def _historical_rates(self, quote_mint: str, from_time: int, to_time: int) -> RateLookup:
        interval = determine_optimal_interval(from_time, to_time)
        quote_usd, reference_usd = await asyncio.gather(
            self.oracle.historical_series(quote_mint, "token", interval, from_time, to_time),
            self.oracle.historical_series(self.reference_mint, "token", interval, from_time, to_time),
        )
        ratios = divide_series(quote_usd, reference_usd)
        if not ratios:
            raise ValueError("empty price series")
        return lambda block_time: value_at(ratios, from_time, interval, block_time)

    async def _current_rate(self, quote_mint: str):
        rate = await self.oracle.current_pair_rate(quote_mint, self.reference_mint)
        if not is_sentinel(rate):
            return rate
        quote_usd, reference_usd = await asyncio.gather(
            self.oracle.current_usd_price(quote_mint),
            self.oracle.current_usd_price(self.reference_mint),
        )
        if is_sentinel(quote_usd) or is_sentinel(reference_usd) or reference_usd == 0:
            return None
        return quote_usd / reference_usd
