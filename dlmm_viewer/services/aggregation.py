"""
Balance aggregation engine.

Turns a position's canonical event stream (plus live totals for open
positions) into the five accounting buckets. Everything here is valued in
the pair's own quote token; conversion to any other currency happens in
the backfill pass and the metrics roller.
"""
import logging
import time
from decimal import Decimal
from typing import Iterable, List, Optional

from dlmm_viewer.core.decimal_math import ONE, scale_amount
from dlmm_viewer.core.retry import is_sentinel
from dlmm_viewer.models.position import (
    BalanceSnapshot,
    OperationKind,
    PositionBalance,
    PositionBuckets,
    PositionEvent,
)
from dlmm_viewer.services.adapters.base import LivePositionState, PoolState
from dlmm_viewer.services.price_intervals import value_at
from dlmm_viewer.services.price_oracle import PriceOracleService

logger = logging.getLogger(__name__)

BASIS_POINT_MAX = 10000


def get_price_from_bin_id(bin_id: int, bin_step: int, token_x_decimals: int, token_y_decimals: int) -> Decimal:
    """Token X priced in token Y for a bin: (1 + binStep/10000)^binId * 10^(decX - decY)"""
    base = ONE + Decimal(bin_step) / BASIS_POINT_MAX
    return base ** int(bin_id) * Decimal(10) ** (int(token_x_decimals) - int(token_y_decimals))


class BalanceAggregator:
    def __init__(self, oracle: PriceOracleService):
        self.oracle = oracle

    async def aggregate(
        self,
        events: Iterable[PositionEvent],
        pool: PoolState,
        token_x_decimals: int,
        token_y_decimals: int,
        live: Optional[LivePositionState] = None,
    ) -> PositionBuckets:
        """
        Build the five buckets for one position.

        Deposits and withdrawals are priced at their event bin (the pool's
        active bin when the event has none). Withdrawals hold the withdrawn
        amounts as positive magnitudes. Pass `live` only for open
        positions; closed positions keep empty current and unclaimed buckets.
        """
        events = list(events)
        x_mint, y_mint = pool.token_x_mint, pool.token_y_mint

        def rate_for(bin_id: Optional[int]) -> Decimal:
            return get_price_from_bin_id(
                pool.active_id if bin_id is None else bin_id,
                pool.bin_step, token_x_decimals, token_y_decimals,
            )

        deposits = PositionBalance(x_mint, y_mint)
        withdrawals = PositionBalance(x_mint, y_mint)
        for event in events:
            if event.operation == OperationKind.ADD_LIQUIDITY:
                deposits.add(BalanceSnapshot(
                    event.token_x_change, event.token_y_change,
                    rate_for(event.active_bin_id), event.block_time,
                ))
            elif event.operation == OperationKind.REMOVE_LIQUIDITY:
                withdrawals.add(BalanceSnapshot(
                    -event.token_x_change, -event.token_y_change,
                    rate_for(event.active_bin_id), event.block_time,
                ))

        claims = [e for e in events if e.operation == OperationKind.CLAIM_FEE]
        claimed_fees = await self.price_claimed_fees(claims, pool, token_x_decimals, token_y_decimals)

        current = PositionBalance(x_mint, y_mint)
        unclaimed_fees = PositionBalance(x_mint, y_mint)
        if live is not None:
            now = int(time.time())
            current_rate = rate_for(pool.active_id)
            current.add(BalanceSnapshot(
                scale_amount(live.total_x_amount, token_x_decimals),
                scale_amount(live.total_y_amount, token_y_decimals),
                current_rate, now,
            ))
            unclaimed_fees.add(BalanceSnapshot(
                scale_amount(live.fee_x, token_x_decimals),
                scale_amount(live.fee_y, token_y_decimals),
                current_rate, now,
            ))

        return PositionBuckets(
            total_deposits=deposits,
            total_withdrawals=withdrawals,
            total_unclaimed_fees=unclaimed_fees,
            total_claimed_fees=claimed_fees,
            total_current=current,
        )

    async def price_claimed_fees(
        self,
        claims: List[PositionEvent],
        pool: PoolState,
        token_x_decimals: int,
        token_y_decimals: int,
    ) -> PositionBalance:
        """
        Claimed fees priced at the pair's historical price at claim time.

        Falls back to the current pair rate for every claim when the
        history is unavailable, and to the pool's active-bin rate when the
        current rate is unknown too.
        """
        balance = PositionBalance(pool.token_x_mint, pool.token_y_mint)
        if not claims:
            return balance

        claims = sorted(claims, key=lambda e: e.block_time)
        from_time, to_time = claims[0].block_time, claims[-1].block_time

        series = []
        interval = ""
        try:
            interval, series = await self.oracle.series_for_span(pool.address, "pair", from_time, to_time)
        except Exception as e:
            logger.warning(f"Historical price fetch failed for pair {pool.address}: {e}")

        if series:
            for claim in claims:
                rate = value_at(series, from_time, interval, claim.block_time)
                balance.add(BalanceSnapshot(claim.token_x_change, claim.token_y_change, rate, claim.block_time))
            return balance

        rate = await self.oracle.current_pair_rate(pool.token_x_mint, pool.token_y_mint)
        if is_sentinel(rate):
            rate = get_price_from_bin_id(pool.active_id, pool.bin_step, token_x_decimals, token_y_decimals)
            logger.warning(
                f"No historical or current price for pair {pool.address}; "
                f"pricing {len(claims)} fee claims at the active bin rate {rate}"
            )
        else:
            logger.warning(
                f"No historical prices for pair {pool.address}; "
                f"pricing {len(claims)} fee claims at the current rate {rate}"
            )
        for claim in claims:
            balance.add(BalanceSnapshot(claim.token_x_change, claim.token_y_change, rate, claim.block_time))
        return balance
