from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from solders.pubkey import Pubkey

from dlmm_viewer.core.cache import CacheService
from dlmm_viewer.core.config import Settings
from dlmm_viewer.core.errors import ServiceUnavailableError
from dlmm_viewer.core.retry import PRICE_SENTINEL
from dlmm_viewer.models.position import (
    BalanceSnapshot,
    PositionBalance,
    PositionBuckets,
    PositionEvent,
    PositionLiquidityData,
)

X_MINT = str(Pubkey.new_unique())
Y_MINT = str(Pubkey.new_unique())
REF_MINT = str(Pubkey.new_unique())
POOL = str(Pubkey.new_unique())


@pytest.fixture
def settings():
    """Settings with no retry delays and no external config"""
    return Settings(
        _env_file=None,
        max_retries=3,
        initial_retry_delay=0,
        max_batch_size=2,
        birdeye_api_key="test-key",
        reference_mint=REF_MINT,
        redis_url=None,
    )


@pytest_asyncio.fixture
async def cache_service():
    """In-process cache"""
    cache = CacheService()
    yield cache
    await cache.close()


class StubOracle:
    """Price oracle with canned answers; raises for history it has not been given"""

    def __init__(self, pair_rate=PRICE_SENTINEL, usd_prices=None, pair_series=None, token_series=None):
        self.pair_rate = pair_rate
        self.usd_prices = usd_prices or {}
        self.pair_series = pair_series
        self.token_series = token_series
        self.calls = []

    async def current_pair_rate(self, token_a, token_b):
        self.calls.append(("pair", token_a, token_b))
        return self.pair_rate

    async def current_usd_price(self, token):
        self.calls.append(("usd", token))
        return self.usd_prices.get(token, PRICE_SENTINEL)

    async def series_for_span(self, address, address_type, time_from, time_to):
        self.calls.append(("series", address, time_from, time_to))
        if self.pair_series is None:
            raise ServiceUnavailableError("Birdeye history API")
        return self.pair_series

    async def historical_series(self, address, address_type, interval, time_from, time_to):
        self.calls.append(("history", address, interval, time_from, time_to))
        if self.token_series is None or address not in self.token_series:
            raise ServiceUnavailableError("Birdeye history API")
        return self.token_series[address]


def make_event(kind, block_time, x="0", y="0", bin_id=None, position="pos", lb_pair=POOL):
    return PositionEvent(
        operation=kind,
        signature=f"sig-{kind.value}-{block_time}",
        block_time=block_time,
        lb_pair=lb_pair,
        position=position,
        owner="owner",
        token_x_change=Decimal(x),
        token_y_change=Decimal(y),
        active_bin_id=bin_id,
    )


def make_balance(*snapshots, x_mint=X_MINT, y_mint=Y_MINT):
    return PositionBalance(x_mint, y_mint, [BalanceSnapshot(Decimal(x), Decimal(y), Decimal(r), t) for x, y, r, t in snapshots])


def make_position(
    position="pos",
    deposits=(),
    withdrawals=(),
    claimed=(),
    unclaimed=(),
    current=(),
    x_mint=X_MINT,
    y_mint=Y_MINT,
    x_symbol="XTK",
    y_symbol="YTK",
    start=1_700_000_000,
    updated=None,
    reference_mint=None,
):
    """PositionLiquidityData from (x, y, rate, block_time) tuples per bucket"""
    buckets = PositionBuckets(
        total_deposits=make_balance(*deposits, x_mint=x_mint, y_mint=y_mint),
        total_withdrawals=make_balance(*withdrawals, x_mint=x_mint, y_mint=y_mint),
        total_unclaimed_fees=make_balance(*unclaimed, x_mint=x_mint, y_mint=y_mint),
        total_claimed_fees=make_balance(*claimed, x_mint=x_mint, y_mint=y_mint),
        total_current=make_balance(*current, x_mint=x_mint, y_mint=y_mint),
    )
    if reference_mint:
        for balance in buckets.all():
            balance.set_reference_mint(reference_mint)
    return PositionLiquidityData(
        position=position,
        owner="owner",
        lb_pair=POOL,
        operations=[],
        token_x_symbol=x_symbol,
        token_x_mint=x_mint,
        token_y_symbol=y_symbol,
        token_y_mint=y_mint,
        start_date=datetime.fromtimestamp(start, tz=timezone.utc),
        last_updated_at=datetime.fromtimestamp(updated or start, tz=timezone.utc),
        buckets=buckets,
        closed=not current,
    )
