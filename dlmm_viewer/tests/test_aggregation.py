from decimal import Decimal

import pytest

from conftest import POOL, X_MINT, Y_MINT, StubOracle, make_event
from dlmm_viewer.core.retry import PRICE_SENTINEL
from dlmm_viewer.models.position import OperationKind, PositionBuckets, PositionLiquidityData, block_time_to_datetime
from dlmm_viewer.services.adapters.base import LivePositionState, PoolState
from dlmm_viewer.services.aggregation import BalanceAggregator, get_price_from_bin_id
from dlmm_viewer.services.metrics import roll_up
from dlmm_viewer.services.price_intervals import PricePoint


def make_pool(active_id=0, bin_step=0):
    return PoolState(address=POOL, active_id=active_id, bin_step=bin_step, token_x_mint=X_MINT, token_y_mint=Y_MINT)


def test_bin_price_scales_by_decimals():
    assert get_price_from_bin_id(0, 10, 9, 6) == Decimal(1000)


def test_bin_price_geometric_step():
    assert get_price_from_bin_id(1, 100, 6, 6) == Decimal("1.01")
    assert get_price_from_bin_id(2, 100, 6, 6) == Decimal("1.0201")
    assert abs(get_price_from_bin_id(-1, 100, 6, 6) * Decimal("1.01") - 1) < Decimal("1e-40")
    assert get_price_from_bin_id(0, 25, 6, 9) == Decimal("0.001")


@pytest.mark.asyncio
async def test_round_trip_scenario():
    events = [
        make_event(OperationKind.POSITION_CREATE, 100),
        make_event(OperationKind.ADD_LIQUIDITY, 110, x="100", y="0", bin_id=0),
        make_event(OperationKind.CLAIM_FEE, 120, x="0", y="5", bin_id=0),
        make_event(OperationKind.REMOVE_LIQUIDITY, 130, x="-100", y="0", bin_id=0),
        make_event(OperationKind.POSITION_CLOSE, 140),
    ]
    oracle = StubOracle(pair_rate=Decimal(1))

    buckets = await BalanceAggregator(oracle).aggregate(events, make_pool(), 6, 6, live=None)

    assert buckets.total_deposits.total_value_in_token_y == Decimal(100)
    assert buckets.total_withdrawals.total_value_in_token_y == Decimal(100)
    assert buckets.total_claimed_fees.total_value_in_token_y == Decimal(5)
    assert buckets.total_current.is_empty()
    assert buckets.total_unclaimed_fees.is_empty()
    # Create/close only bound the timeline
    assert len(buckets.total_deposits) == 1
    assert len(buckets.total_withdrawals) == 1

    position = PositionLiquidityData(
        position="pos", owner="owner", lb_pair=POOL, operations=events,
        token_x_symbol="XTK", token_x_mint=X_MINT, token_y_symbol="YTK", token_y_mint=Y_MINT,
        start_date=block_time_to_datetime(100), last_updated_at=block_time_to_datetime(140),
        buckets=buckets, closed=True,
    )
    metrics = roll_up([position], Y_MINT)
    assert metrics.net_profit == Decimal(5)
    # Fell back to the current rate once history failed
    assert ("pair", X_MINT, Y_MINT) in oracle.calls


@pytest.mark.asyncio
async def test_events_without_bin_use_active_bin():
    pool = make_pool(active_id=1, bin_step=100)
    events = [make_event(OperationKind.ADD_LIQUIDITY, 10, x="10", y="0", bin_id=None)]

    buckets = await BalanceAggregator(StubOracle()).aggregate(events, pool, 6, 6)
    [snapshot] = buckets.total_deposits.snapshots
    assert snapshot.exchange_rate == Decimal("1.01")
    assert buckets.total_deposits.total_value_in_token_y == Decimal("10.1")


@pytest.mark.asyncio
async def test_claims_priced_from_history():
    series = [PricePoint(1000, Decimal(2)), PricePoint(1060, Decimal(3))]
    oracle = StubOracle(pair_series=("1m", series))
    claims = [
        make_event(OperationKind.CLAIM_FEE, 1065, x="1", y="0"),
        make_event(OperationKind.CLAIM_FEE, 1000, x="1", y="1"),
    ]

    balance = await BalanceAggregator(oracle).price_claimed_fees(claims, make_pool(), 6, 6)

    assert [s.block_time for s in balance] == [1000, 1065]
    assert [s.exchange_rate for s in balance] == [Decimal(2), Decimal(3)]
    assert balance.total_value_in_token_y == Decimal(6)
    assert ("series", POOL, 1000, 1065) in oracle.calls


@pytest.mark.asyncio
async def test_claims_fall_back_to_bin_rate_when_prices_unknown():
    oracle = StubOracle(pair_rate=PRICE_SENTINEL)
    claims = [make_event(OperationKind.CLAIM_FEE, 50, x="0.002", y="0")]

    balance = await BalanceAggregator(oracle).price_claimed_fees(claims, make_pool(active_id=0, bin_step=10), 9, 6)

    [snapshot] = balance.snapshots
    assert snapshot.exchange_rate == Decimal(1000)
    assert balance.total_value_in_token_y == Decimal(2)


@pytest.mark.asyncio
async def test_empty_history_falls_back_to_current_rate():
    oracle = StubOracle(pair_rate=Decimal("1.5"), pair_series=("1m", []))
    claims = [make_event(OperationKind.CLAIM_FEE, 50, x="2", y="0")]

    balance = await BalanceAggregator(oracle).price_claimed_fees(claims, make_pool(), 6, 6)
    assert balance.total_value_in_token_y == Decimal(3)


@pytest.mark.asyncio
async def test_no_claims_means_no_price_lookups():
    oracle = StubOracle()
    balance = await BalanceAggregator(oracle).price_claimed_fees([], make_pool(), 6, 6)
    assert balance.is_empty()
    assert oracle.calls == []


@pytest.mark.asyncio
async def test_open_position_gets_now_snapshots():
    live = LivePositionState(
        position="pos", lb_pair=POOL, owner="owner",
        total_x_amount=3_000_000, total_y_amount=500_000, fee_x=1_000_000, fee_y=0,
    )
    pool = make_pool(active_id=0, bin_step=10)
    events = [make_event(OperationKind.ADD_LIQUIDITY, 10, x="3", y="0.5", bin_id=0)]

    buckets = await BalanceAggregator(StubOracle()).aggregate(events, pool, 6, 6, live=live)

    assert isinstance(buckets, PositionBuckets)
    [current] = buckets.total_current.snapshots
    [fees] = buckets.total_unclaimed_fees.snapshots
    assert current.token_x_balance == Decimal(3)
    assert current.token_y_balance == Decimal("0.5")
    assert current.exchange_rate == Decimal(1)
    assert current.block_time == fees.block_time > 10
    assert buckets.total_unclaimed_fees.total_value_in_token_y == Decimal(1)
