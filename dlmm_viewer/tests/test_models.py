from decimal import Decimal

import pytest

from conftest import REF_MINT, X_MINT, Y_MINT, make_balance, make_event, make_position
from dlmm_viewer.core.errors import UnsupportedCurrencyError
from dlmm_viewer.models.position import BalanceSnapshot, OperationKind


def test_weighted_average_rate_by_value():
    balance = make_balance(("5", "0", "2", 1), ("2.5", "0", "4", 2))
    assert balance.total_value_in_token_y == Decimal(20)
    assert balance.weighted_average_rate == Decimal(3)


def test_weighted_average_rate_empty_bucket():
    assert make_balance().weighted_average_rate == 0


def test_weighted_average_rate_without_value():
    assert make_balance(("0", "0", "2", 1), ("0", "0", "5", 2)).weighted_average_rate == 0


def test_value_in_token_x_with_zero_rate():
    snapshot = BalanceSnapshot(Decimal(3), Decimal(5), Decimal(0), 1)
    assert snapshot.total_value_in_token_x == Decimal(3)
    assert snapshot.total_value_in_token_y == Decimal(5)


def test_value_in_token_x_divides_y_side():
    snapshot = BalanceSnapshot(Decimal(1), Decimal(8), Decimal(4), 1)
    assert snapshot.total_value_in_token_x == Decimal(3)


def test_value_in_unrelated_mint_raises():
    balance = make_balance(("1", "1", "1", 1))
    balance.set_reference_mint(REF_MINT)
    assert balance.value_in(X_MINT) == Decimal(2)
    assert balance.value_in(Y_MINT) == Decimal(2)
    assert balance.value_in(REF_MINT) == 0
    with pytest.raises(UnsupportedCurrencyError) as excinfo:
        balance.value_in(REF_MINT + "z")
    assert excinfo.value.code == "UNSUPPORTED_CURRENCY"


def test_reference_price_only_attaches_to_known_times():
    balance = make_balance(("0", "2", "1", 10))
    balance.set_reference_mint(REF_MINT)
    assert balance.set_reference_price(11, Decimal(5)) == 0
    assert balance.set_reference_price(10, Decimal(5)) == 1
    assert balance.value_in(REF_MINT) == Decimal(10)


def test_position_block_times_include_operations():
    position = make_position(deposits=[("0", "1", "1", 200)], current=[("0", "1", "1", 300)])
    position.operations = [
        make_event(OperationKind.POSITION_CREATE, 100),
        make_event(OperationKind.ADD_LIQUIDITY, 200, y="1"),
    ]
    assert position.block_times() == [100, 200, 300]
