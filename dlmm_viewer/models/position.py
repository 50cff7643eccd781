"""
Canonical position model.

Every external source is mapped into PositionEvent at the boundary; the
aggregation engine only ever sees these types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from dlmm_viewer.core.decimal_math import ZERO, safe_div, update_weighted_average
from dlmm_viewer.core.errors import UnsupportedCurrencyError


class OperationKind(str, Enum):
    ADD_LIQUIDITY = "AddLiquidity"
    REMOVE_LIQUIDITY = "RemoveLiquidity"
    CLAIM_FEE = "ClaimFee"
    POSITION_CREATE = "PositionCreate"
    POSITION_CLOSE = "PositionClose"

    @classmethod
    def parse(cls, name: Any) -> Optional["OperationKind"]:
        """Map a source tag to the closed set; None for anything else"""
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class PositionEvent:
    """One operation on a position, amounts in token units (not raw)"""
    operation: OperationKind
    signature: str
    block_time: int                  # unix seconds
    lb_pair: str
    position: str
    owner: str
    token_x_change: Decimal = ZERO   # negative for outflow (removals)
    token_y_change: Decimal = ZERO
    active_bin_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "signature": self.signature,
            "block_time": self.block_time,
            "lb_pair": self.lb_pair,
            "position": self.position,
            "owner": self.owner,
            "token_x_change": str(self.token_x_change),
            "token_y_change": str(self.token_y_change),
            "active_bin_id": self.active_bin_id,
        }


@dataclass(frozen=True)
class BalanceSnapshot:
    """Token amounts at one moment, priced at that moment's X-in-Y rate"""
    token_x_balance: Decimal
    token_y_balance: Decimal
    exchange_rate: Decimal           # token X priced in token Y
    block_time: int

    @property
    def total_value_in_token_y(self) -> Decimal:
        return self.exchange_rate * self.token_x_balance + self.token_y_balance

    @property
    def total_value_in_token_x(self) -> Decimal:
        # A zero rate leaves the Y side unpriceable; count X alone
        if self.exchange_rate == 0:
            return self.token_x_balance
        return self.token_x_balance + self.token_y_balance / self.exchange_rate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_x_balance": str(self.token_x_balance),
            "token_y_balance": str(self.token_y_balance),
            "exchange_rate": str(self.exchange_rate),
            "total_value_in_token_y": str(self.total_value_in_token_y),
            "total_value_in_token_x": str(self.total_value_in_token_x),
            "block_time": self.block_time,
        }


class PositionBalance:
    """
    Append-only list of snapshots for one accounting bucket of a position.

    Totals are recomputed on every read. Reference prices (token Y priced
    in the reference mint) are attached afterwards by block time and are
    the only state that changes after a snapshot has been added.
    """

    def __init__(self, token_x_mint: str, token_y_mint: str, snapshots: Iterable[BalanceSnapshot] = ()):
        self.token_x_mint = token_x_mint
        self.token_y_mint = token_y_mint
        self._snapshots: List[BalanceSnapshot] = list(snapshots)
        self._reference_prices: Dict[int, Decimal] = {}
        self.reference_mint: Optional[str] = None

    def add(self, snapshot: BalanceSnapshot) -> None:
        self._snapshots.append(snapshot)

    @property
    def snapshots(self) -> Tuple[BalanceSnapshot, ...]:
        return tuple(self._snapshots)

    def __iter__(self) -> Iterator[BalanceSnapshot]:
        return iter(tuple(self._snapshots))

    def __len__(self) -> int:
        return len(self._snapshots)

    def is_empty(self) -> bool:
        return not self._snapshots

    def block_times(self) -> List[int]:
        return [s.block_time for s in self._snapshots]

    @property
    def total_token_x_balance(self) -> Decimal:
        return sum((s.token_x_balance for s in self._snapshots), ZERO)

    @property
    def total_token_y_balance(self) -> Decimal:
        return sum((s.token_y_balance for s in self._snapshots), ZERO)

    @property
    def total_value_in_token_y(self) -> Decimal:
        return sum((s.total_value_in_token_y for s in self._snapshots), ZERO)

    @property
    def total_value_in_token_x(self) -> Decimal:
        return sum((s.total_value_in_token_x for s in self._snapshots), ZERO)

    def set_reference_mint(self, mint: str) -> None:
        """Mint that attached reference prices are quoted in"""
        self.reference_mint = mint

    def set_reference_price(self, block_time: int, price: Decimal) -> int:
        """Attach token-Y-in-reference price to snapshots at block_time; returns matches"""
        matches = sum(1 for s in self._snapshots if s.block_time == block_time)
        if matches:
            self._reference_prices[block_time] = price
        return matches

    def reference_price(self, block_time: int) -> Optional[Decimal]:
        return self._reference_prices.get(block_time)

    def value_in(self, currency: str) -> Decimal:
        """
        Total value in the given mint. Token X and token Y use the snapshot
        totals; the reference mint uses the attached reference prices, and
        snapshots without one contribute nothing. Any other mint raises
        UnsupportedCurrencyError.
        """
        if currency == self.token_y_mint:
            return self.total_value_in_token_y
        if currency == self.token_x_mint:
            return self.total_value_in_token_x
        if currency != self.reference_mint:
            raise UnsupportedCurrencyError(
                currency, f"not a token of pair {self.token_x_mint}-{self.token_y_mint} nor its reference mint"
            )
        total = ZERO
        for s in self._snapshots:
            price = self._reference_prices.get(s.block_time)
            if price is not None:
                total += s.total_value_in_token_y * price
        return total

    @property
    def weighted_average_rate(self) -> Decimal:
        """Exchange rate weighted by each snapshot's value in token Y"""
        average, total_value = ZERO, ZERO
        for s in self._snapshots:
            average, total_value = update_weighted_average(
                average, total_value, s.exchange_rate, s.total_value_in_token_y
            )
        if total_value == 0:
            return ZERO
        return average

    def to_dict(self, currency: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "token_x_mint": self.token_x_mint,
            "token_y_mint": self.token_y_mint,
            "total_token_x_balance": str(self.total_token_x_balance),
            "total_token_y_balance": str(self.total_token_y_balance),
            "total_value_in_token_y": str(self.total_value_in_token_y),
            "total_value_in_token_x": str(self.total_value_in_token_x),
            "weighted_average_rate": str(self.weighted_average_rate),
            "snapshots": [
                {**s.to_dict(), "reference_price": _optional_str(self._reference_prices.get(s.block_time))}
                for s in self._snapshots
            ],
        }
        if currency is not None:
            data["value"] = str(self.value_in(currency))
        return data


@dataclass
class PositionBuckets:
    total_deposits: PositionBalance
    total_withdrawals: PositionBalance
    total_unclaimed_fees: PositionBalance
    total_claimed_fees: PositionBalance
    total_current: PositionBalance

    def all(self) -> Tuple[PositionBalance, ...]:
        return (
            self.total_deposits,
            self.total_withdrawals,
            self.total_unclaimed_fees,
            self.total_claimed_fees,
            self.total_current,
        )


@dataclass
class PositionLiquidityData:
    """Reconstructed history and valuation of one position; rebuilt, never patched"""
    position: str
    owner: str
    lb_pair: str
    operations: List[PositionEvent]
    token_x_symbol: str
    token_x_mint: str
    token_y_symbol: str
    token_y_mint: str
    start_date: datetime
    last_updated_at: datetime
    buckets: PositionBuckets
    closed: bool = False

    @property
    def total_deposits(self) -> PositionBalance:
        return self.buckets.total_deposits

    @property
    def total_withdrawals(self) -> PositionBalance:
        return self.buckets.total_withdrawals

    @property
    def total_unclaimed_fees(self) -> PositionBalance:
        return self.buckets.total_unclaimed_fees

    @property
    def total_claimed_fees(self) -> PositionBalance:
        return self.buckets.total_claimed_fees

    @property
    def total_current(self) -> PositionBalance:
        return self.buckets.total_current

    @property
    def pair_key(self) -> str:
        return f"{self.token_x_symbol}-{self.token_y_symbol}"

    def block_times(self) -> List[int]:
        times = {op.block_time for op in self.operations if op.block_time}
        for balance in self.buckets.all():
            times.update(balance.block_times())
        return sorted(times)

    def to_dict(self, currency: Optional[str] = None) -> Dict[str, Any]:
        return {
            "position": self.position,
            "owner": self.owner,
            "lb_pair": self.lb_pair,
            "token_x_symbol": self.token_x_symbol,
            "token_x_mint": self.token_x_mint,
            "token_y_symbol": self.token_y_symbol,
            "token_y_mint": self.token_y_mint,
            "start_date": self.start_date.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "closed": self.closed,
            "operations": [op.to_dict() for op in self.operations],
            "total_deposits": self.total_deposits.to_dict(currency),
            "total_withdrawals": self.total_withdrawals.to_dict(currency),
            "total_unclaimed_fees": self.total_unclaimed_fees.to_dict(currency),
            "total_claimed_fees": self.total_claimed_fees.to_dict(currency),
            "total_current": self.total_current.to_dict(currency),
        }


@dataclass(frozen=True)
class PortfolioMetrics:
    total_invested: Decimal = ZERO
    current_value: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    start_date: Optional[datetime] = None

    @property
    def net_profit(self) -> Decimal:
        return self.current_value + self.total_withdrawn - self.total_invested

    @property
    def roi(self) -> Decimal:
        """Return on investment in percent; 0 when nothing was invested"""
        return safe_div(self.net_profit, self.total_invested) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_invested": str(self.total_invested),
            "current_value": str(self.current_value),
            "total_withdrawn": str(self.total_withdrawn),
            "net_profit": str(self.net_profit),
            "roi": str(self.roi),
            "start_date": self.start_date.isoformat() if self.start_date else None,
        }


def block_time_to_datetime(block_time: Optional[int]) -> datetime:
    return datetime.fromtimestamp(block_time or 0, tz=timezone.utc)


def _optional_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)
