"""
Portfolio metrics over reconstructed positions. Pure functions.
"""
from typing import Any, Dict, Iterable, List

from dlmm_viewer.core.decimal_math import ZERO
from dlmm_viewer.models.position import PortfolioMetrics, PositionLiquidityData


def roll_up(positions: Iterable[PositionLiquidityData], currency: str) -> PortfolioMetrics:
    """
    Invested, current and withdrawn value in `currency`.

    Current value includes unclaimed fees; withdrawn value includes
    claimed fees. Start date is the earliest position start, None if empty.
    """
    invested = current = withdrawn = ZERO
    start_date = None
    for position in positions:
        invested += position.total_deposits.value_in(currency)
        current += position.total_current.value_in(currency) + position.total_unclaimed_fees.value_in(currency)
        withdrawn += position.total_withdrawals.value_in(currency) + position.total_claimed_fees.value_in(currency)
        if start_date is None or position.start_date < start_date:
            start_date = position.start_date
    return PortfolioMetrics(
        total_invested=invested,
        current_value=current,
        total_withdrawn=withdrawn,
        start_date=start_date,
    )


def group_by_pair(positions: Iterable[PositionLiquidityData]) -> Dict[str, List[PositionLiquidityData]]:
    """Positions keyed by "X-Y" symbol pair, most recently updated pair first"""
    groups: Dict[str, List[PositionLiquidityData]] = {}
    for position in positions:
        groups.setdefault(position.pair_key, []).append(position)
    ordered = sorted(
        groups.items(),
        key=lambda item: max(p.last_updated_at for p in item[1]),
        reverse=True,
    )
    return dict(ordered)


def summarize(positions: Iterable[PositionLiquidityData], currency: str) -> Dict[str, Any]:
    positions = list(positions)
    return {
        "currency": currency,
        "overall": roll_up(positions, currency).to_dict(),
        "pairs": {
            pair: roll_up(group, currency).to_dict()
            for pair, group in group_by_pair(positions).items()
        },
    }
