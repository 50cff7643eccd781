"""
Resolution selection and bucket lookup for historical price series.

Prices are sampled from the bucket an event falls into (no interpolation
between neighbouring buckets). value_at is the single place that decides
how a timestamp maps to a series value.
"""
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence, Tuple

MAX_DATA_POINTS = 999

# (minutes, interval) from finest to coarsest
AVAILABLE_INTERVALS = [
    (1, "1m"), (3, "3m"), (5, "5m"), (15, "15m"), (30, "30m"),
    (60, "1H"), (120, "2H"), (240, "4H"), (360, "6H"), (480, "8H"), (720, "12H"),
    (1440, "1D"), (4320, "3D"), (10080, "1W"), (43200, "1M"),
]

_INTERVAL_MINUTES = {name: minutes for minutes, name in AVAILABLE_INTERVALS}


@dataclass(frozen=True)
class PricePoint:
    unix_time: int
    value: Decimal


def determine_optimal_interval(from_time: int, to_time: int) -> str:
    """Finest interval that keeps the series under MAX_DATA_POINTS points"""
    total_minutes = (to_time - from_time) / 60
    target_minutes = math.ceil(total_minutes / MAX_DATA_POINTS)

    for minutes, interval in AVAILABLE_INTERVALS:
        if minutes >= target_minutes:
            return interval

    return "1M"


def interval_seconds(interval: str) -> int:
    """Duration of an interval; a month counts as 30 days"""
    try:
        return _INTERVAL_MINUTES[interval] * 60
    except KeyError:
        raise ValueError(f"Invalid interval: {interval}") from None


def determine_interval_index(from_time: int, interval: str, target_time: int) -> int:
    index = (target_time - from_time) // interval_seconds(interval)
    return max(0, index)


def value_at(series: Sequence[PricePoint], from_time: int, interval: str, target_time: int) -> Optional[Decimal]:
    """Series value for target_time, clamped to the last point; None for an empty series"""
    if not series:
        return None
    index = min(determine_interval_index(from_time, interval, target_time), len(series) - 1)
    return series[index].value


def widen_span(time_from: int, time_to: int, minimum: int = 60) -> Tuple[int, int]:
    """History endpoints reject spans under a minute"""
    if time_to - time_from < minimum:
        time_to = time_from + minimum
    return time_from, time_to
