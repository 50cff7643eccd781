"""
Maps source-specific operation records onto PositionEvent.

Two boundary shapes are accepted: decoder output (name/data events) and
indexer REST records (deposit/withdraw/claim-fee lists). Neither shape
leaves this module. Output is sorted ascending by block time; the sort is
stable, so events sharing a block time keep their input order.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from dlmm_viewer.core.decimal_math import scale_amount
from dlmm_viewer.models.position import OperationKind, PositionEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodedEvent:
    """Decoder output in name/data shape, tagged with its transaction"""
    name: str
    data: Mapping[str, Any]
    signature: str = ""
    block_time: int = 0


def _outflow(amount: Decimal) -> Decimal:
    """Removals are outflows; sources report them either signed or as magnitudes"""
    return -abs(amount) if amount else amount


def _text(value: Any) -> str:
    # Decoders may hand back Pubkey objects rather than strings
    return "" if value is None else str(value)


def _bin_id(value: Any, fallback_bin_id: Optional[int]) -> Optional[int]:
    if value is None or value == "":
        return fallback_bin_id
    return int(value)


def _sorted(events: List[PositionEvent]) -> List[PositionEvent]:
    return sorted(events, key=lambda e: e.block_time)


def normalize_decoded_events(
    position: str,
    decoded: Iterable[DecodedEvent],
    token_x_decimals: int,
    token_y_decimals: int,
    fallback_bin_id: Optional[int],
    lb_pair: Optional[str] = None,
    owner: Optional[str] = None,
) -> List[PositionEvent]:
    """
    Canonical events from decoder output.

    AddLiquidity/RemoveLiquidity carry raw `amounts` [x, y] and
    `activeBinId`; ClaimFee carries raw `feeX`/`feeY`. Unknown event names
    are dropped.
    """
    events = []
    for event in decoded:
        kind = OperationKind.parse(event.name)
        if kind is None:
            logger.warning(f"Dropping unknown event {event.name!r} in {event.signature}")
            continue

        data: Mapping[str, Any] = event.data or {}
        x_raw: Any = 0
        y_raw: Any = 0
        bin_id = fallback_bin_id
        if kind in (OperationKind.ADD_LIQUIDITY, OperationKind.REMOVE_LIQUIDITY):
            amounts: Sequence[Any] = data.get("amounts") or (0, 0)
            x_raw = amounts[0] if len(amounts) > 0 else 0
            y_raw = amounts[1] if len(amounts) > 1 else 0
            bin_id = _bin_id(data.get("activeBinId"), fallback_bin_id)
        elif kind == OperationKind.CLAIM_FEE:
            x_raw = data.get("feeX")
            y_raw = data.get("feeY")

        x_change = scale_amount(x_raw, token_x_decimals)
        y_change = scale_amount(y_raw, token_y_decimals)
        if kind == OperationKind.REMOVE_LIQUIDITY:
            x_change, y_change = _outflow(x_change), _outflow(y_change)

        events.append(PositionEvent(
            operation=kind,
            signature=event.signature,
            block_time=int(event.block_time or 0),
            lb_pair=_text(data.get("lbPair")) or lb_pair or "",
            position=_text(data.get("position")) or position,
            owner=_text(data.get("owner")) or owner or "",
            token_x_change=x_change,
            token_y_change=y_change,
            active_bin_id=bin_id,
        ))
    return _sorted(events)


def _indexer_event(
    kind: OperationKind,
    record: Mapping[str, Any],
    position: str,
    lb_pair: str,
    owner: str,
    x_change: Decimal,
    y_change: Decimal,
    fallback_bin_id: Optional[int],
) -> PositionEvent:
    return PositionEvent(
        operation=kind,
        signature=_text(record.get("tx_id")),
        block_time=int(record.get("onchain_timestamp") or 0),
        lb_pair=_text(record.get("pair_address")) or lb_pair,
        position=_text(record.get("position_address")) or position,
        owner=owner,
        token_x_change=x_change,
        token_y_change=y_change,
        active_bin_id=_bin_id(record.get("active_bin_id"), fallback_bin_id),
    )


def normalize_indexer_records(
    position: str,
    lb_pair: str,
    owner: str,
    deposits: Iterable[Mapping[str, Any]],
    withdrawals: Iterable[Mapping[str, Any]],
    claim_fees: Iterable[Mapping[str, Any]],
    token_x_decimals: int,
    token_y_decimals: int,
    fallback_bin_id: Optional[int],
) -> List[PositionEvent]:
    """Canonical events from indexer deposit, withdraw and claim-fee records"""
    events = []
    for record in deposits:
        events.append(_indexer_event(
            OperationKind.ADD_LIQUIDITY, record, position, lb_pair, owner,
            scale_amount(record.get("token_x_amount"), token_x_decimals),
            scale_amount(record.get("token_y_amount"), token_y_decimals),
            fallback_bin_id,
        ))
    for record in withdrawals:
        events.append(_indexer_event(
            OperationKind.REMOVE_LIQUIDITY, record, position, lb_pair, owner,
            _outflow(scale_amount(record.get("token_x_amount"), token_x_decimals)),
            _outflow(scale_amount(record.get("token_y_amount"), token_y_decimals)),
            fallback_bin_id,
        ))
    for record in claim_fees:
        events.append(_indexer_event(
            OperationKind.CLAIM_FEE, record, position, lb_pair, owner,
            scale_amount(record.get("fee_x_amount"), token_x_decimals),
            scale_amount(record.get("fee_y_amount"), token_y_decimals),
            fallback_bin_id,
        ))
    return _sorted(events)
