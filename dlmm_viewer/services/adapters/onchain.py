"""
Position history from the chain itself.

Walks every transaction that touched the position (oldest first), picks
the inner instructions issued by the DLMM program and hands their data to
an event decoder. The decoder is supplied by the caller.
"""

import logging
from typing import Any, Dict, List, Optional

import base58

from dlmm_viewer.core.errors import PositionDataError
from dlmm_viewer.models.position import OperationKind, PositionEvent
from dlmm_viewer.services.adapters.base import (
    DecodedEvent,
    EventDecoder,
    EventSource,
    RawPositionHistory,
)
from dlmm_viewer.services.normalizer import normalize_decoded_events
from dlmm_viewer.services.solana_rpc import SolanaRpcService

logger = logging.getLogger(__name__)

# Anchor self-CPI event instructions carry an 8-byte tag before the event payload
EVENT_IX_TAG_SIZE = 8


class OnChainEventSource(EventSource):
    def __init__(self, rpc: SolanaRpcService, decoder: EventDecoder, program_id: str):
        self.rpc = rpc
        self.decoder = decoder
        self.program_id = program_id

    @property
    def source_name(self) -> str:
        return "onchain"

    def decode_transaction(self, transaction: Optional[Dict[str, Any]]) -> List[DecodedEvent]:
        """Program events emitted by one parsed transaction; failed transactions yield none"""
        if not transaction:
            return []
        meta = transaction.get("meta") or {}
        if meta.get("err") is not None or not meta.get("innerInstructions"):
            return []

        signatures = (transaction.get("transaction") or {}).get("signatures") or [""]
        block_time = transaction.get("blockTime") or 0

        events = []
        for group in meta["innerInstructions"]:
            for instruction in group.get("instructions", []):
                if instruction.get("programId") != self.program_id or "data" not in instruction:
                    continue
                data = base58.b58decode(instruction["data"])
                decoded = self.decoder.decode(data[EVENT_IX_TAG_SIZE:])
                if not decoded:
                    continue
                events.append(DecodedEvent(
                    name=decoded["name"],
                    data=decoded.get("data") or {},
                    signature=signatures[0],
                    block_time=block_time,
                ))
        return events

    async def fetch_history(self, position: str) -> RawPositionHistory:
        signatures = await self.rpc.get_all_signatures(position)
        # Newest-first from the node; replay oldest-first
        ordered = [s["signature"] for s in reversed(signatures)]

        decoded: List[DecodedEvent] = []
        transactions = await self.rpc.get_parsed_transactions(ordered)
        for transaction in transactions:
            decoded.extend(self.decode_transaction(transaction))
        logger.info(f"Decoded {len(decoded)} program events from {len(ordered)} transactions for {position}")

        lb_pair = owner = None
        for event in decoded:
            if not lb_pair and event.data.get("lbPair"):
                lb_pair = str(event.data["lbPair"])
            if event.name == OperationKind.POSITION_CREATE.value and event.data.get("owner"):
                owner = str(event.data["owner"])
        if not lb_pair:
            raise PositionDataError(position, "no program events reference a pool")

        return RawPositionHistory(
            position=position,
            source=self.source_name,
            lb_pair=lb_pair,
            owner=owner,
            decoded_events=decoded,
        )

    def normalize(
        self,
        history: RawPositionHistory,
        token_x_decimals: int,
        token_y_decimals: int,
        fallback_bin_id: int,
    ) -> List[PositionEvent]:
        return normalize_decoded_events(
            history.position,
            history.decoded_events,
            token_x_decimals,
            token_y_decimals,
            fallback_bin_id,
            lb_pair=history.lb_pair,
            owner=history.owner,
        )
