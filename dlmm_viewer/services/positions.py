import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from dlmm_viewer.core.config import Settings
from dlmm_viewer.models.position import (
    OperationKind,
    PositionLiquidityData,
    block_time_to_datetime,
)
from dlmm_viewer.services.adapters import DlmmAccountService, EventSource
from dlmm_viewer.services.aggregation import BalanceAggregator
from dlmm_viewer.services.backfill import ValuationBackfill
from dlmm_viewer.services.price_oracle import PriceOracleService
from dlmm_viewer.services.solana_rpc import SolanaRpcService, validate_address
from dlmm_viewer.services.token_metadata import TokenMetadataService

logger = logging.getLogger(__name__)


class PositionService:
    """
    Reconstructs positions end to end.

    A batch fails as a whole only when the chain is unreachable up front;
    after that, any failure inside one position drops that position alone.
    """

    def __init__(
        self,
        settings: Settings,
        rpc: SolanaRpcService,
        accounts: DlmmAccountService,
        tokens: TokenMetadataService,
        oracle: PriceOracleService,
        event_source: EventSource,
    ):
        self.settings = settings
        self.rpc = rpc
        self.accounts = accounts
        self.tokens = tokens
        self.event_source = event_source
        self.aggregator = BalanceAggregator(oracle)
        self.backfill = ValuationBackfill(oracle, settings.reference_mint)

    async def get_positions_info(self, addresses: Iterable[str]) -> Dict[str, PositionLiquidityData]:
        """
        Reconstruct every position in addresses, keyed by address.

        Raises InvalidAddressError for malformed input and
        ServiceUnavailableError when the chain cannot be reached.
        """
        unique = list(dict.fromkeys(validate_address(a) for a in addresses))
        await self.rpc.get_health()

        results = await asyncio.gather(*(self._build_isolated(a) for a in unique))
        positions = {a: p for a, p in zip(unique, results) if p is not None}
        if len(positions) < len(unique):
            logger.warning(f"Reconstructed {len(positions)} of {len(unique)} positions")

        await self.backfill.apply(positions.values())
        return positions

    async def discover_positions(self, owner: str) -> List[str]:
        """Position addresses held by a wallet"""
        validate_address(owner)
        await self.rpc.get_health()
        return await self.accounts.discover_positions(owner)

    async def _build_isolated(self, address: str) -> Optional[PositionLiquidityData]:
        try:
            return await self.build_position(address)
        except Exception as e:
            logger.error(f"Skipping position {address}: {e}", exc_info=True)
            return None

    async def build_position(self, address: str) -> PositionLiquidityData:
        history = await self.event_source.fetch_history(address)
        pool = await self.accounts.get_pool_state(history.lb_pair)
        x_decimals, y_decimals = await asyncio.gather(
            self.tokens.get_decimals(pool.token_x_mint),
            self.tokens.get_decimals(pool.token_y_mint),
        )
        events = self.event_source.normalize(history, x_decimals, y_decimals, pool.active_id)

        live = None
        closed = any(e.operation == OperationKind.POSITION_CLOSE for e in events)
        if not closed:
            live = await self.accounts.get_live_position(address)
            closed = live is None

        buckets = await self.aggregator.aggregate(events, pool, x_decimals, y_decimals, live)
        x_symbol, y_symbol = await asyncio.gather(
            self.tokens.get_symbol(pool.token_x_mint),
            self.tokens.get_symbol(pool.token_y_mint),
        )

        created = [e.block_time for e in events if e.operation == OperationKind.POSITION_CREATE]
        times = [e.block_time for e in events]
        now = datetime.now(timezone.utc)
        start_date = block_time_to_datetime(created[0] if created else min(times)) if times else now
        last_updated_at = block_time_to_datetime(max(times)) if times else start_date

        owner = history.owner or (live.owner if live else "")
        logger.info(
            f"Reconstructed {address}: {len(events)} operations, "
            f"{'closed' if closed else 'open'}, pair {x_symbol}-{y_symbol}"
        )
        return PositionLiquidityData(
            position=address,
            owner=owner,
            lb_pair=pool.address,
            operations=events,
            token_x_symbol=x_symbol,
            token_x_mint=pool.token_x_mint,
            token_y_symbol=y_symbol,
            token_y_mint=pool.token_y_mint,
            start_date=start_date,
            last_updated_at=last_updated_at,
            buckets=buckets,
            closed=closed,
        )
