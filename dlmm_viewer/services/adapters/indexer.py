"""
Position history from the DLMM indexer REST API.
"""

import logging
from typing import List

from dlmm_viewer.core.errors import PositionDataError
from dlmm_viewer.models.position import PositionEvent
from dlmm_viewer.services.adapters.base import EventSource, RawPositionHistory
from dlmm_viewer.services.adapters.dlmm_accounts import DlmmAccountService
from dlmm_viewer.services.meteora_api import MeteoraApiService
from dlmm_viewer.services.normalizer import normalize_indexer_records

logger = logging.getLogger(__name__)


class IndexerEventSource(EventSource):
    """Deposits, withdrawals and fee claims as recorded by the indexer"""

    def __init__(self, meteora: MeteoraApiService, accounts: DlmmAccountService):
        self.meteora = meteora
        self.accounts = accounts

    @property
    def source_name(self) -> str:
        return "indexer"

    async def fetch_history(self, position: str) -> RawPositionHistory:
        operations = await self.meteora.get_position_operations(position)
        meta = await self.meteora.get_position_meta(position) or {}

        lb_pair = meta.get("pair_address")
        owner = meta.get("owner")
        if not lb_pair:
            for record in operations["deposits"] + operations["withdrawals"] + operations["claim_fees"]:
                if record.get("pair_address"):
                    lb_pair = record["pair_address"]
                    break
        if not lb_pair or not owner:
            # Indexer lag: open positions still carry pair and owner on chain
            account = await self.accounts.get_position_account(position)
            if account is not None:
                lb_pair = lb_pair or account.lb_pair
                owner = owner or account.owner
        if not lb_pair:
            raise PositionDataError(position, "pool address unknown to indexer and chain")

        return RawPositionHistory(
            position=position,
            source=self.source_name,
            lb_pair=lb_pair,
            owner=owner,
            deposits=operations["deposits"],
            withdrawals=operations["withdrawals"],
            claim_fees=operations["claim_fees"],
        )

    def normalize(
        self,
        history: RawPositionHistory,
        token_x_decimals: int,
        token_y_decimals: int,
        fallback_bin_id: int,
    ) -> List[PositionEvent]:
        return normalize_indexer_records(
            history.position,
            history.lb_pair or "",
            history.owner or "",
            history.deposits,
            history.withdrawals,
            history.claim_fees,
            token_x_decimals,
            token_y_decimals,
            fallback_bin_id,
        )
