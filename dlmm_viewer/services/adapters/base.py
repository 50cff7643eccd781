"""
Base types for position event sources.
All sources (indexer REST, on-chain transaction log) implement EventSource
and hand the pipeline canonical PositionEvents.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from dlmm_viewer.models.position import PositionEvent
from dlmm_viewer.services.normalizer import DecodedEvent


@dataclass(frozen=True)
class PoolState:
    """LbPair account fields the engine needs"""
    address: str
    active_id: int
    bin_step: int                    # basis points
    token_x_mint: str
    token_y_mint: str


@dataclass(frozen=True)
class LivePositionState:
    """Current position totals, raw (unscaled) token amounts"""
    position: str
    lb_pair: str
    owner: str
    total_x_amount: int
    total_y_amount: int
    fee_x: int
    fee_y: int


@dataclass
class RawPositionHistory:
    """Source-specific history of one position, before normalization"""
    position: str
    source: str
    lb_pair: Optional[str] = None
    owner: Optional[str] = None
    decoded_events: List[DecodedEvent] = field(default_factory=list)
    deposits: List[Dict[str, Any]] = field(default_factory=list)
    withdrawals: List[Dict[str, Any]] = field(default_factory=list)
    claim_fees: List[Dict[str, Any]] = field(default_factory=list)


class EventDecoder(Protocol):
    """
    Decodes the data of one inner instruction of the DLMM program.

    Returns a {"name": ..., "data": {...}} mapping, or None for data it
    does not recognize. Must not raise for unrecognized data.
    """

    def decode(self, instruction_data: bytes) -> Optional[Mapping[str, Any]]:
        ...


class EventSource(ABC):
    """Abstract base class for position history sources"""

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Return source identifier (e.g., 'indexer')"""
        pass

    @abstractmethod
    async def fetch_history(self, position: str) -> RawPositionHistory:
        """Fetch everything known about the position's past operations"""
        pass

    @abstractmethod
    def normalize(
        self,
        history: RawPositionHistory,
        token_x_decimals: int,
        token_y_decimals: int,
        fallback_bin_id: int,
    ) -> List[PositionEvent]:
        """Canonical events for the history, ascending by block time"""
        pass
