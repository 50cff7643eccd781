"""
DLMM program accounts: LbPair, PositionV2 and BinArray.

Layout (little-endian, after the 8-byte account discriminator):
- LbPair: active_id i32 @76, bin_step u16 @80, token_x_mint @88, token_y_mint @120
- PositionV2 (8120 bytes): lb_pair @8, owner @40, liquidity_shares [u128; 70] @72,
  fee_infos [FeeInfo; 70] @4552, lower_bin_id i32 @7912, upper_bin_id i32 @7916
- BinArray: index i64 @8, bins [Bin; 70] @56, 144 bytes per bin
"""
import logging
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import base58
from solders.pubkey import Pubkey

from dlmm_viewer.core.errors import PositionDataError, ResponseShapeError
from dlmm_viewer.services.adapters.base import LivePositionState, PoolState
from dlmm_viewer.services.solana_rpc import SolanaRpcService, decode_account_data

logger = logging.getLogger(__name__)

LB_PAIR_ACTIVE_ID_OFFSET = 76
LB_PAIR_BIN_STEP_OFFSET = 80
LB_PAIR_TOKEN_X_MINT_OFFSET = 88
LB_PAIR_TOKEN_Y_MINT_OFFSET = 120

POSITION_V2_SIZE = 8120
POSITION_LB_PAIR_OFFSET = 8
POSITION_OWNER_OFFSET = 40
POSITION_LIQUIDITY_SHARES_OFFSET = 72
POSITION_FEE_INFOS_OFFSET = 4552
POSITION_LOWER_BIN_ID_OFFSET = 7912
POSITION_UPPER_BIN_ID_OFFSET = 7916
FEE_INFO_SIZE = 48
MAX_BINS_PER_POSITION = 70

MAX_BIN_PER_ARRAY = 70
BIN_ARRAY_BINS_OFFSET = 56
BIN_SIZE = 144
BIN_AMOUNT_X_OFFSET = 0
BIN_AMOUNT_Y_OFFSET = 8
BIN_LIQUIDITY_SUPPLY_OFFSET = 32
BIN_FEE_X_PER_TOKEN_OFFSET = 80
BIN_FEE_Y_PER_TOKEN_OFFSET = 96

SCALE_OFFSET = 64
U128_MASK = (1 << 128) - 1


@dataclass(frozen=True)
class FeeInfo:
    fee_x_per_token_complete: int
    fee_y_per_token_complete: int
    fee_x_pending: int
    fee_y_pending: int


@dataclass(frozen=True)
class PositionAccount:
    address: str
    lb_pair: str
    owner: str
    lower_bin_id: int
    upper_bin_id: int
    liquidity_shares: Tuple[int, ...]
    fee_infos: Tuple[FeeInfo, ...]


@dataclass(frozen=True)
class Bin:
    amount_x: int
    amount_y: int
    liquidity_supply: int
    fee_x_per_token_stored: int
    fee_y_per_token_stored: int


def _pubkey(data: bytes, offset: int) -> str:
    return base58.b58encode(data[offset:offset + 32]).decode("ascii")


def _u128(data: bytes, offset: int) -> int:
    low, high = struct.unpack_from("<QQ", data, offset)
    return low + (high << 64)


def parse_lb_pair(address: str, data: bytes) -> PoolState:
    if len(data) < LB_PAIR_TOKEN_Y_MINT_OFFSET + 32:
        raise ResponseShapeError("Solana RPC", f"LbPair {address} data too small: {len(data)} bytes")
    return PoolState(
        address=address,
        active_id=struct.unpack_from("<i", data, LB_PAIR_ACTIVE_ID_OFFSET)[0],
        bin_step=struct.unpack_from("<H", data, LB_PAIR_BIN_STEP_OFFSET)[0],
        token_x_mint=_pubkey(data, LB_PAIR_TOKEN_X_MINT_OFFSET),
        token_y_mint=_pubkey(data, LB_PAIR_TOKEN_Y_MINT_OFFSET),
    )


def parse_position(address: str, data: bytes) -> PositionAccount:
    if len(data) < POSITION_V2_SIZE:
        raise PositionDataError(address, f"position data too small: {len(data)} bytes")

    lower_bin_id, upper_bin_id = struct.unpack_from("<ii", data, POSITION_LOWER_BIN_ID_OFFSET)
    if upper_bin_id < lower_bin_id:
        raise PositionDataError(address, f"upper bin {upper_bin_id} below lower bin {lower_bin_id}")

    shares = tuple(
        _u128(data, POSITION_LIQUIDITY_SHARES_OFFSET + i * 16)
        for i in range(MAX_BINS_PER_POSITION)
    )
    fee_infos = []
    for i in range(MAX_BINS_PER_POSITION):
        offset = POSITION_FEE_INFOS_OFFSET + i * FEE_INFO_SIZE
        pending_x, pending_y = struct.unpack_from("<QQ", data, offset + 32)
        fee_infos.append(FeeInfo(_u128(data, offset), _u128(data, offset + 16), pending_x, pending_y))

    return PositionAccount(
        address=address,
        lb_pair=_pubkey(data, POSITION_LB_PAIR_OFFSET),
        owner=_pubkey(data, POSITION_OWNER_OFFSET),
        lower_bin_id=lower_bin_id,
        upper_bin_id=upper_bin_id,
        liquidity_shares=shares,
        fee_infos=tuple(fee_infos),
    )


def parse_bins(data: bytes) -> List[Bin]:
    bins = []
    for i in range(MAX_BIN_PER_ARRAY):
        offset = BIN_ARRAY_BINS_OFFSET + i * BIN_SIZE
        if offset + BIN_SIZE > len(data):
            break
        amount_x, amount_y = struct.unpack_from("<QQ", data, offset + BIN_AMOUNT_X_OFFSET)
        bins.append(Bin(
            amount_x=amount_x,
            amount_y=amount_y,
            liquidity_supply=_u128(data, offset + BIN_LIQUIDITY_SUPPLY_OFFSET),
            fee_x_per_token_stored=_u128(data, offset + BIN_FEE_X_PER_TOKEN_OFFSET),
            fee_y_per_token_stored=_u128(data, offset + BIN_FEE_Y_PER_TOKEN_OFFSET),
        ))
    return bins


def bin_array_index(bin_id: int) -> int:
    # Floor division: bin -1 lives in array -1
    return bin_id // MAX_BIN_PER_ARRAY


def bin_array_address(lb_pair: str, index: int, program_id: str) -> str:
    pda, _ = Pubkey.find_program_address(
        [b"bin_array", bytes(Pubkey.from_string(lb_pair)), struct.pack("<q", index)],
        Pubkey.from_string(program_id),
    )
    return str(pda)


def pending_fee(share: int, stored: int, complete: int, pending: int) -> int:
    """Claimable fee for one bin: pending plus what accrued since the last checkpoint"""
    delta = (stored - complete) & U128_MASK
    return pending + (((share >> SCALE_OFFSET) * delta) >> SCALE_OFFSET)


def position_totals(account: PositionAccount, bins: Dict[int, Bin]) -> LivePositionState:
    """Sum token amounts and unclaimed fees over the position's bins"""
    total_x = total_y = fee_x = fee_y = 0
    width = min(account.upper_bin_id - account.lower_bin_id + 1, MAX_BINS_PER_POSITION)
    for i in range(width):
        bin_id = account.lower_bin_id + i
        share = account.liquidity_shares[i]
        fee_info = account.fee_infos[i]
        current = bins.get(bin_id)
        if current is None:
            if share:
                raise PositionDataError(account.address, f"bin {bin_id} missing from bin arrays")
            continue
        if share and current.liquidity_supply:
            total_x += share * current.amount_x // current.liquidity_supply
            total_y += share * current.amount_y // current.liquidity_supply
        fee_x += pending_fee(share, current.fee_x_per_token_stored, fee_info.fee_x_per_token_complete, fee_info.fee_x_pending)
        fee_y += pending_fee(share, current.fee_y_per_token_stored, fee_info.fee_y_per_token_complete, fee_info.fee_y_pending)

    return LivePositionState(
        position=account.address,
        lb_pair=account.lb_pair,
        owner=account.owner,
        total_x_amount=total_x,
        total_y_amount=total_y,
        fee_x=fee_x,
        fee_y=fee_y,
    )


class DlmmAccountService:
    """Reads pool and position state straight from DLMM program accounts"""

    def __init__(self, rpc: SolanaRpcService, program_id: str):
        self.rpc = rpc
        self.program_id = program_id

    async def get_pool_state(self, lb_pair: str) -> PoolState:
        account = await self.rpc.get_account_info(lb_pair)
        if account is None:
            raise ResponseShapeError("Solana RPC", f"LbPair {lb_pair} not found")
        return parse_lb_pair(lb_pair, decode_account_data(account))

    async def get_position_account(self, position: str) -> Optional[PositionAccount]:
        """Decoded position account, None once the position has been closed"""
        account = await self.rpc.get_account_info(position)
        if account is None:
            return None
        return parse_position(position, decode_account_data(account))

    async def _load_bins(self, account: PositionAccount) -> Dict[int, Bin]:
        indexes = list(range(
            bin_array_index(account.lower_bin_id),
            bin_array_index(account.upper_bin_id) + 1,
        ))
        addresses = [bin_array_address(account.lb_pair, i, self.program_id) for i in indexes]
        arrays = await self.rpc.get_multiple_accounts(addresses)

        bins: Dict[int, Bin] = {}
        for index, array in zip(indexes, arrays):
            if array is None:
                continue
            first_bin_id = index * MAX_BIN_PER_ARRAY
            for offset, parsed in enumerate(parse_bins(decode_account_data(array))):
                bins[first_bin_id + offset] = parsed
        return bins

    async def get_live_position(self, position: str) -> Optional[LivePositionState]:
        """Current raw totals and unclaimed fees; None if the account is gone"""
        account = await self.get_position_account(position)
        if account is None:
            logger.info(f"Position account {position} not found, treating as closed")
            return None
        return position_totals(account, await self._load_bins(account))

    async def discover_positions(self, owner: str) -> List[str]:
        """Addresses of all PositionV2 accounts owned by owner"""
        accounts = await self.rpc.get_program_accounts(
            self.program_id,
            filters=[
                {"dataSize": POSITION_V2_SIZE},
                {"memcmp": {"offset": POSITION_OWNER_OFFSET, "bytes": owner}},
            ],
        )
        addresses = [a["pubkey"] for a in accounts if isinstance(a, dict) and a.get("pubkey")]
        logger.info(f"Discovered {len(addresses)} positions for {owner}")
        return addresses
