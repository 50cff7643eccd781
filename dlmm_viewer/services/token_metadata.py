"""
Token decimals and metadata.

Decimals come from the mint account. Metadata comes from the Token-2022
metadata extension when the mint is owned by the Token-2022 program,
otherwise from the Metaplex metadata account derived from the mint.
"""
import logging
import struct
from dataclasses import asdict, dataclass
from typing import Optional, Tuple

import base58
from solders.pubkey import Pubkey

from dlmm_viewer.core.cache import CacheService, cache_key
from dlmm_viewer.core.errors import MetadataDecodeError, ResponseShapeError
from dlmm_viewer.services.solana_rpc import SolanaRpcService, decode_account_data

logger = logging.getLogger(__name__)

TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
METADATA_PROGRAM_ID = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"

MINT_DECIMALS_OFFSET = 44
MINT_BASE_SIZE = 82

# Token-2022: base account padded to 165 bytes, then account type, then TLV entries
EXTENSIONS_ACCOUNT_TYPE_OFFSET = 165
EXTENSIONS_TLV_OFFSET = 166
TOKEN_METADATA_EXTENSION = 19

METAPLEX_METADATA_V1 = 4


@dataclass(frozen=True)
class TokenMetadata:
    mint: str
    name: str
    symbol: str
    uri: str
    update_authority: str = ""


def _read_string(data: bytes, offset: int) -> Tuple[str, int]:
    """Borsh string (u32 length prefix); trailing NULs stripped"""
    (length,) = struct.unpack_from("<I", data, offset)
    offset += 4
    if offset + length > len(data):
        raise ValueError(f"string of length {length} overruns buffer at {offset}")
    raw = data[offset:offset + length]
    return raw.decode("utf-8").replace("\x00", ""), offset + length


def decode_metaplex_metadata(mint: str, data: bytes) -> TokenMetadata:
    if not data or data[0] != METAPLEX_METADATA_V1:
        raise MetadataDecodeError(mint, "invalid metadata version")
    try:
        update_authority = base58.b58encode(data[1:33]).decode("ascii")
        offset = 65
        name, offset = _read_string(data, offset)
        symbol, offset = _read_string(data, offset)
        uri, _ = _read_string(data, offset)
    except (struct.error, ValueError, UnicodeDecodeError) as e:
        raise MetadataDecodeError(mint, str(e))
    return TokenMetadata(mint=mint, name=name, symbol=symbol, uri=uri, update_authority=update_authority)


def decode_token_2022_metadata(mint: str, data: bytes) -> Optional[TokenMetadata]:
    """Metadata from the mint's TLV extensions; None if the extension is absent"""
    if len(data) <= EXTENSIONS_TLV_OFFSET:
        return None
    offset = EXTENSIONS_TLV_OFFSET
    try:
        while offset + 4 <= len(data):
            ext_type, length = struct.unpack_from("<HH", data, offset)
            offset += 4
            if ext_type == 0:
                break
            if ext_type == TOKEN_METADATA_EXTENSION:
                value = data[offset:offset + length]
                update_authority = base58.b58encode(value[0:32]).decode("ascii")
                cursor = 64
                name, cursor = _read_string(value, cursor)
                symbol, cursor = _read_string(value, cursor)
                uri, _ = _read_string(value, cursor)
                return TokenMetadata(mint=mint, name=name, symbol=symbol, uri=uri, update_authority=update_authority)
            offset += length
    except (struct.error, ValueError, UnicodeDecodeError) as e:
        raise MetadataDecodeError(mint, str(e))
    return None


def metadata_address(mint: str) -> str:
    program_id = Pubkey.from_string(METADATA_PROGRAM_ID)
    pda, _ = Pubkey.find_program_address(
        [b"metadata", bytes(program_id), bytes(Pubkey.from_string(mint))],
        program_id,
    )
    return str(pda)


class TokenMetadataService:
    def __init__(self, rpc: SolanaRpcService, cache: CacheService):
        self.rpc = rpc
        self.cache = cache

    async def get_decimals(self, mint: str) -> int:
        """Mint decimals, cached without expiry"""
        return await self.cache.get_or_fetch(
            cache_key("decimals", mint),
            lambda: self._fetch_decimals(mint),
            ttl=None,
        )

    async def _fetch_decimals(self, mint: str) -> int:
        account = await self.rpc.get_account_info(mint)
        if account is None:
            raise ResponseShapeError("Solana RPC", f"mint {mint} not found")
        data = decode_account_data(account)
        if len(data) < MINT_BASE_SIZE:
            raise ResponseShapeError("Solana RPC", f"{mint} is not a mint account")
        return data[MINT_DECIMALS_OFFSET]

    async def get_metadata(self, mint: str) -> Optional[TokenMetadata]:
        """Name, symbol and URI for a mint; None when missing or undecodable"""
        cached = await self.cache.get_or_fetch(
            cache_key("metadata", mint),
            lambda: self._fetch_metadata(mint),
            ttl=None,
        )
        return TokenMetadata(**cached) if cached else None

    async def get_symbol(self, mint: str) -> str:
        metadata = await self.get_metadata(mint)
        if metadata and metadata.symbol:
            return metadata.symbol
        return mint[:6]

    async def _fetch_metadata(self, mint: str) -> Optional[dict]:
        try:
            metadata = None
            account = await self.rpc.get_account_info(mint)
            if account is not None and account.get("owner") == TOKEN_2022_PROGRAM_ID:
                metadata = decode_token_2022_metadata(mint, decode_account_data(account))
            if metadata is None:
                metadata_account = await self.rpc.get_account_info(metadata_address(mint))
                if metadata_account is None:
                    logger.info(f"No metadata found for token: {mint}")
                    return None
                metadata = decode_metaplex_metadata(mint, decode_account_data(metadata_account))
        except MetadataDecodeError as e:
            logger.warning(f"Metadata decode failed for {mint}: {e}")
            return None
        return asdict(metadata)
