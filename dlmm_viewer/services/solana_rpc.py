import base64
import logging
from typing import Any, Dict, List, Optional

import httpx
from solders.pubkey import Pubkey

from dlmm_viewer.core.cache import CacheService, cache_key
from dlmm_viewer.core.config import Settings
from dlmm_viewer.core.errors import (
    InvalidAddressError,
    RateLimitError,
    ResponseShapeError,
    ServiceUnavailableError,
)
from dlmm_viewer.core.retry import fetch_with_retry

logger = logging.getLogger(__name__)

# getMultipleAccounts accepts at most 100 keys per request
MAX_MULTIPLE_ACCOUNTS = 100


def validate_address(address: str) -> str:
    """Return the address unchanged if it is a base58 32-byte public key"""
    try:
        Pubkey.from_string(address)
    except (ValueError, TypeError):
        raise InvalidAddressError(address)
    return address


def decode_account_data(account: Dict[str, Any]) -> bytes:
    """Raw bytes of a base64-encoded account value"""
    data = account.get("data")
    if isinstance(data, list) and data:
        return base64.b64decode(data[0])
    if isinstance(data, str):
        return base64.b64decode(data)
    raise ResponseShapeError("Solana RPC", "account data is not base64 encoded")


class SolanaRpcService:
    """
    Solana JSON-RPC client.

    Every call is retried with exponential backoff and raises once the
    attempts are exhausted; account reads are cached for account_ttl.
    """

    def __init__(self, settings: Settings, cache: CacheService, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.cache = cache
        self.client = client or httpx.AsyncClient(
            timeout=30.0,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        self._request_id = 0

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _post(self, payload: Any) -> Any:
        response = await self.client.post(self.settings.rpc_endpoint, json=payload)
        if response.status_code == 429:
            raise RateLimitError("Solana RPC")
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _result(body: Any, method: str) -> Any:
        if not isinstance(body, dict):
            raise ResponseShapeError("Solana RPC", f"{method}: unexpected body {type(body).__name__}")
        error = body.get("error")
        if error:
            if error.get("code") == 429:
                raise RateLimitError("Solana RPC")
            raise ResponseShapeError("Solana RPC", f"{method}: {error.get('message', error)}")
        if "result" not in body:
            raise ResponseShapeError("Solana RPC", f"{method}: missing result")
        return body["result"]

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        async def request():
            payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params or []}
            return self._result(await self._post(payload), method)

        return await fetch_with_retry(
            request,
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.initial_retry_delay,
            deadline=self.settings.retry_deadline,
        )

    async def get_health(self) -> bool:
        """Raise ServiceUnavailableError unless the node reports healthy"""
        try:
            result = await self._call("getHealth")
        except Exception as e:
            logger.error(f"Solana RPC health check failed: {e}")
            raise ServiceUnavailableError("Solana RPC") from e
        if result != "ok":
            logger.error(f"Solana RPC unhealthy: {result!r}")
            raise ServiceUnavailableError("Solana RPC")
        return True

    async def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        """Account value with base64 data, or None if the account does not exist"""
        return await self.cache.get_or_fetch(
            cache_key("account", address),
            lambda: self._fetch_account_info(address),
            ttl=self.settings.account_ttl,
        )

    async def _fetch_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self._call("getAccountInfo", [address, {"encoding": "base64"}])
        return result.get("value") if isinstance(result, dict) else None

    async def get_multiple_accounts(self, addresses: List[str]) -> List[Optional[Dict[str, Any]]]:
        """Account values in request order; missing accounts are None"""
        accounts: List[Optional[Dict[str, Any]]] = []
        for start in range(0, len(addresses), MAX_MULTIPLE_ACCOUNTS):
            chunk = addresses[start:start + MAX_MULTIPLE_ACCOUNTS]
            result = await self._call("getMultipleAccounts", [chunk, {"encoding": "base64"}])
            values = result.get("value") if isinstance(result, dict) else None
            if not isinstance(values, list) or len(values) != len(chunk):
                raise ResponseShapeError("Solana RPC", "getMultipleAccounts: value length mismatch")
            accounts.extend(values)
        return accounts

    async def get_signatures_for_address(
        self,
        address: str,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """One page of signatures, newest first"""
        options: Dict[str, Any] = {"limit": limit or self.settings.max_batch_size}
        if before:
            options["before"] = before
        result = await self._call("getSignaturesForAddress", [address, options])
        if not isinstance(result, list):
            raise ResponseShapeError("Solana RPC", "getSignaturesForAddress: expected a list")
        return result

    async def get_all_signatures(self, address: str) -> List[Dict[str, Any]]:
        """Every signature for address, newest to oldest"""
        signatures: List[Dict[str, Any]] = []
        before = None
        page_size = self.settings.max_batch_size
        while True:
            page = await self.get_signatures_for_address(address, before=before, limit=page_size)
            signatures.extend(page)
            if len(page) < page_size:
                break
            before = page[-1]["signature"]
        logger.info(f"Found {len(signatures)} signatures for {address}")
        return signatures

    async def get_parsed_transactions(self, signatures: List[str]) -> List[Optional[Dict[str, Any]]]:
        """
        Parsed transactions in request order, fetched as JSON-RPC batches of
        max_batch_size. Unknown signatures come back as None.
        """
        transactions: List[Optional[Dict[str, Any]]] = []
        size = self.settings.max_batch_size
        for start in range(0, len(signatures), size):
            transactions.extend(await self._batch_transactions(signatures[start:start + size]))
        return transactions

    async def _batch_transactions(self, signatures: List[str]) -> List[Optional[Dict[str, Any]]]:
        async def request():
            ids = []
            payload = []
            for signature in signatures:
                request_id = self._next_id()
                ids.append(request_id)
                payload.append({
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "method": "getTransaction",
                    "params": [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
                })
            body = await self._post(payload)
            if not isinstance(body, list):
                # A batch-level failure comes back as a single error object
                self._result(body, "getTransaction")
                raise ResponseShapeError("Solana RPC", "getTransaction batch: expected a list")
            by_id = {item.get("id"): item for item in body if isinstance(item, dict)}
            return [self._result(by_id.get(i), "getTransaction") for i in ids]

        return await fetch_with_retry(
            request,
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.initial_retry_delay,
            deadline=self.settings.retry_deadline,
        )

    async def get_program_accounts(
        self,
        program_id: str,
        filters: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Accounts owned by program_id matching filters, as {pubkey, account}"""
        options: Dict[str, Any] = {"encoding": "base64"}
        if filters:
            options["filters"] = filters
        result = await self._call("getProgramAccounts", [program_id, options])
        if not isinstance(result, list):
            raise ResponseShapeError("Solana RPC", "getProgramAccounts: expected a list")
        return result
