import json

import httpx
import pytest

from conftest import POOL, X_MINT
from dlmm_viewer.core.errors import InvalidAddressError, RateLimitError, ServiceUnavailableError
from dlmm_viewer.services.solana_rpc import SolanaRpcService, decode_account_data, validate_address


def make_rpc(settings, cache, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SolanaRpcService(settings, cache, client=client)


def reply(body, result):
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def test_validate_address():
    assert validate_address(POOL) == POOL
    for bad in ("", "0xdeadbeef", "short", POOL + "1"):
        with pytest.raises(InvalidAddressError):
            validate_address(bad)


def test_decode_account_data():
    assert decode_account_data({"data": ["AQID", "base64"]}) == b"\x01\x02\x03"
    assert decode_account_data({"data": "AQID"}) == b"\x01\x02\x03"


@pytest.mark.asyncio
async def test_health_ok(settings, cache_service):
    rpc = make_rpc(settings, cache_service, lambda request: reply(json.loads(request.content), "ok"))
    assert await rpc.get_health() is True


@pytest.mark.asyncio
async def test_health_failure_is_service_unavailable(settings, cache_service):
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    rpc = make_rpc(settings, cache_service, handler)
    with pytest.raises(ServiceUnavailableError):
        await rpc.get_health()
    assert calls == settings.max_retries


@pytest.mark.asyncio
async def test_rpc_error_429_is_rate_limit(settings, cache_service):
    def handler(request):
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": 429, "message": "slow down"}})

    rpc = make_rpc(settings, cache_service, handler)
    with pytest.raises(RateLimitError):
        await rpc.get_signatures_for_address(POOL)


@pytest.mark.asyncio
async def test_account_info_cached(settings, cache_service):
    calls = []

    def handler(request):
        body = json.loads(request.content)
        calls.append(body["params"])
        return reply(body, {"context": {"slot": 1}, "value": {"data": ["AQID", "base64"], "owner": "x"}})

    rpc = make_rpc(settings, cache_service, handler)
    first = await rpc.get_account_info(X_MINT)
    second = await rpc.get_account_info(X_MINT)

    assert first == second == {"data": ["AQID", "base64"], "owner": "x"}
    assert calls == [[X_MINT, {"encoding": "base64"}]]


@pytest.mark.asyncio
async def test_missing_account_is_none(settings, cache_service):
    rpc = make_rpc(settings, cache_service, lambda request: reply(json.loads(request.content), {"value": None}))
    assert await rpc.get_account_info(X_MINT) is None


@pytest.mark.asyncio
async def test_signature_pagination(settings, cache_service):
    # max_batch_size=2: full pages keep paging, a short page ends it
    pages = {None: ["s5", "s4"], "s4": ["s3", "s2"], "s2": ["s1"]}
    seen = []

    def handler(request):
        body = json.loads(request.content)
        options = body["params"][1]
        seen.append(options)
        return reply(body, [{"signature": s, "slot": 1} for s in pages[options.get("before")]])

    rpc = make_rpc(settings, cache_service, handler)
    signatures = await rpc.get_all_signatures(POOL)

    assert [s["signature"] for s in signatures] == ["s5", "s4", "s3", "s2", "s1"]
    assert seen == [{"limit": 2}, {"limit": 2, "before": "s4"}, {"limit": 2, "before": "s2"}]


@pytest.mark.asyncio
async def test_parsed_transactions_batched_and_matched_by_id(settings, cache_service):
    batches = []

    def handler(request):
        body = json.loads(request.content)
        batches.append([item["params"][0] for item in body])
        # Out of order responses; unknown signatures come back null
        return httpx.Response(200, json=[
            {"jsonrpc": "2.0", "id": item["id"], "result": None if item["params"][0] == "missing" else {"slot": item["params"][0]}}
            for item in reversed(body)
        ])

    rpc = make_rpc(settings, cache_service, handler)
    transactions = await rpc.get_parsed_transactions(["a", "b", "missing"])

    assert batches == [["a", "b"], ["missing"]]
    assert transactions == [{"slot": "a"}, {"slot": "b"}, None]


@pytest.mark.asyncio
async def test_multiple_accounts_keep_order(settings, cache_service):
    def handler(request):
        body = json.loads(request.content)
        keys = body["params"][0]
        return reply(body, {"value": [None if k == "gone" else {"data": [k, "base64"]} for k in keys]})

    rpc = make_rpc(settings, cache_service, handler)
    accounts = await rpc.get_multiple_accounts(["AQID", "gone"])
    assert accounts == [{"data": ["AQID", "base64"]}, None]


@pytest.mark.asyncio
async def test_program_accounts_passes_filters(settings, cache_service):
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append(body)
        return reply(body, [{"pubkey": "abc", "account": {}}])

    rpc = make_rpc(settings, cache_service, handler)
    filters = [{"dataSize": 8120}]
    assert await rpc.get_program_accounts("prog", filters) == [{"pubkey": "abc", "account": {}}]
    assert seen[0]["method"] == "getProgramAccounts"
    assert seen[0]["params"] == ["prog", {"encoding": "base64", "filters": filters}]
