"""
Test token metadata lookups, caching and fan-out.
"""

import asyncio

import pytest

from webhook_indexer.core.exceptions import MetadataFetchError
from webhook_indexer.services.metadata_fetcher import TokenMetadataFetcher, parse_asset_response

from conftest import SOL_MINT, USDC_MINT, USDT_MINT


def asset_response(name, symbol, decimals):
    return {
        "jsonrpc": "2.0",
        "id": "metadata-request",
        "result": {
            "content": {"metadata": {"name": name, "symbol": symbol}},
            "token_info": {"decimals": decimals},
        },
    }


RESPONSES = {
    SOL_MINT: asset_response("Wrapped SOL", "SOL", 9),
    USDC_MINT: asset_response("USD Coin", "USDC", 6),
}


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fetcher(clock):
    fetcher = TokenMetadataFetcher(api_key="test-key", cache_ttl=86400, max_concurrency=2, clock=clock)
    fetcher.requests = []

    async def request_asset(address):
        fetcher.requests.append(address)
        await asyncio.sleep(0)
        if address not in RESPONSES:
            return {"jsonrpc": "2.0", "error": {"code": -32000, "message": "Asset not found"}}
        return RESPONSES[address]

    fetcher._request_asset = request_asset
    return fetcher


def test_parse_asset_response():
    metadata = parse_asset_response(USDC_MINT, RESPONSES[USDC_MINT])
    assert (metadata.name, metadata.symbol, metadata.decimals) == ("USD Coin", "USDC", 6)


def test_parse_asset_response_tolerates_missing_fields():
    metadata = parse_asset_response(SOL_MINT, {"result": {}})
    assert (metadata.name, metadata.symbol, metadata.decimals) == ("", "", 0)


@pytest.mark.parametrize("body", [
    {"error": {"code": -32602, "message": "Invalid params"}},
    {"error": "rate limited"},
    ["not", "an", "object"],
    {"result": {"content": {"metadata": "oops"}}},
    {"result": {"token_info": 9}},
    {"result": "none"},
])
def test_parse_asset_response_errors(body):
    with pytest.raises(MetadataFetchError):
        parse_asset_response(SOL_MINT, body)


@pytest.mark.asyncio
async def test_fetch_uses_cache(fetcher):
    first = await fetcher.fetch(SOL_MINT)
    second = await fetcher.fetch(SOL_MINT)

    assert first is second
    assert first.symbol == "SOL"
    assert fetcher.requests == [SOL_MINT]
    assert fetcher.cache_size == 1


@pytest.mark.asyncio
async def test_cache_is_case_insensitive(fetcher):
    await fetcher.fetch(USDC_MINT)

    assert fetcher.cached(USDC_MINT.lower()).symbol == "USDC"


@pytest.mark.asyncio
async def test_stale_entries_are_refetched(fetcher, clock):
    await fetcher.fetch(SOL_MINT)
    clock.now += 86400 + 1

    assert fetcher.cached(SOL_MINT) is None
    await fetcher.fetch(SOL_MINT)
    assert fetcher.requests == [SOL_MINT, SOL_MINT]


@pytest.mark.asyncio
async def test_fetch_raises_on_rpc_error(fetcher):
    with pytest.raises(MetadataFetchError):
        await fetcher.fetch(USDT_MINT)
    assert fetcher.cached(USDT_MINT) is None


@pytest.mark.asyncio
async def test_fetch_many_omits_failures(fetcher):
    await fetcher.fetch(SOL_MINT)

    results = await fetcher.fetch_many([SOL_MINT, USDC_MINT, USDT_MINT, USDC_MINT, ""])

    assert set(results) == {SOL_MINT, USDC_MINT}
    assert results[USDC_MINT].decimals == 6
    assert sorted(fetcher.requests) == sorted([SOL_MINT, USDC_MINT, USDT_MINT])


@pytest.mark.asyncio
async def test_fetch_many_omits_malformed_and_broken_lookups(fetcher):
    lookups = {
        SOL_MINT: RESPONSES[SOL_MINT],
        USDC_MINT: {"jsonrpc": "2.0", "result": {"content": {"metadata": "oops"}}},
    }

    async def request_asset(address):
        if address == USDT_MINT:
            raise RuntimeError("connection reset")
        return lookups[address]

    fetcher._request_asset = request_asset
    results = await fetcher.fetch_many([SOL_MINT, USDC_MINT, USDT_MINT])

    assert list(results) == [SOL_MINT]
    assert results[SOL_MINT].symbol == "SOL"
    assert fetcher.cached(USDC_MINT) is None

@pytest.mark.asyncio
async def test_missing_api_key_fails_without_network():
    fetcher = TokenMetadataFetcher(api_key="")

    with pytest.raises(MetadataFetchError) as exc_info:
        await fetcher.fetch(SOL_MINT)
    assert "no API key" in exc_info.value.message
    await fetcher.close()


@pytest.mark.asyncio
async def test_clear_cache(fetcher):
    await fetcher.fetch(SOL_MINT)
    fetcher.clear_cache()
    assert fetcher.cache_size == 0
