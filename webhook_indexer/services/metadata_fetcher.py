"""
Token display metadata fetcher with a process-wide cache.

Looks up name, symbol and decimals through the DAS ``getAsset`` JSON-RPC
method and keeps results for a configurable freshness window (24h).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import aiohttp
import structlog

from webhook_indexer.core.config import settings
from webhook_indexer.core.exceptions import MetadataFetchError
from webhook_indexer.indexer.core.matchers import as_dict


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TokenMetadata:
    """Display metadata for one token mint."""
    address: str
    name: str = ""
    symbol: str = ""
    decimals: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
        }


def parse_asset_response(address: str, data: Any) -> TokenMetadata:
    """
    Extract metadata from a getAsset JSON-RPC response.

    Raises:
        MetadataFetchError: On an RPC error or an unexpected body
    """
    if not isinstance(data, dict):
        raise MetadataFetchError(address, "unexpected response body")

    error = data.get("error")
    if error:
        if isinstance(error, dict):
            reason = f"RPC error: {error.get('message', '')} (code {error.get('code')})"
        else:
            reason = f"RPC error: {error}"
        raise MetadataFetchError(address, reason)

    result = as_dict(data.get("result") or {})
    content = as_dict(result.get("content") or {}) if result is not None else None
    metadata = as_dict(content.get("metadata") or {}) if content is not None else None
    token_info = as_dict(result.get("token_info") or {}) if result is not None else None
    if metadata is None or token_info is None:
        raise MetadataFetchError(address, "unexpected response body")

    name = metadata.get("name")
    symbol = metadata.get("symbol")
    decimals = token_info.get("decimals")
    return TokenMetadata(
        address=address,
        name=name if isinstance(name, str) else "",
        symbol=symbol if isinstance(symbol, str) else "",
        decimals=int(decimals) if isinstance(decimals, (int, float)) and not isinstance(decimals, bool) else 0,
    )


class TokenMetadataFetcher:
    """
    Cached token metadata lookups.

    The cache is keyed by lower-cased address. ``fetch_many`` fans out one
    request per uncached address, bounded by a semaphore, and omits the
    addresses whose lookup failed.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        rpc_url: Optional[str] = None,
        cache_ttl: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.api_key = api_key if api_key is not None else settings.helius_api_key
        self.rpc_url = (rpc_url or settings.helius_rpc_url).rstrip("/")
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.metadata_cache_ttl
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.metadata_request_timeout)
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.metadata_max_concurrency)
        self._clock = clock
        self._cache: Dict[str, Tuple[TokenMetadata, float]] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = logger.bind(service="metadata_fetcher")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def cached(self, address: str) -> Optional[TokenMetadata]:
        """Fresh cache entry for an address, if any."""
        entry = self._cache.get(address.lower())
        if entry is None:
            return None
        metadata, fetched_at = entry
        if self._clock() - fetched_at > self.cache_ttl:
            return None
        return metadata

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def fetch(self, address: str) -> TokenMetadata:
        """
        Metadata for one token, from cache when fresh.

        Raises:
            MetadataFetchError: If the lookup fails
        """
        metadata = self.cached(address)
        if metadata is not None:
            return metadata

        self.logger.info("Fetching token metadata", token=address)
        data = await self._request_asset(address)
        metadata = parse_asset_response(address, data)
        self._cache[address.lower()] = (metadata, self._clock())

        self.logger.info(
            "Token metadata fetched",
            token=address,
            name=metadata.name,
            symbol=metadata.symbol,
            decimals=metadata.decimals,
        )
        return metadata

    async def fetch_many(self, addresses: Iterable[str]) -> Dict[str, TokenMetadata]:
        """
        Metadata for several tokens keyed by the address as given.

        Failed lookups are logged and left out of the result.
        """
        results: Dict[str, TokenMetadata] = {}
        pending = []
        for address in dict.fromkeys(a for a in addresses if a):
            metadata = self.cached(address)
            if metadata is not None:
                results[address] = metadata
            else:
                pending.append(address)

        if not pending:
            return results

        async def bounded(address: str) -> TokenMetadata:
            async with self._semaphore:
                return await self.fetch(address)

        outcomes = await asyncio.gather(*(bounded(a) for a in pending), return_exceptions=True)
        for address, outcome in zip(pending, outcomes):
            if isinstance(outcome, MetadataFetchError):
                self.logger.warning("Token metadata unavailable", token=address, error=outcome.message)
            elif isinstance(outcome, Exception):
                self.logger.error("Token metadata lookup failed", token=address, error=str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[address] = outcome
        return results

    async def _request_asset(self, address: str) -> Any:
        """POST a getAsset request and return the decoded JSON body."""
        if not self.api_key:
            raise MetadataFetchError(address, "no API key configured")

        payload = {
            "jsonrpc": "2.0",
            "id": "metadata-request",
            "method": "getAsset",
            "params": {"id": address},
        }
        session = await self._get_session()
        try:
            async with session.post(
                f"{self.rpc_url}/",
                params={"api-key": self.api_key},
                json=payload,
            ) as response:
                if response.status != 200:
                    raise MetadataFetchError(address, f"status {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise MetadataFetchError(address, str(e))

        self.logger.debug("Raw getAsset response", token=address, response=data)
        return data


# Global fetcher instance
_fetcher: Optional[TokenMetadataFetcher] = None


def get_metadata_fetcher() -> TokenMetadataFetcher:
    """Get or create the global metadata fetcher."""
    global _fetcher
    if _fetcher is None:
        _fetcher = TokenMetadataFetcher()
    return _fetcher


async def close_metadata_fetcher() -> None:
    """Close the global metadata fetcher."""
    global _fetcher
    if _fetcher:
        await _fetcher.close()
        _fetcher = None
