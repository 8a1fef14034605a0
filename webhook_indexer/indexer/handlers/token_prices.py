"""
Token price indexer.

Normalizes swap, transfer and balance payloads into one row per
(token_address, platform). Numeric columns keep the incumbent value unless
the incoming one is positive; ``slot`` only moves forward and
``transaction_id``/``updated_at`` advance only on a strictly newer slot.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from webhook_indexer.models.indexer import IndexerType
from webhook_indexer.utils.validation import format_table_name

from ..core.base import BaseIndexer, Statement, to_decimal
from ..core.enrichment import MetadataAwareIndexer, MetadataSource
from ..core.matchers import (
    ShapeMatcher,
    ShapeSkip,
    apply_matchers,
    as_dict,
    as_list,
    equals_any,
    first_number,
    first_str,
)
from ..core.params import TokenParams
from ..core.types import UNKNOWN_PLATFORM, ItemResult, WebhookPayload


SWAP_EVENT_TYPES = ("SWAP", "JUPITER_SWAP")

# Platforms pre-populated at initialization when metadata is available
SEED_PLATFORMS = [UNKNOWN_PLATFORM, "JUPITER", "RAYDIUM", "ORCA", "OPENBOOK"]


@dataclass(frozen=True)
class TokenQuote:
    """One token observation extracted from a payload."""
    address: str
    name: str = ""
    symbol: str = ""
    price_usd: Optional[float] = None
    price_sol: Optional[float] = None
    volume_24h: Optional[float] = None
    market_cap: Optional[float] = None
    liquidity: Optional[float] = None
    price_change_24h: Optional[float] = None
    total_supply: Optional[float] = None
    platform: Optional[str] = None
    metadata_only: bool = False

    @property
    def needs_metadata(self) -> bool:
        return not self.name or not self.symbol


def _market_data(token: Dict[str, Any]) -> Dict[str, Optional[float]]:
    market = as_dict(token.get("marketData"))
    return {
        "volume_24h": first_number(market, "volume24h"),
        "market_cap": first_number(market, "marketCap"),
        "liquidity": first_number(market, "liquidity"),
        "price_change_24h": first_number(market, "priceChange24h"),
        "total_supply": first_number(market, "totalSupply"),
    }


def _swap_token(token: Dict[str, Any], field_name: str) -> Any:
    address = first_str(token, "mint", "address")
    if not address:
        return ShapeSkip(f"missing mint address in {field_name}")
    price = as_dict(token.get("price"))
    return TokenQuote(
        address=address,
        name=first_str(token, "name"),
        symbol=first_str(token, "symbol"),
        price_usd=first_number(price, "usd"),
        price_sol=first_number(price, "sol"),
        **_market_data(token),
    )


def extract_swap(details: Dict[str, Any]) -> Optional[List[Any]]:
    if details.get("type") != "SWAP":
        return None
    swap = as_dict(details.get("swap")) or {}
    items = []
    for field_name in ("tokenIn", "tokenOut"):
        token = as_dict(swap.get(field_name))
        if token is not None:
            items.append(_swap_token(token, field_name))
    return items


def extract_jupiter_swap(details: Dict[str, Any]) -> Optional[List[Any]]:
    if details.get("type") != "JUPITER_SWAP":
        return None
    swap = as_dict(details.get("jupiterSwap")) or {}
    items = []
    for field_name in ("inputToken", "outputToken"):
        token = as_dict(swap.get(field_name))
        if token is None:
            continue
        address = first_str(token, "mint")
        if not address:
            items.append(ShapeSkip(f"missing mint address in {field_name}"))
            continue
        items.append(TokenQuote(
            address=address,
            name=first_str(token, "name"),
            symbol=first_str(token, "symbol"),
            price_usd=first_number(token, "priceUsd"),
            price_sol=first_number(token, "priceSol"),
            platform="JUPITER",
        ))
    return items


def _swap_event_token(token: Dict[str, Any], field_name: str) -> Any:
    address = first_str(token, "mint")
    if not address:
        return ShapeSkip(f"missing mint address in {field_name}")
    info = as_dict(token.get("tokenInfo"))
    price = as_dict(token.get("price"))
    if price is not None:
        price_usd = first_number(price, "usd")
        price_sol = first_number(price, "sol")
    else:
        price_usd = first_number(token, "usdValue")
        price_sol = None
    return TokenQuote(
        address=address,
        name=first_str(token, "name") or first_str(info, "name"),
        symbol=first_str(token, "symbol") or first_str(info, "symbol"),
        price_usd=price_usd,
        price_sol=price_sol,
        **_market_data(token),
    )


def extract_swap_events(details: Dict[str, Any]) -> Optional[List[Any]]:
    events = as_list(details.get("events"))
    if not events:
        return None
    items = []
    for event in events:
        event = as_dict(event)
        if event is None or event.get("type") not in SWAP_EVENT_TYPES:
            continue
        data = as_dict(event.get("data"))
        if data is None:
            items.append(ShapeSkip("invalid swap data format"))
            continue
        for field_name in ("tokenIn", "tokenOut"):
            token = as_dict(data.get(field_name))
            if token is not None:
                items.append(_swap_event_token(token, field_name))
    return items


def extract_token_transfers(details: Dict[str, Any]) -> Optional[List[Any]]:
    transfers = as_list(details.get("tokenTransfers"))
    if not transfers:
        return None
    items = []
    for transfer in transfers:
        transfer = as_dict(transfer)
        if transfer is None:
            items.append(ShapeSkip("invalid token transfer data format"))
            continue
        address = first_str(transfer, "mint")
        if not address:
            items.append(ShapeSkip("missing mint address in token transfer"))
            continue
        items.append(TokenQuote(
            address=address,
            name=first_str(transfer, "tokenName", "name"),
            symbol=first_str(transfer, "tokenSymbol", "symbol"),
            price_usd=first_number(transfer, "usdValue"),
            price_sol=first_number(transfer, "tokenAmount", "amount"),
        ))
    return items


def extract_token_balances(details: Dict[str, Any]) -> Optional[List[Any]]:
    balances = as_list(details.get("tokenBalances"))
    if not balances:
        return None
    items = []
    for balance in balances:
        balance = as_dict(balance)
        if balance is None:
            items.append(ShapeSkip("invalid token balance data format"))
            continue
        address = first_str(balance, "mint")
        if not address:
            items.append(ShapeSkip("missing mint address in token balance"))
            continue
        info = as_dict(balance.get("tokenInfo"))
        name = first_str(info, "name")
        symbol = first_str(info, "symbol")
        if not name and not symbol:
            items.append(ShapeSkip("no token metadata in balance", key=address))
            continue
        items.append(TokenQuote(address=address, name=name, symbol=symbol, metadata_only=True))
    return items


TOKEN_PRICE_MATCHERS: List[ShapeMatcher] = [
    ShapeMatcher("swap", extract_swap, exclusive=True),
    ShapeMatcher("jupiter_swap", extract_jupiter_swap, exclusive=True),
    ShapeMatcher("swap_event", extract_swap_events),
    ShapeMatcher("token_transfer", extract_token_transfers),
    ShapeMatcher("token_balance", extract_token_balances),
]


def token_price_table_ddl(table: str) -> List[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id SERIAL PRIMARY KEY,
            token_address TEXT NOT NULL,
            token_name TEXT,
            token_symbol TEXT,
            platform TEXT NOT NULL,
            price_usd NUMERIC NOT NULL DEFAULT 0,
            price_sol NUMERIC DEFAULT 0,
            volume_24h NUMERIC,
            market_cap NUMERIC,
            liquidity NUMERIC,
            price_change_24h NUMERIC,
            total_supply NUMERIC,
            transaction_id TEXT,
            updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            slot BIGINT NOT NULL,
            UNIQUE(token_address, platform)
        )
        """,
        f"CREATE INDEX IF NOT EXISTS {table}_token_address_idx ON {table}(token_address)",
        f"CREATE INDEX IF NOT EXISTS {table}_platform_idx ON {table}(platform)",
        f"CREATE INDEX IF NOT EXISTS {table}_updated_at_idx ON {table}(updated_at)",
        f"CREATE INDEX IF NOT EXISTS {table}_slot_idx ON {table}(slot)",
    ]


def quote_upsert_sql(table: str) -> str:
    return f"""
        INSERT INTO {table} AS t (
            token_address, token_name, token_symbol, platform,
            price_usd, price_sol, volume_24h, market_cap, liquidity,
            price_change_24h, total_supply, transaction_id, updated_at, slot
        ) VALUES (
            :token_address, :token_name, :token_symbol, :platform,
            :price_usd, :price_sol, :volume_24h, :market_cap, :liquidity,
            :price_change_24h, :total_supply, :transaction_id, NOW(), :slot
        ) ON CONFLICT (token_address, platform)
        DO UPDATE SET
            token_name = CASE WHEN EXCLUDED.token_name <> '' THEN EXCLUDED.token_name ELSE t.token_name END,
            token_symbol = CASE WHEN EXCLUDED.token_symbol <> '' THEN EXCLUDED.token_symbol ELSE t.token_symbol END,
            price_usd = CASE WHEN EXCLUDED.price_usd > 0 THEN EXCLUDED.price_usd ELSE t.price_usd END,
            price_sol = CASE WHEN EXCLUDED.price_sol > 0 THEN EXCLUDED.price_sol ELSE t.price_sol END,
            volume_24h = CASE WHEN EXCLUDED.volume_24h > 0 THEN EXCLUDED.volume_24h ELSE t.volume_24h END,
            market_cap = CASE WHEN EXCLUDED.market_cap > 0 THEN EXCLUDED.market_cap ELSE t.market_cap END,
            liquidity = CASE WHEN EXCLUDED.liquidity > 0 THEN EXCLUDED.liquidity ELSE t.liquidity END,
            price_change_24h = CASE WHEN EXCLUDED.price_change_24h <> 0 THEN EXCLUDED.price_change_24h ELSE t.price_change_24h END,
            total_supply = CASE WHEN EXCLUDED.total_supply > 0 THEN EXCLUDED.total_supply ELSE t.total_supply END,
            transaction_id = CASE WHEN EXCLUDED.slot > t.slot THEN EXCLUDED.transaction_id ELSE t.transaction_id END,
            updated_at = CASE WHEN EXCLUDED.slot > t.slot THEN NOW() ELSE t.updated_at END,
            slot = GREATEST(EXCLUDED.slot, t.slot)
    """


def metadata_upsert_sql(table: str) -> str:
    """Insert a placeholder row or fill only missing name/symbol."""
    return f"""
        INSERT INTO {table} AS t (
            token_address, token_name, token_symbol, platform,
            price_usd, price_sol, transaction_id, updated_at, slot
        ) VALUES (
            :token_address, :token_name, :token_symbol, :platform,
            0, 0, :transaction_id, NOW(), :slot
        ) ON CONFLICT (token_address, platform)
        DO UPDATE SET
            token_name = CASE
                WHEN (t.token_name IS NULL OR t.token_name = '' OR t.token_name = 'UNKNOWN')
                     AND EXCLUDED.token_name <> ''
                THEN EXCLUDED.token_name ELSE t.token_name
            END,
            token_symbol = CASE
                WHEN (t.token_symbol IS NULL OR t.token_symbol = '' OR t.token_symbol = 'UNKNOWN')
                     AND EXCLUDED.token_symbol <> ''
                THEN EXCLUDED.token_symbol ELSE t.token_symbol
            END
    """


class TokenPriceIndexer(MetadataAwareIndexer, BaseIndexer):
    """Tracks per-platform prices and market data for configured tokens."""

    indexer_type = IndexerType.TOKEN_PRICES
    params_model = TokenParams
    recent_order = "updated_at DESC"

    def __init__(self, indexer_id: str, params: Optional[Dict[str, Any]]):
        super().__init__(indexer_id, params)
        self._tracked = {t.lower() for t in self.params.tokens}

    def tracks(self, address: str) -> bool:
        return bool(address) and address.lower() in self._tracked

    def table_ddl(self, table: str) -> List[str]:
        return token_price_table_ddl(table)

    async def initialize(
        self,
        engine: AsyncEngine,
        target_table: str,
        metadata_fetcher: Optional[MetadataSource] = None
    ) -> None:
        """Create the table and, with a metadata source, seed one row per token and platform."""
        await super().initialize(engine, target_table)
        if metadata_fetcher is None:
            return

        table = format_table_name(target_table)
        metadata = await self._lookup_metadata(metadata_fetcher, self.params.tokens)
        for token in self.params.tokens:
            entry = metadata.get(token)
            statements = [
                (
                    metadata_upsert_sql(table),
                    {
                        "token_address": token,
                        "token_name": getattr(entry, "name", "") or "",
                        "token_symbol": getattr(entry, "symbol", "") or "",
                        "platform": platform,
                        "transaction_id": None,
                        "slot": 0,
                    },
                )
                for platform in SEED_PLATFORMS
            ]
            result = await self._apply(engine, "seed", token, statements)
            if result.reason:
                self.logger.warning("Failed to seed token rows", token=token, reason=result.reason)

        self.logger.info("Token rows seeded", tokens=len(self.params.tokens), platforms=len(SEED_PLATFORMS))

    async def _process(
        self,
        engine: AsyncEngine,
        target_table: str,
        payload: WebhookPayload,
        metadata_source: Optional[MetadataSource] = None
    ) -> List[ItemResult]:
        if not payload.signatures:
            return [ItemResult.skipped("event", "payload has no signatures")]

        details = payload.decode_details()
        table = format_table_name(target_table)

        platform = first_str(details, "source") or UNKNOWN_PLATFORM
        if self.params.platforms and not equals_any(platform, self.params.platforms):
            self.logger.debug("Platform not tracked", platform=platform)
            return [ItemResult.skipped("event", f"platform {platform} not tracked")]

        matched = []
        for name, item in apply_matchers(TOKEN_PRICE_MATCHERS, details):
            key = item.key if isinstance(item, ShapeSkip) else item.address
            if key and not self.tracks(key):
                continue
            matched.append((name, item))

        if metadata_source is not None:
            matched = await self._with_metadata(matched, metadata_source)

        results: List[ItemResult] = []
        for name, item in matched:
            if isinstance(item, ShapeSkip):
                results.append(self._skip(name, item.reason, item.key))
                continue
            statement = self._upsert_statement(table, item, platform, payload)
            results.append(await self._apply(engine, name, item.address, [statement]))

        self.logger.info(
            "Token price payload processed",
            slot=payload.slot,
            platform=platform,
            items=len(results),
        )
        return results

    async def _with_metadata(self, matched: List[Any], metadata_source: MetadataSource) -> List[Any]:
        """Fill missing name/symbol on extracted quotes before they are stored."""
        missing = sorted({
            item.address for _, item in matched
            if isinstance(item, TokenQuote) and item.needs_metadata
        })
        if not missing:
            return matched

        metadata = await self._lookup_metadata(metadata_source, missing)
        completed = []
        for name, item in matched:
            entry = metadata.get(item.address) if isinstance(item, TokenQuote) else None
            if entry is not None:
                item = replace(
                    item,
                    name=item.name or entry.name or "",
                    symbol=item.symbol or entry.symbol or "",
                )
            completed.append((name, item))
        return completed

    def _upsert_statement(
        self,
        table: str,
        quote: TokenQuote,
        platform: str,
        payload: WebhookPayload
    ) -> Statement:
        params = {
            "token_address": quote.address,
            "token_name": quote.name or None,
            "token_symbol": quote.symbol or None,
            "platform": quote.platform or platform,
            "transaction_id": payload.transaction_id,
            "slot": payload.slot,
        }
        if quote.metadata_only:
            return metadata_upsert_sql(table), params

        params.update({
            "price_usd": to_decimal(quote.price_usd or 0),
            "price_sol": to_decimal(quote.price_sol or 0),
            "volume_24h": to_decimal(quote.volume_24h),
            "market_cap": to_decimal(quote.market_cap),
            "liquidity": to_decimal(quote.liquidity),
            "price_change_24h": to_decimal(quote.price_change_24h),
            "total_supply": to_decimal(quote.total_supply),
        })
        return quote_upsert_sql(table), params
