"""
Token borrow indexer.

Lending events are full market snapshots: every column is overwritten,
guarded only so that an older slot never replaces a newer one.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from webhook_indexer.models.indexer import IndexerType
from webhook_indexer.utils.validation import format_table_name

from ..core.base import BaseIndexer, to_decimal
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


LENDING_EVENT_TYPES = frozenset({
    "BORROW",
    "REPAY",
    "SUPPLY",
    "WITHDRAW",
    "LIQUIDATE",
    "UPDATE_RATES",
})

MARKET_FIELDS = {
    "available_amount": "availableAmount",
    "borrow_rate": "borrowRate",
    "supply_rate": "supplyRate",
    "utilization_rate": "utilizationRate",
    "total_borrowed": "totalBorrowed",
    "total_supplied": "totalSupplied",
}


@dataclass(frozen=True)
class LendingSnapshot:
    address: str
    event_type: str
    platform: str
    market: Dict[str, float]


def extract_lending_events(details: Dict[str, Any]) -> Optional[List[Any]]:
    events = as_list(details.get("events"))
    if not events:
        return None
    items = []
    for event in events:
        event = as_dict(event)
        if event is None or event.get("type") not in LENDING_EVENT_TYPES:
            continue
        data = as_dict(event.get("data"))
        if data is None:
            items.append(ShapeSkip(f"{event['type']} event has no data"))
            continue
        address = first_str(as_dict(data.get("token")), "mint")
        if not address:
            items.append(ShapeSkip(f"{event['type']} event has no token mint"))
            continue
        market = as_dict(data.get("marketData"))
        items.append(LendingSnapshot(
            address=address,
            event_type=event["type"],
            platform=first_str(data, "source", "protocol") or UNKNOWN_PLATFORM,
            market={
                column: first_number(market, key) or 0.0
                for column, key in MARKET_FIELDS.items()
            },
        ))
    return items


TOKEN_BORROW_MATCHERS: List[ShapeMatcher] = [
    ShapeMatcher("lending_event", extract_lending_events),
]


def snapshot_upsert_sql(table: str) -> str:
    return f"""
        INSERT INTO {table} AS t (
            token_address, platform, available_amount, borrow_rate, supply_rate,
            utilization_rate, total_borrowed, total_supplied, transaction_id, updated_at, slot
        ) VALUES (
            :token_address, :platform, :available_amount, :borrow_rate, :supply_rate,
            :utilization_rate, :total_borrowed, :total_supplied, :transaction_id, NOW(), :slot
        ) ON CONFLICT (token_address, platform)
        DO UPDATE SET
            available_amount = EXCLUDED.available_amount,
            borrow_rate = EXCLUDED.borrow_rate,
            supply_rate = EXCLUDED.supply_rate,
            utilization_rate = EXCLUDED.utilization_rate,
            total_borrowed = EXCLUDED.total_borrowed,
            total_supplied = EXCLUDED.total_supplied,
            transaction_id = EXCLUDED.transaction_id,
            updated_at = NOW(),
            slot = EXCLUDED.slot
        WHERE EXCLUDED.slot >= t.slot
    """


class TokenBorrowIndexer(MetadataAwareIndexer, BaseIndexer):
    """Tracks lending market rates for configured tokens."""

    indexer_type = IndexerType.TOKEN_BORROW
    params_model = TokenParams
    recent_order = "updated_at DESC"

    def __init__(self, indexer_id: str, params: Optional[Dict[str, Any]]):
        super().__init__(indexer_id, params)
        self._tracked = {t.lower() for t in self.params.tokens}

    def tracks(self, address: str) -> bool:
        return bool(address) and address.lower() in self._tracked

    def table_ddl(self, table: str) -> List[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id SERIAL PRIMARY KEY,
                token_address TEXT NOT NULL,
                token_name TEXT,
                token_symbol TEXT,
                platform TEXT NOT NULL,
                available_amount NUMERIC NOT NULL DEFAULT 0,
                borrow_rate NUMERIC NOT NULL DEFAULT 0,
                supply_rate NUMERIC NOT NULL DEFAULT 0,
                utilization_rate NUMERIC NOT NULL DEFAULT 0,
                total_borrowed NUMERIC NOT NULL DEFAULT 0,
                total_supplied NUMERIC NOT NULL DEFAULT 0,
                transaction_id TEXT,
                updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                slot BIGINT NOT NULL,
                UNIQUE(token_address, platform)
            )
            """,
            f"CREATE INDEX IF NOT EXISTS {table}_token_address_idx ON {table}(token_address)",
            f"CREATE INDEX IF NOT EXISTS {table}_platform_idx ON {table}(platform)",
            f"CREATE INDEX IF NOT EXISTS {table}_slot_idx ON {table}(slot)",
        ]

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

        results: List[ItemResult] = []
        for name, item in apply_matchers(TOKEN_BORROW_MATCHERS, details):
            if isinstance(item, ShapeSkip):
                results.append(self._skip(name, item.reason, item.key))
                continue
            if not self.tracks(item.address):
                continue
            if self.params.platforms and not equals_any(item.platform, self.params.platforms):
                self.logger.debug("Platform not tracked", platform=item.platform)
                results.append(ItemResult.skipped(name, f"platform {item.platform} not tracked", key=item.address))
                continue

            params = {
                "token_address": item.address,
                "platform": item.platform,
                "transaction_id": payload.transaction_id,
                "slot": payload.slot,
            }
            params.update({column: to_decimal(value) for column, value in item.market.items()})
            results.append(await self._apply(engine, name, item.address, [(snapshot_upsert_sql(table), params)]))

        self.logger.info("Token borrow payload processed", slot=payload.slot, items=len(results))
        return results
