"""
NFT bid indexer.

One row per bid transaction keyed by signature; a cancellation removes
the bidder's open bid on the mint.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from webhook_indexer.models.indexer import IndexerType
from webhook_indexer.utils.validation import format_table_name

from ..core.base import BaseIndexer, Statement, to_decimal
from ..core.matchers import apply_matchers, contains_all, first_number, first_str, number_after
from ..core.params import NFTParams
from ..core.types import ItemResult, WebhookPayload
from .nft_common import (
    DEFAULT_CURRENCY,
    UNKNOWN_MARKETPLACE,
    NFTEvent,
    build_nft_matchers,
    extract_amount,
    extract_marketplace,
    extract_mint_and_name,
    marketplace_allowed,
)


NFT_BID = "NFT_BID"
NFT_BID_CANCELLED = "NFT_BID_CANCELLED"


def classify_bid_description(description: str) -> Optional[str]:
    if contains_all(description, "bid", "for"):
        return NFT_BID
    return None


NFT_BID_MATCHERS = build_nft_matchers((NFT_BID, NFT_BID_CANCELLED), classify_bid_description)


def parse_expiry(value: str) -> Optional[datetime]:
    """Parse an RFC3339 timestamp; unparseable values are ignored."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def bid_upsert_sql(table: str) -> str:
    return f"""
        INSERT INTO {table} (
            signature, slot, block_time, nft_mint, auction_house, marketplace,
            bidder, bid_amount, bid_currency, bid_usd_value, expiry
        ) VALUES (
            :signature, :slot, :block_time, :nft_mint, :auction_house, :marketplace,
            :bidder, :bid_amount, :bid_currency, :bid_usd_value, :expiry
        ) ON CONFLICT (signature)
        DO UPDATE SET
            nft_mint = EXCLUDED.nft_mint,
            auction_house = EXCLUDED.auction_house,
            marketplace = EXCLUDED.marketplace,
            bidder = EXCLUDED.bidder,
            bid_amount = EXCLUDED.bid_amount,
            bid_currency = EXCLUDED.bid_currency,
            bid_usd_value = EXCLUDED.bid_usd_value,
            expiry = EXCLUDED.expiry,
            slot = EXCLUDED.slot,
            block_time = EXCLUDED.block_time
    """


class NFTBidIndexer(BaseIndexer):
    """Tracks open bids on a collection."""

    indexer_type = IndexerType.NFT_BIDS
    params_model = NFTParams

    def table_ddl(self, table: str) -> List[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id SERIAL PRIMARY KEY,
                signature TEXT UNIQUE NOT NULL,
                slot BIGINT NOT NULL,
                block_time TIMESTAMP WITH TIME ZONE NOT NULL,
                nft_mint TEXT NOT NULL,
                auction_house TEXT,
                marketplace TEXT NOT NULL,
                bidder TEXT NOT NULL,
                bid_amount NUMERIC NOT NULL,
                bid_currency TEXT NOT NULL DEFAULT 'SOL',
                bid_usd_value NUMERIC,
                expiry TIMESTAMP WITH TIME ZONE,
                created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
            )
            """,
            f"CREATE INDEX IF NOT EXISTS {table}_nft_mint_idx ON {table}(nft_mint)",
            f"CREATE INDEX IF NOT EXISTS {table}_marketplace_idx ON {table}(marketplace)",
            f"CREATE INDEX IF NOT EXISTS {table}_bidder_idx ON {table}(bidder)",
            f"CREATE INDEX IF NOT EXISTS {table}_block_time_idx ON {table}(block_time)",
            f"CREATE INDEX IF NOT EXISTS {table}_slot_idx ON {table}(slot)",
        ]

    async def process(
        self,
        engine: AsyncEngine,
        target_table: str,
        payload: WebhookPayload
    ) -> List[ItemResult]:
        if not payload.signatures:
            return [ItemResult.skipped("event", "payload has no signatures")]

        details = payload.decode_details()
        table = format_table_name(target_table)
        signature = payload.signature

        results: List[ItemResult] = []
        for _, event in apply_matchers(NFT_BID_MATCHERS, details):
            if event.event_type == NFT_BID:
                results.append(await self._handle_bid(engine, table, event, payload.slot, signature))
            else:
                results.append(await self._handle_cancellation(engine, table, event, signature))

        if not results:
            self.logger.debug("No NFT bid events found", signature=signature)
        return results

    async def _handle_bid(
        self,
        engine: AsyncEngine,
        table: str,
        event: NFTEvent,
        slot: int,
        signature: str
    ) -> ItemResult:
        data = event.data
        mint, name = extract_mint_and_name(data)

        marketplace = extract_marketplace(event)
        if not marketplace_allowed(marketplace, self.params.marketplaces):
            self.logger.debug("Marketplace not tracked", marketplace=marketplace)
            return ItemResult.skipped(NFT_BID, f"marketplace {marketplace} not tracked", key=signature)

        bidder = first_str(data, "bidder")
        amount = extract_amount(data)

        description = event.description
        if (not bidder or amount <= 0) and contains_all(description, "bid", "for"):
            parts = description.split(" ")
            if not bidder and parts:
                bidder = parts[0]
            if amount <= 0:
                amount = number_after(parts, "for") or 0.0

        if not mint or not bidder or amount <= 0:
            return self._skip(NFT_BID, "missing essential bid data", key=signature)

        statement: Statement = (
            bid_upsert_sql(table),
            {
                "signature": signature,
                "slot": slot,
                "block_time": datetime.now(timezone.utc),
                "nft_mint": mint,
                "auction_house": first_str(data, "auctionHouse"),
                "marketplace": marketplace or UNKNOWN_MARKETPLACE,
                "bidder": bidder,
                "bid_amount": to_decimal(amount),
                "bid_currency": first_str(data, "currency") or DEFAULT_CURRENCY,
                "bid_usd_value": to_decimal(first_number(data, "usdValue") or 0),
                "expiry": parse_expiry(first_str(data, "expiry")),
            },
        )
        result = await self._apply(engine, NFT_BID, signature, [statement])
        if result.reason is None:
            self.logger.info(
                "NFT bid stored",
                signature=signature,
                nft=name,
                mint=mint,
                bidder=bidder,
                amount=amount,
            )
        return result

    async def _handle_cancellation(
        self,
        engine: AsyncEngine,
        table: str,
        event: NFTEvent,
        signature: str
    ) -> ItemResult:
        data = event.data
        mint = first_str(data, "mint")
        bidder = first_str(data, "bidder")
        auction_house = first_str(data, "auctionHouse")

        if not mint or not bidder:
            return self._skip(NFT_BID_CANCELLED, "missing essential cancellation data", key=signature)

        params: Dict[str, Any] = {"nft_mint": mint, "bidder": bidder}
        sql = f"DELETE FROM {table} WHERE nft_mint = :nft_mint AND bidder = :bidder"
        if auction_house:
            sql += " AND auction_house = :auction_house"
            params["auction_house"] = auction_house

        result = await self._apply(engine, NFT_BID_CANCELLED, signature, [(sql, params)])
        if result.reason is None:
            self.logger.info("NFT bid cancelled", signature=signature, mint=mint, bidder=bidder, rows=result.rows)
        return result
