"""
NFT price indexer.

Rows are keyed by signature; the (nft_mint, marketplace, seller) identity
drives listing status transitions:

    listed -> sold        on NFT_SALE
    listed -> cancelled   on NFT_CANCEL_LISTING

A sale or cancellation with no observed listing is inserted directly.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from webhook_indexer.models.indexer import IndexerType
from webhook_indexer.utils.validation import format_table_name

from ..core.base import BaseIndexer, to_decimal
from ..core.matchers import (
    apply_matchers,
    as_dict,
    as_list,
    contains_all,
    first_number,
    first_str,
    number_after,
    word_after,
)
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


NFT_LISTING = "NFT_LISTING"
NFT_SALE = "NFT_SALE"
NFT_CANCEL_LISTING = "NFT_CANCEL_LISTING"


def classify_price_description(description: str) -> Optional[str]:
    lowered = description.lower()
    if "sol" not in lowered:
        return None
    if contains_all(lowered, "listed", "for"):
        return NFT_LISTING
    if "bought" in lowered or "purchased" in lowered or contains_all(lowered, "sold", "for"):
        return NFT_SALE
    return None


NFT_PRICE_MATCHERS = build_nft_matchers(
    (NFT_LISTING, NFT_SALE, NFT_CANCEL_LISTING),
    classify_price_description,
    stop_on_events_array=True,
)


@dataclass
class ListingFields:
    mint: str
    name: str
    marketplace: str
    seller: str
    price: float
    currency: str = DEFAULT_CURRENCY
    usd_value: Optional[float] = None
    buyer: str = ""


def parse_listing_description(description: str) -> Dict[str, Any]:
    """
    Parse "<seller> listed <name> for <price> SOL on <marketplace>."

    Returns the fields that could be recovered; missing ones are omitted.
    """
    parts = description.split(" ")
    if len(parts) < 6:
        return {}

    fields: Dict[str, Any] = {"seller": parts[0]}
    price = number_after(parts, "for")
    if price is not None:
        fields["price"] = price
    marketplace = word_after(parts, "on")
    if marketplace:
        fields["marketplace"] = marketplace.rstrip(".")

    listed_idx = parts.index("listed") if "listed" in parts else -1
    for_idx = parts.index("for") if "for" in parts else -1
    if listed_idx != -1 and for_idx != -1 and listed_idx + 1 < for_idx:
        fields["name"] = " ".join(parts[listed_idx + 1:for_idx])
    return fields


def mint_from_instructions(context: Dict[str, Any]) -> str:
    """Last instruction's first account that looks like an address."""
    mint = ""
    for instruction in as_list(context.get("instructions")):
        for account in as_list((as_dict(instruction) or {}).get("accounts")):
            if isinstance(account, str) and len(account) >= 32:
                mint = account
                break
    return mint


def listing_upsert_sql(table: str) -> str:
    return f"""
        INSERT INTO {table} AS t (
            signature, slot, block_time, nft_mint, nft_name, marketplace,
            price, currency, usd_value, seller, status
        ) VALUES (
            :signature, :slot, :block_time, :nft_mint, :nft_name, :marketplace,
            :price, :currency, :usd_value, :seller, 'listed'
        ) ON CONFLICT (signature)
        DO UPDATE SET
            nft_mint = EXCLUDED.nft_mint,
            nft_name = CASE WHEN EXCLUDED.nft_name IS NOT NULL AND EXCLUDED.nft_name <> '' THEN EXCLUDED.nft_name ELSE t.nft_name END,
            marketplace = EXCLUDED.marketplace,
            price = EXCLUDED.price,
            currency = EXCLUDED.currency,
            usd_value = EXCLUDED.usd_value,
            seller = EXCLUDED.seller,
            status = EXCLUDED.status,
            slot = EXCLUDED.slot,
            block_time = EXCLUDED.block_time,
            updated_at = NOW()
    """


def sale_update_sql(table: str) -> str:
    """Flip the newest matching listing to sold."""
    return f"""
        UPDATE {table} SET
            status = 'sold',
            buyer = :buyer,
            price = :price,
            currency = :currency,
            usd_value = :usd_value,
            slot = :slot,
            block_time = :block_time,
            signature = :signature,
            updated_at = NOW()
        WHERE id = (
            SELECT id FROM {table}
            WHERE nft_mint = :nft_mint AND seller = :seller
              AND marketplace = :marketplace AND status = 'listed'
            ORDER BY slot DESC
            LIMIT 1
        )
    """


def sale_insert_sql(table: str) -> str:
    return f"""
        INSERT INTO {table} AS t (
            signature, slot, block_time, nft_mint, nft_name, marketplace,
            price, currency, usd_value, seller, buyer, status
        ) VALUES (
            :signature, :slot, :block_time, :nft_mint, :nft_name, :marketplace,
            :price, :currency, :usd_value, :seller, :buyer, 'sold'
        ) ON CONFLICT (signature)
        DO UPDATE SET
            nft_mint = EXCLUDED.nft_mint,
            nft_name = CASE WHEN EXCLUDED.nft_name IS NOT NULL AND EXCLUDED.nft_name <> '' THEN EXCLUDED.nft_name ELSE t.nft_name END,
            marketplace = EXCLUDED.marketplace,
            price = EXCLUDED.price,
            currency = EXCLUDED.currency,
            usd_value = EXCLUDED.usd_value,
            seller = EXCLUDED.seller,
            buyer = EXCLUDED.buyer,
            status = EXCLUDED.status,
            slot = EXCLUDED.slot,
            block_time = EXCLUDED.block_time,
            updated_at = NOW()
    """


def cancel_update_sql(table: str) -> str:
    return f"""
        UPDATE {table} SET
            status = 'cancelled',
            slot = :slot,
            block_time = :block_time,
            signature = :signature,
            updated_at = NOW()
        WHERE id = (
            SELECT id FROM {table}
            WHERE nft_mint = :nft_mint AND seller = :seller AND status = 'listed'
              AND (marketplace = :marketplace OR :marketplace = 'UNKNOWN')
            ORDER BY slot DESC
            LIMIT 1
        )
    """


def cancel_insert_sql(table: str) -> str:
    return f"""
        INSERT INTO {table} (
            signature, slot, block_time, nft_mint, marketplace,
            price, currency, seller, status
        ) VALUES (
            :signature, :slot, :block_time, :nft_mint, :marketplace,
            0, 'SOL', :seller, 'cancelled'
        ) ON CONFLICT (signature) DO NOTHING
    """


class NFTPriceIndexer(BaseIndexer):
    """Tracks listings, sales and delistings for a collection."""

    indexer_type = IndexerType.NFT_PRICES
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
                nft_name TEXT,
                marketplace TEXT NOT NULL,
                price NUMERIC NOT NULL,
                currency TEXT NOT NULL DEFAULT 'SOL',
                usd_value NUMERIC,
                seller TEXT NOT NULL,
                buyer TEXT,
                status TEXT NOT NULL,
                created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
            )
            """,
            f"CREATE INDEX IF NOT EXISTS {table}_nft_mint_idx ON {table}(nft_mint)",
            f"CREATE INDEX IF NOT EXISTS {table}_marketplace_idx ON {table}(marketplace)",
            f"CREATE INDEX IF NOT EXISTS {table}_seller_idx ON {table}(seller)",
            f"CREATE INDEX IF NOT EXISTS {table}_buyer_idx ON {table}(buyer)",
            f"CREATE INDEX IF NOT EXISTS {table}_status_idx ON {table}(status)",
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

        handlers = {
            NFT_LISTING: self._handle_listing,
            NFT_SALE: self._handle_sale,
            NFT_CANCEL_LISTING: self._handle_cancel,
        }
        results: List[ItemResult] = []
        for _, event in apply_matchers(NFT_PRICE_MATCHERS, details):
            handler = handlers[event.event_type]
            results.append(await handler(engine, table, event, payload.slot, signature))

        if not results:
            self.logger.debug("No NFT price events found", signature=signature)
        return results

    def _base_params(self, fields: ListingFields, slot: int, signature: str) -> Dict[str, Any]:
        return {
            "signature": signature,
            "slot": slot,
            "block_time": datetime.now(timezone.utc),
            "nft_mint": fields.mint,
            "nft_name": fields.name or None,
            "marketplace": fields.marketplace or UNKNOWN_MARKETPLACE,
            "price": to_decimal(fields.price),
            "currency": fields.currency,
            "usd_value": to_decimal(fields.usd_value),
            "seller": fields.seller,
        }

    async def _handle_listing(
        self,
        engine: AsyncEngine,
        table: str,
        event: NFTEvent,
        slot: int,
        signature: str
    ) -> ItemResult:
        data = event.data
        mint, name = extract_mint_and_name(data)
        fields = ListingFields(
            mint=mint,
            name=name,
            marketplace=extract_marketplace(event),
            seller=first_str(data, "seller"),
            price=extract_amount(data),
            currency=first_str(data, "currency") or DEFAULT_CURRENCY,
            usd_value=first_number(data, "usdValue"),
        )
        if not marketplace_allowed(fields.marketplace, self.params.marketplaces):
            return self._not_tracked(NFT_LISTING, fields.marketplace, signature)

        if not fields.mint or not fields.seller or fields.price <= 0:
            if not event.description:
                return self._skip(NFT_LISTING, "missing essential listing data", key=signature)
            fields = self._listing_from_description(event)
            if fields is None:
                return self._skip(NFT_LISTING, "listing description could not be parsed", key=signature)
            if not marketplace_allowed(fields.marketplace, self.params.marketplaces):
                return self._not_tracked(NFT_LISTING, fields.marketplace, signature)

        params = self._base_params(fields, slot, signature)
        result = await self._apply(engine, NFT_LISTING, signature, [(listing_upsert_sql(table), params)])
        if result.reason is None:
            self.logger.info(
                "NFT listing stored",
                signature=signature,
                mint=fields.mint,
                seller=fields.seller,
                price=fields.price,
                marketplace=params["marketplace"],
            )
        return result

    def _listing_from_description(self, event: NFTEvent) -> Optional[ListingFields]:
        parsed = parse_listing_description(event.description)
        if not parsed.get("seller") or parsed.get("price", 0) <= 0:
            return None
        mint = mint_from_instructions(event.context) or self.params.collection
        return ListingFields(
            mint=mint,
            name=parsed.get("name", ""),
            marketplace=parsed.get("marketplace", ""),
            seller=parsed["seller"],
            price=parsed["price"],
        )

    async def _handle_sale(
        self,
        engine: AsyncEngine,
        table: str,
        event: NFTEvent,
        slot: int,
        signature: str
    ) -> ItemResult:
        data = event.data
        mint, name = extract_mint_and_name(data)
        fields = ListingFields(
            mint=mint,
            name=name,
            marketplace=extract_marketplace(event),
            seller=first_str(data, "seller"),
            buyer=first_str(data, "buyer"),
            price=extract_amount(data),
            currency=first_str(data, "currency") or DEFAULT_CURRENCY,
            usd_value=first_number(data, "usdValue"),
        )
        if not marketplace_allowed(fields.marketplace, self.params.marketplaces):
            return self._not_tracked(NFT_SALE, fields.marketplace, signature)

        description = event.description
        if description:
            parts = description.split(" ")
            if fields.price <= 0:
                fields.price = number_after(parts, "for") or 0.0
            if contains_all(description, "sold", "for") and len(parts) > 3:
                if not fields.seller:
                    fields.seller = parts[0]
                if not fields.buyer:
                    fields.buyer = self._buyer_from_parts(parts)

        if not fields.mint or not fields.seller or not fields.buyer or fields.price <= 0:
            return self._skip(NFT_SALE, "missing essential sale data", key=signature)

        params = self._base_params(fields, slot, signature)
        params["buyer"] = fields.buyer

        async def flip_or_insert(conn: AsyncConnection) -> int:
            updated = await conn.execute(text(sale_update_sql(table)), params)
            if (updated.rowcount or 0) > 0:
                return updated.rowcount
            inserted = await conn.execute(text(sale_insert_sql(table)), params)
            return max(inserted.rowcount or 0, 0)

        result = await self._apply_unit(engine, NFT_SALE, signature, flip_or_insert)
        if result.reason is None:
            self.logger.info(
                "NFT sale stored",
                signature=signature,
                mint=fields.mint,
                seller=fields.seller,
                buyer=fields.buyer,
                price=fields.price,
            )
        return result

    @staticmethod
    def _buyer_from_parts(parts: List[str]) -> str:
        """Word two places after "sold", when it precedes "for"."""
        sold_idx = -1
        for idx, part in enumerate(parts):
            if part.lower() == "sold":
                sold_idx = idx
            elif part == "for":
                if sold_idx != -1 and sold_idx + 2 < idx:
                    return parts[sold_idx + 2]
                break
        return ""

    async def _handle_cancel(
        self,
        engine: AsyncEngine,
        table: str,
        event: NFTEvent,
        slot: int,
        signature: str
    ) -> ItemResult:
        data = event.data
        mint = first_str(data, "mint") or first_str(as_dict(data.get("nft")), "mint")
        marketplace = extract_marketplace(event, use_source=False)
        seller = first_str(data, "seller")

        if not marketplace_allowed(marketplace, self.params.marketplaces):
            return self._not_tracked(NFT_CANCEL_LISTING, marketplace, signature)
        if not mint or not seller:
            return self._skip(NFT_CANCEL_LISTING, "missing essential cancellation data", key=signature)

        params = {
            "signature": signature,
            "slot": slot,
            "block_time": datetime.now(timezone.utc),
            "nft_mint": mint,
            "seller": seller,
            "marketplace": marketplace or UNKNOWN_MARKETPLACE,
        }

        async def flip_or_record(conn: AsyncConnection) -> int:
            updated = await conn.execute(text(cancel_update_sql(table)), params)
            if (updated.rowcount or 0) > 0:
                return updated.rowcount
            inserted = await conn.execute(text(cancel_insert_sql(table)), params)
            return max(inserted.rowcount or 0, 0)

        result = await self._apply_unit(engine, NFT_CANCEL_LISTING, signature, flip_or_record)
        if result.reason is None:
            self.logger.info("NFT listing cancelled", signature=signature, mint=mint, seller=seller, rows=result.rows)
        return result

    def _not_tracked(self, kind: str, marketplace: str, signature: str) -> ItemResult:
        self.logger.debug("Marketplace not tracked", marketplace=marketplace)
        return ItemResult.skipped(kind, f"marketplace {marketplace} not tracked", key=signature)
