"""
Metadata-aware contract shared by the token indexers.

Token tables carry ``token_name``/``token_symbol`` columns that events often
leave empty. Indexers mixing in ``MetadataAwareIndexer`` can backfill them
from an external metadata source.
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from webhook_indexer.utils.validation import format_table_name

from .base import STORAGE_ERRORS
from .types import ItemResult, WebhookPayload


# Values treated as "no metadata yet" in stored rows
MISSING_METADATA_VALUES = ("", "UNKNOWN")


class MetadataSource(Protocol):
    """Anything able to resolve token display metadata."""

    async def fetch(self, address: str) -> Any:
        ...

    async def fetch_many(self, addresses: Iterable[str]) -> Dict[str, Any]:
        ...


def missing_metadata_sql(table: str) -> str:
    return (
        f"SELECT DISTINCT token_address FROM {table} "
        "WHERE token_name IS NULL OR token_name = '' OR token_name = 'UNKNOWN' "
        "OR token_symbol IS NULL OR token_symbol = '' OR token_symbol = 'UNKNOWN'"
    )


def fill_metadata_sql(table: str) -> str:
    """UPDATE that only fills name/symbol where the stored value is missing."""
    return f"""
        UPDATE {table} SET
            token_name = CASE
                WHEN token_name IS NULL OR token_name = '' OR token_name = 'UNKNOWN'
                THEN COALESCE(NULLIF(:token_name, ''), token_name)
                ELSE token_name
            END,
            token_symbol = CASE
                WHEN token_symbol IS NULL OR token_symbol = '' OR token_symbol = 'UNKNOWN'
                THEN COALESCE(NULLIF(:token_symbol, ''), token_symbol)
                ELSE token_symbol
            END
        WHERE token_address = :token_address
    """


class MetadataAwareIndexer:
    """
    Mixin for indexers whose rows can be enriched with token metadata.

    Concrete classes provide ``_process(engine, target_table, payload,
    metadata_source)`` and a ``tracks(address)`` predicate.
    """

    async def _process(
        self,
        engine: AsyncEngine,
        target_table: str,
        payload: WebhookPayload,
        metadata_source: Optional[MetadataSource] = None
    ) -> List[ItemResult]:
        raise NotImplementedError

    def tracks(self, address: str) -> bool:
        raise NotImplementedError

    async def process(
        self,
        engine: AsyncEngine,
        target_table: str,
        payload: WebhookPayload
    ) -> List[ItemResult]:
        return await self._process(engine, target_table, payload)

    async def process_with_metadata(
        self,
        engine: AsyncEngine,
        target_table: str,
        payload: WebhookPayload,
        metadata_source: MetadataSource
    ) -> List[ItemResult]:
        """Process a payload, then backfill metadata for tracked rows still missing it."""
        results = await self._process(engine, target_table, payload, metadata_source)
        await self._fill_missing_metadata(engine, target_table, metadata_source)
        return results

    async def enrich_metadata(
        self,
        engine: AsyncEngine,
        target_table: str,
        metadata_source: MetadataSource
    ) -> int:
        """
        Backfill name/symbol for every configured token.

        Returns:
            Number of rows updated
        """
        metadata = await self._lookup_metadata(metadata_source, self.params.tokens)
        return await self._store_metadata(engine, format_table_name(target_table), metadata)

    async def _fill_missing_metadata(
        self,
        engine: AsyncEngine,
        target_table: str,
        metadata_source: MetadataSource
    ) -> int:
        table = format_table_name(target_table)
        try:
            async with engine.connect() as conn:
                result = await conn.execute(text(missing_metadata_sql(table)))
                addresses = [row[0] for row in result.fetchall()]
        except STORAGE_ERRORS as e:
            self.logger.warning("Failed to query tokens missing metadata", error=str(e))
            return 0

        needed = [a for a in addresses if self.tracks(a)]
        if not needed:
            return 0

        metadata = await self._lookup_metadata(metadata_source, needed)
        return await self._store_metadata(engine, table, metadata)

    async def _lookup_metadata(self, metadata_source: MetadataSource, addresses: Iterable[str]) -> Dict[str, Any]:
        """Metadata for the addresses, or nothing when the source fails."""
        try:
            return await metadata_source.fetch_many(addresses)
        except Exception as e:
            self.logger.warning("Token metadata lookup failed", error=str(e))
            return {}

    async def _store_metadata(self, engine: AsyncEngine, table: str, metadata: Dict[str, Any]) -> int:
        statements = [
            (
                fill_metadata_sql(table),
                {
                    "token_name": entry.name or "",
                    "token_symbol": entry.symbol or "",
                    "token_address": address,
                },
            )
            for address, entry in metadata.items()
            if entry.name or entry.symbol
        ]
        if not statements:
            return 0

        result = await self._apply(engine, "metadata", table, statements)
        if result.reason:
            self.logger.warning("Metadata backfill failed", reason=result.reason)
            return 0

        self.logger.info("Token metadata backfilled", tokens=len(statements), rows=result.rows)
        return result.rows
