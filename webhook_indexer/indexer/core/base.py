"""
Indexer contract shared by all normalization strategies.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from webhook_indexer.models.indexer import IndexerType
from webhook_indexer.utils.validation import format_table_name

from .params import parse_params
from .types import ItemResult, WebhookPayload


logger = structlog.get_logger(__name__)

# A statement and its bound parameters
Statement = Tuple[str, Dict[str, Any]]

STORAGE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def to_decimal(value: Optional[float]) -> Optional[Decimal]:
    """Convert an extracted float to a NUMERIC-safe Decimal."""
    if value is None:
        return None
    return Decimal(str(value))


def json_value(value: Any) -> Any:
    """Make a database value safe for a JSON log column."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


async def table_exists(conn: AsyncConnection, table: str) -> bool:
    """Check whether a table exists in the public schema."""
    result = await conn.execute(
        text(
            "SELECT EXISTS (SELECT FROM pg_tables "
            "WHERE schemaname = 'public' AND tablename = lower(:table))"
        ),
        {"table": table},
    )
    return bool(result.scalar())


class BaseIndexer(ABC):
    """
    Base class for all indexer variants.

    Subclasses declare their type tag, parameter schema and table DDL,
    and implement payload normalization in ``process``. Instances hold
    no per-event state and can process payloads concurrently.
    """

    indexer_type: IndexerType
    params_model: Type[BaseModel]
    # ORDER BY clause used when reading back recent rows
    recent_order: str = "slot DESC"

    def __init__(self, indexer_id: str, params: Optional[Dict[str, Any]]):
        self.indexer_id = indexer_id
        self.params = parse_params(self.params_model, self.indexer_type.value, params)
        self.logger = logger.bind(
            indexer_id=indexer_id,
            indexer_type=self.indexer_type.value
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(id={self.indexer_id})>"

    def declared_addresses(self) -> List[str]:
        """Addresses the upstream subscription must watch for this indexer."""
        return self.params.addresses()

    @abstractmethod
    def table_ddl(self, table: str) -> List[str]:
        """CREATE TABLE and CREATE INDEX statements for the target table."""

    async def initialize(
        self,
        engine: AsyncEngine,
        target_table: str,
        metadata_fetcher: Any = None
    ) -> None:
        """Ensure the target table and its indexes exist."""
        table = format_table_name(target_table)
        async with engine.begin() as conn:
            exists = await table_exists(conn, table)
            for statement in self.table_ddl(table):
                await conn.execute(text(statement))

        if exists:
            self.logger.info("Target table already present", table=table)
        else:
            self.logger.info("Target table created", table=table)

    async def latest_rows(
        self,
        engine: AsyncEngine,
        target_table: str,
        limit: int = 5,
        max_slot: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Most recent rows of the target table, optionally up to a slot, as JSON-safe dicts."""
        table = format_table_name(target_table)
        where = "WHERE slot <= :max_slot " if max_slot else ""
        async with engine.connect() as conn:
            result = await conn.execute(
                text(f"SELECT * FROM {table} {where}ORDER BY {self.recent_order} LIMIT :limit"),
                {"limit": limit, "max_slot": max_slot} if max_slot else {"limit": limit},
            )
            rows = result.mappings().all()
        return [{key: json_value(value) for key, value in row.items()} for row in rows]

    @abstractmethod
    async def process(
        self,
        engine: AsyncEngine,
        target_table: str,
        payload: WebhookPayload
    ) -> List[ItemResult]:
        """
        Normalize one inbound payload into upserts.

        Returns one result per recognized item. Items are committed
        independently, so a failed item does not roll back earlier ones.

        Raises:
            PayloadDecodeError: If the detail blob cannot be decoded
        """

    async def _apply(
        self,
        engine: AsyncEngine,
        kind: str,
        key: str,
        statements: Sequence[Statement]
    ) -> ItemResult:
        """Run one item's statements in a single transaction."""
        async def run(conn: AsyncConnection) -> int:
            rows = 0
            for sql, params in statements:
                result = await conn.execute(text(sql), params)
                rows += max(result.rowcount or 0, 0)
            return rows

        return await self._apply_unit(engine, kind, key, run)

    async def _apply_unit(
        self,
        engine: AsyncEngine,
        kind: str,
        key: str,
        unit: Callable[[AsyncConnection], Awaitable[int]]
    ) -> ItemResult:
        """
        Run a unit of work in its own transaction.

        Storage failures roll back this unit only and are reported as a
        failed item instead of being raised.
        """
        try:
            async with engine.begin() as conn:
                rows = await unit(conn)
        except STORAGE_ERRORS as e:
            self.logger.error("Failed to store item", kind=kind, key=key, error=str(e))
            return ItemResult.failed(kind, str(e), key=key)
        return ItemResult.applied(kind, key, rows=rows)

    def _skip(self, kind: str, reason: str, key: Optional[str] = None) -> ItemResult:
        self.logger.warning("Skipping item", kind=kind, reason=reason, key=key)
        return ItemResult.skipped(kind, reason, key=key)
