"""
Metadata store for indexer records, tenant credentials and indexing logs.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_indexer.core.database import get_session_maker
from webhook_indexer.core.exceptions import CredentialNotFoundError, IndexerNotFoundError
from webhook_indexer.models import (
    DBCredential,
    Indexer,
    IndexerStatus,
    IndexerType,
    IndexingLog,
)


logger = structlog.get_logger(__name__)


class IndexerStore:
    """
    Keyed access to the service's own database.

    Every operation runs in its own session and commits before returning,
    so records handed back are detached snapshots.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory
        self.logger = logger.bind(service="indexer_store")

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        factory = self._session_factory or get_session_maker()
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # Indexers

    async def create_indexer(
        self,
        user_id: str,
        db_credential_id: str,
        indexer_type: IndexerType,
        params: Dict[str, Any],
        target_table: str
    ) -> Indexer:
        indexer = Indexer(
            user_id=user_id,
            db_credential_id=db_credential_id,
            indexer_type=indexer_type,
            params=params,
            target_table=target_table,
            status=IndexerStatus.PENDING,
        )
        async with self._session() as session:
            session.add(indexer)
            await session.flush()
            await session.refresh(indexer)

        self.logger.info("Indexer record created", indexer_id=indexer.id, indexer_type=indexer_type.value)
        return indexer

    async def get_indexer(self, indexer_id: str) -> Indexer:
        """
        Raises:
            IndexerNotFoundError: If no record has this id
        """
        async with self._session() as session:
            indexer = await session.get(Indexer, indexer_id)
        if indexer is None:
            raise IndexerNotFoundError(indexer_id)
        return indexer

    async def get_indexer_by_webhook_id(self, webhook_id: str) -> Indexer:
        """
        Raises:
            IndexerNotFoundError: If no record carries this subscription id
        """
        async with self._session() as session:
            result = await session.execute(
                select(Indexer).where(Indexer.webhook_id == webhook_id).limit(1)
            )
            indexer = result.scalar_one_or_none()
        if indexer is None:
            raise IndexerNotFoundError(webhook_id)
        return indexer

    async def list_indexers(self, user_id: str) -> List[Indexer]:
        async with self._session() as session:
            result = await session.execute(
                select(Indexer)
                .where(Indexer.user_id == user_id)
                .order_by(Indexer.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_indexers_with_webhook(self) -> List[Indexer]:
        async with self._session() as session:
            result = await session.execute(
                select(Indexer).where(Indexer.webhook_id.is_not(None))
            )
            return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in IndexerStatus}
        async with self._session() as session:
            result = await session.execute(select(Indexer.status))
            for (status,) in result.all():
                counts[status.value] += 1
        return counts

    async def update_status(
        self,
        indexer_id: str,
        status: IndexerStatus,
        error_message: Optional[str] = None
    ) -> None:
        await self._update(indexer_id, status=status, error_message=error_message)
        self.logger.info("Indexer status updated", indexer_id=indexer_id, status=status.value)

    async def update_webhook_id(self, indexer_id: str, webhook_id: Optional[str]) -> None:
        await self._update(indexer_id, webhook_id=webhook_id)

    async def update_last_indexed(self, indexer_id: str, at: Optional[datetime] = None) -> None:
        await self._update(indexer_id, last_indexed_at=at or datetime.utcnow())

    async def _update(self, indexer_id: str, **values: Any) -> None:
        async with self._session() as session:
            result = await session.execute(
                update(Indexer).where(Indexer.id == indexer_id).values(**values)
            )
            if result.rowcount == 0:
                raise IndexerNotFoundError(indexer_id)

    async def delete_indexer(self, indexer_id: str, user_id: str) -> None:
        """
        Raises:
            IndexerNotFoundError: If the indexer does not exist for this user
        """
        async with self._session() as session:
            result = await session.execute(
                delete(Indexer).where(Indexer.id == indexer_id, Indexer.user_id == user_id)
            )
            if result.rowcount == 0:
                raise IndexerNotFoundError(indexer_id)
        self.logger.info("Indexer record deleted", indexer_id=indexer_id)

    # Logs

    async def append_log(
        self,
        indexer_id: str,
        event_type: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        async with self._session() as session:
            session.add(IndexingLog(
                indexer_id=indexer_id,
                event_type=event_type,
                message=message,
                details=details,
            ))

    async def list_logs(self, indexer_id: str, limit: int = 50, offset: int = 0) -> List[IndexingLog]:
        """Log entries for an indexer, newest first."""
        async with self._session() as session:
            result = await session.execute(
                select(IndexingLog)
                .where(IndexingLog.indexer_id == indexer_id)
                .order_by(IndexingLog.created_at.desc(), IndexingLog.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    # Credentials

    async def get_credential(self, credential_id: str) -> DBCredential:
        """
        Raises:
            CredentialNotFoundError: If no credential has this id
        """
        async with self._session() as session:
            credential = await session.get(DBCredential, credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        return credential

    async def create_credential(
        self,
        user_id: str,
        db_host: str,
        db_name: str,
        db_user: str,
        db_password: str,
        db_port: int = 5432,
        db_ssl_mode: str = "disable",
        name: Optional[str] = None
    ) -> DBCredential:
        credential = DBCredential(
            user_id=user_id,
            name=name,
            db_host=db_host,
            db_port=db_port,
            db_name=db_name,
            db_user=db_user,
            db_password=db_password,
            db_ssl_mode=db_ssl_mode,
        )
        async with self._session() as session:
            session.add(credential)
            await session.flush()
            await session.refresh(credential)

        self.logger.info("Credential created", credential_id=credential.id, host=db_host, database=db_name)
        return credential

    async def list_credentials(self, user_id: str) -> List[DBCredential]:
        async with self._session() as session:
            result = await session.execute(
                select(DBCredential).where(DBCredential.user_id == user_id)
            )
            return list(result.scalars().all())


# Global store instance
_store: Optional[IndexerStore] = None


def get_indexer_store() -> IndexerStore:
    """Get or create the global indexer store."""
    global _store
    if _store is None:
        _store = IndexerStore()
    return _store
