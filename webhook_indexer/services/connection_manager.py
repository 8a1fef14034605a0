"""
Per-tenant connection pools for target databases.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from webhook_indexer.core.config import TenantPoolConfig, settings
from webhook_indexer.core.exceptions import TenantConnectionError
from webhook_indexer.indexer.core.base import STORAGE_ERRORS
from webhook_indexer.models import DBCredential


logger = structlog.get_logger(__name__)


def build_tenant_url(credential: DBCredential) -> URL:
    """asyncpg URL for a tenant credential."""
    return URL.create(
        "postgresql+asyncpg",
        username=credential.db_user,
        password=credential.db_password,
        host=credential.db_host,
        port=credential.db_port or 5432,
        database=credential.db_name,
    )


def build_connect_args(credential: DBCredential) -> Dict[str, Any]:
    """Driver arguments: connect timeout and SSL mode."""
    ssl_mode = (credential.db_ssl_mode or "disable").lower()
    return {
        "timeout": settings.tenant_connect_timeout,
        "ssl": False if ssl_mode == "disable" else ssl_mode,
    }


@dataclass
class _PoolEntry:
    engine: AsyncEngine
    last_used: float


class TenantConnectionManager:
    """
    Lazily opened, cached engine per tenant credential.

    Pools are keyed by credential identity, verified with a ping on first
    use, and disposed once idle past the configured timeout or at shutdown.
    """

    def __init__(
        self,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
        idle_timeout: Optional[float] = None
    ):
        self._engine_factory = engine_factory
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.tenant_pool_idle_timeout
        self._pools: Dict[tuple, _PoolEntry] = {}
        self._opening: Dict[tuple, asyncio.Lock] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="connection_manager")

    async def pool_for(self, credential: DBCredential) -> AsyncEngine:
        """
        Get the pool for a tenant database, opening it on first use.

        The manager lock only guards the cache. New pools are opened outside
        it, one open at a time per credential.

        Raises:
            TenantConnectionError: If the database cannot be reached
        """
        key = credential.identity
        async with self._lock:
            stale = self._take_idle(exclude=key)
            engine = self._cached(key)
            if engine is None:
                opening = self._opening.setdefault(key, asyncio.Lock())
        await self._dispose(stale)
        if engine is not None:
            return engine

        async with opening:
            async with self._lock:
                engine = self._cached(key)
            if engine is not None:
                return engine

            engine = await self._open(credential)
            async with self._lock:
                self._pools[key] = _PoolEntry(engine=engine, last_used=time.monotonic())
                self._opening.pop(key, None)
            return engine

    def _cached(self, key: tuple) -> Optional[AsyncEngine]:
        entry = self._pools.get(key)
        if entry is None:
            return None
        entry.last_used = time.monotonic()
        return entry.engine

    async def _open(self, credential: DBCredential) -> AsyncEngine:
        url = build_tenant_url(credential)
        self.logger.info(
            "Opening tenant pool",
            url=url.render_as_string(hide_password=True),
            credential_id=credential.id,
        )
        if settings.is_development:
            self.logger.debug("Tenant connection URL", url=url.render_as_string(hide_password=False))

        engine = self._engine_factory(
            url,
            connect_args=build_connect_args(credential),
            **TenantPoolConfig.get_engine_config()
        )
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except STORAGE_ERRORS as e:
            await engine.dispose()
            self.logger.error(
                "Tenant database unreachable",
                host=credential.db_host,
                database=credential.db_name,
                error=str(e),
            )
            raise TenantConnectionError(credential.db_host, credential.db_name, str(e))
        return engine

    def _take_idle(self, exclude: Optional[tuple] = None) -> List[tuple]:
        now = time.monotonic()
        stale = [
            key for key, entry in self._pools.items()
            if key != exclude and now - entry.last_used > self.idle_timeout
        ]
        return [(key, self._pools.pop(key)) for key in stale]

    async def _dispose(self, stale: List[tuple]) -> None:
        for key, entry in stale:
            await entry.engine.dispose()
            self.logger.info("Idle tenant pool closed", credential_id=key[0])

    async def release(self, credential: DBCredential) -> None:
        """Dispose the pool for one credential, if open."""
        async with self._lock:
            entry = self._pools.pop(credential.identity, None)
        if entry is not None:
            await entry.engine.dispose()

    async def close_all(self) -> None:
        async with self._lock:
            entries = list(self._pools.values())
            self._pools.clear()
        for entry in entries:
            await entry.engine.dispose()
        self.logger.info("Tenant pools closed", count=len(entries))

    @property
    def open_pools(self) -> int:
        return len(self._pools)


# Global manager instance
_manager: Optional[TenantConnectionManager] = None


def get_connection_manager() -> TenantConnectionManager:
    """Get or create the global tenant connection manager."""
    global _manager
    if _manager is None:
        _manager = TenantConnectionManager()
    return _manager


async def close_connection_manager() -> None:
    """Dispose every tenant pool."""
    global _manager
    if _manager:
        await _manager.close_all()
        _manager = None
