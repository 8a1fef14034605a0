"""
Shared fixtures and in-memory fakes for the test suite.
"""

import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import pytest

from webhook_indexer.core.exceptions import (
    CredentialNotFoundError,
    IndexerNotFoundError,
    MetadataFetchError,
    UpstreamWebhookError,
)
from webhook_indexer.indexer import create_registry
from webhook_indexer.models import DBCredential, Indexer, IndexerStatus, IndexerType, IndexingLog
from webhook_indexer.services.helius_client import WebhookConfig
from webhook_indexer.services.mapping_registry import WebhookMappingRegistry
from webhook_indexer.services.metadata_fetcher import TokenMetadata


SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY2nPgW2P3qQa9Fh"
COLLECTION = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
NFT_MINT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
BIDDER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
SELLER = "2wmVCSfPxGPjrnMMn7rchp4uaeoTqN39mXFC2zhPdri9"
BUYER = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"

USER_ID = "tenant-1"


# Tenant database fakes

class FakeResult:
    """Stands in for a SQLAlchemy CursorResult."""

    def __init__(
        self,
        rowcount: int = 1,
        scalar: Any = None,
        rows: Optional[List[tuple]] = None,
        mapping_rows: Optional[List[Dict[str, Any]]] = None
    ):
        self.rowcount = rowcount
        self._scalar = scalar
        self._rows = rows or []
        self._mapping_rows = mapping_rows or []

    def scalar(self):
        return self._scalar

    def fetchall(self):
        return list(self._rows)

    def mappings(self):
        return self

    def all(self):
        return list(self._mapping_rows)


class FakeConnection:
    def __init__(self, engine: "FakeEngine"):
        self.engine = engine

    async def execute(self, statement, params=None):
        sql = " ".join(str(statement).split())
        self.engine.executed.append((sql, dict(params or {})))
        if self.engine.responder is not None:
            result = self.engine.responder(sql, params or {})
            if result is not None:
                return result
        return FakeResult()


class FakeEngine:
    """Records every statement executed through begin() and connect()."""

    def __init__(self, responder: Optional[Callable[[str, Dict[str, Any]], Optional[FakeResult]]] = None):
        self.responder = responder
        self.executed: List[tuple] = []
        self.transactions = 0
        self.disposed = False

    @asynccontextmanager
    async def begin(self):
        self.transactions += 1
        yield FakeConnection(self)

    @asynccontextmanager
    async def connect(self):
        yield FakeConnection(self)

    async def dispose(self):
        self.disposed = True

    def statements(self, fragment: str) -> List[tuple]:
        return [(sql, params) for sql, params in self.executed if fragment in sql]


# Upstream webhook API fake

class FakeWebhookAPI:
    """In-memory webhook provider."""

    def __init__(self):
        self.webhooks: Dict[str, WebhookConfig] = {}
        self.calls: List[tuple] = []
        self.fail_get = False
        self.fail_update = False
        self.fail_create = False
        self.fail_delete = False
        self._ids = itertools.count(1)

    async def create_webhook(self, config: WebhookConfig) -> str:
        self.calls.append(("create", list(config.account_addresses)))
        if self.fail_create:
            raise UpstreamWebhookError("create", "status 500: boom", status=500)
        webhook_id = f"wh-{next(self._ids)}"
        self.webhooks[webhook_id] = WebhookConfig(
            webhook_url=config.webhook_url,
            account_addresses=list(config.account_addresses),
            webhook_type=config.webhook_type,
            account_address_transaction_types=config.account_address_transaction_types,
            blocks=config.blocks,
            webhook_id=webhook_id,
        )
        return webhook_id

    async def get_webhook(self, webhook_id: str) -> WebhookConfig:
        self.calls.append(("get", webhook_id))
        if self.fail_get or webhook_id not in self.webhooks:
            raise UpstreamWebhookError("get", "status 404: not found", status=404)
        return self.webhooks[webhook_id]

    async def update_webhook(self, webhook_id: str, config: WebhookConfig) -> None:
        self.calls.append(("update", webhook_id, list(config.account_addresses)))
        if self.fail_update:
            raise UpstreamWebhookError("update", "status 400: bad request", status=400)
        self.webhooks[webhook_id] = config

    async def delete_webhook(self, webhook_id: str) -> None:
        self.calls.append(("delete", webhook_id))
        if self.fail_delete:
            raise UpstreamWebhookError("delete", "status 500: boom", status=500)
        self.webhooks.pop(webhook_id, None)

    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]


# Metadata store fake

class FakeStore:
    """Dictionary-backed stand-in for IndexerStore."""

    def __init__(self):
        self.indexers: Dict[str, Indexer] = {}
        self.credentials: Dict[str, DBCredential] = {}
        self.logs: List[IndexingLog] = []
        self.get_indexer_failures = 0
        self._ids = itertools.count(1)
        self._log_ids = itertools.count(1)

    def add_credential(self, credential_id: str = "cred-1", user_id: str = USER_ID, **overrides) -> DBCredential:
        values = dict(
            id=credential_id,
            user_id=user_id,
            db_host="tenant-db.internal",
            db_port=5432,
            db_name="tenant",
            db_user="indexer",
            db_password="s3cret",
            db_ssl_mode="disable",
        )
        values.update(overrides)
        credential = DBCredential(**values)
        self.credentials[credential_id] = credential
        return credential

    def add_indexer(
        self,
        indexer_type: IndexerType,
        params: Dict[str, Any],
        indexer_id: Optional[str] = None,
        status: IndexerStatus = IndexerStatus.ACTIVE,
        webhook_id: Optional[str] = None,
        credential_id: str = "cred-1",
        target_table: str = "target_rows",
        user_id: str = USER_ID
    ) -> Indexer:
        indexer = Indexer(
            id=indexer_id or f"idx-{next(self._ids)}",
            user_id=user_id,
            db_credential_id=credential_id,
            indexer_type=indexer_type,
            params=params,
            target_table=target_table,
            webhook_id=webhook_id,
            status=status,
        )
        self.indexers[indexer.id] = indexer
        return indexer

    async def create_indexer(self, user_id, db_credential_id, indexer_type, params, target_table) -> Indexer:
        return self.add_indexer(
            indexer_type,
            params,
            status=IndexerStatus.PENDING,
            credential_id=db_credential_id,
            target_table=target_table,
            user_id=user_id,
        )

    async def get_indexer(self, indexer_id: str) -> Indexer:
        if self.get_indexer_failures:
            self.get_indexer_failures -= 1
            raise IndexerNotFoundError(indexer_id)
        if indexer_id not in self.indexers:
            raise IndexerNotFoundError(indexer_id)
        return self.indexers[indexer_id]

    async def get_indexer_by_webhook_id(self, webhook_id: str) -> Indexer:
        for indexer in self.indexers.values():
            if indexer.webhook_id == webhook_id:
                return indexer
        raise IndexerNotFoundError(webhook_id)

    async def list_indexers(self, user_id: str) -> List[Indexer]:
        return [i for i in self.indexers.values() if i.user_id == user_id]

    async def list_indexers_with_webhook(self) -> List[Indexer]:
        return [i for i in self.indexers.values() if i.webhook_id]

    async def update_status(self, indexer_id, status, error_message=None) -> None:
        indexer = self.indexers[indexer_id]
        indexer.status = status
        indexer.error_message = error_message

    async def update_webhook_id(self, indexer_id, webhook_id) -> None:
        self.indexers[indexer_id].webhook_id = webhook_id

    async def update_last_indexed(self, indexer_id, at=None) -> None:
        self.indexers[indexer_id].last_indexed_at = at or datetime.utcnow()

    async def delete_indexer(self, indexer_id, user_id) -> None:
        indexer = self.indexers.get(indexer_id)
        if indexer is None or indexer.user_id != user_id:
            raise IndexerNotFoundError(indexer_id)
        del self.indexers[indexer_id]

    async def append_log(self, indexer_id, event_type, message, details=None) -> None:
        log_id = next(self._log_ids)
        self.logs.append(IndexingLog(
            id=log_id,
            indexer_id=indexer_id,
            event_type=event_type,
            message=message,
            details=details,
            created_at=datetime(2024, 1, 1) + timedelta(seconds=log_id),
        ))

    async def list_logs(self, indexer_id, limit=50, offset=0) -> List[IndexingLog]:
        entries = [log for log in self.logs if log.indexer_id == indexer_id]
        entries.sort(key=lambda log: log.id, reverse=True)
        return entries[offset:offset + limit]

    async def get_credential(self, credential_id) -> DBCredential:
        if credential_id not in self.credentials:
            raise CredentialNotFoundError(credential_id)
        return self.credentials[credential_id]

    async def create_credential(self, user_id, db_host, db_name, db_user, db_password,
                                db_port=5432, db_ssl_mode="disable", name=None) -> DBCredential:
        return self.add_credential(
            f"cred-{len(self.credentials) + 1}",
            user_id=user_id,
            name=name,
            db_host=db_host,
            db_port=db_port,
            db_name=db_name,
            db_user=db_user,
            db_password=db_password,
            db_ssl_mode=db_ssl_mode,
        )

    async def list_credentials(self, user_id) -> List[DBCredential]:
        return [c for c in self.credentials.values() if c.user_id == user_id]

    def log_types(self, indexer_id: Optional[str] = None) -> List[str]:
        return [
            log.event_type for log in self.logs
            if indexer_id is None or log.indexer_id == indexer_id
        ]


# Connection manager and metadata fakes

class FakeConnections:
    """Hands out one engine per credential id."""

    def __init__(self, engine: Optional[FakeEngine] = None, error: Optional[Exception] = None):
        self.engine = engine or FakeEngine()
        self.error = error
        self.requested: List[str] = []

    async def pool_for(self, credential: DBCredential) -> FakeEngine:
        self.requested.append(credential.id)
        if self.error is not None:
            raise self.error
        return self.engine


class FakeMetadataSource:
    """Returns canned metadata and records every lookup."""

    def __init__(self, known: Optional[Dict[str, TokenMetadata]] = None):
        self.known = known or {}
        self.requests: List[List[str]] = []

    async def fetch(self, address: str) -> TokenMetadata:
        if address not in self.known:
            raise MetadataFetchError(address, "not found")
        return self.known[address]

    async def fetch_many(self, addresses) -> Dict[str, TokenMetadata]:
        addresses = list(addresses)
        self.requests.append(addresses)
        return {a: self.known[a] for a in addresses if a in self.known}


def make_payload(details: Any, slot: int = 100, signature: str = "sig-1", transaction_id: str = "") -> Dict[str, Any]:
    """Build a raw inbound envelope."""
    return {
        "accountData": [],
        "slot": slot,
        "transaction": {
            "id": transaction_id,
            "signatures": [signature] if signature else [],
            "feePayerId": "",
            "type": "",
            "statusMessage": "",
            "enhancedDetails": details,
        },
    }


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def webhook_api():
    return FakeWebhookAPI()


@pytest.fixture
def store():
    store = FakeStore()
    store.add_credential()
    return store


@pytest.fixture
def registry():
    return create_registry()


@pytest.fixture
def mappings():
    return WebhookMappingRegistry()


@pytest.fixture
def connections(fake_engine):
    return FakeConnections(fake_engine)
