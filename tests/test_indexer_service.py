"""
Test indexer lifecycle: creation, status changes, deletion and log reads.
"""

import pytest

from webhook_indexer.core.exceptions import (
    CredentialNotFoundError,
    IndexerNotFoundError,
    InvalidIndexerParamsError,
    InvalidStatusTransitionError,
    InvalidTableNameError,
    TenantConnectionError,
    UnknownIndexerTypeError,
    UpstreamWebhookError,
)
from webhook_indexer.models import IndexerStatus, IndexerType, LogEventType
from webhook_indexer.services.indexer_service import IndexerService
from webhook_indexer.services.subscription_manager import SubscriptionManager

from conftest import (
    COLLECTION,
    SOL_MINT,
    USER_ID,
    FakeConnections,
    FakeEngine,
    FakeResult,
)


BASE_URL = "https://indexer.example"
TOKEN_PARAMS = {"tokens": [SOL_MINT]}


def make_service(store, registry, mappings, connections, webhook_api=None, **kwargs):
    return IndexerService(
        store,
        registry,
        mappings,
        connections,
        webhook_api=webhook_api,
        callback_base_url=BASE_URL,
        **kwargs,
    )


@pytest.fixture
def service(store, registry, mappings, connections, webhook_api):
    return make_service(store, registry, mappings, connections, webhook_api)


# Creation

@pytest.mark.asyncio
async def test_create_indexer_provisions_everything(service, store, mappings, webhook_api, connections):
    indexer = await service.create_indexer(USER_ID, "cred-1", "token_prices", TOKEN_PARAMS, "prices")

    assert indexer.status == IndexerStatus.ACTIVE
    assert indexer.indexer_type == IndexerType.TOKEN_PRICES
    assert indexer.webhook_id == "wh-1"
    assert await mappings.lookup("wh-1") == indexer.id

    webhook = webhook_api.webhooks["wh-1"]
    assert webhook.account_addresses == [SOL_MINT]
    assert webhook.webhook_url.startswith(f"{BASE_URL}/webhooks?")
    assert f"id={indexer.id}" in webhook.webhook_url

    assert connections.engine.statements("CREATE TABLE IF NOT EXISTS prices")
    assert store.log_types(indexer.id) == [LogEventType.INITIALIZATION, LogEventType.WEBHOOK_CREATION]


@pytest.mark.asyncio
async def test_create_nft_indexer_watches_collection(service, webhook_api):
    await service.create_indexer(USER_ID, "cred-1", IndexerType.NFT_BIDS, {"collection": COLLECTION}, "bids")

    assert webhook_api.webhooks["wh-1"].account_addresses == [COLLECTION]


@pytest.mark.parametrize("indexer_type, params, table, error", [
    ("token_prices", TOKEN_PARAMS, "1bad-table", InvalidTableNameError),
    ("token_prices", TOKEN_PARAMS, "prices; drop", InvalidTableNameError),
    ("token_prices", {"tokens": ["not-a-key"]}, "prices", InvalidIndexerParamsError),
    ("nft_bids", {}, "bids", InvalidIndexerParamsError),
    ("token_swaps", TOKEN_PARAMS, "prices", UnknownIndexerTypeError),
])
@pytest.mark.asyncio
async def test_invalid_requests_leave_no_record(service, store, webhook_api, indexer_type, params, table, error):
    with pytest.raises(error):
        await service.create_indexer(USER_ID, "cred-1", indexer_type, params, table)

    assert store.indexers == {}
    assert webhook_api.calls == []


@pytest.mark.asyncio
async def test_foreign_credential_is_rejected(service, store):
    store.add_credential("cred-9", user_id="someone-else")

    with pytest.raises(CredentialNotFoundError):
        await service.create_indexer(USER_ID, "cred-9", "token_prices", TOKEN_PARAMS, "prices")

    assert store.indexers == {}


@pytest.mark.asyncio
async def test_initialization_failure_marks_indexer_failed(store, registry, mappings, webhook_api):
    error = TenantConnectionError("tenant-db.internal", "tenant", "refused")
    service = make_service(store, registry, mappings, FakeConnections(error=error), webhook_api)

    with pytest.raises(TenantConnectionError):
        await service.create_indexer(USER_ID, "cred-1", "token_prices", TOKEN_PARAMS, "prices")

    [indexer] = store.indexers.values()
    assert indexer.status == IndexerStatus.FAILED
    assert indexer.error_message.startswith("Failed to initialize indexer: ")
    assert "refused" in indexer.error_message
    assert store.log_types(indexer.id) == [LogEventType.ERROR]
    assert webhook_api.calls == []


@pytest.mark.asyncio
async def test_webhook_failure_marks_indexer_failed(service, store, webhook_api, mappings):
    webhook_api.fail_create = True

    with pytest.raises(UpstreamWebhookError):
        await service.create_indexer(USER_ID, "cred-1", "token_prices", TOKEN_PARAMS, "prices")

    [indexer] = store.indexers.values()
    assert indexer.status == IndexerStatus.FAILED
    assert indexer.error_message.startswith("Failed to create webhook: ")
    assert indexer.webhook_id is None
    assert len(mappings) == 0


@pytest.mark.asyncio
async def test_create_without_webhook_api_still_activates(store, registry, mappings, connections):
    service = make_service(store, registry, mappings, connections)

    indexer = await service.create_indexer(USER_ID, "cred-1", "token_borrow", TOKEN_PARAMS, "lending")

    assert indexer.status == IndexerStatus.ACTIVE
    assert indexer.webhook_id is None
    assert store.log_types(indexer.id) == [LogEventType.INITIALIZATION]


# Status

@pytest.mark.asyncio
async def test_pause_and_resume(service, store):
    indexer = store.add_indexer(IndexerType.TOKEN_PRICES, TOKEN_PARAMS)

    paused = await service.pause_indexer(USER_ID, indexer.id)
    assert paused.status == IndexerStatus.PAUSED

    resumed = await service.resume_indexer(USER_ID, indexer.id)
    assert resumed.status == IndexerStatus.ACTIVE

    changes = [log.details for log in store.logs if log.event_type == LogEventType.STATUS_CHANGE]
    assert changes == [{"from": "active", "to": "paused"}, {"from": "paused", "to": "active"}]


@pytest.mark.parametrize("status, action", [
    (IndexerStatus.PAUSED, "pause_indexer"),
    (IndexerStatus.ACTIVE, "resume_indexer"),
    (IndexerStatus.FAILED, "resume_indexer"),
    (IndexerStatus.FAILED, "pause_indexer"),
    (IndexerStatus.PENDING, "resume_indexer"),
])
@pytest.mark.asyncio
async def test_invalid_transitions(service, store, status, action):
    indexer = store.add_indexer(IndexerType.TOKEN_PRICES, TOKEN_PARAMS, status=status)

    with pytest.raises(InvalidStatusTransitionError):
        await getattr(service, action)(USER_ID, indexer.id)

    assert indexer.status == status


@pytest.mark.asyncio
async def test_other_tenants_indexer_is_not_found(service, store):
    indexer = store.add_indexer(IndexerType.TOKEN_PRICES, TOKEN_PARAMS, user_id="someone-else")

    with pytest.raises(IndexerNotFoundError):
        await service.get_indexer(USER_ID, indexer.id)
    with pytest.raises(IndexerNotFoundError):
        await service.pause_indexer(USER_ID, indexer.id)
    assert await service.list_indexers(USER_ID) == []


# Deletion

@pytest.mark.asyncio
async def test_delete_removes_webhook_and_mapping(service, store, mappings, webhook_api, registry):
    indexer = await service.create_indexer(USER_ID, "cred-1", "token_prices", TOKEN_PARAMS, "prices")

    await service.delete_indexer(USER_ID, indexer.id)

    assert webhook_api.webhooks == {}
    assert await mappings.lookup("wh-1") is None
    assert indexer.id not in store.indexers
    assert registry.cached_ids() == []


@pytest.mark.asyncio
async def test_delete_survives_upstream_failure(service, store, webhook_api):
    indexer = await service.create_indexer(USER_ID, "cred-1", "token_prices", TOKEN_PARAMS, "prices")
    webhook_api.fail_delete = True

    await service.delete_indexer(USER_ID, indexer.id)

    assert indexer.id not in store.indexers


@pytest.mark.asyncio
async def test_delete_releases_shared_addresses(store, registry, mappings, connections, webhook_api):
    subscriptions = SubscriptionManager(webhook_api, callback_url=f"{BASE_URL}/webhooks")
    service = make_service(store, registry, mappings, connections, subscriptions=subscriptions)
    indexer = store.add_indexer(IndexerType.TOKEN_PRICES, TOKEN_PARAMS)
    await subscriptions.add_addresses([SOL_MINT], indexer.id)

    await service.delete_indexer(USER_ID, indexer.id)

    assert subscriptions.current_addresses() == []


@pytest.mark.asyncio
async def test_delete_foreign_indexer(service, store):
    indexer = store.add_indexer(IndexerType.TOKEN_PRICES, TOKEN_PARAMS, user_id="someone-else")

    with pytest.raises(IndexerNotFoundError):
        await service.delete_indexer(USER_ID, indexer.id)
    assert indexer.id in store.indexers


# Logs and startup

@pytest.mark.asyncio
async def test_logs_get_recent_rows_attached(store, registry, mappings, webhook_api):
    rows = [{"token_address": SOL_MINT, "slot": 10}]

    def responder(sql, params):
        if sql.startswith("SELECT * FROM prices"):
            return FakeResult(mapping_rows=rows)
        return None

    engine = FakeEngine(responder)
    service = make_service(store, registry, mappings, FakeConnections(engine), webhook_api)
    indexer = store.add_indexer(IndexerType.TOKEN_PRICES, TOKEN_PARAMS, target_table="prices")
    await store.append_log(indexer.id, LogEventType.SUCCESS, "ok", {"slot": 10})
    await store.append_log(indexer.id, LogEventType.ERROR, "boom", {"error": "boom"})
    await store.append_log(indexer.id, LogEventType.TOKEN_DATA, "data", {"token_data": rows})

    entries = await service.get_indexing_logs(USER_ID, indexer.id)

    assert [e["event_type"] for e in entries] == ["token_data", "error", "success"]
    assert "latest_rows" not in entries[0]["details"]
    assert "latest_rows" not in entries[1]["details"]
    assert entries[2]["details"]["latest_rows"] == rows
    [(sql, params)] = engine.statements("SELECT * FROM prices")
    assert "slot <= :max_slot" in sql
    assert params["max_slot"] == 10


@pytest.mark.asyncio
async def test_logs_are_paginated(service, store):
    indexer = store.add_indexer(IndexerType.NFT_BIDS, {"collection": COLLECTION})
    for i in range(5):
        await store.append_log(indexer.id, LogEventType.ERROR, f"error {i}", {})

    entries = await service.get_indexing_logs(USER_ID, indexer.id, limit=2, offset=1)

    assert [e["message"] for e in entries] == ["error 3", "error 2"]


@pytest.mark.asyncio
async def test_restore_mappings(service, store, mappings):
    first = store.add_indexer(IndexerType.TOKEN_PRICES, TOKEN_PARAMS, webhook_id="wh-a")
    second = store.add_indexer(IndexerType.NFT_BIDS, {"collection": COLLECTION}, webhook_id="wh-b")
    store.add_indexer(IndexerType.NFT_BIDS, {"collection": COLLECTION})

    assert await service.restore_mappings() == 2
    assert await mappings.all_mappings() == {"wh-a": first.id, "wh-b": second.id}
