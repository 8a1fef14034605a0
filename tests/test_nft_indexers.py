"""
Test the NFT bid and NFT price indexers.
"""

from decimal import Decimal

import pytest

from webhook_indexer.indexer.core import ItemOutcome, WebhookPayload
from webhook_indexer.indexer.handlers import NFTBidIndexer, NFTPriceIndexer
from webhook_indexer.indexer.handlers.nft_prices import parse_listing_description

from conftest import BIDDER, BUYER, COLLECTION, NFT_MINT, SELLER, FakeEngine, FakeResult, make_payload


def payload(details, slot=200, signature="sig-nft"):
    return WebhookPayload.model_validate(make_payload(details, slot=slot, signature=signature))


# Bids

@pytest.mark.asyncio
async def test_top_level_bid_is_upserted_by_signature(fake_engine):
    details = {
        "type": "NFT_BID",
        "source": "MAGIC_EDEN",
        "mint": NFT_MINT,
        "bidder": BIDDER,
        "amount": "2.5",
        "auctionHouse": "E8cU1WiRWjanGxmn96ewBgk9vPTcL6AEZ1t6F6fkgUWe",
        "expiry": "2024-06-01T00:00:00Z",
    }
    indexer = NFTBidIndexer("idx-3", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "bids", payload(details))

    assert [r.outcome for r in results] == [ItemOutcome.APPLIED]
    [(sql, params)] = fake_engine.statements("INSERT INTO bids")
    assert "ON CONFLICT (signature)" in sql
    assert params["signature"] == "sig-nft"
    assert params["nft_mint"] == NFT_MINT
    assert params["bidder"] == BIDDER
    assert params["bid_amount"] == Decimal("2.5")
    assert params["bid_currency"] == "SOL"
    assert params["marketplace"] == "MAGIC_EDEN"
    assert params["expiry"].year == 2024
    assert params["slot"] == 200


@pytest.mark.asyncio
async def test_bid_from_events_array_respects_marketplaces(fake_engine):
    details = {
        "events": [
            {"type": "NFT_BID", "source": "MAGIC_EDEN", "data": {"mint": NFT_MINT, "bidder": BIDDER, "price": 1}},
            {"type": "NFT_BID", "source": "TENSOR", "data": {"mint": NFT_MINT, "bidder": BIDDER, "price": 3}},
        ]
    }
    indexer = NFTBidIndexer("idx-3", {"collection": COLLECTION, "marketplaces": ["tensor"]})

    results = await indexer.process(fake_engine, "bids", payload(details))

    assert [r.outcome for r in results] == [ItemOutcome.SKIPPED, ItemOutcome.APPLIED]
    [(_, params)] = fake_engine.statements("INSERT INTO bids")
    assert params["marketplace"] == "TENSOR"
    assert params["bid_amount"] == Decimal("3.0")


@pytest.mark.asyncio
async def test_bid_without_mint_is_skipped(fake_engine):
    details = {"description": f"{BIDDER} placed a bid for 3 SOL", "source": "TENSOR"}
    indexer = NFTBidIndexer("idx-3", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "bids", payload(details))

    assert [r.outcome for r in results] == [ItemOutcome.SKIPPED]
    assert results[0].reason == "missing essential bid data"
    assert fake_engine.executed == []


@pytest.mark.asyncio
async def test_bid_amount_recovered_from_description(fake_engine):
    details = {
        "type": "NFT_BID",
        "mint": NFT_MINT,
        "description": f"{BIDDER} placed a bid for 4.2 SOL on Cool Cat",
    }
    indexer = NFTBidIndexer("idx-3", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "bids", payload(details))

    assert results[0].outcome == ItemOutcome.APPLIED
    [(_, params)] = fake_engine.statements("INSERT INTO bids")
    assert params["bidder"] == BIDDER
    assert params["bid_amount"] == Decimal("4.2")
    assert params["marketplace"] == "UNKNOWN"


@pytest.mark.asyncio
async def test_bid_cancellation_deletes_open_bid(fake_engine):
    details = {
        "events": [
            {"type": "NFT_BID_CANCELLED", "data": {"mint": NFT_MINT, "bidder": BIDDER, "auctionHouse": "house"}},
        ]
    }
    indexer = NFTBidIndexer("idx-3", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "bids", payload(details))

    assert results[0].outcome == ItemOutcome.APPLIED
    [(sql, params)] = fake_engine.statements("DELETE FROM bids")
    assert sql.endswith("AND auction_house = :auction_house")
    assert params == {"nft_mint": NFT_MINT, "bidder": BIDDER, "auction_house": "house"}


@pytest.mark.asyncio
async def test_unrelated_payload_yields_no_items(fake_engine):
    indexer = NFTBidIndexer("idx-3", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "bids", payload({"type": "TRANSFER"}))

    assert results == []


# Listings, sales and cancellations

@pytest.mark.asyncio
async def test_listing_from_events_array(fake_engine):
    details = {
        "events": [
            {
                "type": "NFT_LISTING",
                "source": "MAGIC_EDEN",
                "data": {"nft": {"mint": NFT_MINT, "name": "Cool Cat #1"}, "seller": SELLER, "price": 12.5},
            }
        ]
    }
    indexer = NFTPriceIndexer("idx-4", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "listings", payload(details))

    assert results[0].outcome == ItemOutcome.APPLIED
    [(sql, params)] = fake_engine.statements("INSERT INTO listings AS t")
    assert "'listed'" in sql
    assert params["nft_mint"] == NFT_MINT
    assert params["nft_name"] == "Cool Cat #1"
    assert params["seller"] == SELLER
    assert params["price"] == Decimal("12.5")
    assert params["marketplace"] == "MAGIC_EDEN"


@pytest.mark.asyncio
async def test_listing_from_description(fake_engine):
    details = {
        "description": f"{SELLER} listed Cool Cat #2 for 7 SOL on TENSOR.",
        "instructions": [{"accounts": ["short", NFT_MINT]}],
    }
    indexer = NFTPriceIndexer("idx-4", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "listings", payload(details))

    assert results[0].outcome == ItemOutcome.APPLIED
    [(_, params)] = fake_engine.statements("INSERT INTO listings AS t")
    assert params["nft_mint"] == NFT_MINT
    assert params["nft_name"] == "Cool Cat #2"
    assert params["seller"] == SELLER
    assert params["price"] == Decimal("7.0")
    assert params["marketplace"] == "TENSOR"


def test_parse_listing_description():
    parsed = parse_listing_description("alice listed Mad Lad #42 for 99.5 SOL on MAGIC_EDEN.")
    assert parsed == {"seller": "alice", "price": 99.5, "marketplace": "MAGIC_EDEN", "name": "Mad Lad #42"}
    assert parse_listing_description("too short") == {}


@pytest.mark.asyncio
async def test_sale_flips_existing_listing():
    def responder(sql, params):
        if "SET status = 'sold'" in sql:
            return FakeResult(rowcount=1)
        return None

    engine = FakeEngine(responder)
    details = {
        "type": "NFT_SALE",
        "data": {"mint": NFT_MINT, "seller": SELLER, "buyer": BUYER, "amount": 8, "marketplace": "MAGIC_EDEN"},
    }
    indexer = NFTPriceIndexer("idx-4", {"collection": COLLECTION})

    results = await indexer.process(engine, "listings", payload(details))

    assert results[0].outcome == ItemOutcome.APPLIED
    assert results[0].rows == 1
    assert len(engine.statements("UPDATE listings SET status = 'sold'")) == 1
    assert engine.statements("INSERT INTO listings") == []
    assert engine.transactions == 1


@pytest.mark.asyncio
async def test_sale_without_listing_is_inserted():
    def responder(sql, params):
        if sql.startswith("UPDATE"):
            return FakeResult(rowcount=0)
        return None

    engine = FakeEngine(responder)
    details = {
        "type": "NFT_SALE",
        "data": {"mint": NFT_MINT, "seller": SELLER, "buyer": BUYER, "amount": 8},
    }
    indexer = NFTPriceIndexer("idx-4", {"collection": COLLECTION})

    results = await indexer.process(engine, "listings", payload(details))

    assert results[0].outcome == ItemOutcome.APPLIED
    [(sql, params)] = engine.statements("INSERT INTO listings AS t")
    assert "'sold'" in sql
    assert params["buyer"] == BUYER
    assert params["marketplace"] == "UNKNOWN"


@pytest.mark.asyncio
async def test_sale_buyer_recovered_from_description(fake_engine):
    details = {
        "type": "NFT_SALE",
        "data": {"mint": NFT_MINT, "amount": 5},
        "description": f"{SELLER} sold to {BUYER} for 5 SOL",
    }
    indexer = NFTPriceIndexer("idx-4", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "listings", payload(details))

    assert results[0].outcome == ItemOutcome.APPLIED
    [(_, params)] = fake_engine.statements("UPDATE listings SET status = 'sold'")
    assert params["seller"] == SELLER
    assert params["buyer"] == BUYER


@pytest.mark.asyncio
async def test_sale_missing_buyer_is_skipped(fake_engine):
    details = {"type": "NFT_SALE", "data": {"mint": NFT_MINT, "seller": SELLER, "amount": 8}}
    indexer = NFTPriceIndexer("idx-4", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "listings", payload(details))

    assert results[0].outcome == ItemOutcome.SKIPPED
    assert fake_engine.executed == []


@pytest.mark.asyncio
async def test_cancel_without_listing_records_cancellation():
    def responder(sql, params):
        if sql.startswith("UPDATE"):
            return FakeResult(rowcount=0)
        return None

    engine = FakeEngine(responder)
    details = {"type": "NFT_CANCEL_LISTING", "data": {"nft": {"mint": NFT_MINT}, "seller": SELLER}}
    indexer = NFTPriceIndexer("idx-4", {"collection": COLLECTION})

    results = await indexer.process(engine, "listings", payload(details))

    assert results[0].outcome == ItemOutcome.APPLIED
    [(update_sql, update_params)] = engine.statements("SET status = 'cancelled'")
    assert update_params["marketplace"] == "UNKNOWN"
    [(insert_sql, _)] = engine.statements("INSERT INTO listings")
    assert "ON CONFLICT (signature) DO NOTHING" in insert_sql


@pytest.mark.asyncio
async def test_events_array_without_price_events_stops_detection(fake_engine):
    details = {
        "events": [{"type": "TRANSFER"}],
        "description": f"{SELLER} listed Cool Cat for 1 SOL on TENSOR.",
    }
    indexer = NFTPriceIndexer("idx-4", {"collection": COLLECTION})

    results = await indexer.process(fake_engine, "listings", payload(details))

    assert results == []
