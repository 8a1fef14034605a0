"""
Test shape matchers, field helpers and envelope decoding.
"""

import json

import pytest

from webhook_indexer.core.exceptions import PayloadDecodeError
from webhook_indexer.indexer.core.matchers import (
    ShapeMatcher,
    ShapeSkip,
    apply_matchers,
    as_number,
    first_number,
    first_str,
    number_after,
    word_after,
)
from webhook_indexer.indexer.core.types import ItemOutcome, ItemResult, ProcessingStats, WebhookPayload

from conftest import make_payload


def _matcher(name, key, exclusive=False):
    return ShapeMatcher(name, lambda d: [d[key]] if key in d else None, exclusive=exclusive)


def test_apply_matchers_collects_in_order():
    matchers = [_matcher("a", "a"), _matcher("b", "b")]
    assert apply_matchers(matchers, {"a": 1, "b": 2}) == [("a", 1), ("b", 2)]


def test_exclusive_matcher_stops_scan():
    matchers = [_matcher("a", "a", exclusive=True), _matcher("b", "b")]
    assert apply_matchers(matchers, {"a": 1, "b": 2}) == [("a", 1)]
    assert apply_matchers(matchers, {"b": 2}) == [("b", 2)]


def test_skip_items_pass_through():
    matcher = ShapeMatcher("s", lambda d: [ShapeSkip("bad entry", key="k")])
    [(name, item)] = apply_matchers([matcher], {})
    assert name == "s"
    assert item == ShapeSkip("bad entry", key="k")


def test_field_helpers():
    data = {"empty": "", "name": "Wrapped SOL", "n": 5, "flag": True, "s": "1.5"}
    assert first_str(data, "empty", "name") == "Wrapped SOL"
    assert first_str(None, "name") == ""
    assert first_number(data, "flag", "n") == 5.0
    assert first_number(data, "s") is None
    assert first_number(data, "s", allow_string=True) == 1.5
    assert as_number("abc", allow_string=True) is None


def test_description_helpers():
    parts = "alice listed Cool Cat for 12.5 SOL on MAGIC_EDEN.".split(" ")
    assert number_after(parts, "for") == 12.5
    assert word_after(parts, "on") == "MAGIC_EDEN."
    assert word_after(parts, "missing") is None


def test_decode_details_from_object_and_string():
    details = {"type": "SWAP"}
    assert WebhookPayload.model_validate(make_payload(details)).decode_details() == details
    encoded = WebhookPayload.model_validate(make_payload(json.dumps(details)))
    assert encoded.decode_details() == details


@pytest.mark.parametrize("details", [None, "{not json", "[1, 2]", 42])
def test_decode_details_rejects(details):
    payload = WebhookPayload.model_validate(make_payload(details))
    with pytest.raises(PayloadDecodeError):
        payload.decode_details()


def test_payload_signature_properties():
    payload = WebhookPayload.model_validate(make_payload({}, signature="first", transaction_id="tx-9"))
    assert payload.transaction_id == "first"
    assert payload.signature == "tx-9"

    no_id = WebhookPayload.model_validate(make_payload({}, signature="first"))
    assert no_id.signature == "first"


def test_payload_tolerates_nulls():
    raw = make_payload({})
    raw["accountData"] = None
    raw["transaction"]["signatures"] = None
    payload = WebhookPayload.model_validate(raw)
    assert payload.account_data == []
    assert payload.signatures == []
    assert payload.transaction_id == ""


def test_processing_stats_record_results():
    stats = ProcessingStats()
    stats.record_results([
        ItemResult.applied("swap", "a"),
        ItemResult.skipped("swap", "untracked"),
        ItemResult.failed("swap", "boom"),
        ItemResult.applied("swap", "b"),
    ])
    assert (stats.items_applied, stats.items_skipped, stats.items_failed) == (2, 1, 1)


def test_item_result_to_dict():
    assert ItemResult.applied("swap", "a", rows=2).to_dict() == {
        "kind": "swap", "outcome": "applied", "key": "a", "rows": 2,
    }
    assert ItemResult.skipped("event", "no signatures").outcome == ItemOutcome.SKIPPED
