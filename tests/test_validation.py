"""
Test address, table name and parameter validation.
"""

import pytest

from webhook_indexer.core.exceptions import InvalidIndexerParamsError, InvalidTableNameError, UnknownIndexerTypeError
from webhook_indexer.indexer.core.params import NFTParams, TokenParams, parse_params
from webhook_indexer.utils.validation import SolanaValidator, format_table_name, validate_table_name

from conftest import COLLECTION, SOL_MINT, USDC_MINT


def test_valid_pubkeys():
    assert SolanaValidator.is_valid_pubkey(SOL_MINT)
    assert SolanaValidator.is_valid_pubkey(USDC_MINT)


@pytest.mark.parametrize("address", ["", "short", "0OIl" * 11, "not a key at all"])
def test_invalid_pubkeys(address):
    assert not SolanaValidator.is_valid_pubkey(address)


def test_invalid_addresses_subset():
    assert SolanaValidator.invalid_addresses([SOL_MINT, "bogus"]) == ["bogus"]


@pytest.mark.parametrize("name", ["prices", "nft_bids_2024", "A"])
def test_validate_table_name_accepts(name):
    assert validate_table_name(name) == name


@pytest.mark.parametrize("name", ["", "1prices", "_prices", "prices-table", "drop table", "a" * 64])
def test_validate_table_name_rejects(name):
    with pytest.raises(InvalidTableNameError):
        validate_table_name(name)


def test_format_table_name():
    assert format_table_name("prices") == "prices"
    assert format_table_name("my-table.v2") == "my_table_v2"
    assert format_table_name("2024_prices") == "idx_2024_prices"
    assert format_table_name("") == "idx_"


def test_token_params_dedupes_case_insensitively():
    params = parse_params(TokenParams, "token_prices", {"tokens": [SOL_MINT, f" {SOL_MINT} ", USDC_MINT]})
    assert params.tokens == [SOL_MINT, USDC_MINT]
    assert params.platforms == []


def test_token_params_require_tokens():
    with pytest.raises(InvalidIndexerParamsError) as exc_info:
        parse_params(TokenParams, "token_prices", {"tokens": []})
    assert "tokens" in exc_info.value.message


def test_token_params_reject_invalid_address():
    with pytest.raises(InvalidIndexerParamsError):
        parse_params(TokenParams, "token_borrow", {"tokens": ["nope"]})


def test_params_must_be_object():
    with pytest.raises(InvalidIndexerParamsError):
        parse_params(TokenParams, "token_prices", None)
    with pytest.raises(InvalidIndexerParamsError):
        parse_params(NFTParams, "nft_bids", ["not", "a", "dict"])


def test_nft_params():
    params = parse_params(
        NFTParams,
        "nft_bids",
        {"collection": COLLECTION, "marketplaces": [" MAGIC_EDEN ", "", None, "TENSOR"]},
    )
    assert params.collection == COLLECTION
    assert params.marketplaces == ["MAGIC_EDEN", "TENSOR"]
    assert params.addresses() == [COLLECTION]


def test_nft_params_require_collection():
    with pytest.raises(InvalidIndexerParamsError):
        parse_params(NFTParams, "nft_prices", {"collection": "  "})
    with pytest.raises(InvalidIndexerParamsError):
        parse_params(NFTParams, "nft_prices", {})


def test_registry_knows_all_variants(registry):
    assert sorted(registry.supported_types) == ["nft_bids", "nft_prices", "token_borrow", "token_prices"]


@pytest.mark.parametrize("tag", ["token_swaps", ""])
def test_registry_rejects_unknown_tags(registry, tag):
    with pytest.raises(UnknownIndexerTypeError):
        registry.resolve_type(tag)
