"""
Typed parameter schemas for each indexer variant.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from webhook_indexer.core.exceptions import InvalidIndexerParamsError
from webhook_indexer.utils.validation import SolanaValidator


class NFTParams(BaseModel):
    """Parameters for NFT bid and NFT price indexers."""
    collection: str
    marketplaces: List[str] = Field(default_factory=list)

    @field_validator("collection")
    @classmethod
    def validate_collection(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("collection address is required")
        if not SolanaValidator.is_valid_pubkey(v):
            raise ValueError(f"invalid collection address: {v}")
        return v

    @field_validator("marketplaces", mode="before")
    @classmethod
    def clean_marketplaces(cls, v: Any) -> Any:
        if v is None:
            return []
        return [m.strip() for m in v if isinstance(m, str) and m.strip()]

    def addresses(self) -> List[str]:
        return [self.collection]


class TokenParams(BaseModel):
    """Parameters for token price and token borrow indexers."""
    tokens: List[str]
    platforms: List[str] = Field(default_factory=list)

    @field_validator("tokens")
    @classmethod
    def validate_tokens(cls, v: List[str]) -> List[str]:
        tokens = [t.strip() for t in v if t and t.strip()]
        if not tokens:
            raise ValueError("at least one token address is required")
        invalid = SolanaValidator.invalid_addresses(tokens)
        if invalid:
            raise ValueError(f"invalid token address: {invalid[0]}")
        # keep first occurrence order, drop case-insensitive duplicates
        seen = set()
        unique = []
        for token in tokens:
            if token.lower() not in seen:
                seen.add(token.lower())
                unique.append(token)
        return unique

    @field_validator("platforms", mode="before")
    @classmethod
    def clean_platforms(cls, v: Any) -> Any:
        if v is None:
            return []
        return [p.strip() for p in v if isinstance(p, str) and p.strip()]

    def addresses(self) -> List[str]:
        return list(self.tokens)


ParamsT = TypeVar("ParamsT", bound=BaseModel)


def parse_params(model: Type[ParamsT], indexer_type: str, params: Optional[Dict[str, Any]]) -> ParamsT:
    """
    Validate a raw JSON parameter blob against a variant's schema.

    Raises:
        InvalidIndexerParamsError: If the blob is missing or invalid
    """
    if not isinstance(params, dict):
        raise InvalidIndexerParamsError(indexer_type, "parameters must be a JSON object")
    try:
        return model.model_validate(params)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "params"
        raise InvalidIndexerParamsError(indexer_type, f"{location}: {first.get('msg')}")
