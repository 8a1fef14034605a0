"""
Indexer, credential and subscription schemas for the API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from webhook_indexer.models import IndexerStatus, IndexerType
from webhook_indexer.utils.validation import SolanaValidator, TABLE_NAME_PATTERN


class IndexerCreateRequest(BaseModel):
    """Indexer creation request."""
    db_credential_id: str = Field(description="Target database credential")
    indexer_type: IndexerType
    params: Dict[str, Any] = Field(default_factory=dict, description="Variant-specific parameters")
    target_table: str = Field(min_length=1, max_length=63)

    @field_validator("target_table")
    @classmethod
    def validate_target_table(cls, v: str) -> str:
        if not TABLE_NAME_PATTERN.match(v):
            raise ValueError(
                "table name must start with a letter and contain only letters, numbers, and underscores"
            )
        return v


class IndexerResponse(BaseModel):
    """Indexer record as returned to its owner."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    db_credential_id: str
    indexer_type: IndexerType
    params: Dict[str, Any] = Field(default_factory=dict)
    target_table: str
    webhook_id: Optional[str] = None
    status: IndexerStatus
    last_indexed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class IndexingLogResponse(BaseModel):
    """One indexing log entry."""
    id: int
    indexer_id: str
    event_type: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @field_validator("details", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class CredentialCreateRequest(BaseModel):
    """Tenant database credential."""
    name: Optional[str] = Field(default=None, max_length=100)
    db_host: str = Field(min_length=1, max_length=255)
    db_port: int = Field(default=5432, ge=1, le=65535)
    db_name: str = Field(min_length=1, max_length=100)
    db_user: str = Field(min_length=1, max_length=100)
    db_password: str = Field(max_length=255)
    db_ssl_mode: str = Field(default="disable")

    @field_validator("db_ssl_mode")
    @classmethod
    def validate_ssl_mode(cls, v: str) -> str:
        allowed = ["disable", "allow", "prefer", "require", "verify-ca", "verify-full"]
        if v not in allowed:
            raise ValueError(f"ssl mode must be one of: {allowed}")
        return v


class CredentialResponse(BaseModel):
    """Credential without its password."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: Optional[str] = None
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_ssl_mode: str
    created_at: Optional[datetime] = None


class SubscriptionAddressRequest(BaseModel):
    """Addresses an owner wants watched by the shared subscription."""
    owner_id: str = Field(min_length=1)
    addresses: List[str] = Field(min_length=1)

    @field_validator("addresses")
    @classmethod
    def validate_addresses(cls, v: List[str]) -> List[str]:
        invalid = SolanaValidator.invalid_addresses(v)
        if invalid:
            raise ValueError(f"invalid address: {invalid[0]}")
        return v
