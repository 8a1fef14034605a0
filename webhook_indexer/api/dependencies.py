"""
API dependencies for FastAPI endpoints.
Provides the caller's tenant id, service instances and error translation.
"""

from typing import Optional

from fastapi import Header, HTTPException, Query, status

import structlog

from webhook_indexer.core.exceptions import (
    AuthenticationError,
    ExternalServiceError,
    IndexerNotActiveError,
    NotFoundError,
    ValidationError,
    WebhookIndexerException,
)
from webhook_indexer.services.dispatcher import Dispatcher, get_dispatcher
from webhook_indexer.services.indexer_service import IndexerService, get_indexer_service
from webhook_indexer.services.mapping_registry import WebhookMappingRegistry, get_mapping_registry
from webhook_indexer.services.metadata_store import IndexerStore, get_indexer_store
from webhook_indexer.services.subscription_manager import SubscriptionManager, get_subscription_manager

from .schemas.common import PaginationParams


logger = structlog.get_logger(__name__)


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, description="Tenant identifier")
) -> str:
    """Tenant id supplied by the upstream gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "MISSING_USER_ID",
                "message": "X-User-ID header is required"
            }
        )
    return x_user_id.strip()


async def get_pagination_params(
    limit: int = Query(50, ge=1, le=1000, description="Number of items per page"),
    offset: int = Query(0, ge=0, description="Number of items to skip")
) -> PaginationParams:
    """Get pagination parameters."""
    return PaginationParams(limit=limit, offset=offset)


def indexer_service() -> IndexerService:
    return get_indexer_service()


def dispatcher() -> Dispatcher:
    return get_dispatcher()


def mapping_registry() -> WebhookMappingRegistry:
    return get_mapping_registry()


def indexer_store() -> IndexerStore:
    return get_indexer_store()


def subscription_manager() -> SubscriptionManager:
    return get_subscription_manager()


def http_error(error: WebhookIndexerException) -> HTTPException:
    """Translate a service exception into an HTTP error."""
    if isinstance(error, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, IndexerNotActiveError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, AuthenticationError):
        status_code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(error, ExternalServiceError):
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error("Request failed", error=error.message, code=error.code)
    return HTTPException(
        status_code=status_code,
        detail={
            "error": error.code,
            "message": error.message
        }
    )
