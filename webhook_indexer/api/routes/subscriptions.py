"""
Shared subscription routes.
Inspect and change the watched-address set of the shared webhook.
"""

from fastapi import APIRouter, Depends

import structlog

from webhook_indexer.api.dependencies import http_error, subscription_manager
from webhook_indexer.api.schemas.common import SuccessResponse, create_success_response
from webhook_indexer.api.schemas.indexers import SubscriptionAddressRequest
from webhook_indexer.core.exceptions import WebhookIndexerException
from webhook_indexer.services.subscription_manager import SubscriptionManager


logger = structlog.get_logger(__name__)

router = APIRouter()


def _snapshot(manager: SubscriptionManager) -> dict:
    entries = manager.current_addresses()
    return {
        "webhook_id": manager.webhook_id,
        "limit": manager.limit,
        "count": len(entries),
        "addresses": [entry.to_dict() for entry in entries],
    }


@router.get(
    "/addresses",
    response_model=SuccessResponse,
    summary="Watched Addresses",
    description="Tracked addresses of the shared subscription, oldest first"
)
async def list_addresses(manager: SubscriptionManager = Depends(subscription_manager)):
    return create_success_response(data=_snapshot(manager))


@router.post(
    "/addresses",
    response_model=SuccessResponse,
    summary="Add Watched Addresses",
    description="Add an owner's addresses, evicting the oldest entries past the capacity limit"
)
async def add_addresses(
    request: SubscriptionAddressRequest,
    manager: SubscriptionManager = Depends(subscription_manager)
):
    try:
        await manager.add_addresses(request.addresses, request.owner_id)
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(data=_snapshot(manager), message="Addresses added")


@router.delete(
    "/addresses/{owner_id}",
    response_model=SuccessResponse,
    summary="Remove Owner Addresses"
)
async def remove_owner_addresses(
    owner_id: str,
    manager: SubscriptionManager = Depends(subscription_manager)
):
    try:
        await manager.remove_owner_addresses(owner_id)
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(data=_snapshot(manager), message="Addresses removed")
