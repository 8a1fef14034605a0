"""
Inbound webhook endpoint.

Events are acknowledged as soon as they are parsed and handed to the
dispatcher as background tasks; the response does not wait for processing.
"""

import hmac
import json
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import ClientDisconnect

import structlog

from webhook_indexer.api.dependencies import dispatcher, http_error, indexer_store, mapping_registry
from webhook_indexer.api.schemas.common import SuccessResponse, create_success_response
from webhook_indexer.core.config import settings
from webhook_indexer.core.exceptions import NotFoundError
from webhook_indexer.core.logging import mask_secret
from webhook_indexer.indexer.core import WebhookPayload
from webhook_indexer.services.dispatcher import Dispatcher
from webhook_indexer.services.mapping_registry import WebhookMappingRegistry
from webhook_indexer.services.metadata_store import IndexerStore


logger = structlog.get_logger(__name__)

router = APIRouter()

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _presented_secret(request: Request) -> str:
    key = request.query_params.get("key")
    if key:
        return key
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):]
    return ""


def parse_envelopes(body: bytes) -> List[WebhookPayload]:
    """
    Parse a request body holding one envelope or a JSON array of envelopes.

    Raises:
        ValueError: If the body is not valid JSON or not a valid envelope
    """
    data = json.loads(body)
    items = data if isinstance(data, list) else [data]
    if not all(isinstance(item, dict) for item in items):
        raise ValueError("envelope must be a JSON object")
    try:
        return [WebhookPayload.model_validate(item) for item in items]
    except PydanticValidationError as e:
        raise ValueError(str(e))


@router.get(
    "/webhooks/debug",
    response_model=SuccessResponse,
    summary="Webhook Diagnostics",
    description="Current webhook mappings and dispatcher counters"
)
async def webhook_debug(
    webhook_id: Optional[str] = Query(None, description="Resolve one subscription id"),
    mappings: WebhookMappingRegistry = Depends(mapping_registry),
    store: IndexerStore = Depends(indexer_store),
    event_dispatcher: Dispatcher = Depends(dispatcher)
):
    data = {
        "mappings": await mappings.all_mappings(),
        "stats": event_dispatcher.get_stats(),
    }
    if webhook_id:
        try:
            indexer = await store.get_indexer_by_webhook_id(webhook_id)
            data["indexer"] = {
                "found": True,
                "id": indexer.id,
                "status": indexer.status.value,
                "webhook_id": indexer.webhook_id,
                "target_table": indexer.target_table,
            }
        except NotFoundError as e:
            raise http_error(e)
    return create_success_response(data=data)


@router.api_route("/webhooks", methods=ALL_METHODS, include_in_schema=False)
@router.api_route("/webhooks/{path_webhook_id}", methods=ALL_METHODS, include_in_schema=False)
async def receive_webhook(
    request: Request,
    path_webhook_id: Optional[str] = None,
    event_dispatcher: Dispatcher = Depends(dispatcher)
):
    """Accept an inbound event for background processing."""
    if request.method != "POST":
        return _error(status.HTTP_405_METHOD_NOT_ALLOWED, "Method not allowed")

    webhook_id = request.query_params.get("id") or path_webhook_id
    if not webhook_id:
        logger.error("Missing webhook ID in request")
        return _error(status.HTTP_400_BAD_REQUEST, "Missing webhook ID")

    try:
        body = await request.body()
    except ClientDisconnect as e:
        logger.error("Failed to read request body", error=str(e))
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to read request body")

    presented = _presented_secret(request)
    secret = settings.helius_webhook_secret
    if presented and secret and not hmac.compare_digest(presented.encode(), secret.encode()):
        logger.error("Invalid webhook signature", webhook_id=webhook_id, presented=mask_secret(presented))
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

    try:
        payloads = parse_envelopes(body)
    except ValueError as e:
        logger.error("Failed to parse webhook payload", webhook_id=webhook_id, error=str(e))
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid payload format")

    for payload in payloads:
        logger.info(
            "Received webhook",
            webhook_id=webhook_id,
            slot=payload.slot,
            account_count=len(payload.account_data),
        )
        event_dispatcher.schedule(webhook_id, payload)

    return {"status": "success"}
