"""
Indexer management routes.
Create, inspect, pause, resume and delete a tenant's indexers.
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, status

import structlog

from webhook_indexer.api.dependencies import (
    dispatcher,
    get_current_user_id,
    get_pagination_params,
    http_error,
    indexer_service,
)
from webhook_indexer.api.schemas.common import PaginationParams, SuccessResponse, create_success_response
from webhook_indexer.api.schemas.indexers import IndexerCreateRequest, IndexerResponse, IndexingLogResponse
from webhook_indexer.core.exceptions import WebhookIndexerException
from webhook_indexer.indexer.core import WebhookPayload
from webhook_indexer.services.dispatcher import Dispatcher
from webhook_indexer.services.indexer_service import IndexerService


logger = structlog.get_logger(__name__)

router = APIRouter()


def _indexer_data(indexer) -> Dict[str, Any]:
    return IndexerResponse.model_validate(indexer).model_dump(mode="json")


@router.post(
    "",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Indexer",
    description="Create the target table, provision a webhook and activate the indexer"
)
async def create_indexer(
    request: IndexerCreateRequest,
    user_id: str = Depends(get_current_user_id),
    service: IndexerService = Depends(indexer_service)
):
    try:
        indexer = await service.create_indexer(
            user_id,
            request.db_credential_id,
            request.indexer_type,
            request.params,
            request.target_table,
        )
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(data=_indexer_data(indexer), message="Indexer created")


@router.get(
    "",
    response_model=SuccessResponse,
    summary="List Indexers"
)
async def list_indexers(
    user_id: str = Depends(get_current_user_id),
    service: IndexerService = Depends(indexer_service)
):
    indexers = await service.list_indexers(user_id)
    return create_success_response(data=[_indexer_data(i) for i in indexers])


@router.get(
    "/{indexer_id}",
    response_model=SuccessResponse,
    summary="Get Indexer"
)
async def get_indexer(
    indexer_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IndexerService = Depends(indexer_service)
):
    try:
        indexer = await service.get_indexer(user_id, indexer_id)
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(data=_indexer_data(indexer))


@router.post(
    "/{indexer_id}/pause",
    response_model=SuccessResponse,
    summary="Pause Indexer"
)
async def pause_indexer(
    indexer_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IndexerService = Depends(indexer_service)
):
    try:
        indexer = await service.pause_indexer(user_id, indexer_id)
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(data=_indexer_data(indexer), message="Indexer paused")


@router.post(
    "/{indexer_id}/resume",
    response_model=SuccessResponse,
    summary="Resume Indexer"
)
async def resume_indexer(
    indexer_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IndexerService = Depends(indexer_service)
):
    try:
        indexer = await service.resume_indexer(user_id, indexer_id)
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(data=_indexer_data(indexer), message="Indexer resumed")


@router.delete(
    "/{indexer_id}",
    response_model=SuccessResponse,
    summary="Delete Indexer",
    description="Delete the indexer and tear down its webhook"
)
async def delete_indexer(
    indexer_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IndexerService = Depends(indexer_service)
):
    try:
        await service.delete_indexer(user_id, indexer_id)
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(data={"id": indexer_id}, message="Indexer deleted")


@router.get(
    "/{indexer_id}/logs",
    response_model=SuccessResponse,
    summary="Get Indexing Logs",
    description="Log entries for an indexer, newest first"
)
async def get_indexing_logs(
    indexer_id: str,
    user_id: str = Depends(get_current_user_id),
    pagination: PaginationParams = Depends(get_pagination_params),
    service: IndexerService = Depends(indexer_service)
):
    try:
        entries = await service.get_indexing_logs(user_id, indexer_id, pagination.limit, pagination.offset)
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(
        data=[IndexingLogResponse.model_validate(entry).model_dump(mode="json") for entry in entries]
    )


@router.post(
    "/{indexer_id}/test",
    response_model=SuccessResponse,
    summary="Test Payload",
    description="Run one payload through the indexer synchronously and return per-item results"
)
async def test_payload(
    indexer_id: str,
    payload: WebhookPayload = Body(...),
    user_id: str = Depends(get_current_user_id),
    service: IndexerService = Depends(indexer_service),
    event_dispatcher: Dispatcher = Depends(dispatcher)
):
    try:
        await service.get_indexer(user_id, indexer_id)
        result = await event_dispatcher.dispatch(indexer_id, payload)
    except WebhookIndexerException as e:
        raise http_error(e)
    return create_success_response(data=result.to_dict(), message="Payload processed")
