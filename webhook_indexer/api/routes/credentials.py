"""
Tenant database credential routes.
"""

from fastapi import APIRouter, Depends, status

import structlog

from webhook_indexer.api.dependencies import get_current_user_id, indexer_store
from webhook_indexer.api.schemas.common import SuccessResponse, create_success_response
from webhook_indexer.api.schemas.indexers import CredentialCreateRequest, CredentialResponse
from webhook_indexer.services.metadata_store import IndexerStore


logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add Database Credential"
)
async def create_credential(
    request: CredentialCreateRequest,
    user_id: str = Depends(get_current_user_id),
    store: IndexerStore = Depends(indexer_store)
):
    credential = await store.create_credential(
        user_id,
        db_host=request.db_host,
        db_name=request.db_name,
        db_user=request.db_user,
        db_password=request.db_password,
        db_port=request.db_port,
        db_ssl_mode=request.db_ssl_mode,
        name=request.name,
    )
    return create_success_response(
        data=CredentialResponse.model_validate(credential).model_dump(mode="json"),
        message="Credential created"
    )


@router.get(
    "",
    response_model=SuccessResponse,
    summary="List Database Credentials"
)
async def list_credentials(
    user_id: str = Depends(get_current_user_id),
    store: IndexerStore = Depends(indexer_store)
):
    credentials = await store.list_credentials(user_id)
    return create_success_response(
        data=[CredentialResponse.model_validate(c).model_dump(mode="json") for c in credentials]
    )
