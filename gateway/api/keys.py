from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from gateway.db import api_keys as db_api_keys
from gateway.dependencies import get_db, require_admin
from gateway.models.api_key import (
    ApiKeyCreatedResponse,
    ApiKeyListResponse,
    ApiKeyResponse,
    CreateApiKeyRequest,
    MessageResponse,
)
from gateway.services import api_key as api_key_service
from gateway.services.token import SessionTokenPayload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=ApiKeyCreatedResponse, status_code=201)
async def create_api_key(
    body: CreateApiKeyRequest,
    admin: SessionTokenPayload = Depends(require_admin),
    conn=Depends(get_db),
):
    """Create a new API key. The full key is returned only once."""
    result = await api_key_service.create_key(conn, name=body.name.strip())
    logger.info("API key %s created by %s", result.get("id"), admin.subject)
    return ApiKeyCreatedResponse(**result)


@router.get("", response_model=ApiKeyListResponse)
async def list_api_keys(
    admin: SessionTokenPayload = Depends(require_admin),
    conn=Depends(get_db),
):
    """List all API keys (metadata only, no secrets or hashes)."""
    keys = await db_api_keys.list_api_keys(conn)
    return ApiKeyListResponse(data=[ApiKeyResponse(**k) for k in keys])


@router.get("/{key_id}", response_model=ApiKeyResponse)
async def get_api_key(
    key_id: str,
    admin: SessionTokenPayload = Depends(require_admin),
    conn=Depends(get_db),
):
    key = await db_api_keys.get_api_key_by_id(conn, key_id)
    if not key:
        raise HTTPException(status_code=404, detail="API key not found")
    return ApiKeyResponse(**key)


@router.delete("/{key_id}", response_model=MessageResponse)
async def revoke_api_key(
    key_id: str,
    admin: SessionTokenPayload = Depends(require_admin),
    conn=Depends(get_db),
):
    """Revoke an API key. The record is kept for usage history."""
    if not await api_key_service.revoke_key(conn, key_id=key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return MessageResponse(message="API key revoked.")
