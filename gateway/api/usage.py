"""Usage statistics for the calling API key."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from gateway.db import usage as db_usage
from gateway.dependencies import get_api_key, get_db
from gateway.models.usage import UsageSummaryResponse

router = APIRouter()


@router.get("", response_model=UsageSummaryResponse)
async def get_usage(
    api_key: dict = Depends(get_api_key),
    conn=Depends(get_db),
):
    """Request count, token total, and mean latency recorded for this key."""
    summary = await db_usage.get_usage_summary(conn, api_key["id"])
    return UsageSummaryResponse(api_key_id=api_key["id"], **summary)
