"""Routes forwarded to the upstream API backend.

``/api/v1/*`` requires an API key. ``/api/chat`` accepts either credential
optionally (bearer first, then API key; both are attached when valid), so
anonymous chat traffic is still forwarded and metered.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from gateway.dependencies import Identity, get_api_key, get_optional_identity
from gateway.services import upstream

router = APIRouter()

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


async def _forward(request: Request, upstream_path: str) -> Response:
    resp = await upstream.forward(
        request.method,
        upstream_path,
        headers=request.headers,
        body=await request.body(),
        query=request.url.query,
        identity=getattr(request.state, "identity", None),
    )
    return Response(
        content=resp.content,
        status_code=resp.status_code,
        headers=upstream.filter_response_headers(resp.headers),
    )


@router.api_route("/v1/{path:path}", methods=_METHODS)
async def proxy_v1(path: str, request: Request, api_key: dict = Depends(get_api_key)):
    return await _forward(request, f"/v1/{path}")


@router.api_route("/chat", methods=["POST"])
async def proxy_chat(request: Request, identity: Identity = Depends(get_optional_identity)):
    return await _forward(request, "/chat")


@router.api_route("/chat/{path:path}", methods=_METHODS)
async def proxy_chat_path(
    path: str, request: Request, identity: Identity = Depends(get_optional_identity)
):
    return await _forward(request, f"/chat/{path}")
