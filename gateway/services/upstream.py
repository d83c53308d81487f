"""HTTP client for the API backend behind the gateway.

Admitted requests are replayed against UPSTREAM_URL with credential and
hop-by-hop headers removed. The resolved identity travels in
``X-Gateway-*`` headers instead, so the backend never sees raw secrets.
"""

from __future__ import annotations

import logging

import httpx

from gateway.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

_client: httpx.AsyncClient | None = None

_STRIPPED_REQUEST_HEADERS = {
    "authorization",
    "x-api-key",
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "te",
    "upgrade",
    "proxy-authorization",
    "cookie",
}

_STRIPPED_RESPONSE_HEADERS = {
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "connection",
    "keep-alive",
}


async def init_client(settings) -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(
            base_url=settings.UPSTREAM_URL,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        )
    return _client


async def close_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def identity_headers(identity) -> dict[str, str]:
    """Headers describing the caller's resolved identity."""
    headers = {}
    if identity is None:
        return headers
    if identity.user_id:
        headers["X-Gateway-User-Id"] = identity.user_id
        headers["X-Gateway-Is-Admin"] = "true" if identity.is_admin else "false"
    if identity.api_key_id:
        headers["X-Gateway-Api-Key-Id"] = identity.api_key_id
    return headers


def filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in _STRIPPED_RESPONSE_HEADERS}


async def forward(
    method: str,
    path: str,
    headers,
    body: bytes,
    query: str = "",
    identity=None,
) -> httpx.Response:
    """Send a request to the upstream and return its (fully read) response.

    Raises:
        UpstreamUnavailable: The upstream could not be reached or timed out.
        RuntimeError: If init_client() has not run.
    """
    if _client is None:
        raise RuntimeError(
            "Upstream client is not initialized. Call init_client() during application startup."
        )

    outgoing = {k: v for k, v in headers.items() if k.lower() not in _STRIPPED_REQUEST_HEADERS}
    outgoing.update(identity_headers(identity))

    url = f"{path}?{query}" if query else path
    try:
        return await _client.request(method, url, headers=outgoing, content=body)
    except httpx.HTTPError as exc:
        logger.warning("Upstream request %s %s failed: %s", method, path, exc)
        raise UpstreamUnavailable() from exc
