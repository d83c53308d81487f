"""
Usage metering middleware.

A pure ASGI interceptor for metered path prefixes. The downstream app is
given a wrapping ``send`` callable; every message is forwarded unchanged
while the status, a bounded copy of the body, and the elapsed time are
noted. Once the final body message has reached the transport, a UsageRecord
is submitted to the recorder queue. The response itself is never altered or
delayed by metering.
"""

from __future__ import annotations

import json
import time

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from gateway.config import settings
from gateway.services.usage import UsageRecord, UsageRecorder, extract_tokens, get_usage_recorder


class _ResponseObserver:
    """Accumulates what the interceptor needs from the outgoing messages."""

    def __init__(self, max_body_bytes: int):
        self.max_body_bytes = max_body_bytes
        self.status_code: int | None = None
        self.is_json = False
        self.body = bytearray()
        self.truncated = False

    def observe(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status_code = message["status"]
            content_type = Headers(raw=message.get("headers", [])).get("content-type", "")
            self.is_json = "json" in content_type.lower()
        elif message["type"] == "http.response.body" and self.is_json and not self.truncated:
            chunk = message.get("body", b"")
            if len(self.body) + len(chunk) > self.max_body_bytes:
                self.truncated = True
                self.body.clear()
            else:
                self.body.extend(chunk)

    def tokens(self) -> int:
        if not self.is_json or self.truncated or not self.body:
            return 0
        try:
            return extract_tokens(json.loads(self.body))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return 0


class UsageMiddleware:
    """Meters requests whose path starts with one of *prefixes*."""

    def __init__(
        self,
        app: ASGIApp,
        prefixes: list[str] | None = None,
        recorder: UsageRecorder | None = None,
        max_body_bytes: int | None = None,
    ):
        self.app = app
        self.prefixes = tuple(prefixes if prefixes is not None else settings.metered_prefixes_list)
        self._recorder = recorder
        self.max_body_bytes = (
            max_body_bytes if max_body_bytes is not None else settings.METERING_MAX_BODY_BYTES
        )

    @property
    def recorder(self) -> UsageRecorder | None:
        return self._recorder if self._recorder is not None else get_usage_recorder()

    def _is_metered(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.prefixes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._is_metered(scope["path"]):
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        # Shared with request.state so identity set by dependencies is visible here.
        state = scope.setdefault("state", {})
        observer = _ResponseObserver(self.max_body_bytes)
        submitted = False

        async def metered_send(message: Message) -> None:
            nonlocal submitted
            observer.observe(message)
            await send(message)
            if (
                message["type"] == "http.response.body"
                and not message.get("more_body", False)
                and not submitted
            ):
                submitted = True
                self._submit(scope, state, observer.status_code or 500, observer.tokens(), started)

        try:
            await self.app(scope, receive, metered_send)
        except Exception:
            if not submitted:
                submitted = True
                self._submit(scope, state, 500, 0, started)
            raise

    def _submit(self, scope: Scope, state: dict, status_code: int, tokens: int, started: float):
        recorder = self.recorder
        if recorder is None:
            return

        endpoint = scope["path"]
        query = scope.get("query_string", b"")
        if query:
            endpoint = f"{endpoint}?{query.decode('latin-1')}"

        identity = state.get("identity")
        recorder.submit(
            UsageRecord(
                endpoint=endpoint,
                method=scope["method"],
                status_code=status_code,
                latency_ms=int((time.perf_counter() - started) * 1000),
                tokens_used=tokens,
                api_key_id=getattr(identity, "api_key_id", None),
                user_id=getattr(identity, "user_id", None),
            )
        )
