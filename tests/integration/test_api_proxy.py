"""Integration tests for the forwarded /api/v1 and /api/chat routes."""

import json

import httpx

from tests.integration.conftest import bearer

BOGUS_KEY = "tc_" + "A" * 32


class TestKeyRequiredRoutes:
    async def test_missing_key(self, test_client, key_table, upstream_mock):
        resp = await test_client.get("/api/v1/models")

        assert resp.status_code == 401
        assert resp.json()["detail"] == {
            "code": "missing_credential",
            "message": "API key required",
        }
        assert resp.headers["WWW-Authenticate"] == "ApiKey"

    async def test_invalid_key(self, test_client, key_table, upstream_mock):
        route = upstream_mock.get("/v1/models").respond(200, json={"data": []})

        resp = await test_client.get("/api/v1/models", headers={"X-API-Key": BOGUS_KEY})

        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "invalid_credential"
        assert not route.called

    async def test_bearer_token_does_not_satisfy_key_route(
        self, test_client, key_table, upstream_mock, admin_headers
    ):
        resp = await test_client.get("/api/v1/models", headers=admin_headers)
        assert resp.status_code == 401

    async def test_valid_key_is_forwarded(self, test_client, api_key, upstream_mock):
        route = upstream_mock.post("/v1/complete").respond(
            200, json={"text": "hi", "usage": {"total_tokens": 42}}
        )

        resp = await test_client.post(
            "/api/v1/complete?model=small",
            headers={"X-API-Key": api_key["key"], "X-Request-Id": "req-1"},
            json={"prompt": "hello"},
        )

        assert resp.status_code == 200
        assert resp.json() == {"text": "hi", "usage": {"total_tokens": 42}}

        sent = route.calls.last.request
        assert sent.url.params["model"] == "small"
        assert sent.headers["X-Gateway-Api-Key-Id"] == api_key["id"]
        assert sent.headers["X-Request-Id"] == "req-1"
        assert "x-api-key" not in sent.headers
        assert "authorization" not in sent.headers
        assert json.loads(sent.content) == {"prompt": "hello"}

    async def test_upstream_status_passed_through(self, test_client, api_key, upstream_mock):
        upstream_mock.get("/v1/missing").respond(404, json={"error": "no such model"})

        resp = await test_client.get("/api/v1/missing", headers={"X-API-Key": api_key["key"]})

        assert resp.status_code == 404
        assert resp.json() == {"error": "no such model"}

    async def test_upstream_unreachable(self, test_client, api_key, upstream_mock):
        upstream_mock.get("/v1/models").mock(side_effect=httpx.ConnectError("refused"))

        resp = await test_client.get("/api/v1/models", headers={"X-API-Key": api_key["key"]})

        assert resp.status_code == 502
        assert resp.json()["detail"]["code"] == "upstream_unavailable"

    async def test_revocation_takes_effect_immediately(
        self, test_client, api_key, upstream_mock, admin_headers
    ):
        upstream_mock.get("/v1/models").respond(200, json={"data": []})
        headers = {"X-API-Key": api_key["key"]}
        assert (await test_client.get("/api/v1/models", headers=headers)).status_code == 200

        await test_client.delete(f"/api/keys/{api_key['id']}", headers=admin_headers)

        resp = await test_client.get("/api/v1/models", headers=headers)
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "invalid_credential"

    async def test_repeated_failures_lock_client_out(self, test_client, api_key, upstream_mock):
        upstream_mock.get("/v1/models").respond(200, json={"data": []})

        for _ in range(10):
            resp = await test_client.get("/api/v1/models", headers={"X-API-Key": BOGUS_KEY})
            assert resp.status_code == 401

        # Even the right key is refused while locked out.
        resp = await test_client.get("/api/v1/models", headers={"X-API-Key": api_key["key"]})
        assert resp.status_code == 429
        assert resp.json()["detail"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) > 0

    async def test_success_resets_failure_count(self, test_client, api_key, upstream_mock):
        upstream_mock.get("/v1/models").respond(200, json={"data": []})

        for _ in range(9):
            await test_client.get("/api/v1/models", headers={"X-API-Key": BOGUS_KEY})
        await test_client.get("/api/v1/models", headers={"X-API-Key": api_key["key"]})
        for _ in range(9):
            await test_client.get("/api/v1/models", headers={"X-API-Key": BOGUS_KEY})

        resp = await test_client.get("/api/v1/models", headers={"X-API-Key": api_key["key"]})
        assert resp.status_code == 200


class TestOptionalIdentityRoutes:
    async def test_anonymous_chat_is_forwarded(self, test_client, key_table, upstream_mock):
        route = upstream_mock.post("/chat").respond(200, json={"reply": "hi"})

        resp = await test_client.post("/api/chat", json={"message": "hello"})

        assert resp.status_code == 200
        sent = route.calls.last.request
        assert "x-gateway-user-id" not in sent.headers
        assert "x-gateway-api-key-id" not in sent.headers

    async def test_bearer_identity_forwarded(self, test_client, key_table, upstream_mock):
        route = upstream_mock.post("/chat/completions").respond(200, json={"reply": "hi"})

        await test_client.post(
            "/api/chat/completions", headers=bearer("user-9", is_admin=True), json={}
        )

        sent = route.calls.last.request
        assert sent.headers["X-Gateway-User-Id"] == "user-9"
        assert sent.headers["X-Gateway-Is-Admin"] == "true"
        assert "authorization" not in sent.headers

    async def test_both_credentials_attached(self, test_client, api_key, upstream_mock):
        route = upstream_mock.post("/chat").respond(200, json={"reply": "hi"})
        headers = {**bearer("user-9"), "X-API-Key": api_key["key"]}

        await test_client.post("/api/chat", headers=headers, json={})

        sent = route.calls.last.request
        assert sent.headers["X-Gateway-User-Id"] == "user-9"
        assert sent.headers["X-Gateway-Is-Admin"] == "false"
        assert sent.headers["X-Gateway-Api-Key-Id"] == api_key["id"]

    async def test_invalid_credentials_are_ignored(self, test_client, key_table, upstream_mock):
        route = upstream_mock.post("/chat").respond(200, json={"reply": "hi"})
        headers = {"Authorization": "Bearer garbage", "X-API-Key": BOGUS_KEY}

        resp = await test_client.post("/api/chat", headers=headers, json={})

        assert resp.status_code == 200
        assert "x-gateway-user-id" not in route.calls.last.request.headers

    async def test_locked_out_key_is_skipped(self, test_client, api_key, upstream_mock):
        route = upstream_mock.post("/chat").respond(200, json={"reply": "hi"})
        for _ in range(10):
            await test_client.post("/api/chat", headers={"X-API-Key": BOGUS_KEY}, json={})

        resp = await test_client.post("/api/chat", headers={"X-API-Key": api_key["key"]}, json={})

        assert resp.status_code == 200
        assert "x-gateway-api-key-id" not in route.calls.last.request.headers


class TestMetering:
    async def test_forwarded_call_is_metered(
        self, test_client, api_key, upstream_mock, usage_records
    ):
        upstream_mock.post("/v1/complete").respond(200, json={"usage": {"total_tokens": 42}})

        await test_client.post(
            "/api/v1/complete", headers={"X-API-Key": api_key["key"]}, json={}
        )

        assert len(usage_records) == 1
        record = usage_records[0]
        assert record.endpoint == "/api/v1/complete"
        assert record.method == "POST"
        assert record.status_code == 200
        assert record.tokens_used == 42
        assert record.api_key_id == api_key["id"]

    async def test_rejected_call_is_metered_without_identity(
        self, test_client, key_table, upstream_mock, usage_records
    ):
        await test_client.get("/api/v1/models", headers={"X-API-Key": BOGUS_KEY})

        assert [r.status_code for r in usage_records] == [401]
        assert usage_records[0].api_key_id is None

    async def test_chat_user_is_metered(self, test_client, key_table, upstream_mock, usage_records):
        upstream_mock.post("/chat").respond(200, json={"tokens": 5})

        await test_client.post("/api/chat", headers=bearer("user-9"), json={})

        assert usage_records[0].user_id == "user-9"
        assert usage_records[0].tokens_used == 5

    async def test_key_admin_not_metered(self, test_client, api_key, admin_headers, usage_records):
        await test_client.get("/api/keys", headers=admin_headers)
        assert usage_records == []
