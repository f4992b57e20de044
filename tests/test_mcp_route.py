"""
tests/test_mcp_route.py -- Integration tests for POST /mcp authentication and dispatch.

Coverage:
  - API-key bearer (wtyk_...) authenticates through the key manager
  - OAuth access token authenticates through the provider
  - every failure is 401 with a WWW-Authenticate header pointing at the
    protected resource metadata
  - deleted accounts are locked out on both paths
  - JSON-RPC envelope errors: parse error, invalid request, method not found
  - a custom mcp_handler receives the resolved AuthContext
"""

from __future__ import annotations

from conftest import issue_tokens

INITIALIZE = {"jsonrpc": "2.0", "id": 1, "method": "initialize"}


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _assert_challenge(resp) -> None:
    assert resp.status_code == 401
    challenge = resp.headers["www-authenticate"]
    assert challenge.startswith("Bearer ")
    assert "/.well-known/oauth-protected-resource" in challenge


class TestApiKeyPath:
    def test_valid_key(self, gateway) -> None:
        gateway.state.user_store.create_user("user_1", "alice@example.com")
        raw_key, api_key = gateway.state.api_keys.generate("user_1", "ci")

        resp = gateway.client.post("/mcp", json=INITIALIZE, headers=_bearer(raw_key))

        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == 1
        assert body["result"]["protocolVersion"] == "2024-11-05"
        # last_used_at is written by a background task that TestClient runs before returning
        assert gateway.state.api_key_store.get_by_hash(api_key.key_hash).last_used_at is not None

    def test_unknown_key(self, gateway) -> None:
        resp = gateway.client.post("/mcp", json=INITIALIZE, headers=_bearer("wtyk_" + "0" * 64))
        _assert_challenge(resp)
        assert resp.json()["error"] == {"code": "invalid_api_key", "message": "Invalid or expired API key"}

    def test_malformed_key_same_error(self, gateway) -> None:
        resp = gateway.client.post("/mcp", json=INITIALIZE, headers=_bearer("wtyk_tooshort"))
        _assert_challenge(resp)
        assert resp.json()["error"]["message"] == "Invalid or expired API key"

    def test_revoked_key(self, gateway) -> None:
        gateway.state.user_store.create_user("user_1", "alice@example.com")
        raw_key, api_key = gateway.state.api_keys.generate("user_1", "ci")
        gateway.state.api_keys.revoke(api_key.id, "user_1")
        _assert_challenge(gateway.client.post("/mcp", json=INITIALIZE, headers=_bearer(raw_key)))

    def test_deleted_owner(self, gateway) -> None:
        gateway.state.user_store.create_user("user_1", "alice@example.com")
        raw_key, _ = gateway.state.api_keys.generate("user_1", "ci")
        gateway.state.user_store.mark_deleted("user_1")
        _assert_challenge(gateway.client.post("/mcp", json=INITIALIZE, headers=_bearer(raw_key)))


class TestOAuthPath:
    def test_valid_access_token(self, gateway) -> None:
        gateway.state.user_store.create_user("user_1", "alice@example.com")
        tokens = issue_tokens(gateway.state, "user_1", "alice@example.com")
        resp = gateway.client.post(
            "/mcp", json={"jsonrpc": "2.0", "id": "p", "method": "ping"}, headers=_bearer(tokens["access_token"])
        )
        assert resp.status_code == 200
        assert resp.json() == {"jsonrpc": "2.0", "id": "p", "result": {}}

    def test_missing_authorization(self, gateway) -> None:
        resp = gateway.client.post("/mcp", json=INITIALIZE)
        _assert_challenge(resp)
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_garbage_token(self, gateway) -> None:
        resp = gateway.client.post("/mcp", json=INITIALIZE, headers=_bearer("not-a-token"))
        _assert_challenge(resp)
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_refresh_token_is_not_an_access_token(self, gateway) -> None:
        gateway.state.user_store.create_user("user_1", "alice@example.com")
        tokens = issue_tokens(gateway.state, "user_1", "alice@example.com")
        _assert_challenge(gateway.client.post("/mcp", json=INITIALIZE, headers=_bearer(tokens["refresh_token"])))

    def test_deleted_account_locked_out(self, gateway) -> None:
        gateway.state.user_store.create_user("user_1", "alice@example.com")
        tokens = issue_tokens(gateway.state, "user_1", "alice@example.com")
        gateway.state.user_store.mark_deleted("user_1")
        _assert_challenge(gateway.client.post("/mcp", json=INITIALIZE, headers=_bearer(tokens["access_token"])))


class TestJsonRpc:
    def _headers(self, gateway) -> dict:
        gateway.state.user_store.create_user("user_1", "alice@example.com")
        raw_key, _ = gateway.state.api_keys.generate("user_1", "ci")
        return _bearer(raw_key)

    def test_parse_error(self, gateway) -> None:
        headers = {**self._headers(gateway), "Content-Type": "application/json"}
        resp = gateway.client.post("/mcp", content=b"{not json", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["error"]["code"] == -32700

    def test_invalid_envelope(self, gateway) -> None:
        resp = gateway.client.post("/mcp", json={"id": 3, "method": "ping"}, headers=self._headers(gateway))
        assert resp.json() == {"jsonrpc": "2.0", "id": 3, "error": {"code": -32600, "message": "Invalid Request"}}

    def test_non_object_body(self, gateway) -> None:
        resp = gateway.client.post("/mcp", json=[1, 2], headers=self._headers(gateway))
        assert resp.json()["error"]["code"] == -32600

    def test_unknown_method(self, gateway) -> None:
        resp = gateway.client.post(
            "/mcp", json={"jsonrpc": "2.0", "id": 7, "method": "tools/call"}, headers=self._headers(gateway)
        )
        assert resp.json()["error"]["code"] == -32601

    def test_custom_handler_receives_context(self, gateway) -> None:
        seen = []

        async def handler(message, context):
            seen.append(context)
            return {"jsonrpc": "2.0", "id": message["id"], "result": {"user": context.user_id}}

        gateway.state.mcp_handler = handler
        resp = gateway.client.post(
            "/mcp", json={"jsonrpc": "2.0", "id": 9, "method": "tools/list"}, headers=self._headers(gateway)
        )

        assert resp.json()["result"] == {"user": "user_1"}
        assert seen[0].method == "api_key"
        assert seen[0].email == "alice@example.com"
