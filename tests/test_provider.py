"""
tests/test_provider.py -- Unit tests for auth/provider.py (OAuth server side).

Covers:
  - client registration: redirect URI policy, secrets for confidential clients
  - parse_auth_request(): unknown client, redirect mismatch, PKCE method
  - complete_authorization() -> exchange_authorization_code(): happy path,
    single-use codes, client/redirect/PKCE checks
  - refresh-token rotation: old token dies, new one works
  - verify_access_token(): round trip and tamper rejection
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from auth.errors import InvalidRequest, OAuthGrantError
from auth.models import AuthContext
from auth.pkce import PkceManager
from auth.provider import OAuthProvider
from cache.store import MemoryKeyValueStore

REDIRECT = "http://127.0.0.1:8976/callback"
CONTEXT = AuthContext(user_id="user_1", email="alice@example.com", permissions=("tools:read",))


@pytest.fixture()
def provider() -> OAuthProvider:
    return OAuthProvider(MemoryKeyValueStore())


def _grant(provider: OAuthProvider, client_id: str, state: str = "s1") -> tuple[str, str]:
    """Run the authorize half of the flow. Returns (code, verifier)."""
    verifier, challenge = PkceManager.generate_challenge()
    request = provider.parse_auth_request(
        {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": REDIRECT,
            "state": state,
            "scope": "mcp",
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
    )
    location = provider.complete_authorization(request, "user_1", request.scope, CONTEXT)
    query = parse_qs(urlparse(location).query)
    assert query["state"] == [state]
    return query["code"][0], verifier


class TestRegistration:
    @pytest.mark.parametrize(
        "uri",
        ["https://client.example.com/cb", "http://localhost:3000/cb", "http://127.0.0.1/cb"],
    )
    def test_allowed_redirect_uris(self, provider, uri) -> None:
        client = provider.register_client([uri], client_name="c")
        assert provider.get_client(client.client_id).redirect_uris == [uri]
        assert client.client_secret == ""

    @pytest.mark.parametrize(
        "uri",
        ["http://evil.example.com/cb", "ftp://x/cb", "https://client.example.com/cb#frag", "not a url"],
    )
    def test_rejected_redirect_uris(self, provider, uri) -> None:
        with pytest.raises(OAuthGrantError) as exc_info:
            provider.register_client([uri])
        assert exc_info.value.code == "invalid_redirect_uri"

    def test_empty_redirect_uris(self, provider) -> None:
        with pytest.raises(OAuthGrantError):
            provider.register_client([])

    def test_confidential_client_gets_secret(self, provider) -> None:
        client = provider.register_client([REDIRECT], token_endpoint_auth_method="client_secret_post")
        assert len(client.client_secret) > 20


class TestParseAuthRequest:
    def test_unknown_client(self, provider) -> None:
        with pytest.raises(InvalidRequest):
            provider.parse_auth_request({"client_id": "nope", "response_type": "code"})

    def test_missing_client_id(self, provider) -> None:
        with pytest.raises(InvalidRequest):
            provider.parse_auth_request({"response_type": "code"})

    def test_unregistered_redirect_uri(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        _, challenge = PkceManager.generate_challenge()
        with pytest.raises(InvalidRequest):
            provider.parse_auth_request(
                {
                    "client_id": client.client_id,
                    "response_type": "code",
                    "redirect_uri": "http://127.0.0.1:9999/other",
                    "code_challenge": challenge,
                    "code_challenge_method": "S256",
                }
            )

    def test_plain_pkce_rejected(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        with pytest.raises(InvalidRequest):
            provider.parse_auth_request(
                {
                    "client_id": client.client_id,
                    "response_type": "code",
                    "redirect_uri": REDIRECT,
                    "code_challenge": "abc",
                    "code_challenge_method": "plain",
                }
            )

    def test_public_client_requires_pkce(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        with pytest.raises(InvalidRequest):
            provider.parse_auth_request({"client_id": client.client_id, "response_type": "code", "redirect_uri": REDIRECT})

    def test_single_registered_redirect_is_default(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        _, challenge = PkceManager.generate_challenge()
        request = provider.parse_auth_request(
            {
                "client_id": client.client_id,
                "response_type": "code",
                "code_challenge": challenge,
                "code_challenge_method": "S256",
            }
        )
        assert request.redirect_uri == REDIRECT


class TestCodeExchange:
    def test_happy_path(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        code, verifier = _grant(provider, client.client_id)

        tokens = provider.exchange_authorization_code(client.client_id, code, REDIRECT, verifier)

        assert tokens["token_type"] == "Bearer"
        assert tokens["scope"] == "mcp"
        context = provider.verify_access_token(tokens["access_token"])
        assert context.user_id == "user_1"
        assert context.permissions == ("tools:read",)

    def test_code_is_single_use(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        code, verifier = _grant(provider, client.client_id)
        provider.exchange_authorization_code(client.client_id, code, REDIRECT, verifier)

        with pytest.raises(OAuthGrantError) as exc_info:
            provider.exchange_authorization_code(client.client_id, code, REDIRECT, verifier)
        assert exc_info.value.code == "invalid_grant"

    def test_wrong_verifier(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        code, _ = _grant(provider, client.client_id)
        other_verifier, _ = PkceManager.generate_challenge()
        with pytest.raises(OAuthGrantError) as exc_info:
            provider.exchange_authorization_code(client.client_id, code, REDIRECT, other_verifier)
        assert exc_info.value.code == "invalid_grant"

    def test_missing_verifier(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        code, _ = _grant(provider, client.client_id)
        with pytest.raises(OAuthGrantError) as exc_info:
            provider.exchange_authorization_code(client.client_id, code, REDIRECT, "")
        assert exc_info.value.code == "invalid_request"

    def test_code_bound_to_client(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        thief = provider.register_client([REDIRECT])
        code, verifier = _grant(provider, client.client_id)
        with pytest.raises(OAuthGrantError) as exc_info:
            provider.exchange_authorization_code(thief.client_id, code, REDIRECT, verifier)
        assert exc_info.value.code == "invalid_grant"

    def test_redirect_uri_mismatch(self, provider) -> None:
        client = provider.register_client([REDIRECT, "http://127.0.0.1:1111/cb"])
        code, verifier = _grant(provider, client.client_id)
        with pytest.raises(OAuthGrantError):
            provider.exchange_authorization_code(client.client_id, code, "http://127.0.0.1:1111/cb", verifier)

    def test_unknown_client_is_401(self, provider) -> None:
        with pytest.raises(OAuthGrantError) as exc_info:
            provider.exchange_authorization_code("nope", "code", REDIRECT, "v")
        assert exc_info.value.code == "invalid_client"
        assert exc_info.value.status_code == 401

    def test_confidential_client_secret_checked(self, provider) -> None:
        client = provider.register_client([REDIRECT], token_endpoint_auth_method="client_secret_post")
        code, verifier = _grant(provider, client.client_id)
        with pytest.raises(OAuthGrantError) as exc_info:
            provider.exchange_authorization_code(client.client_id, code, REDIRECT, verifier, client_secret="wrong")
        assert exc_info.value.code == "invalid_client"


class TestRefreshRotation:
    def test_rotation(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        code, verifier = _grant(provider, client.client_id)
        first = provider.exchange_authorization_code(client.client_id, code, REDIRECT, verifier)

        second = provider.exchange_refresh_token(client.client_id, first["refresh_token"])

        assert second["refresh_token"] != first["refresh_token"]
        assert provider.verify_access_token(second["access_token"]).email == "alice@example.com"
        with pytest.raises(OAuthGrantError):
            provider.exchange_refresh_token(client.client_id, first["refresh_token"])

    def test_refresh_token_bound_to_client(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        other = provider.register_client([REDIRECT])
        code, verifier = _grant(provider, client.client_id)
        tokens = provider.exchange_authorization_code(client.client_id, code, REDIRECT, verifier)
        with pytest.raises(OAuthGrantError):
            provider.exchange_refresh_token(other.client_id, tokens["refresh_token"])


class TestAccessTokens:
    def test_garbage_token(self, provider) -> None:
        assert provider.verify_access_token("not-a-jwt") is None

    def test_tampered_token(self, provider) -> None:
        client = provider.register_client([REDIRECT])
        code, verifier = _grant(provider, client.client_id)
        token = provider.exchange_authorization_code(client.client_id, code, REDIRECT, verifier)["access_token"]
        header, payload, signature = token.split(".")
        flipped = signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")
        assert provider.verify_access_token(f"{header}.{payload}.{flipped}") is None


def test_metadata_documents(provider) -> None:
    as_meta = provider.authorization_server_metadata()
    assert as_meta["issuer"] == provider.issuer
    assert as_meta["token_endpoint"] == f"{provider.issuer}/token"
    assert as_meta["code_challenge_methods_supported"] == ["S256"]
    pr_meta = provider.protected_resource_metadata()
    assert pr_meta["resource"] == f"{provider.issuer}/mcp"
    assert pr_meta["authorization_servers"] == [provider.issuer]
