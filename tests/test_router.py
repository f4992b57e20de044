"""
tests/test_router.py -- Unit tests for auth/router.py request classification.
"""

from __future__ import annotations

import pytest

from auth.router import AuthRoute, bearer_token, classify

API_KEY = "wtyk_" + "a" * 64


@pytest.mark.parametrize(
    "header, expected",
    [
        (None, None),
        ("", None),
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("Bearer   abc  ", "abc"),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer", None),
        ("Bearer ", None),
    ],
)
def test_bearer_token(header, expected) -> None:
    assert bearer_token(header) == expected


class TestClassify:
    def test_api_key_on_mcp(self) -> None:
        assert classify("/mcp", f"Bearer {API_KEY}") is AuthRoute.API_KEY

    def test_trailing_slash(self) -> None:
        assert classify("/mcp/", f"Bearer {API_KEY}") is AuthRoute.API_KEY

    def test_any_prefixed_token_goes_to_api_key_path(self) -> None:
        # Format checks belong to the key manager; the router only looks at the prefix.
        assert classify("/mcp", "Bearer wtyk_short") is AuthRoute.API_KEY

    def test_jwt_on_mcp_is_oauth(self) -> None:
        assert classify("/mcp", "Bearer eyJhbGciOiJIUzI1NiJ9.e30.sig") is AuthRoute.OAUTH

    def test_no_header_is_oauth(self) -> None:
        assert classify("/mcp", None) is AuthRoute.OAUTH

    @pytest.mark.parametrize("path", ["/authorize", "/token", "/api/v1/api-keys", "/mcpx", "/mcp/tools"])
    def test_api_key_elsewhere_is_oauth(self, path) -> None:
        assert classify(path, f"Bearer {API_KEY}") is AuthRoute.OAUTH
