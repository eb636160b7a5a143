"""Unit tests for the raw object-graph API client."""

from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from tenant_migration_worker.client.graph_api import GraphAPIClient, parse_retry_after
from tenant_migration_worker.utils.errors import (
    AuthenticationError,
    ConflictError,
    ConnectionFailedError,
    NotFoundError,
    RateLimitError,
    TerminalError,
    TransientError,
)

BASE = "https://graph.example.test/v1.0"


class TestParseRetryAfter:
    """Test cases for Retry-After parsing."""

    def test_seconds(self):
        assert parse_retry_after("5") == 5.0
        assert parse_retry_after(" 12 ") == 12.0

    def test_missing_or_invalid_uses_default(self):
        assert parse_retry_after(None) == 60.0
        assert parse_retry_after("soon", default=30.0) == 30.0
        assert parse_retry_after("-1", default=10.0) == 10.0


@pytest.mark.asyncio
class TestGraphAPIClient:
    """Test cases for GraphAPIClient."""

    @pytest.fixture
    def token_provider(self):
        provider = AsyncMock()
        provider.get_token = AsyncMock(return_value="token-1")
        return provider

    @pytest.fixture
    def api_client(self, token_provider):
        return GraphAPIClient(token_provider, base_url=BASE, default_retry_after=45.0)

    def test_resolve_url(self, api_client):
        """Test that paths are joined and absolute links pass through."""
        assert api_client.resolve_url("users/u1/drive") == f"{BASE}/users/u1/drive"
        assert api_client.resolve_url("/me") == f"{BASE}/me"
        link = "https://graph.example.test/v1.0/users?$skiptoken=abc"
        assert api_client.resolve_url(link) == link

    @respx.mock
    async def test_get_success(self, api_client):
        """Test a successful JSON request carries the bearer token."""
        respx.get(f"{BASE}/users").mock(
            return_value=httpx.Response(200, json={"value": [{"id": "u1"}]})
        )

        result = await api_client.request("GET", "users", params={"$top": 10})

        assert result == {"value": [{"id": "u1"}]}
        request = respx.calls.last.request
        assert request.headers["Authorization"] == "Bearer token-1"
        assert "%24top=10" in str(request.url) or "$top=10" in str(request.url)

    @respx.mock
    async def test_empty_body_returns_empty_dict(self, api_client):
        """Test that 204 responses parse as an empty dict."""
        respx.post(f"{BASE}/teams/t1/members").mock(return_value=httpx.Response(204))

        assert await api_client.request("POST", "teams/t1/members", json_data={}) == {}

    @respx.mock
    async def test_raw_content(self, api_client):
        """Test downloading raw bytes."""
        respx.get(f"{BASE}/drives/d1/items/i1/content").mock(
            return_value=httpx.Response(206, content=b"abc")
        )

        result = await api_client.request(
            "GET", "drives/d1/items/i1/content", headers={"Range": "bytes=0-2"}, parse_json=False
        )

        assert result == b"abc"
        assert respx.calls.last.request.headers["Range"] == "bytes=0-2"

    @respx.mock
    async def test_429_raises_rate_limit_error(self, api_client):
        """Test that throttling carries the Retry-After delay."""
        respx.get(f"{BASE}/users").mock(
            return_value=httpx.Response(429, headers={"Retry-After": "5"})
        )

        with pytest.raises(RateLimitError) as exc_info:
            await api_client.request("GET", "users")

        assert exc_info.value.retry_after == 5.0
        assert exc_info.value.status_code == 429

    @respx.mock
    async def test_429_without_header_uses_default(self, api_client):
        """Test the configured default delay for a bare 429."""
        respx.get(f"{BASE}/users").mock(return_value=httpx.Response(429))

        with pytest.raises(RateLimitError) as exc_info:
            await api_client.request("GET", "users")

        assert exc_info.value.retry_after == 45.0

    @respx.mock
    async def test_5xx_raises_transient_error(self, api_client):
        """Test that server errors are transient."""
        respx.get(f"{BASE}/users").mock(return_value=httpx.Response(503, text="busy"))

        with pytest.raises(TransientError) as exc_info:
            await api_client.request("GET", "users")

        assert exc_info.value.status_code == 503
        assert exc_info.value.retriable is True

    @pytest.mark.parametrize(
        "status,error_type",
        [
            (400, TerminalError),
            (403, AuthenticationError),
            (404, NotFoundError),
            (409, ConflictError),
        ],
    )
    @respx.mock
    async def test_client_errors_are_terminal(self, api_client, status, error_type):
        """Test 4xx classification."""
        respx.get(f"{BASE}/sites/s1").mock(
            return_value=httpx.Response(
                status, json={"error": {"code": "x", "message": "nope"}}
            )
        )

        with pytest.raises(error_type) as exc_info:
            await api_client.request("GET", "sites/s1")

        assert exc_info.value.retriable is False
        assert "nope" in exc_info.value.message

    @respx.mock
    async def test_401_refreshes_token_once(self, api_client, token_provider):
        """Test that a rejected token is refreshed and the request resent."""
        token_provider.get_token = AsyncMock(side_effect=["stale", "fresh"])
        route = respx.get(f"{BASE}/users").mock(
            side_effect=[httpx.Response(401), httpx.Response(200, json={"value": []})]
        )

        result = await api_client.request("GET", "users")

        assert result == {"value": []}
        assert route.call_count == 2
        assert route.calls[1].request.headers["Authorization"] == "Bearer fresh"
        token_provider.get_token.assert_awaited_with(force_refresh=True)

    @respx.mock
    async def test_401_after_refresh_raises(self, api_client):
        """Test that a second 401 is an authentication failure."""
        respx.get(f"{BASE}/users").mock(return_value=httpx.Response(401))

        with pytest.raises(AuthenticationError) as exc_info:
            await api_client.request("GET", "users")

        assert exc_info.value.status_code == 401

    @respx.mock
    async def test_timeout_is_connection_failure(self, api_client):
        """Test that timeouts are terminal connection failures."""
        respx.get(f"{BASE}/users").mock(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(ConnectionFailedError) as exc_info:
            await api_client.request("GET", "users")

        assert exc_info.value.retriable is False

    @respx.mock
    async def test_transport_error_is_connection_failure(self, api_client):
        """Test that network failures are terminal connection failures."""
        respx.get(f"{BASE}/users").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(ConnectionFailedError):
            await api_client.request("GET", "users")

    @respx.mock
    async def test_unauthenticated_upload(self, api_client, token_provider):
        """Test that pre-authenticated upload URLs get no bearer token."""
        upload_url = "https://upload.example.test/session/abc"
        respx.put(upload_url).mock(return_value=httpx.Response(202, json={"nextExpectedRanges": ["4-"]}))

        result = await api_client.request(
            "PUT",
            upload_url,
            content=b"data",
            headers={"Content-Range": "bytes 0-3/8"},
            authenticated=False,
        )

        assert result == {"nextExpectedRanges": ["4-"]}
        request = respx.calls.last.request
        assert "Authorization" not in request.headers
        assert request.headers["Content-Range"] == "bytes 0-3/8"
        token_provider.get_token.assert_not_awaited()
