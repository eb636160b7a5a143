"""Raw async client for the cloud object-graph REST API.

This module sends single HTTP requests and classifies every non-success
response into the engine's error taxonomy. It performs one token refresh on a
401 but never retries anything else; retries and rate limiting belong to the
RetryingClient wrapped around it.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from ..utils.errors import (
    AuthenticationError,
    ConflictError,
    ConnectionFailedError,
    NotFoundError,
    RateLimitError,
    TerminalError,
    TransientError,
)

logger = logging.getLogger(__name__)


class TokenProvider(Protocol):
    """Anything able to hand out bearer tokens for one tenant."""

    async def get_token(self, force_refresh: bool = False) -> str:
        ...


def parse_retry_after(value: Optional[str], default: float = 60.0) -> float:
    """Parse a Retry-After header in seconds.

    Args:
        value: Raw header value
        default: Seconds used when the header is missing or unparseable

    Returns:
        Seconds to wait
    """
    if value is None:
        return default
    try:
        seconds = float(value.strip())
    except (TypeError, ValueError):
        return default
    if seconds < 0:
        return default
    return seconds


class GraphAPIClient:
    """Async client for the object-graph API.

    Features:
    - Bearer token injection with a single forced refresh on 401
    - 429 classified as RateLimitError carrying the advised Retry-After
    - 5xx classified as TransientError
    - Other 4xx and network failures classified as terminal errors
    """

    BASE_URL = "https://graph.microsoft.com/v1.0"
    DEFAULT_TIMEOUT = 60.0

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        default_retry_after: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize API client.

        Args:
            token_provider: Source of bearer tokens for the tenant
            base_url: API base URL
            timeout: Request timeout in seconds
            default_retry_after: Seconds assumed for a 429 without Retry-After
            http_client: Optional httpx client for API requests
        """
        self._token_provider = token_provider
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.default_retry_after = default_retry_after
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or self.DEFAULT_TIMEOUT),
            follow_redirects=True,
        )

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit - close HTTP client."""
        await self.close()

    async def close(self):
        """Close the HTTP client and clean up resources."""
        if self._http_client:
            await self._http_client.aclose()

    def resolve_url(self, url: str) -> str:
        """Turn an API path into an absolute URL; absolute links pass through."""
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        parse_json: bool = True,
        authenticated: bool = True,
    ) -> Any:
        """Make one HTTP request to the API.

        Args:
            method: HTTP method (GET, POST, PUT, ...)
            url: API path or absolute URL (next/delta links, upload sessions)
            params: Query parameters
            json_data: JSON body
            content: Raw body bytes
            headers: Extra request headers
            parse_json: Whether to parse the response as JSON
            authenticated: Whether to send the bearer token (upload session
                URLs are pre-authenticated and must not receive it)

        Returns:
            Parsed JSON (empty dict for empty bodies) or raw bytes

        Raises:
            RateLimitError: On 429
            TransientError: On 5xx
            AuthenticationError: On 401 after refresh, or 403
            NotFoundError / ConflictError / TerminalError: On other 4xx
            ConnectionFailedError: On network failures or timeouts
        """
        full_url = self.resolve_url(url)
        request_headers = {"Accept": "application/json" if parse_json else "*/*"}
        if headers:
            request_headers.update(headers)

        if authenticated:
            token = await self._token_provider.get_token()
            request_headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._send(method, full_url, params, json_data, content, request_headers)

            if response.status_code == 401 and authenticated:
                logger.info("Access token rejected, refreshing: url=%s", full_url)
                token = await self._token_provider.get_token(force_refresh=True)
                request_headers["Authorization"] = f"Bearer {token}"
                response = await self._send(method, full_url, params, json_data, content, request_headers)

        except httpx.TimeoutException as e:
            logger.error("Timeout calling API: url=%s, error=%s", full_url, str(e))
            raise ConnectionFailedError(
                "Request to API timed out",
                details={"error": str(e), "url": full_url},
            )
        except httpx.TransportError as e:
            logger.error("Network error calling API: url=%s, error=%s", full_url, str(e))
            raise ConnectionFailedError(
                "Network error calling API",
                details={"error": str(e), "url": full_url},
            )

        self._raise_for_status(response, full_url)

        if not parse_json:
            return response.content
        if not response.content:
            return {}
        return response.json()

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        json_data: Optional[Any],
        content: Optional[bytes],
        headers: Dict[str, str],
    ) -> httpx.Response:
        return await self._http_client.request(
            method,
            url,
            params=params,
            json=json_data,
            content=content,
            headers=headers,
        )

    def _raise_for_status(self, response: httpx.Response, url: str) -> None:
        """Classify a non-success response into the error taxonomy."""
        status = response.status_code
        if status < 400:
            return

        if status == 429:
            retry_after = parse_retry_after(
                response.headers.get("Retry-After"), self.default_retry_after
            )
            logger.warning(
                "API throttled request: retry_after=%s, url=%s",
                retry_after,
                url,
            )
            raise RateLimitError("Rate limit exceeded", retry_after=retry_after)

        if status >= 500:
            logger.warning(
                "API server error: status_code=%s, url=%s, response_text=%s",
                status,
                url,
                response.text[:500] if response.text else None,
            )
            raise TransientError(f"API server error: {status}", status_code=status)

        error_detail = self._parse_error_response(response)
        message = error_detail.get("message", "Unknown error")
        logger.error(
            "API client error: status_code=%s, url=%s, error=%s",
            status,
            url,
            error_detail,
        )

        if status == 401:
            raise AuthenticationError(
                f"Authentication failed even after token refresh: {message}",
                status_code=401,
            )
        if status == 403:
            raise AuthenticationError(
                f"Access denied: {message}",
                requires_reauth=False,
                status_code=403,
            )
        if status == 404:
            raise NotFoundError(f"Not found: {message}", details={"url": url})
        if status == 409:
            raise ConflictError(f"Conflict: {message}", details={"url": url})
        raise TerminalError(
            f"Client error: {status} - {message}",
            details={"url": url, "code": error_detail.get("code")},
            status_code=status,
        )

    def _parse_error_response(self, response: httpx.Response) -> Dict[str, Any]:
        """Parse an API error body.

        Args:
            response: HTTP response object

        Returns:
            Parsed error data or raw text
        """
        try:
            error_json = response.json()
            if isinstance(error_json, dict) and "error" in error_json:
                error = error_json["error"]
                return error if isinstance(error, dict) else {"message": str(error)}
            return error_json if isinstance(error_json, dict) else {"message": str(error_json)}
        except ValueError:
            return {"message": response.text[:500] if response.text else "Unknown error"}
