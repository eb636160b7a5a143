"""Client-credentials token management for tenant API access.

This module obtains application access tokens for a tenant directory using
the OAuth 2.0 client-credentials grant, and resolves a tenant reference into
a ready-to-use GraphSession.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..config import AzureADConfig, GraphAPIConfig
from ..utils.errors import AuthenticationError, RetriableError
from ..utils.rate_limit import RateLimiter
from .graph_api import GraphAPIClient
from .retrying import RetryingClient
from .session import GraphSession

logger = logging.getLogger(__name__)


class ClientCredentialsTokenProvider:
    """Application token provider for one tenant directory.

    Tokens are cached until shortly before they expire; a forced refresh
    always goes back to the token endpoint.
    """

    EXPIRY_SKEW_SECONDS = 300

    def __init__(
        self,
        directory_id: str,
        client_id: str,
        client_secret: str,
        authority_url: str = "https://login.microsoftonline.com",
        scope: str = "https://graph.microsoft.com/.default",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        clock=time.monotonic,
    ):
        """Initialize token provider.

        Args:
            directory_id: Cloud directory (tenant) identifier
            client_id: Application client ID
            client_secret: Application client secret
            authority_url: Token authority base URL
            scope: Requested scope
            client: Optional httpx client for token requests.
                    If not provided, a new client will be created per request.
            timeout: Token request timeout in seconds
            clock: Monotonic clock in seconds
        """
        self.directory_id = directory_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.token_endpoint = f"{authority_url.rstrip('/')}/{directory_id}/oauth2/v2.0/token"
        self.scope = scope
        self._client = client
        self._timeout = timeout
        self._clock = clock
        self._access_token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get_token(self, force_refresh: bool = False) -> str:
        """Return a valid access token, fetching a new one when needed."""
        async with self._lock:
            if (
                not force_refresh
                and self._access_token
                and self._clock() < self._expires_at - self.EXPIRY_SKEW_SECONDS
            ):
                return self._access_token

            token_data = await self._request_token()
            self._access_token = token_data["access_token"]
            self._expires_at = self._clock() + float(token_data.get("expires_in", 3600))
            return self._access_token

    async def _request_token(self) -> Dict[str, Any]:
        """Request a token with the client-credentials grant.

        Returns:
            Token response data

        Raises:
            AuthenticationError: If the credentials are rejected
            RetriableError: If the token endpoint is temporarily unavailable
        """
        logger.info(
            "Requesting application access token: directory_id=%s, client_id=%s",
            self.directory_id,
            self.client_id[:10] + "..." if self.client_id else None,
        )

        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "scope": self.scope,
        }

        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.post(
                self.token_endpoint,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

            if response.status_code == 200:
                token_data = response.json()
                if not token_data.get("access_token"):
                    logger.error(
                        "Token response missing access_token: directory_id=%s",
                        self.directory_id,
                    )
                    raise AuthenticationError("Token response missing access_token")

                logger.info(
                    "Obtained access token: directory_id=%s, expires_in=%s",
                    self.directory_id,
                    token_data.get("expires_in"),
                )
                return token_data

            if response.status_code in (429, 503):
                retry_after = response.headers.get("Retry-After", "60")
                logger.warning(
                    "Token endpoint temporarily unavailable: status_code=%s, retry_after=%s",
                    response.status_code,
                    retry_after,
                )
                raise RetriableError(
                    f"Token endpoint temporarily unavailable (status {response.status_code})",
                    retry_after=int(retry_after) if retry_after.isdigit() else 60,
                    status_code=response.status_code,
                )

            error_data = self._parse_error_response(response)
            if response.status_code >= 500:
                logger.error(
                    "Token endpoint error: status_code=%s, error_data=%s",
                    response.status_code,
                    error_data,
                )
                raise RetriableError(
                    f"Token endpoint error: {response.status_code}",
                    details={"error": error_data},
                    status_code=response.status_code,
                )

            error_msg = error_data.get("error_description") or error_data.get("error") or "invalid credentials"
            logger.error(
                "Token request rejected: status_code=%s, directory_id=%s, error=%s",
                response.status_code,
                self.directory_id,
                error_data.get("error"),
            )
            raise AuthenticationError(
                f"Token request failed: {error_msg}",
                status_code=response.status_code,
            )

        except httpx.TimeoutException as e:
            logger.error("Timeout during token request: error=%s", str(e))
            raise RetriableError(
                "Token request timed out",
                details={"error": str(e)},
            )
        except httpx.TransportError as e:
            logger.error("Network error during token request: error=%s", str(e))
            raise RetriableError(
                "Network error during token request",
                details={"error": str(e)},
            )
        finally:
            if not self._client:
                await client.aclose()

    def _parse_error_response(self, response: httpx.Response) -> Dict[str, Any]:
        """Parse error response from the token endpoint."""
        try:
            data = response.json()
        except ValueError:
            return {"raw_text": response.text[:500] if response.text else None}
        return data if isinstance(data, dict) else {"raw_text": str(data)}


class CredentialResolver:
    """Resolve tenant references into authenticated API sessions.

    Every session shares one RateLimiter so that concurrent jobs against the
    same tenant draw from the same buckets.
    """

    def __init__(
        self,
        azure_config: AzureADConfig,
        graph_config: GraphAPIConfig,
        rate_limiter: Optional[RateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.azure_config = azure_config
        self.graph_config = graph_config
        self.rate_limiter = rate_limiter or RateLimiter()
        self._http_client = http_client

    def token_provider_for(self, tenant) -> ClientCredentialsTokenProvider:
        """Build a token provider for the tenant's directory."""
        if not self.azure_config.client_id or not self.azure_config.client_secret:
            raise AuthenticationError("Application credentials are not configured")
        if not tenant.directory_id:
            raise AuthenticationError(f"Tenant {tenant.id} has no directory id")
        return ClientCredentialsTokenProvider(
            directory_id=tenant.directory_id,
            client_id=self.azure_config.client_id,
            client_secret=self.azure_config.client_secret,
            authority_url=self.azure_config.authority_url,
            scope=self.azure_config.scope,
            client=self._http_client,
            timeout=self.azure_config.timeout_seconds,
        )

    async def get_client_for(self, tenant) -> GraphSession:
        """Create a session for the tenant.

        The first token is fetched eagerly so credential problems surface
        before any workload starts.

        Args:
            tenant: TenantRef with `id` and `directory_id`

        Returns:
            GraphSession bound to the tenant

        Raises:
            AuthenticationError: If a token cannot be obtained
        """
        provider = self.token_provider_for(tenant)
        await provider.get_token()

        api_client = GraphAPIClient(
            token_provider=provider,
            base_url=self.graph_config.api_base_url,
            timeout=self.graph_config.api_timeout_seconds,
            default_retry_after=self.graph_config.default_retry_after_seconds,
            http_client=self._http_client,
        )
        retrying = RetryingClient(
            self.rate_limiter,
            max_retries=self.graph_config.max_retries,
            base_delay=self.graph_config.retry_base_delay_seconds,
        )
        logger.info("Resolved API session: tenant_id=%s", tenant.id)
        return GraphSession(tenant.id, api_client, retrying, owns_client=self._http_client is None)
