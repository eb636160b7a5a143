"""Tenant-bound API session.

A GraphSession pairs the raw API client of one tenant with the retrying,
rate-limited executor, so every call a processor makes is throttled against
that tenant's buckets.
"""

from typing import Any, Dict, Optional, Tuple

from ..utils.rate_limit import ServiceClass
from .graph_api import GraphAPIClient
from .retrying import RetryingClient


class GraphSession:
    """Rate-limited, retrying API access for one tenant."""

    def __init__(
        self,
        tenant_id: str,
        api: GraphAPIClient,
        retrying: RetryingClient,
        owns_client: bool = True,
    ):
        self.tenant_id = tenant_id
        self.api = api
        self.retrying = retrying
        self._owns_client = owns_client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.api.close()

    async def call(self, service_class: ServiceClass, fn):
        """Run an arbitrary coroutine factory under this tenant's policy."""
        return await self.retrying.execute(self.tenant_id, service_class, fn)

    async def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        service_class: ServiceClass = ServiceClass.GENERAL,
    ) -> Dict[str, Any]:
        return await self.call(
            service_class,
            lambda: self.api.request("GET", url, params=params),
        )

    async def post(
        self,
        url: str,
        json_data: Optional[Any] = None,
        service_class: ServiceClass = ServiceClass.GENERAL,
    ) -> Dict[str, Any]:
        return await self.call(
            service_class,
            lambda: self.api.request("POST", url, json_data=json_data),
        )

    async def patch(
        self,
        url: str,
        json_data: Optional[Any] = None,
        service_class: ServiceClass = ServiceClass.GENERAL,
    ) -> Dict[str, Any]:
        return await self.call(
            service_class,
            lambda: self.api.request("PATCH", url, json_data=json_data),
        )

    async def get_content(
        self,
        url: str,
        byte_range: Optional[Tuple[int, int]] = None,
        service_class: ServiceClass = ServiceClass.FILES,
    ) -> bytes:
        """Download raw content, optionally a single inclusive byte range."""
        headers = None
        if byte_range is not None:
            headers = {"Range": f"bytes={byte_range[0]}-{byte_range[1]}"}
        return await self.call(
            service_class,
            lambda: self.api.request("GET", url, headers=headers, parse_json=False),
        )

    async def put_content(
        self,
        url: str,
        content: bytes,
        content_type: str = "application/octet-stream",
        service_class: ServiceClass = ServiceClass.FILES,
    ) -> Dict[str, Any]:
        """Upload a payload in one request."""
        return await self.call(
            service_class,
            lambda: self.api.request(
                "PUT",
                url,
                content=content,
                headers={"Content-Type": content_type},
            ),
        )

    async def upload_range(
        self,
        upload_url: str,
        data: bytes,
        start: int,
        end: int,
        total: int,
        service_class: ServiceClass = ServiceClass.FILES,
    ) -> Dict[str, Any]:
        """Send one chunk to a pre-authenticated upload session URL."""
        headers = {
            "Content-Length": str(len(data)),
            "Content-Range": f"bytes {start}-{end}/{total}",
        }
        return await self.call(
            service_class,
            lambda: self.api.request(
                "PUT",
                upload_url,
                content=data,
                headers=headers,
                authenticated=False,
            ),
        )
