"""Object storage for backup snapshots.

Backups write every item below a per-snapshot key prefix. Small payloads are
stored with a single put; large ones go through a multipart upload driven by
ChunkedTransfer.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import aioboto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..config import StorageConfig
from ..utils.errors import TerminalError, TransientError

logger = structlog.get_logger()


def _safe_segment(value: str) -> str:
    return str(value).replace("/", "_").strip() or "_"


class BackupStorage(Protocol):
    """Destination of backup content."""

    def snapshot_key(self, snapshot_id: str, *parts: str) -> str:
        ...

    async def put_object(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> int:
        ...

    async def put_json(self, key: str, payload: Any) -> int:
        ...

    async def start_multipart(self, key: str, content_type: str = "application/octet-stream") -> str:
        ...

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        ...

    async def complete_multipart(self, key: str, upload_id: str, etags: List[str]) -> None:
        ...

    async def abort_multipart(self, key: str, upload_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


class _KeyLayout:
    prefix = ""

    def snapshot_key(self, snapshot_id: str, *parts: str) -> str:
        """Key of an object inside a snapshot.

        Path structure:
            {prefix}/{snapshot_id}/{part}/{part}/...
        """
        segments = [_safe_segment(snapshot_id)] + [_safe_segment(p) for p in parts]
        key = "/".join(segments)
        return f"{self.prefix.rstrip('/')}/{key}" if self.prefix else key

    @staticmethod
    def encode_json(payload: Any) -> bytes:
        return json.dumps(payload, default=str, ensure_ascii=False).encode("utf-8")


class S3BackupStorage(_KeyLayout):
    """S3-compatible snapshot storage using aioboto3.

    Example:
        storage = S3BackupStorage.from_config(settings.storage)
        async with storage:
            await storage.put_json(storage.snapshot_key(snapshot_id, "manifest.json"), manifest)
    """

    def __init__(
        self,
        bucket_name: str,
        prefix: str = "snapshots",
        region_name: Optional[str] = "us-east-1",
        storage_class: str = "STANDARD",
        **s3_kwargs,
    ):
        self.bucket_name = bucket_name
        self.prefix = prefix
        self.region_name = region_name
        self.storage_class = storage_class
        self.s3_kwargs = {k: v for k, v in s3_kwargs.items() if v is not None}
        self._session = None
        self._s3_client = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: StorageConfig) -> "S3BackupStorage":
        return cls(
            bucket_name=config.bucket_name,
            prefix=config.prefix,
            region_name=config.region,
            storage_class=config.storage_class,
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
        )

    async def _get_s3_client(self):
        """Get S3 client, creating if necessary."""
        async with self._lock:
            if self._s3_client is None:
                self._session = aioboto3.Session()
                self._s3_client = await self._session.client(
                    "s3", region_name=self.region_name, **self.s3_kwargs
                ).__aenter__()
        return self._s3_client

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_client.__aexit__(None, None, None)
            self._s3_client = None
            self._session = None

    async def __aenter__(self):
        await self._get_s3_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _call(self, operation: str, **params) -> Dict[str, Any]:
        """Invoke one S3 operation, mapping failures to the error taxonomy."""
        s3 = await self._get_s3_client()
        try:
            return await getattr(s3, operation)(Bucket=self.bucket_name, **params)
        except ClientError as e:
            error = e.response.get("Error", {})
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            logger.error(
                "S3 operation failed",
                operation=operation,
                key=params.get("Key"),
                code=error.get("Code"),
                status_code=status,
            )
            if status and status >= 500:
                raise TransientError(f"S3 {operation} failed: {error.get('Code')}", status_code=status)
            raise TerminalError(
                f"S3 {operation} failed: {error.get('Code')}",
                details={"key": params.get("Key")},
                status_code=status,
            )
        except BotoCoreError as e:
            logger.error("S3 connection error", operation=operation, error=str(e))
            raise TerminalError(f"S3 {operation} failed: {e}", details={"key": params.get("Key")})

    async def put_object(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> int:
        await self._call(
            "put_object",
            Key=key,
            Body=data,
            ContentType=content_type,
            StorageClass=self.storage_class,
        )
        return len(data)

    async def put_json(self, key: str, payload: Any) -> int:
        return await self.put_object(key, self.encode_json(payload), "application/json")

    async def start_multipart(self, key: str, content_type: str = "application/octet-stream") -> str:
        response = await self._call(
            "create_multipart_upload",
            Key=key,
            ContentType=content_type,
            StorageClass=self.storage_class,
        )
        return response["UploadId"]

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        response = await self._call(
            "upload_part",
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"]

    async def complete_multipart(self, key: str, upload_id: str, etags: List[str]) -> None:
        await self._call(
            "complete_multipart_upload",
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"ETag": etag, "PartNumber": i} for i, etag in enumerate(etags, start=1)]
            },
        )

    async def abort_multipart(self, key: str, upload_id: str) -> None:
        await self._call("abort_multipart_upload", Key=key, UploadId=upload_id)


@dataclass
class _PendingUpload:
    key: str
    content_type: str
    parts: Dict[int, bytes] = field(default_factory=dict)


class InMemoryBackupStorage(_KeyLayout):
    """Dictionary-backed storage for tests and local runs."""

    def __init__(self, prefix: str = "snapshots"):
        self.prefix = prefix
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self._uploads: Dict[str, _PendingUpload] = {}
        self._counter = 0

    async def put_object(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> int:
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type
        return len(data)

    async def put_json(self, key: str, payload: Any) -> int:
        return await self.put_object(key, self.encode_json(payload), "application/json")

    def get_json(self, key: str) -> Any:
        return json.loads(self.objects[key].decode("utf-8"))

    async def start_multipart(self, key: str, content_type: str = "application/octet-stream") -> str:
        self._counter += 1
        upload_id = f"upload-{self._counter}"
        self._uploads[upload_id] = _PendingUpload(key, content_type)
        return upload_id

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        upload = self._uploads.get(upload_id)
        if upload is None or upload.key != key:
            raise TerminalError("Unknown multipart upload", details={"key": key, "upload_id": upload_id})
        upload.parts[part_number] = bytes(data)
        return f"etag-{part_number}"

    async def complete_multipart(self, key: str, upload_id: str, etags: List[str]) -> None:
        upload = self._uploads.pop(upload_id, None)
        if upload is None:
            raise TerminalError("Unknown multipart upload", details={"key": key, "upload_id": upload_id})
        body = b"".join(upload.parts[n] for n in range(1, len(etags) + 1))
        await self.put_object(key, body, upload.content_type)

    async def abort_multipart(self, key: str, upload_id: str) -> None:
        self._uploads.pop(upload_id, None)

    @property
    def pending_uploads(self) -> int:
        return len(self._uploads)

    async def close(self) -> None:
        return None
