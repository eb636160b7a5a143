"""Large-object transfer in fixed-size byte ranges.

Payloads up to the threshold move in a single read and a single write.
Larger ones are streamed chunk by chunk: each chunk is downloaded with a
Range request and written either to a negotiated upload session (migration)
or as one part of an S3 multipart upload (backup). Every chunk goes through
the retrying client on its own, so a failed chunk is retried without
re-sending the earlier ones.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..utils.errors import TerminalError
from ..utils.formatting import format_bytes
from ..utils.rate_limit import ServiceClass
from .session import GraphSession
from .storage import BackupStorage

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 4 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024


def chunk_ranges(total_size: int, chunk_size: int) -> List[Tuple[int, int]]:
    """Inclusive byte ranges covering ``[0, total_size)``.

    >>> chunk_ranges(25, 10)
    [(0, 9), (10, 19), (20, 24)]
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    ranges = []
    offset = 0
    while offset < total_size:
        end = min(offset + chunk_size - 1, total_size - 1)
        ranges.append((offset, end))
        offset = end + 1
    return ranges


@dataclass
class TransferOutcome:
    """What one object transfer moved."""

    bytes_transferred: int
    chunks: int
    item: Optional[Dict[str, Any]] = None


class ChunkedTransfer:
    """Copy objects between tenants or into backup storage."""

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        service_class: ServiceClass = ServiceClass.FILES,
    ):
        self.threshold = threshold
        self.chunk_size = chunk_size
        self.service_class = service_class

    def is_chunked(self, size: int) -> bool:
        return size > self.threshold

    async def copy(
        self,
        source: GraphSession,
        content_url: str,
        destination: GraphSession,
        target: str,
        size: int,
        conflict_behavior: str = "rename",
    ) -> TransferOutcome:
        """Copy one object from the source tenant to the destination tenant.

        Args:
            source: Source tenant session
            content_url: Source ``.../content`` URL
            destination: Destination tenant session
            target: Destination item address up to the trailing colon,
                e.g. ``drives/{id}/items/{parent}:/{name}:``
            size: Object size in bytes
            conflict_behavior: What the destination does on a name clash

        Returns:
            TransferOutcome with the created destination item
        """
        if not self.is_chunked(size):
            data = await source.get_content(content_url, service_class=self.service_class)
            item = await destination.put_content(
                f"{target}/content?@microsoft.graph.conflictBehavior={conflict_behavior}",
                data,
                service_class=self.service_class,
            )
            return TransferOutcome(len(data), 1, item)

        upload = await destination.post(
            f"{target}/createUploadSession",
            {"item": {"@microsoft.graph.conflictBehavior": conflict_behavior}},
            service_class=self.service_class,
        )
        upload_url = upload.get("uploadUrl")
        if not upload_url:
            raise TerminalError("Upload session response missing uploadUrl", details={"target": target})

        logger.info(
            "Starting chunked upload: target=%s, size=%s, chunk_size=%s",
            target,
            format_bytes(size),
            format_bytes(self.chunk_size),
        )

        offset = 0
        chunks = 0
        item: Optional[Dict[str, Any]] = None
        for start, end in chunk_ranges(size, self.chunk_size):
            data = await source.get_content(
                content_url, byte_range=(start, end), service_class=self.service_class
            )
            response = await destination.upload_range(
                upload_url, data, start, end, size, service_class=self.service_class
            )
            offset = end + 1
            chunks += 1
            if response and response.get("id"):
                item = response

        if offset != size:
            raise TerminalError("Chunked upload ended short", details={"offset": offset, "size": size})
        return TransferOutcome(offset, chunks, item)

    async def store(
        self,
        source: GraphSession,
        content_url: str,
        storage: BackupStorage,
        key: str,
        size: int,
        content_type: str = "application/octet-stream",
    ) -> TransferOutcome:
        """Copy one object from the source tenant into backup storage."""
        if not self.is_chunked(size):
            data = await source.get_content(content_url, service_class=self.service_class)
            written = await storage.put_object(key, data, content_type)
            return TransferOutcome(written, 1)

        upload_id = await storage.start_multipart(key, content_type)
        etags: List[str] = []
        offset = 0
        try:
            for part_number, (start, end) in enumerate(chunk_ranges(size, self.chunk_size), start=1):
                data = await source.get_content(
                    content_url, byte_range=(start, end), service_class=self.service_class
                )
                etags.append(await storage.upload_part(key, upload_id, part_number, data))
                offset = end + 1
            await storage.complete_multipart(key, upload_id, etags)
        except Exception:
            logger.warning("Aborting multipart upload: key=%s, offset=%s", key, offset)
            await storage.abort_multipart(key, upload_id)
            raise

        return TransferOutcome(offset, len(etags))
