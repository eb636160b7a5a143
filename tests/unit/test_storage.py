"""Unit tests for backup snapshot storage."""

from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from tenant_migration_worker.client.storage import InMemoryBackupStorage, S3BackupStorage
from tenant_migration_worker.config import StorageConfig
from tenant_migration_worker.utils.errors import TerminalError, TransientError


def client_error(code: str, status: int, operation: str = "PutObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class TestSnapshotKeys:
    """Test cases for the snapshot key layout."""

    def test_key_layout(self):
        storage = InMemoryBackupStorage(prefix="snapshots/")

        assert storage.snapshot_key("snap-1", "mail", "u1", "m1.json") == "snapshots/snap-1/mail/u1/m1.json"

    def test_slashes_in_segments_are_replaced(self):
        storage = InMemoryBackupStorage(prefix="")

        assert storage.snapshot_key("snap-1", "files", "a/b.txt") == "snap-1/files/a_b.txt"


@pytest.mark.asyncio
class TestInMemoryBackupStorage:
    """Test cases for InMemoryBackupStorage."""

    async def test_put_json(self):
        storage = InMemoryBackupStorage()

        written = await storage.put_json("k.json", {"subject": "Grüße"})

        assert written == len(storage.objects["k.json"])
        assert storage.get_json("k.json") == {"subject": "Grüße"}
        assert storage.content_types["k.json"] == "application/json"

    async def test_multipart_round(self):
        storage = InMemoryBackupStorage()

        upload_id = await storage.start_multipart("big.bin")
        etags = [
            await storage.upload_part("big.bin", upload_id, 1, b"abc"),
            await storage.upload_part("big.bin", upload_id, 2, b"def"),
        ]
        await storage.complete_multipart("big.bin", upload_id, etags)

        assert storage.objects["big.bin"] == b"abcdef"
        assert storage.pending_uploads == 0

    async def test_unknown_upload(self):
        storage = InMemoryBackupStorage()

        with pytest.raises(TerminalError):
            await storage.upload_part("big.bin", "upload-99", 1, b"abc")


@pytest.mark.asyncio
class TestS3BackupStorage:
    """Test cases for S3BackupStorage with a mocked client."""

    @pytest.fixture
    def s3(self):
        return AsyncMock()

    @pytest.fixture
    def storage(self, s3):
        storage = S3BackupStorage(bucket_name="backups", prefix="snapshots", storage_class="STANDARD_IA")
        storage._s3_client = s3
        return storage

    def test_from_config(self):
        config = StorageConfig(
            bucket_name="b",
            prefix="p",
            endpoint_url="http://localhost:9000",
            region="eu-west-1",
            access_key_id=None,
            secret_access_key=None,
        )

        storage = S3BackupStorage.from_config(config)

        assert storage.bucket_name == "b"
        assert storage.region_name == "eu-west-1"
        assert storage.s3_kwargs == {"endpoint_url": "http://localhost:9000"}

    async def test_put_object(self, storage, s3):
        written = await storage.put_object("snapshots/s/a.txt", b"abc", "text/plain")

        assert written == 3
        s3.put_object.assert_awaited_once_with(
            Bucket="backups",
            Key="snapshots/s/a.txt",
            Body=b"abc",
            ContentType="text/plain",
            StorageClass="STANDARD_IA",
        )

    async def test_multipart(self, storage, s3):
        s3.create_multipart_upload.return_value = {"UploadId": "u-1"}
        s3.upload_part.side_effect = [{"ETag": "e1"}, {"ETag": "e2"}]

        upload_id = await storage.start_multipart("k")
        etags = [await storage.upload_part("k", upload_id, n, b"x") for n in (1, 2)]
        await storage.complete_multipart("k", upload_id, etags)

        s3.complete_multipart_upload.assert_awaited_once_with(
            Bucket="backups",
            Key="k",
            UploadId="u-1",
            MultipartUpload={"Parts": [{"ETag": "e1", "PartNumber": 1}, {"ETag": "e2", "PartNumber": 2}]},
        )

    async def test_server_error_is_transient(self, storage, s3):
        s3.put_object.side_effect = client_error("SlowDown", 503)

        with pytest.raises(TransientError) as exc_info:
            await storage.put_object("k", b"abc")

        assert exc_info.value.status_code == 503

    async def test_client_error_is_terminal(self, storage, s3):
        s3.put_object.side_effect = client_error("AccessDenied", 403)

        with pytest.raises(TerminalError) as exc_info:
            await storage.put_object("k", b"abc")

        assert "AccessDenied" in exc_info.value.message

    async def test_connection_error_is_terminal(self, storage, s3):
        s3.abort_multipart_upload.side_effect = EndpointConnectionError(endpoint_url="http://s3")

        with pytest.raises(TerminalError):
            await storage.abort_multipart("k", "u-1")

    async def test_close(self, storage, s3):
        await storage.close()

        s3.__aexit__.assert_awaited_once()
        assert storage._s3_client is None
