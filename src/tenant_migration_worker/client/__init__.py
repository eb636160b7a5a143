"""Object-graph API client modules."""

from .auth import ClientCredentialsTokenProvider, CredentialResolver
from .chunked import ChunkedTransfer, chunk_ranges
from .graph_api import GraphAPIClient
from .paginator import Page, Paginator
from .retrying import RetryingClient
from .session import GraphSession
from .storage import BackupStorage, InMemoryBackupStorage, S3BackupStorage

__all__ = [
    "BackupStorage",
    "ChunkedTransfer",
    "ClientCredentialsTokenProvider",
    "CredentialResolver",
    "GraphAPIClient",
    "GraphSession",
    "InMemoryBackupStorage",
    "Page",
    "Paginator",
    "RetryingClient",
    "S3BackupStorage",
    "chunk_ranges",
]
