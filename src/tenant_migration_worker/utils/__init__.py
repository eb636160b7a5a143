"""Utility modules for the tenant migration worker."""

from .errors import (
    MigrationError,
    RetriableError,
    RateLimitError,
    TransientError,
    TerminalError,
    NotFoundError,
    ConflictError,
    ConnectionFailedError,
    ValidationError,
    AuthenticationError,
    WorkloadError,
    JobError,
    InvalidTransitionError,
)
from .formatting import format_bytes
from .rate_limit import (
    ServiceClass,
    RateLimitConfig,
    RateLimitBucket,
    RateLimiter,
    RATE_LIMITS,
)

__all__ = [
    # Error classes
    "MigrationError",
    "RetriableError",
    "RateLimitError",
    "TransientError",
    "TerminalError",
    "NotFoundError",
    "ConflictError",
    "ConnectionFailedError",
    "ValidationError",
    "AuthenticationError",
    "WorkloadError",
    "JobError",
    "InvalidTransitionError",
    # Rate limiting
    "ServiceClass",
    "RateLimitConfig",
    "RateLimitBucket",
    "RateLimiter",
    "RATE_LIMITS",
    # Formatting
    "format_bytes",
]
