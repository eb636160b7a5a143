"""Custom exception classes for the tenant migration worker.

These exceptions classify failures into throttled, transient and permanent
categories so that the retrying client, the workload processors and the job
runner can each decide where a failure stops propagating.
"""

from typing import Optional, Dict, Any


class MigrationError(Exception):
    """Base exception for all migration engine errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retriable: bool = True,
        status_code: Optional[int] = None,
    ):
        """Initialize migration error.

        Args:
            message: Error message
            details: Additional error details
            retriable: Whether this error is retriable
            status_code: HTTP status code returned by the API, if any
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retriable = retriable
        self.status_code = status_code
        if status_code is not None:
            self.details.setdefault("status_code", status_code)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            "message": self.message,
            "details": self.details,
            "retriable": self.retriable,
            "error_type": self.__class__.__name__,
        }


class RetriableError(MigrationError):
    """Exception for temporary failures that should be retried.

    Examples:
    - Throttling (429) with an advised delay
    - Server errors (5xx)
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
    ):
        """Initialize retriable error.

        Args:
            message: Error message
            details: Additional error details
            retry_after: Seconds to wait before retry (for rate limits)
            status_code: HTTP status code
        """
        super().__init__(message, details, retriable=True, status_code=status_code)
        self.retry_after = retry_after
        if retry_after:
            self.details["retry_after"] = retry_after


class RateLimitError(RetriableError):
    """Throttled by the API (HTTP 429).

    Always retried after the advised Retry-After delay; never counts against
    the retry budget of the retrying client.
    """

    DEFAULT_RETRY_AFTER = 60

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Seconds to wait before retry
        """
        super().__init__(
            message,
            retry_after=retry_after if retry_after is not None else self.DEFAULT_RETRY_AFTER,
            status_code=429,
        )


class TransientError(RetriableError):
    """Server-side failure (HTTP 5xx), retried with bounded backoff."""

    def __init__(self, message: str, status_code: int = 500, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=status_code)


class TerminalError(MigrationError):
    """Exception for permanent failures that should not be retried.

    Examples:
    - Resource not found (404)
    - Invalid request (400, 409, ...)
    - Invalid credentials
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        """Initialize terminal error.

        Args:
            message: Error message
            details: Additional error details
            status_code: HTTP status code
        """
        super().__init__(message, details, retriable=False, status_code=status_code)


class NotFoundError(TerminalError):
    """The requested resource does not exist (HTTP 404)."""

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=404)


class ConflictError(TerminalError):
    """The resource already exists or conflicts with current state (HTTP 409)."""

    def __init__(self, message: str = "Resource conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, status_code=409)


class ConnectionFailedError(TerminalError):
    """Network or timeout failure talking to the API.

    Only status-coded server responses are retried, so a request that never
    produced a response fails immediately.
    """


class ValidationError(TerminalError):
    """Exception for validation errors.

    Used when:
    - Job messages are missing required fields
    - Data format is invalid
    """

    def __init__(self, message: str, field: Optional[str] = None):
        """Initialize validation error.

        Args:
            message: Error message
            field: Field that failed validation
        """
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class AuthenticationError(TerminalError):
    """Exception for authentication/authorization errors.

    Used when:
    - Access tokens cannot be obtained or refreshed
    - The application lacks consent in the tenant (403)
    """

    def __init__(
        self,
        message: str = "Authentication failed",
        requires_reauth: bool = True,
        status_code: Optional[int] = None,
    ):
        """Initialize authentication error.

        Args:
            message: Error message
            requires_reauth: Whether the tenant needs to be reconnected
            status_code: HTTP status code
        """
        super().__init__(message, {"requires_reauth": requires_reauth}, status_code=status_code)


class WorkloadError(TerminalError):
    """A whole workload (or one of its subjects) could not be set up.

    For example the destination site or team does not exist. Recorded on the
    workload result; the job continues with the next workload.
    """

    def __init__(self, message: str, workload: Optional[str] = None, subject_id: Optional[str] = None):
        details: Dict[str, Any] = {}
        if workload:
            details["workload"] = workload
        if subject_id:
            details["subject_id"] = subject_id
        super().__init__(message, details)
        self.workload = workload
        self.subject_id = subject_id


class JobError(TerminalError):
    """The job as a whole failed (credentials or every workload failed)."""

    def __init__(self, message: str, job_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if job_id:
            details["job_id"] = job_id
        super().__init__(message, details)
        self.job_id = job_id


class InvalidTransitionError(TerminalError):
    """A job status transition is not allowed for the requesting actor."""

    def __init__(self, current: str, target: str, actor: str = "engine"):
        super().__init__(
            f"Transition {current} -> {target} is not allowed for {actor}",
            {"current": current, "target": target, "actor": actor},
        )
        self.current = current
        self.target = target
