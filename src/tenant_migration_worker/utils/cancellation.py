"""Cooperative pause/cancel signalling for running jobs."""

from typing import Awaitable, Callable, Optional

import structlog

from ..state import JobStatus

logger = structlog.get_logger()

SignalSource = Callable[[], Awaitable[Optional[JobStatus]]]


class CancellationToken:
    """Pause/cancel signal passed down through every traversal call.

    The token is checked only at defined suspension points (page and workload
    boundaries). `source` is polled on each check and returns the externally
    requested status (PAUSED or CANCELLED) or None. Once tripped the token
    stays tripped for the rest of the run.
    """

    STOP_STATUSES = (JobStatus.PAUSED, JobStatus.CANCELLED)

    def __init__(self, source: Optional[SignalSource] = None):
        self._source = source
        self._reason: Optional[JobStatus] = None

    @property
    def reason(self) -> Optional[JobStatus]:
        """The status that tripped the token, if any."""
        return self._reason

    @property
    def is_set(self) -> bool:
        return self._reason is not None

    def trip(self, reason: JobStatus = JobStatus.CANCELLED) -> None:
        """Trip the token locally."""
        if self._reason is None:
            logger.info("Cancellation requested", reason=reason.value)
            self._reason = reason

    async def should_stop(self) -> bool:
        """Poll the signal source and report whether work must stop."""
        if self._reason is not None:
            return True
        if self._source is None:
            return False

        requested = await self._source()
        if requested in self.STOP_STATUSES:
            self.trip(requested)
            return True
        return False
