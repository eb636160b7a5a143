"""Workload processors and their registry."""

from typing import Dict

from ..schemas.job import Workload
from ..utils.errors import ValidationError
from .base import DriveTraversal, TransferItem, WorkloadContext, WorkloadProcessor
from .files import FilesProcessor
from .mail import MailProcessor
from .sites import SitesProcessor
from .teams import TeamsProcessor

PROCESSORS: Dict[Workload, WorkloadProcessor] = {
    Workload.MAIL: MailProcessor(),
    Workload.FILES: FilesProcessor(),
    Workload.SITES: SitesProcessor(),
    Workload.TEAMS: TeamsProcessor(),
}


def get_processor(workload: Workload) -> WorkloadProcessor:
    """Look up the processor for a workload.

    Raises:
        ValidationError: If no processor handles the workload
    """
    try:
        return PROCESSORS[Workload(workload)]
    except (KeyError, ValueError):
        raise ValidationError(f"Unsupported workload: {workload}", field="workloads")


__all__ = [
    "DriveTraversal",
    "FilesProcessor",
    "MailProcessor",
    "PROCESSORS",
    "SitesProcessor",
    "TeamsProcessor",
    "TransferItem",
    "WorkloadContext",
    "WorkloadProcessor",
    "get_processor",
]
