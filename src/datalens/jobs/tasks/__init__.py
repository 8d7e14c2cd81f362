"""Queue handlers binding scan and DSR jobs to their services."""

from .dsr import execute_dsr_job
from .scan import execute_scan_job

__all__ = ["execute_dsr_job", "execute_scan_job"]
