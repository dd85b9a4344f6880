"""Kernel services."""

from reco_kernel.services.change_log_service import (
    ChangeLogRecord,
    ChangeLogService,
    ChangeLogSession,
)

__all__ = ["ChangeLogRecord", "ChangeLogService", "ChangeLogSession"]
