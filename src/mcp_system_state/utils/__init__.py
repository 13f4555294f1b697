"""Utility modules for retries, logging and auditing."""
from .retry import with_retry
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    timed_section_sync,
    perf_logger,
    PerfStats,
    global_stats,
)
from .audit_log import AuditTrail, get_recent_changes, setup_audit_logging

__all__ = [
    "with_retry",
    "setup_logging",
    "timed",
    "timed_section",
    "timed_section_sync",
    "perf_logger",
    "PerfStats",
    "global_stats",
    "AuditTrail",
    "get_recent_changes",
    "setup_audit_logging",
]
