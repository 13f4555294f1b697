"""Audit trail of executed actions.

Every action the executor records (applied, failed or skipped) becomes one
JSON line in a dedicated rotating file, tagged with the run id and the
checksum of the config that produced it. get_recent_changes() reads the
lines back for `statecraft history` and the get_audit_log tool.
"""
import json
import logging
import uuid
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

if TYPE_CHECKING:
    from ..engine.schema import ExecutionRecord

logger = logging.getLogger(__name__)

# Dedicated audit logger
audit_logger = logging.getLogger("statecraft.audit")

DEFAULT_AUDIT_LOG = "~/.statecraft/audit.log"
AUDIT_MAX_BYTES = 10 * 1024 * 1024
MAX_TEXT = 1000


def audit_path(log_file: Optional[str]) -> Path:
    """Resolve an audit log setting (None means the default file)."""
    return Path(log_file or DEFAULT_AUDIT_LOG).expanduser()


def setup_audit_logging(log_file: Optional[str] = None) -> str:
    """Send audit records to a rotating JSON-lines file.

    Replaces any handler from an earlier call, so the CLI and the MCP server
    can each point the audit trail at their own file.

    Args:
        log_file: Audit log path. Defaults to ~/.statecraft/audit.log

    Returns:
        The audit log path in use
    """
    path = audit_path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)

    for old in list(audit_logger.handlers):
        audit_logger.removeHandler(old)
        old.close()

    handler = RotatingFileHandler(path, maxBytes=AUDIT_MAX_BYTES, backupCount=10, encoding="utf-8")
    # One bare JSON object per line
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    return str(path)


@dataclass
class ChangeRecord:
    """Audit record of one executed action."""
    timestamp: str
    run_id: str
    resource_id: str
    kind: str
    target: str
    operation: str
    status: str
    attempts: int
    dry_run: bool
    used_fallback: bool = False
    message: str = ""
    error: Optional[str] = None
    config_checksum: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, line: str) -> "ChangeRecord":
        """Parse one audit line. Keys this version does not know are ignored."""
        data = json.loads(line)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _clip(text: Optional[str]) -> Optional[str]:
    return text[:MAX_TEXT] if text else text


class AuditTrail:
    """Write the execution records of one run to the audit log."""

    def __init__(
        self,
        run_id: Optional[str] = None,
        config_checksum: Optional[str] = None,
        dry_run: bool = False
    ):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.config_checksum = config_checksum
        self.dry_run = dry_run

    def log_action(self, record: "ExecutionRecord") -> ChangeRecord:
        """Append one execution record to the audit log and return it."""
        action = record.action
        change = ChangeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            run_id=self.run_id,
            resource_id=action.resource.id,
            kind=action.resource.kind.value,
            target=action.resource.target,
            operation=action.operation.value,
            status=record.status.value,
            attempts=record.attempts,
            dry_run=self.dry_run,
            used_fallback=record.used_fallback,
            message=_clip(record.message) or "",
            error=_clip(record.error),
            config_checksum=self.config_checksum,
        )
        audit_logger.info(change.to_json())
        return change


def _read_records(path: Path) -> Iterator[ChangeRecord]:
    with path.open(encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                yield ChangeRecord.from_json(line)
            except (json.JSONDecodeError, TypeError, AttributeError):
                logger.debug(f"Skipping malformed audit line in {path}")


def get_recent_changes(
    log_file: Optional[str] = None,
    resource_id: Optional[str] = None,
    status: Optional[str] = None,
    run_id: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Read recorded actions back from the audit log.

    Only the current file is read, not rotated backups.

    Args:
        log_file: Path to audit log. Defaults to ~/.statecraft/audit.log
        resource_id: Only actions on this resource
        status: Only actions with this status (succeeded, failed, skipped)
        run_id: Only actions from this run
        limit: Maximum number of records to return

    Returns:
        Matching ChangeRecords, newest first
    """
    path = audit_path(log_file)
    if not path.exists():
        return []

    matches = [
        record for record in _read_records(path)
        if (resource_id is None or record.resource_id == resource_id)
        and (status is None or record.status == status)
        and (run_id is None or record.run_id == run_id)
    ]
    matches.reverse()
    return matches[:limit]
