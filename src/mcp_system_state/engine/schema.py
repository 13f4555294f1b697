"""Schema definitions for the reconcile engine.

Defines resources (desired state) and every record the engine produces
while probing, planning, executing and validating them.
"""
import dataclasses
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ResourceKind(str, Enum):
    """Kind of system state a resource describes."""
    PACKAGE_INSTALLED = "package_installed"
    FILE_CONTENT = "file_content"
    KERNEL_MODULE_BLACKLISTED = "kernel_module_blacklisted"
    KERNEL_MODULE_LOADED = "kernel_module_loaded"
    ENV_VAR_SET = "env_var_set"
    PIP_PACKAGE_VERSION = "pip_package_version"
    PYTHON_VENV = "python_venv"
    COMMAND_OUTPUT = "command_output"


class Ensure(str, Enum):
    """Whether the resource should exist or not."""
    PRESENT = "present"  # Install if missing, update if different
    ABSENT = "absent"    # Remove if present


class Operation(str, Enum):
    """Remediation operation for a planned action."""
    INSTALL = "install"
    MODIFY = "modify"
    REMOVE = "remove"


class ExecutionStatus(str, Enum):
    """Outcome of a single action."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorMode(str, Enum):
    """What the executor does after an action fails."""
    CONTINUE_ON_ERROR = "continue-on-error"
    FAIL_FAST = "fail-fast"


# Kinds whose desired value is a version pin
VERSIONED_KINDS = {
    ResourceKind.PACKAGE_INSTALLED,
    ResourceKind.PIP_PACKAGE_VERSION,
}

# Kinds whose desired value is a boolean flag
BOOLEAN_KINDS = {
    ResourceKind.KERNEL_MODULE_BLACKLISTED,
    ResourceKind.KERNEL_MODULE_LOADED,
}

# Kinds that are only checked, never planned or applied
VALIDATE_ONLY_KINDS = {
    ResourceKind.COMMAND_OUTPUT,
}

# Kinds that cannot be declared absent
PRESENT_ONLY_KINDS = {
    ResourceKind.PYTHON_VENV,
    ResourceKind.COMMAND_OUTPUT,
}


DIGEST_PREFIX = "sha256:"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def content_digest(value: str | bytes) -> str:
    """Return the sha256 digest of file content as "sha256:<hex>".

    A value that already is a digest is returned normalized.
    """
    if isinstance(value, str) and value.startswith(DIGEST_PREFIX):
        return DIGEST_PREFIX + value[len(DIGEST_PREFIX):].strip().lower()
    data = value.encode("utf-8") if isinstance(value, str) else value
    return DIGEST_PREFIX + hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class OutputExpectation:
    """Substrings a check command's output must contain.

    Every entry of all_of must appear, and at least one entry of any_of
    when any are given. With neither, a zero exit status passes.
    """
    all_of: tuple[str, ...] = ()
    any_of: tuple[str, ...] = ()

    def missing(self, output: str) -> list[str]:
        """Expectations the output does not meet, empty when it passes."""
        missing = [repr(text) for text in self.all_of if text not in output]
        if self.any_of and not any(text in output for text in self.any_of):
            missing.append(" or ".join(repr(text) for text in self.any_of))
        return missing

    def describe(self) -> str:
        parts = [repr(text) for text in self.all_of]
        if self.any_of:
            parts.append("(" + " or ".join(repr(text) for text in self.any_of) + ")")
        if not parts:
            return "exit status 0"
        return "output contains " + " and ".join(parts)


@dataclass(frozen=True)
class Resource:
    """A declared unit of desired system state."""
    id: str
    kind: ResourceKind
    target: str
    desired: Any = None
    depends_on: tuple[str, ...] = ()
    ensure: Ensure = Ensure.PRESENT
    source: Optional[str] = None
    mode: Optional[int] = None
    fallback: dict[str, Any] = field(default_factory=dict)
    post_apply: tuple[tuple[str, ...], ...] = ()
    requires_reboot: bool = False
    group: Optional[str] = None

    @property
    def absent(self) -> bool:
        return self.ensure == Ensure.ABSENT

    @property
    def validate_only(self) -> bool:
        return self.kind in VALIDATE_ONLY_KINDS

    def fallback_overrides(self) -> dict[str, Any]:
        """Field overrides for the last-resort attempt.

        Pinned package versions without an explicit source fall back to an
        unpinned install.
        """
        if self.fallback:
            return dict(self.fallback)
        if (self.kind in VERSIONED_KINDS and
                not self.absent and
                self.desired is not None and
                self.source is None):
            return {"desired": None}
        return {}

    @property
    def has_fallback(self) -> bool:
        return bool(self.fallback_overrides())

    def with_fallback(self) -> "Resource":
        """Return the fallback variant of this resource."""
        overrides = self.fallback_overrides()
        if not overrides:
            return self
        return dataclasses.replace(self, fallback={}, **overrides)

    def expected_text(self) -> str:
        """Desired value rendered for reports."""
        if self.absent:
            return "absent"
        if self.kind in BOOLEAN_KINDS:
            return "true" if self.desired is not False else "false"
        if self.kind == ResourceKind.FILE_CONTENT:
            return content_digest(self.desired) if self.desired is not None else "present"
        if self.kind == ResourceKind.COMMAND_OUTPUT:
            return self.desired.describe() if self.desired is not None else "exit status 0"
        if self.kind == ResourceKind.PYTHON_VENV:
            return "present"
        if self.desired is None:
            return "any"
        return str(self.desired)


# --- Probe Results ---

@dataclass(frozen=True)
class ProbeResult:
    """Immutable snapshot of a resource's current state."""
    resource_id: str
    present: bool
    observed_value: Optional[str] = None
    matches_desired: bool = False
    probe_error: Optional[str] = None
    detail: Optional[str] = None


# --- Plan ---

@dataclass(frozen=True)
class Action:
    """A planned remediation step."""
    resource_id: str
    operation: Operation
    ordinal: int
    resource: Resource

    def describe(self) -> str:
        return f"{self.operation.value} {self.resource.kind.value} {self.resource.target}"


# --- Execution Results ---

@dataclass
class ExecuteOptions:
    """Options for action execution."""
    max_attempts: int = 2
    retry_delay: float = 0
    error_mode: ErrorMode = ErrorMode.CONTINUE_ON_ERROR
    workers: int = 1
    dry_run: bool = False


@dataclass
class ExecutionRecord:
    """Outcome of executing one action."""
    action: Action
    status: ExecutionStatus
    attempts: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    message: str = ""
    used_fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "resource_id": self.action.resource_id,
            "operation": self.action.operation.value,
            "ordinal": self.action.ordinal,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "used_fallback": self.used_fallback,
        }


# --- Validation Results ---

@dataclass(frozen=True)
class ResourceCheck:
    """Pass/fail classification of one resource after re-probing."""
    resource_id: str
    kind: ResourceKind
    target: str
    passed: bool
    expected: str
    observed_value: Optional[str] = None
    probe_error: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "target": self.target,
            "passed": self.passed,
            "expected": self.expected,
            "observed_value": self.observed_value,
            "probe_error": self.probe_error,
            "detail": self.detail,
        }

    def format_line(self) -> str:
        if self.passed:
            return f"PASS: {self.resource_id} ({self.target})"
        if self.probe_error:
            return f"FAIL: {self.resource_id} ({self.target}: {self.probe_error})"
        got = self.observed_value if self.observed_value is not None else "missing"
        line = f"FAIL: {self.resource_id} (Expected: {self.expected}, Got: {got})"
        if self.detail:
            line += f" [{self.detail}]"
        return line


@dataclass
class ValidationReport:
    """Result of re-probing a resource set."""
    checks: list[ResourceCheck] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.checks)

    @property
    def passed(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @property
    def failed(self) -> int:
        return self.total - self.passed

    @property
    def failures(self) -> list[ResourceCheck]:
        return [c for c in self.checks if not c.passed]

    def get(self, resource_id: str) -> Optional[ResourceCheck]:
        for check in self.checks:
            if check.resource_id == resource_id:
                return check
        return None

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "checks": [c.to_dict() for c in self.checks],
        }

    def format_text(self) -> str:
        """PASS/FAIL lines followed by a summary block."""
        lines = [c.format_line() for c in self.checks]
        lines.append("")
        lines.append("=== Summary ===")
        lines.append(f"Total checks: {self.total}")
        lines.append(f"Passed: {self.passed}")
        lines.append(f"Failed: {self.failed}")
        if self.failed == 0:
            lines.append("All resources validated successfully")
        else:
            lines.append("Some resources failed validation")
        return "\n".join(lines)


@dataclass
class RunReport:
    """Execution records of a run plus the final validation."""
    records: list[ExecutionRecord] = field(default_factory=list)
    validation: Optional[ValidationReport] = None
    dry_run: bool = False
    error_mode: ErrorMode = ErrorMode.CONTINUE_ON_ERROR
    cancelled: bool = False
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    config_checksum: Optional[str] = None
    run_id: Optional[str] = None

    @property
    def success(self) -> bool:
        """True if the final validation has zero failures."""
        if self.validation is None:
            return not any(r.status == ExecutionStatus.FAILED for r in self.records)
        return self.validation.failed == 0

    @property
    def reboot_required(self) -> bool:
        return any(
            r.status == ExecutionStatus.SUCCEEDED and r.action.resource.requires_reboot
            for r in self.records
        )

    def count(self, status: ExecutionStatus) -> int:
        return sum(1 for r in self.records if r.status == status)

    def record_for(self, resource_id: str) -> Optional[ExecutionRecord]:
        for record in self.records:
            if record.action.resource_id == resource_id:
                return record
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "error_mode": self.error_mode.value,
            "cancelled": self.cancelled,
            "reboot_required": self.reboot_required,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "config_checksum": self.config_checksum,
            "run_id": self.run_id,
            "actions": {
                "total": len(self.records),
                "succeeded": self.count(ExecutionStatus.SUCCEEDED),
                "failed": self.count(ExecutionStatus.FAILED),
                "skipped": self.count(ExecutionStatus.SKIPPED),
            },
            "records": [r.to_dict() for r in self.records],
            "validation": self.validation.to_dict() if self.validation else None,
        }
