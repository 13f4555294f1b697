"""Executor for applying planned actions to the system.

Actions run strictly in plan order with a bounded retry policy whose last
attempt may use a fallback variant of the resource. After a failure the
run either continues (continue-on-error) or skips everything that
remains (fail-fast).
"""
import asyncio
import logging
import threading
from typing import Mapping, Optional, Sequence

from tenacity import Retrying, before_sleep_log, stop_after_attempt, wait_fixed

from ..system.base import SystemInterfaces
from ..utils.audit_log import AuditTrail
from ..utils.logging_config import timed_section_sync
from .errors import ExecutionError, describe
from .probe import StateProber
from .schema import (
    Action,
    ErrorMode,
    ExecuteOptions,
    ExecutionRecord,
    ExecutionStatus,
    Operation,
    Resource,
    ResourceKind,
    RunReport,
    content_digest,
    utc_now,
)

logger = logging.getLogger(__name__)

PAST_TENSE = {
    Operation.INSTALL: "installed",
    Operation.MODIFY: "modified",
    Operation.REMOVE: "removed",
}


class ActionExecutor:
    """Apply actions through the system collaborators."""

    def __init__(
        self,
        system: SystemInterfaces,
        options: Optional[ExecuteOptions] = None,
        audit: Optional[AuditTrail] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize executor.

        Args:
            system: Collaborators that perform the mutations
            options: Retry, error mode, worker and dry-run options
            audit: Audit trail receiving every execution record (optional)
            cancel_event: Event shared with the caller; setting it cancels
                the run (a private event is created when omitted)
        """
        self.system = system
        self.options = options or ExecuteOptions()
        self.audit = audit
        self._cancel = cancel_event if cancel_event is not None else threading.Event()
        self._prober = StateProber(system)

    def cancel(self) -> None:
        """Stop before the next action. An in-flight action completes."""
        logger.warning("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def execute(self, actions: Sequence[Action]) -> RunReport:
        """
        Execute actions sequentially in the given (plan) order.

        Returns:
            RunReport with one ExecutionRecord per action (no validation yet)
        """
        report = self._new_report()
        failed_on: Optional[str] = None

        for action in actions:
            if self.cancelled:
                record = self._skipped(action, "cancelled")
                report.cancelled = True
            elif failed_on is not None:
                record = self._skipped(action, f"not attempted: fail-fast after {failed_on} failed")
            else:
                record = self._run(action)
                if record.status == ExecutionStatus.FAILED and self._fail_fast:
                    failed_on = action.resource_id

            self._record(report, record)

        report.cancelled = report.cancelled or self.cancelled
        report.finished_at = utc_now()
        return report

    async def execute_concurrent(
        self,
        actions: Sequence[Action],
        dependencies: Optional[Mapping[str, Sequence[str]]] = None,
        workers: Optional[int] = None
    ) -> RunReport:
        """
        Execute mutually independent actions on worker threads.

        An action starts only after the actions of all its dependencies
        (direct or transitive) have completed. Records are returned in plan
        order.

        Args:
            actions: Planned actions
            dependencies: depends_on per resource id for every declared
                resource, so transitive edges through satisfied resources
                are honored. Defaults to the edges between the actions.
            workers: Maximum concurrent actions (defaults to options.workers)
        """
        report = self._new_report()
        semaphore = asyncio.Semaphore(max(1, workers or self.options.workers))
        done = {a.resource_id: asyncio.Event() for a in actions}
        records: dict[str, ExecutionRecord] = {}
        failed_on: list[str] = []

        if dependencies is None:
            dependencies = {a.resource_id: a.resource.depends_on for a in actions}
        waits_for = {
            a.resource_id: _transitive(a.resource_id, dependencies) & done.keys()
            for a in actions
        }

        async def run(action: Action) -> None:
            try:
                for dependency in waits_for[action.resource_id]:
                    await done[dependency].wait()
                async with semaphore:
                    if self.cancelled:
                        record = self._skipped(action, "cancelled")
                        report.cancelled = True
                    elif failed_on:
                        record = self._skipped(
                            action, f"not attempted: fail-fast after {failed_on[0]} failed"
                        )
                    else:
                        record = await asyncio.to_thread(self._run, action)
                        if record.status == ExecutionStatus.FAILED and self._fail_fast:
                            failed_on.append(action.resource_id)
                records[action.resource_id] = record
            finally:
                done[action.resource_id].set()

        await asyncio.gather(*(run(a) for a in actions))

        for action in sorted(actions, key=lambda a: a.ordinal):
            self._record(report, records[action.resource_id])

        report.cancelled = report.cancelled or self.cancelled
        report.finished_at = utc_now()
        return report

    # --- Internals ---

    @property
    def _fail_fast(self) -> bool:
        return self.options.error_mode == ErrorMode.FAIL_FAST

    def _new_report(self) -> RunReport:
        return RunReport(
            dry_run=self.options.dry_run,
            error_mode=self.options.error_mode,
        )

    def _record(self, report: RunReport, record: ExecutionRecord) -> None:
        report.records.append(record)
        if self.audit is not None:
            self.audit.log_action(record)

    def _skipped(self, action: Action, message: str) -> ExecutionRecord:
        logger.info(f"Skipping {action.resource_id}: {message}")
        return ExecutionRecord(
            action=action,
            status=ExecutionStatus.SKIPPED,
            message=message,
        )

    def _run(self, action: Action) -> ExecutionRecord:
        """Run one action with retries, or just record it in dry-run mode."""
        if self.options.dry_run:
            return ExecutionRecord(
                action=action,
                status=ExecutionStatus.SKIPPED,
                message=f"dry run: would {action.describe()}",
            )

        resource = action.resource
        max_attempts = max(1, self.options.max_attempts)
        attempts = 0
        used_fallback = False

        retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(self.options.retry_delay),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        logger.info(f"Applying {action.ordinal}: {action.describe()}")
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    # Last attempt of several uses the fallback variant
                    used_fallback = (
                        attempts == max_attempts and
                        attempts > 1 and
                        resource.has_fallback
                    )
                    variant = resource.with_fallback() if used_fallback else resource
                    if used_fallback:
                        logger.warning(
                            f"Using fallback for {resource.id}: {resource.fallback_overrides()}"
                        )
                    with timed_section_sync("apply", subject=resource.id, attempt=attempts):
                        self.apply(variant, action.operation)
        except Exception as e:
            logger.error(f"Action {resource.id} failed after {attempts} attempt(s): {e}")
            return ExecutionRecord(
                action=action,
                status=ExecutionStatus.FAILED,
                attempts=attempts,
                error=describe(e),
                used_fallback=used_fallback,
            )

        if used_fallback:
            unmet = self._unmet_after_fallback(resource)
            if unmet is not None:
                logger.error(f"Action {resource.id} failed: {unmet}")
                return ExecutionRecord(
                    action=action,
                    status=ExecutionStatus.FAILED,
                    attempts=attempts,
                    error=unmet,
                    used_fallback=True,
                )

        message = f"{PAST_TENSE[action.operation]} {resource.target}"
        if used_fallback:
            message += " (fallback)"
        logger.info(f"Action {resource.id} succeeded ({message})")
        return ExecutionRecord(
            action=action,
            status=ExecutionStatus.SUCCEEDED,
            attempts=attempts,
            message=message,
            used_fallback=used_fallback,
        )

    def _unmet_after_fallback(self, resource: Resource) -> Optional[str]:
        """Re-probe the declared resource after a fallback apply.

        Returns a description of the unmet declaration, or None when the
        fallback reached the declared state.
        """
        result = self._prober.probe(resource)
        if result.matches_desired:
            return None
        if result.probe_error:
            return f"fallback applied but {resource.target} could not be verified: {result.probe_error}"
        observed = result.observed_value if result.observed_value is not None else "missing"
        return (
            f"fallback left {resource.target} at {observed}, "
            f"{resource.expected_text()} is required"
        )

    def apply(self, resource: Resource, operation: Operation) -> None:
        """
        Apply the kind-specific mutation, then the post_apply commands.

        Raises:
            ExecutionError: If the mutation cannot be applied
        """
        system = self.system
        kind = resource.kind
        removing = operation == Operation.REMOVE

        if kind == ResourceKind.PACKAGE_INSTALLED:
            if removing:
                system.packages.remove(resource.target)
            else:
                system.packages.install(resource.target, resource.desired, resource.source)

        elif kind == ResourceKind.PIP_PACKAGE_VERSION:
            if removing:
                system.python_packages.remove(resource.target)
            else:
                system.python_packages.install(
                    resource.target, resource.desired, resource.source
                )

        elif kind == ResourceKind.FILE_CONTENT:
            if removing:
                system.files.remove(resource.target)
            else:
                self._apply_file(resource, operation)

        elif kind == ResourceKind.KERNEL_MODULE_BLACKLISTED:
            wanted = not removing and resource.desired is not False
            system.modules.set_blacklisted(resource.target, wanted)

        elif kind == ResourceKind.KERNEL_MODULE_LOADED:
            if not removing and resource.desired is not False:
                system.modules.load(resource.target)
            else:
                system.modules.unload(resource.target)

        elif kind == ResourceKind.ENV_VAR_SET:
            if removing:
                system.environment.unset(resource.target)
            elif resource.desired is None:
                raise ExecutionError(f"No value declared for {resource.target}")
            else:
                system.environment.set(resource.target, str(resource.desired))

        elif kind == ResourceKind.PYTHON_VENV:
            if removing:
                raise ExecutionError(f"Refusing to delete virtual environment {resource.target}")
            # Re-running venv on an existing directory repairs it in place
            system.run_command([resource.source or "python3", "-m", "venv", resource.target])

        elif resource.validate_only:
            raise ExecutionError(f"{resource.id} is a {kind.value} check and cannot be applied")

        else:
            raise ExecutionError(f"Unsupported resource kind: {kind}")

        for argv in resource.post_apply:
            system.run_command(argv)

    def _apply_file(self, resource: Resource, operation: Operation) -> None:
        """Write file content from the declaration or its source, verifying the digest."""
        files = self.system.files
        wanted = content_digest(resource.desired) if resource.desired is not None else None

        # Only the mode differs
        if operation == Operation.MODIFY and resource.mode is not None:
            if wanted is None or content_digest(files.read_bytes(resource.target)) == wanted:
                files.chmod(resource.target, resource.mode)
                return

        if resource.source:
            data = files.fetch(resource.source)
            if wanted and content_digest(data) != wanted:
                raise ExecutionError(
                    f"Checksum mismatch for {resource.source}: "
                    f"got {content_digest(data)}, expected {wanted}"
                )
        elif resource.desired is None or str(resource.desired).startswith("sha256:"):
            raise ExecutionError(
                f"No content or source to create {resource.target}"
            )
        else:
            data = str(resource.desired).encode("utf-8")

        files.write_bytes(resource.target, data, resource.mode)


def _transitive(resource_id: str, dependencies: Mapping[str, Sequence[str]]) -> set[str]:
    """All ids resource_id depends on, directly or transitively."""
    seen: set[str] = set()
    stack = list(dependencies.get(resource_id, ()))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(dependencies.get(current, ()))
    return seen
