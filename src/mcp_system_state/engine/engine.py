"""Reconcile Engine - orchestrates the full reconcile workflow.

Provides a single entry point for:
1. Parsing and validating resource declarations
2. Probing current state
3. Planning the ordered remediation actions
4. Executing with retry, fallback and error-mode handling
5. Validating the final state
"""
import logging
import threading
from typing import Any, Optional, Sequence

from ..system.base import SystemInterfaces
from ..utils.audit_log import AuditTrail
from ..utils.logging_config import timed
from .executor import ActionExecutor
from .parser import ResourceParser, compute_checksum
from .planner import Planner, summarize_plan
from .probe import StateProber
from .schema import (
    Action,
    ExecuteOptions,
    ProbeResult,
    Resource,
    RunReport,
    ValidationReport,
)
from .validator import ResourceValidator
from .verifier import StateVerifier

logger = logging.getLogger(__name__)


class ReconcileEngine:
    """
    Main engine for reconciling a host to its declared state.

    Usage:
        engine = ReconcileEngine(create_system(settings), settings.execute_options())
        resources = engine.load(config_dict)
        report = engine.reconcile(resources, dry_run=True)
    """

    def __init__(
        self,
        system: SystemInterfaces,
        options: Optional[ExecuteOptions] = None,
        audit: bool = True
    ):
        """
        Initialize the engine.

        Args:
            system: Collaborators used to probe and mutate the host
            options: Execution options (retry, error mode, workers)
            audit: Write execution records to the audit log
        """
        self.system = system
        self.options = options or ExecuteOptions()
        self.audit = audit
        self.validator = ResourceValidator()
        self.prober = StateProber(system)
        self.planner = Planner()
        self.verifier = StateVerifier(self.prober)
        self.config_checksum: Optional[str] = None
        self._executor: Optional[ActionExecutor] = None
        # Shared with every executor; once set it stays set
        self._cancel = threading.Event()

    def load(self, config: dict[str, Any]) -> list[Resource]:
        """
        Parse and validate a configuration dict.

        Raises:
            ConfigError: On any parse or validation error. Nothing has been
                probed or mutated at that point.
        """
        resources = ResourceParser().parse(config)
        self.validator.validate(resources)
        self.config_checksum = compute_checksum(config)
        logger.info(f"Loaded {len(resources)} resources ({self.config_checksum})")
        return resources

    def probe(self, resources: Sequence[Resource]) -> dict[str, ProbeResult]:
        return self.prober.probe_all(resources)

    def plan(
        self,
        resources: Sequence[Resource],
        probe_results: Optional[dict[str, ProbeResult]] = None
    ) -> list[Action]:
        """Validate, probe (unless results are given) and plan."""
        self.validator.validate(resources)
        if probe_results is None:
            probe_results = self.probe(resources)
        return self.planner.plan(resources, probe_results)

    def preview(self, resources: Sequence[Resource]) -> str:
        """
        Preview changes without applying.

        Returns human-readable plan summary.
        """
        self.validator.validate(resources)
        probe_results = self.probe(resources)
        actions = self.planner.plan(resources, probe_results)
        return summarize_plan(actions, probe_results)

    def validate(self, resources: Sequence[Resource]) -> ValidationReport:
        """Check every resource without changing anything."""
        return self.verifier.validate_run(resources)

    @timed("reconcile")
    def reconcile(self, resources: Sequence[Resource], dry_run: bool = False) -> RunReport:
        """
        Bring the host to the declared state.

        Probe, plan, execute, then validate every resource.

        Args:
            resources: Resource declarations
            dry_run: Record every action as skipped without mutating

        Returns:
            RunReport with execution records and the final validation
        """
        self.validator.validate(resources)
        probe_results = self.prober.probe_all(resources, should_stop=self._cancel.is_set)
        actions = self.planner.plan(resources, probe_results)

        executor = self._new_executor(dry_run)
        logger.info(f"{'DRY RUN: ' if dry_run else ''}Executing {len(actions)} actions")
        report = executor.execute(actions)
        return self._finish(report, resources)

    @timed("reconcile_concurrent")
    async def reconcile_concurrent(
        self,
        resources: Sequence[Resource],
        dry_run: bool = False,
        workers: Optional[int] = None
    ) -> RunReport:
        """
        Reconcile with concurrent probing and dependency-aware concurrent execution.

        Args:
            resources: Resource declarations
            dry_run: Record every action as skipped without mutating
            workers: Maximum concurrent probes/actions (defaults to options.workers)
        """
        workers = workers or self.options.workers
        self.validator.validate(resources)
        probe_results = await self.prober.probe_all_concurrent(
            resources, workers, should_stop=self._cancel.is_set
        )
        actions = self.planner.plan(resources, probe_results)

        executor = self._new_executor(dry_run)
        dependencies = {r.id: r.depends_on for r in resources}
        logger.info(
            f"{'DRY RUN: ' if dry_run else ''}Executing {len(actions)} actions "
            f"with {workers} workers"
        )
        report = await executor.execute_concurrent(actions, dependencies, workers)
        return self._finish(report, resources)

    def cancel(self) -> None:
        """
        Cancel the current or next reconcile.

        Takes effect between probes and between actions: probing stops,
        and every action not yet started is recorded as skipped
        ("cancelled"). The engine stays cancelled; use a new engine for
        the next run.
        """
        logger.warning("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _new_executor(self, dry_run: bool) -> ActionExecutor:
        options = ExecuteOptions(
            max_attempts=self.options.max_attempts,
            retry_delay=self.options.retry_delay,
            error_mode=self.options.error_mode,
            workers=self.options.workers,
            dry_run=dry_run,
        )
        audit = None
        if self.audit:
            audit = AuditTrail(config_checksum=self.config_checksum, dry_run=dry_run)
        self._executor = ActionExecutor(
            self.system, options, audit, cancel_event=self._cancel
        )
        return self._executor

    def _finish(self, report: RunReport, resources: Sequence[Resource]) -> RunReport:
        report.config_checksum = self.config_checksum
        if self._executor is not None and self._executor.audit is not None:
            report.run_id = self._executor.audit.run_id
        report.validation = self.verifier.validate_run(resources)
        logger.info(
            f"Reconcile finished: {len(report.records)} actions, "
            f"{report.validation.passed}/{report.validation.total} resources valid"
        )
        if report.reboot_required:
            logger.warning("A reboot is required for some changes to take effect")
        return report
