"""Verifier: independent pass/fail check of every resource.

Validation re-probes each resource and never mutates state, so it can be
run on its own at any time as well as after a reconcile.
"""
import logging
from typing import Sequence

from .probe import StateProber
from .schema import ProbeResult, Resource, ResourceCheck, ValidationReport

logger = logging.getLogger(__name__)


def check_from_probe(resource: Resource, probe: ProbeResult) -> ResourceCheck:
    """Classify a probe result as PASS or FAIL."""
    return ResourceCheck(
        resource_id=resource.id,
        kind=resource.kind,
        target=resource.target,
        passed=probe.matches_desired and probe.probe_error is None,
        expected=resource.expected_text(),
        observed_value=probe.observed_value,
        probe_error=probe.probe_error,
        detail=probe.detail,
    )


class StateVerifier:
    """Produce a ValidationReport for a resource set."""

    def __init__(self, prober: StateProber):
        self.prober = prober

    def validate_run(self, resources: Sequence[Resource]) -> ValidationReport:
        """
        Re-probe every resource, in declaration order.

        Args:
            resources: Declared resources

        Returns:
            ValidationReport with one check per resource
        """
        report = ValidationReport()
        for resource in resources:
            check = check_from_probe(resource, self.prober.probe(resource))
            if not check.passed:
                logger.warning(check.format_line())
            report.checks.append(check)

        logger.info(f"Validation: {report.passed}/{report.total} passed")
        return report
