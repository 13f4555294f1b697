"""Planner: diff desired against probed state into ordered actions.

Produces the minimal action list, in dependency order, needed to reach the
desired state.
"""
import logging
from typing import Mapping, Optional, Sequence

from .schema import Action, Operation, ProbeResult, Resource
from .validator import topological_order

logger = logging.getLogger(__name__)

OPERATION_MARKERS = {
    Operation.INSTALL: "[+]",
    Operation.MODIFY: "[~]",
    Operation.REMOVE: "[-]",
}


class Planner:
    """Calculate remediation actions from probe results."""

    def plan(
        self,
        resources: Sequence[Resource],
        probe_results: Mapping[str, ProbeResult]
    ) -> list[Action]:
        """
        Build the ordered action list.

        Deterministic for the same inputs. Satisfied resources and
        validate-only checks yield no action, and an action never precedes
        the actions of its resource's dependencies.

        Args:
            resources: Validated resource declarations
            probe_results: Probe result per resource id

        Returns:
            Actions with ordinals 0..n-1 in execution order
        """
        actions: list[Action] = []

        for resource in topological_order(resources):
            if resource.validate_only:
                continue
            probe = probe_results.get(resource.id)
            operation = self._operation(resource, probe)
            if operation is None:
                continue
            actions.append(Action(
                resource_id=resource.id,
                operation=operation,
                ordinal=len(actions),
                resource=resource,
            ))

        logger.info(f"Planned {len(actions)} actions for {len(resources)} resources")
        return actions

    def _operation(
        self,
        resource: Resource,
        probe: Optional[ProbeResult]
    ) -> Optional[Operation]:
        """
        Choose the operation for a single resource.

        Returns None if no change is needed. A resource that was never
        probed is treated as absent.
        """
        if probe is None:
            return None if resource.absent else Operation.INSTALL
        if probe.matches_desired:
            return None
        if resource.absent:
            # Present, or unknown because the probe failed
            return Operation.REMOVE
        if not probe.present:
            return Operation.INSTALL
        return Operation.MODIFY


def summarize_plan(
    actions: Sequence[Action],
    probe_results: Optional[Mapping[str, ProbeResult]] = None
) -> str:
    """
    Create a human-readable summary of a plan.

    Useful for dry-run output and logging.
    """
    if not actions:
        return "No changes needed - current state matches desired state"

    lines = [f"Actions to apply ({len(actions)} total):", ""]

    for action in actions:
        resource = action.resource
        marker = OPERATION_MARKERS[action.operation]
        lines.append(
            f"  {marker} {action.ordinal:3d}. {action.operation.value.capitalize()} "
            f"{resource.id} ({resource.kind.value} {resource.target})"
        )
        probe = (probe_results or {}).get(action.resource_id)
        if action.operation != Operation.REMOVE:
            current = probe.observed_value if probe and probe.observed_value is not None else "missing"
            lines.append(f"      {current} -> {resource.expected_text()}")
        if probe and probe.probe_error:
            lines.append(f"      probe error: {probe.probe_error}")
        if resource.depends_on:
            lines.append(f"      after: {', '.join(resource.depends_on)}")

    return "\n".join(lines)
