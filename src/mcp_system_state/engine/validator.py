"""Pre-flight validation for resource declarations.

Catches configuration errors before any system state is read or changed.
"""
import heapq
import logging
from typing import Sequence

from .errors import CyclicDependencyError, DuplicateIdError, UnknownDependencyError
from .schema import Resource

logger = logging.getLogger(__name__)


class ResourceValidator:
    """Validate a resource set for duplicate ids and dependency errors."""

    def validate(self, resources: Sequence[Resource]) -> None:
        """
        Validate resource declarations.

        Performs pre-flight checks:
        - Unique resource ids
        - depends_on only references declared ids
        - depends_on edges form a DAG

        Raises:
            DuplicateIdError: Two resources share an id
            UnknownDependencyError: A dependency is not declared
            CyclicDependencyError: Dependencies form a cycle
        """
        seen: set[str] = set()
        for resource in resources:
            if resource.id in seen:
                raise DuplicateIdError(resource.id)
            seen.add(resource.id)

        for resource in resources:
            for dependency in resource.depends_on:
                if dependency not in seen:
                    raise UnknownDependencyError(resource.id, dependency)

        topological_order(resources)
        logger.debug(f"Validated {len(resources)} resources")


def topological_order(resources: Sequence[Resource]) -> list[Resource]:
    """
    Sort resources so every resource follows its dependencies.

    Kahn's algorithm with a heap keyed on declaration index, so resources
    with no ordering constraint between them keep their declared order.
    Dependencies on ids outside the given set are ignored.

    Raises:
        CyclicDependencyError: If dependencies form a cycle
    """
    index = {r.id: i for i, r in enumerate(resources)}
    dependents: dict[str, list[str]] = {r.id: [] for r in resources}
    in_degree: dict[str, int] = {r.id: 0 for r in resources}

    for resource in resources:
        for dependency in set(resource.depends_on):
            if dependency in index and dependency != resource.id:
                dependents[dependency].append(resource.id)
                in_degree[resource.id] += 1
            elif dependency == resource.id:
                raise CyclicDependencyError([resource.id])

    ready = [index[rid] for rid, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered: list[Resource] = []
    while ready:
        resource = resources[heapq.heappop(ready)]
        ordered.append(resource)
        for dependent in dependents[resource.id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, index[dependent])

    if len(ordered) != len(resources):
        remaining = [r.id for r in resources if in_degree[r.id] > 0]
        raise CyclicDependencyError(remaining)

    return ordered
