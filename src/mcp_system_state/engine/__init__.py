"""Reconcile Engine - Declarative system state management.

The engine brings a host to a declared state:
- Declare resources, not individual install steps
- Dependency ordering, probing and minimal planning
- Retry with fallback and configurable error handling
- Independent validation of the final state

Usage:
    from mcp_system_state.engine import ReconcileEngine

    engine = ReconcileEngine(system)
    resources = engine.load({
        "resources": [
            {"id": "mali-firmware", "kind": "file_content",
             "target": "/lib/firmware/mali_csffw.bin",
             "source": "https://example.org/mali_csffw.bin"},
        ]
    })
    report = engine.reconcile(resources, dry_run=True)
"""

from .engine import ReconcileEngine
from .errors import (
    CommandError,
    ConfigError,
    ConfigNotFoundError,
    CyclicDependencyError,
    DuplicateIdError,
    ExecutionError,
    ProbeError,
    StatecraftError,
    UnknownDependencyError,
)
from .schema import (
    Action,
    Ensure,
    ErrorMode,
    ExecuteOptions,
    ExecutionRecord,
    ExecutionStatus,
    Operation,
    ProbeResult,
    Resource,
    ResourceCheck,
    ResourceKind,
    RunReport,
    ValidationReport,
)
from .parser import ResourceParser, ParseError, compute_checksum
from .validator import ResourceValidator, topological_order
from .probe import StateProber
from .planner import Planner, summarize_plan
from .executor import ActionExecutor
from .verifier import StateVerifier

__all__ = [
    # Main engine
    "ReconcileEngine",
    # Errors
    "StatecraftError",
    "ConfigError",
    "ConfigNotFoundError",
    "ParseError",
    "DuplicateIdError",
    "UnknownDependencyError",
    "CyclicDependencyError",
    "ProbeError",
    "ExecutionError",
    "CommandError",
    # Schema classes
    "Resource",
    "ResourceKind",
    "Ensure",
    "ProbeResult",
    "Action",
    "Operation",
    "ExecuteOptions",
    "ErrorMode",
    "ExecutionRecord",
    "ExecutionStatus",
    "ResourceCheck",
    "ValidationReport",
    "RunReport",
    # Parser
    "ResourceParser",
    "compute_checksum",
    # Components (for advanced use)
    "ResourceValidator",
    "topological_order",
    "StateProber",
    "Planner",
    "summarize_plan",
    "ActionExecutor",
    "StateVerifier",
]
