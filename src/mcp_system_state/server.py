"""MCP Server for declarative system state management.

Lets an assistant inspect and reconcile a host against its resource file:
packages, files, kernel modules, environment variables, pip packages and
virtual environments, plus read-only command checks.

Tools exposed:
- list_resources: List declared resources and groups
- probe_resource: Read the current state of one resource
- plan: Show the actions a reconcile would take
- reconcile: Probe, plan, apply and validate (supports dry_run)
- validate: Check every resource without changing anything
- get_audit_log: Recent actions from the audit log

Resources:
- state://<resource_id>: Live probe of one resource as JSON
"""
import asyncio
import json
import logging
import os
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
    Resource,
)
from pydantic import AnyUrl

from .config.inventory import ResourceInventory, configured_audit_log
from .engine import ReconcileEngine
from .engine.errors import ConfigError
from .engine.schema import ErrorMode
from .system import create_system
from .utils.audit_log import audit_path, get_recent_changes, setup_audit_logging
from .utils.logging_config import setup_logging, timed_section

logger = logging.getLogger(__name__)

# Global inventory (initialized on first use)
inventory: Optional[ResourceInventory] = None
# Audit log file the audit logger currently writes to
audit_log_path: Optional[str] = None


def get_inventory() -> ResourceInventory:
    """Get or create the resource inventory."""
    global inventory
    if inventory is None:
        config_path = os.environ.get("STATECRAFT_CONFIG")
        inventory = ResourceInventory(config_path)
    return inventory


def use_audit_log(log_file: Optional[str]) -> str:
    """Point the audit logger at log_file unless it already writes there."""
    global audit_log_path
    path = str(audit_path(log_file))
    if path != audit_log_path:
        audit_log_path = setup_audit_logging(log_file)
    return audit_log_path


def create_engine(inv: ResourceInventory, fail_fast: bool = False) -> ReconcileEngine:
    """Create an engine for the host using the inventory's settings."""
    overrides = {"error_mode": ErrorMode.FAIL_FAST} if fail_fast else {}
    settings = inv.settings(**overrides)
    use_audit_log(settings.audit_log)
    engine = ReconcileEngine(create_system(settings), settings.execute_options())
    engine.config_checksum = inv.checksum
    return engine


# Create MCP server
server = Server("statecraft")


def _groups_property() -> dict:
    return {
        "type": "array",
        "items": {"type": "string"},
        "description": "Only these groups and their dependencies (default: all resources)"
    }


# === TOOLS ===

@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="list_resources",
            description="List all declared resources with their kinds, targets and groups",
            inputSchema={
                "type": "object",
                "properties": {},
                "required": []
            }
        ),
        Tool(
            name="probe_resource",
            description="Read the current state of one resource (read-only)",
            inputSchema={
                "type": "object",
                "properties": {
                    "resource_id": {
                        "type": "string",
                        "description": "Resource ID (e.g., 'mali-firmware', 'panfrost-blacklist')"
                    }
                },
                "required": ["resource_id"]
            }
        ),
        Tool(
            name="plan",
            description="Show the ordered install/modify/remove actions a reconcile would take",
            inputSchema={
                "type": "object",
                "properties": {
                    "groups": _groups_property(),
                },
                "required": []
            }
        ),
        Tool(
            name="reconcile",
            description="""Bring the host to its declared state.

Probes every resource, applies the missing changes in dependency order
(with retry and fallback), then validates every resource.

Use dry_run=true to record the planned actions without changing anything.""",
            inputSchema={
                "type": "object",
                "properties": {
                    "groups": _groups_property(),
                    "dry_run": {
                        "type": "boolean",
                        "description": "Preview only, change nothing (default: false)",
                        "default": False
                    },
                    "fail_fast": {
                        "type": "boolean",
                        "description": "Skip all remaining actions after the first failure",
                        "default": False
                    }
                },
                "required": []
            }
        ),
        Tool(
            name="validate",
            description="Check every resource and report PASS/FAIL without changing anything",
            inputSchema={
                "type": "object",
                "properties": {
                    "groups": _groups_property(),
                },
                "required": []
            }
        ),
        Tool(
            name="get_audit_log",
            description="Get recent actions from the audit log",
            inputSchema={
                "type": "object",
                "properties": {
                    "resource_id": {
                        "type": "string",
                        "description": "Filter by resource ID"
                    },
                    "status": {
                        "type": "string",
                        "enum": ["succeeded", "failed", "skipped"],
                        "description": "Filter by status"
                    },
                    "run_id": {
                        "type": "string",
                        "description": "Only actions from this reconcile run"
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of records (default: 20)",
                        "default": 20
                    }
                },
                "required": []
            }
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    resource_id = arguments.get("resource_id")

    async with timed_section(f"tool:{name}", subject=resource_id):
        try:
            inv = get_inventory()

            if name == "list_resources":
                return await handle_list_resources(inv)

            elif name == "probe_resource":
                return await handle_probe_resource(inv, arguments["resource_id"])

            elif name == "plan":
                return await handle_plan(inv, arguments.get("groups"))

            elif name == "reconcile":
                return await handle_reconcile(
                    inv,
                    arguments.get("groups"),
                    arguments.get("dry_run", False),
                    arguments.get("fail_fast", False)
                )

            elif name == "validate":
                return await handle_validate(inv, arguments.get("groups"))

            elif name == "get_audit_log":
                return await handle_get_audit_log(
                    inv,
                    arguments.get("resource_id"),
                    arguments.get("status"),
                    arguments.get("limit", 20),
                    arguments.get("run_id")
                )

            else:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]

        except ConfigError as e:
            logger.error(f"Tool {name} rejected configuration: {e}")
            return [TextContent(type="text", text=f"Configuration error: {e}")]
        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return [TextContent(type="text", text=f"Error: {str(e)}")]


# === TOOL HANDLERS ===

async def handle_list_resources(inv: ResourceInventory) -> list[TextContent]:
    """List all declared resources."""
    resources = []
    for resource in inv.resources():
        resources.append({
            "id": resource.id,
            "kind": resource.kind.value,
            "target": resource.target,
            "ensure": resource.ensure.value,
            "expected": resource.expected_text(),
            "depends_on": list(resource.depends_on),
            "group": resource.group,
        })

    return [TextContent(
        type="text",
        text=json.dumps({
            "config": inv.config_path,
            "groups": inv.get_groups(),
            "resources": resources,
        }, indent=2)
    )]


async def _probe_json(inv: ResourceInventory, resource_id: str) -> str:
    resource = inv.get_resource(resource_id)
    engine = create_engine(inv)
    probe = await asyncio.to_thread(engine.prober.probe, resource)
    return json.dumps({
        "resource_id": resource.id,
        "kind": resource.kind.value,
        "target": resource.target,
        "expected": resource.expected_text(),
        "present": probe.present,
        "observed_value": probe.observed_value,
        "matches_desired": probe.matches_desired,
        "probe_error": probe.probe_error,
        "detail": probe.detail,
    }, indent=2)


async def handle_probe_resource(inv: ResourceInventory, resource_id: str) -> list[TextContent]:
    """Probe one resource."""
    return [TextContent(type="text", text=await _probe_json(inv, resource_id))]


async def handle_plan(
    inv: ResourceInventory,
    groups: Optional[list[str]]
) -> list[TextContent]:
    """Show the planned actions without applying them."""
    resources = inv.select(groups)
    engine = create_engine(inv)
    summary = await asyncio.to_thread(engine.preview, resources)
    return [TextContent(type="text", text=summary)]


async def handle_reconcile(
    inv: ResourceInventory,
    groups: Optional[list[str]],
    dry_run: bool,
    fail_fast: bool
) -> list[TextContent]:
    """
    Reconcile the host to its declared state.

    This is the primary tool for making changes. It:
    1. Probes every selected resource
    2. Plans the missing changes in dependency order
    3. Applies them with retry and fallback
    4. Validates every selected resource

    Use dry_run=True to preview changes without applying.
    """
    resources = inv.select(groups)
    engine = create_engine(inv, fail_fast=fail_fast)

    if engine.options.workers > 1:
        report = await engine.reconcile_concurrent(resources, dry_run=dry_run)
    else:
        report = await asyncio.to_thread(engine.reconcile, resources, dry_run)

    response = report.to_dict()
    if report.validation is not None and report.validation.failed:
        response["failures"] = [c.format_line() for c in report.validation.failures]

    return [TextContent(
        type="text",
        text=json.dumps(response, indent=2)
    )]


async def handle_validate(
    inv: ResourceInventory,
    groups: Optional[list[str]]
) -> list[TextContent]:
    """Validate resources without changing anything."""
    resources = inv.select(groups)
    engine = create_engine(inv)
    engine.validator.validate(resources)
    report = await asyncio.to_thread(engine.validate, resources)
    return [TextContent(
        type="text",
        text=json.dumps({
            **report.to_dict(),
            "summary": report.format_text(),
        }, indent=2)
    )]


async def handle_get_audit_log(
    inv: ResourceInventory,
    resource_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
    run_id: Optional[str] = None
) -> list[TextContent]:
    """Get recent actions from the audit log."""
    records = get_recent_changes(
        log_file=inv.settings().audit_log,
        resource_id=resource_id,
        status=status,
        run_id=run_id,
        limit=limit
    )

    # Format for display
    formatted_records = []
    for r in records:
        formatted_records.append({
            "timestamp": r.timestamp,
            "run_id": r.run_id,
            "resource_id": r.resource_id,
            "operation": r.operation,
            "status": r.status,
            "attempts": r.attempts,
            "dry_run": r.dry_run,
            "used_fallback": r.used_fallback,
            "error": r.error,
        })

    return [TextContent(
        type="text",
        text=json.dumps({
            "total_records": len(formatted_records),
            "filters": {
                "resource_id": resource_id,
                "status": status,
                "limit": limit,
            },
            "records": formatted_records,
        }, indent=2)
    )]


# === RESOURCES ===

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    inv = get_inventory()
    resources = []

    for resource in inv.resources():
        resources.append(Resource(
            uri=AnyUrl(f"state://{resource.id}"),
            name=f"{resource.id} State",
            description=f"Live state of {resource.kind.value} {resource.target}",
            mimeType="application/json",
        ))

    return resources


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource."""
    # Parse URI: state://resource_id
    uri_str = str(uri)
    if uri_str.startswith("state://"):
        resource_id = uri_str[len("state://"):].strip("/")
        try:
            return await _probe_json(get_inventory(), resource_id)
        except KeyError:
            pass

    return json.dumps({"error": f"Unknown resource: {uri}"})


def main():
    """Run the MCP server."""
    # stdout carries the protocol, log to file only
    setup_logging(console=False)
    try:
        use_audit_log(configured_audit_log())
    except ConfigError as e:
        # Tool calls report the error; audit to the environment default meanwhile
        logger.error(f"Cannot read audit log setting: {e}")
        use_audit_log(os.environ.get("STATECRAFT_AUDIT_LOG"))

    async def run():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
