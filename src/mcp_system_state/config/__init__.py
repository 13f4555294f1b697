"""Resource inventory and engine settings."""
from .inventory import ResourceInventory, configured_audit_log
from .settings import EngineSettings

__all__ = ["ResourceInventory", "EngineSettings", "configured_audit_log"]
