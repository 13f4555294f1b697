"""Resource inventory management from YAML configuration."""
import logging
import os
from pathlib import Path
from typing import Any, Optional, Sequence

import yaml

from ..engine.errors import ConfigError, ConfigNotFoundError
from ..engine.parser import ResourceParser, compute_checksum
from ..engine.schema import Resource
from .settings import EngineSettings

logger = logging.getLogger(__name__)

CONFIG_ENV = "STATECRAFT_CONFIG"


class ResourceInventory:
    """Manages the resource declarations loaded from YAML config.

    Supports resource groups for applying part of a host's state:

    ```yaml
    groups:
      gpu:
        - libmali
        - mali-firmware
      python:
        - pip-numpy
    ```

    A resource may also name its group directly with `group: gpu`.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._find_config()
        self._config: dict[str, Any] = {}
        self._resources: list[Resource] = []
        self._load_config()

    def _find_config(self) -> str:
        """Find the resources.yaml config file."""
        env_path = os.environ.get(CONFIG_ENV)
        if env_path:
            return env_path

        search_paths = [
            Path.cwd() / "configs" / "resources.yaml",
            Path.cwd() / "statecraft.yaml",
            Path.home() / ".config" / "statecraft" / "resources.yaml",
            Path("/etc/statecraft/resources.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        raise ConfigNotFoundError(
            "Could not find resources.yaml. Create one in ./configs/resources.yaml "
            f"or set {CONFIG_ENV}"
        )

    def _load_config(self) -> None:
        """Load and parse the YAML configuration."""
        try:
            with open(self.config_path) as f:
                self._config = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read {self.config_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {e}")

        if not isinstance(self._config, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping")

        self._resources = ResourceParser().parse(self._config)
        self._validate_groups()
        logger.info(f"Loaded {len(self._resources)} resources from {self.config_path}")

    @property
    def raw(self) -> dict[str, Any]:
        """The configuration mapping as loaded."""
        return self._config

    @property
    def checksum(self) -> str:
        return compute_checksum(self._config)

    def settings(self, **overrides: Any) -> EngineSettings:
        """Engine settings from the "settings:" block, environment and overrides."""
        return EngineSettings.from_sources(self._config.get("settings"), **overrides)

    def resources(self) -> list[Resource]:
        """All resources in declaration order."""
        return list(self._resources)

    def get_resource(self, resource_id: str) -> Resource:
        for resource in self._resources:
            if resource.id == resource_id:
                return resource
        raise KeyError(f"Unknown resource: {resource_id}")

    # === Group Management ===

    def _validate_groups(self) -> None:
        """Validate that all group members reference declared resources."""
        groups = self._config.get("groups") or {}
        if not isinstance(groups, dict):
            raise ConfigError("Field 'groups' must be a mapping of group name to resource IDs")

        ids = {r.id for r in self._resources}
        for group_name, members in groups.items():
            if not isinstance(members, list):
                raise ConfigError(f"Group '{group_name}' should be a list of resource IDs")
            for resource_id in members:
                if resource_id not in ids:
                    raise ConfigError(
                        f"Group '{group_name}' references unknown resource: {resource_id}"
                    )

    def get_groups(self) -> dict[str, list[str]]:
        """Get all groups and their members.

        Members come from the "groups:" mapping and from resources that
        name a group themselves.

        Returns:
            Dict mapping group names to lists of resource IDs
        """
        groups: dict[str, list[str]] = {
            name: list(members) for name, members in (self._config.get("groups") or {}).items()
        }
        for resource in self._resources:
            if resource.group:
                members = groups.setdefault(resource.group, [])
                if resource.id not in members:
                    members.append(resource.id)
        return groups

    def get_group_names(self) -> list[str]:
        """Get list of all group names."""
        return list(self.get_groups().keys())

    def select(self, groups: Optional[Sequence[str]] = None) -> list[Resource]:
        """Resources of the given groups plus everything they depend on.

        Args:
            groups: Group names. None or empty selects every resource.

        Returns:
            Selected resources in declaration order

        Raises:
            ConfigError: If a group doesn't exist
        """
        if not groups:
            return self.resources()

        known = self.get_groups()
        wanted: set[str] = set()
        for group_name in groups:
            if group_name not in known:
                raise ConfigError(f"Unknown group: {group_name}")
            wanted.update(known[group_name])

        by_id = {r.id: r for r in self._resources}
        stack = list(wanted)
        while stack:
            resource = by_id.get(stack.pop())
            if resource is None:
                continue  # Unknown dependencies are reported by the validator
            for dependency in resource.depends_on:
                if dependency not in wanted:
                    wanted.add(dependency)
                    stack.append(dependency)

        return [r for r in self._resources if r.id in wanted]


def configured_audit_log(config_path: Optional[str] = None) -> Optional[str]:
    """Audit log file for a resource file's settings.

    Follows the usual settings precedence ("settings:" block, then
    STATECRAFT_AUDIT_LOG). Without a resource file only the environment
    applies; an explicit config_path that cannot be loaded raises.
    """
    try:
        return ResourceInventory(config_path).settings().audit_log
    except ConfigNotFoundError:
        return EngineSettings.from_sources().audit_log
