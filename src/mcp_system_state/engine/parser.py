"""Parser for resource declarations.

Converts dict/YAML input to strongly-typed Resource objects.
"""
import hashlib
import json
import shlex
from typing import Any, Optional

from .errors import ConfigError
from .schema import (
    BOOLEAN_KINDS,
    DIGEST_PREFIX,
    Ensure,
    OutputExpectation,
    PRESENT_ONLY_KINDS,
    Resource,
    ResourceKind,
    VERSIONED_KINDS,
)


class ParseError(ConfigError):
    """Error parsing resource declarations."""
    pass


# Keys accepted on a resource entry
RESOURCE_KEYS = {
    "id", "kind", "target", "desired", "depends_on", "ensure", "source",
    "mode", "fallback", "post_apply", "requires_reboot", "group", "items",
    # Kind-specific aliases for "desired"
    "version", "content", "sha256", "value", "expect",
    # Alternatives for command checks
    "expect_any",
}

DESIRED_ALIASES = ("version", "content", "sha256", "value", "expect")

# Fields a fallback may override
FALLBACK_KEYS = {"desired", "version", "source", "target"}

# Version operators other than an exact pin
SPECIFIER_CHARS = "<>!~,"


class ResourceParser:
    """Parse resource declarations from dict/YAML format."""

    def __init__(self, defaults: Optional[dict[str, dict[str, Any]]] = None):
        """
        Initialize parser.

        Args:
            defaults: Per-kind field defaults merged into every entry of that kind
        """
        self.defaults = defaults or {}

    def parse(self, config: dict[str, Any]) -> list[Resource]:
        """
        Parse a configuration dict into a list of resources.

        Args:
            config: Dict with a "resources" list and optional "defaults"

        Returns:
            Resources in declaration order

        Raises:
            ParseError: If config is invalid
        """
        if not isinstance(config, dict):
            raise ParseError("Configuration must be a mapping")

        entries = config.get("resources")
        if entries is None:
            raise ParseError("Missing required field: resources")
        if not isinstance(entries, list):
            raise ParseError("Field 'resources' must be a list")

        defaults = dict(self.defaults)
        defaults.update(config.get("defaults") or {})

        resources: list[Resource] = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ParseError(f"Resource #{index} must be a mapping")
            resources.extend(self._parse_entry(index, entry, defaults))

        return resources

    def _parse_entry(
        self,
        index: int,
        entry: dict[str, Any],
        defaults: dict[str, dict[str, Any]]
    ) -> list[Resource]:
        """Parse one entry, expanding item tables."""
        unknown = set(entry) - RESOURCE_KEYS
        if unknown:
            raise ParseError(
                f"Resource #{index} has unknown field(s): {', '.join(sorted(unknown))}"
            )

        kind = self._parse_kind(index, entry.get("kind"))

        # Merge kind defaults
        merged = dict(defaults.get(kind.value) or {})
        merged.update(entry)

        if "items" in merged:
            return self._expand_items(index, kind, merged)

        return [self._build(index, kind, merged)]

    def _parse_kind(self, index: int, value: Any) -> ResourceKind:
        if not value:
            raise ParseError(f"Resource #{index} is missing required field: kind")
        try:
            return ResourceKind(str(value).lower().replace("-", "_"))
        except ValueError:
            valid = ", ".join(k.value for k in ResourceKind)
            raise ParseError(
                f"Invalid kind for resource #{index}: {value}. Must be one of: {valid}"
            )

    def _expand_items(
        self,
        index: int,
        kind: ResourceKind,
        entry: dict[str, Any]
    ) -> list[Resource]:
        """
        Expand an item table into one resource per item.

        Examples:
            id: "pip-{name}", items: ["numpy==1.26.4"]
                -> Resource(id="pip-numpy", target="numpy", desired="1.26.4")
            id: "browser", items: ["firefox"], ensure: absent
                -> Resource(id="browser-firefox", target="firefox")
        """
        items = entry.get("items")
        if isinstance(items, str):
            items = [items]
        if not isinstance(items, list) or not items:
            raise ParseError(f"Resource #{index}: 'items' must be a non-empty list")

        id_template = entry.get("id") or kind.value
        if "{name}" not in id_template:
            id_template = id_template + "-{name}"

        resources = []
        for item in items:
            name, version = split_requirement(str(item))
            if not name:
                raise ParseError(f"Resource #{index}: empty item in 'items'")
            single = {k: v for k, v in entry.items() if k != "items"}
            single["id"] = id_template.format(name=name)
            single["target"] = name
            if version is not None:
                single["desired"] = version
            resources.append(self._build(index, kind, single))

        return resources

    def _build(
        self,
        index: int,
        kind: ResourceKind,
        entry: dict[str, Any]
    ) -> Resource:
        """Build a single Resource from a merged entry."""
        resource_id = entry.get("id")
        if not resource_id:
            raise ParseError(f"Resource #{index} is missing required field: id")
        resource_id = str(resource_id)

        target = entry.get("target")
        if not target:
            raise ParseError(f"Resource {resource_id} is missing required field: target")

        ensure_str = entry.get("ensure", "present")
        try:
            ensure = Ensure(ensure_str)
        except ValueError:
            raise ParseError(
                f"Invalid ensure for resource {resource_id}: {ensure_str}. "
                f"Must be 'present' or 'absent'"
            )
        if ensure == Ensure.ABSENT and kind in PRESENT_ONLY_KINDS:
            raise ParseError(f"Resource {resource_id}: {kind.value} cannot be ensured absent")
        if kind == ResourceKind.COMMAND_OUTPUT:
            self._check_command(resource_id, entry)

        return Resource(
            id=resource_id,
            kind=kind,
            target=str(target),
            desired=self._parse_desired(resource_id, kind, entry),
            depends_on=self._parse_depends(resource_id, entry.get("depends_on")),
            ensure=ensure,
            source=entry.get("source"),
            mode=self._parse_mode(resource_id, entry.get("mode")),
            fallback=self._parse_fallback(resource_id, entry.get("fallback")),
            post_apply=self._parse_commands(resource_id, entry.get("post_apply")),
            requires_reboot=bool(entry.get(
                "requires_reboot",
                kind == ResourceKind.KERNEL_MODULE_BLACKLISTED,
            )),
            group=entry.get("group"),
        )

    def _parse_desired(
        self,
        resource_id: str,
        kind: ResourceKind,
        entry: dict[str, Any]
    ) -> Any:
        """Resolve the desired value from "desired" or a kind-specific alias."""
        given = [key for key in ("desired",) + DESIRED_ALIASES if key in entry]
        if len(given) > 1:
            raise ParseError(
                f"Resource {resource_id} sets more than one of: {', '.join(given)}"
            )
        value = entry[given[0]] if given else None

        if kind == ResourceKind.COMMAND_OUTPUT:
            return self._parse_expectation(resource_id, value, entry.get("expect_any"))
        for key in ("expect", "expect_any"):
            if key in entry:
                raise ParseError(f"Resource {resource_id}: {key} only applies to command_output")
        if kind == ResourceKind.PYTHON_VENV:
            if value is not None:
                raise ParseError(f"Resource {resource_id}: python_venv takes no desired value")
            return None

        if kind in BOOLEAN_KINDS:
            if value is None:
                return True
            if not isinstance(value, bool):
                raise ParseError(
                    f"Resource {resource_id}: desired value must be true or false"
                )
            return value

        if given and given[0] == "sha256" and value is not None:
            value = str(value)
            if not value.startswith(DIGEST_PREFIX):
                value = DIGEST_PREFIX + value

        if kind == ResourceKind.FILE_CONTENT:
            if value is None and not entry.get("source"):
                if entry.get("ensure", "present") == "present":
                    raise ParseError(
                        f"Resource {resource_id}: file needs content, sha256 or source"
                    )

        if value is not None and kind in VERSIONED_KINDS:
            value = str(value)

        # YAML reads `true` as a bool, the environment stores text
        if kind == ResourceKind.ENV_VAR_SET and value is not None:
            if isinstance(value, bool):
                value = "true" if value else "false"
            value = str(value)

        return value

    def _parse_expectation(
        self,
        resource_id: str,
        all_of: Any,
        any_of: Any
    ) -> OutputExpectation:
        """Parse expect / expect_any given as a string or a list of strings."""
        def texts(value: Any, field_name: str) -> tuple[str, ...]:
            if value is None:
                return ()
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                value = [value]
            if not isinstance(value, list) or not all(
                isinstance(v, (str, int, float)) and not isinstance(v, bool) for v in value
            ):
                raise ParseError(
                    f"Resource {resource_id}: {field_name} must be a string or a list of strings"
                )
            return tuple(str(v) for v in value if str(v) != "")

        return OutputExpectation(
            all_of=texts(all_of, "expect"),
            any_of=texts(any_of, "expect_any"),
        )

    def _check_command(self, resource_id: str, entry: dict[str, Any]) -> None:
        """Command checks run a command line and never change anything."""
        try:
            argv = shlex.split(str(entry.get("target")))
        except ValueError as e:
            raise ParseError(f"Resource {resource_id}: invalid command line: {e}")
        if not argv:
            raise ParseError(f"Resource {resource_id}: empty command line")
        for key in ("fallback", "post_apply", "source", "mode"):
            if entry.get(key):
                raise ParseError(
                    f"Resource {resource_id}: command_output checks cannot declare {key}"
                )

    def _parse_depends(self, resource_id: str, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        if isinstance(value, (list, tuple)):
            return tuple(str(v) for v in value)
        raise ParseError(f"Resource {resource_id}: depends_on must be a list of ids")

    def _parse_mode(self, resource_id: str, value: Any) -> Optional[int]:
        """Parse a file mode given as an octal string ("0644" or "0o644").

        YAML reads an unquoted 644 as decimal and 0644 as octal, so bare
        integers are rejected rather than guessed at.
        """
        if value is None:
            return None
        if not isinstance(value, str):
            raise ParseError(
                f"Resource {resource_id}: file mode must be a quoted octal string "
                f"such as \"0644\", got {value!r}"
            )
        try:
            return int(str(value), 8)
        except ValueError:
            raise ParseError(f"Resource {resource_id}: invalid file mode {value!r}")

    def _parse_fallback(self, resource_id: str, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ParseError(f"Resource {resource_id}: fallback must be a mapping")
        unknown = set(value) - FALLBACK_KEYS
        if unknown:
            raise ParseError(
                f"Resource {resource_id}: fallback cannot override "
                f"{', '.join(sorted(unknown))}"
            )
        fallback = dict(value)
        if "version" in fallback:
            fallback["desired"] = fallback.pop("version")
        return fallback

    def _parse_commands(
        self,
        resource_id: str,
        value: Any
    ) -> tuple[tuple[str, ...], ...]:
        """Parse post_apply commands given as strings or argv lists."""
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        commands = []
        for command in value:
            if isinstance(command, str):
                argv = tuple(shlex.split(command))
            elif isinstance(command, (list, tuple)):
                argv = tuple(str(a) for a in command)
            else:
                raise ParseError(f"Resource {resource_id}: invalid post_apply command")
            if argv:
                commands.append(argv)
        return tuple(commands)


def split_requirement(item: str) -> tuple[str, Optional[str]]:
    """
    Split "name==1.2" or "name=1.2" into name and version.

    Only exact pins are supported; range specifiers such as ">=" or "~="
    raise ParseError.

    Examples:
        "numpy==1.26.4" -> ("numpy", "1.26.4")
        "libmali=1.9-1" -> ("libmali", "1.9-1")
        "clinfo" -> ("clinfo", None)
    """
    item = item.strip()
    if any(c in item for c in SPECIFIER_CHARS):
        raise ParseError(
            f"Unsupported version specifier in {item!r}: use an exact pin (name==version)"
        )
    for separator in ("==", "="):
        if separator in item:
            name, version = item.split(separator, 1)
            version = version.strip()
            if version.startswith("="):
                raise ParseError(
                    f"Unsupported version specifier in {item!r}: use an exact pin (name==version)"
                )
            return name.strip(), version or None
    return item, None


def compute_checksum(config: dict[str, Any]) -> str:
    """
    Compute SHA256 checksum of a config dict.

    Recorded in run reports and the audit log.
    """
    config_str = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    hash_bytes = hashlib.sha256(config_str.encode()).hexdigest()
    return f"sha256:{hash_bytes[:16]}"  # Short hash for readability
