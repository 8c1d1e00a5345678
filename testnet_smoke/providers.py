"""Provider pins for the provisioning stack.

The manifest is a YAML document mapping provider names to a registry source
and a version constraint. It is validated structurally with JSON Schema and
then rendered into the `terraform { required_providers { ... } }` block the
provisioning engine reads.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import re
from typing import Any

from jsonschema import ValidationError
from jsonschema import validate as jsonschema_validate
import yaml

from testnet_smoke.errors import ManifestError

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST = Path(__file__).with_name("providers.yaml")

_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]*$")
_SOURCE_RE = re.compile(r"^(?:[a-z0-9][a-z0-9.-]*/)?[a-z0-9][a-z0-9-]*/[a-z0-9][a-z0-9-]*$")
_CONSTRAINT_RE = re.compile(
    r"^(?P<op>=|!=|>=|<=|>|<|~>)?\s*(?P<version>\d+(?:\.\d+){0,2}(?:-[0-9A-Za-z.-]+)?)$"
)

MANIFEST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "required_version": {"type": "string", "minLength": 1},
        "providers": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "source": {"type": "string", "minLength": 1},
                    "version": {"type": "string", "minLength": 1},
                },
                "required": ["source", "version"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["providers"],
    "additionalProperties": False,
}


@dataclass(frozen=True)
class ProviderPin:
    name: str
    source: str
    version: str

    def __post_init__(self) -> None:
        if not _NAME_RE.match(self.name):
            raise ManifestError(f"Invalid provider name {self.name!r}")
        if not _SOURCE_RE.match(self.source):
            raise ManifestError(
                f"Provider {self.name!r} has invalid source {self.source!r}; "
                "expected [hostname/]namespace/type"
            )
        validate_version_constraint(self.version, context=f"provider {self.name!r}")


@dataclass(frozen=True)
class ProviderManifest:
    providers: tuple[ProviderPin, ...]
    required_version: str | None = None

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for pin in self.providers:
            if pin.name in seen:
                raise ManifestError(f"Provider {pin.name!r} is declared more than once")
            seen.add(pin.name)
        if self.required_version is not None:
            validate_version_constraint(self.required_version, context="required_version")

    def get(self, name: str) -> ProviderPin | None:
        return next((pin for pin in self.providers if pin.name == name), None)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.required_version is not None:
            data["required_version"] = self.required_version
        data["providers"] = {
            pin.name: {"source": pin.source, "version": pin.version} for pin in self.providers
        }
        return data


def validate_version_constraint(constraint: str, *, context: str) -> None:
    parts = [part.strip() for part in constraint.split(",")]
    for part in parts:
        if not _CONSTRAINT_RE.match(part):
            raise ManifestError(f"Invalid version constraint {constraint!r} for {context}")


class _UniqueKeyLoader(yaml.SafeLoader):
    pass


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False) -> dict:
    keys: set[Any] = set()
    for key_node, _ in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in keys:
            raise ManifestError(f"Duplicate key {key!r} (line {key_node.start_mark.line + 1})")
        keys.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_unique_mapping,
)


def parse_manifest(data: Any) -> ProviderManifest:
    try:
        jsonschema_validate(instance=data, schema=MANIFEST_SCHEMA)
    except ValidationError as exc:
        location = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise ManifestError(f"Provider manifest is invalid at {location}: {exc.message}") from exc

    pins = tuple(
        ProviderPin(name=name, source=entry["source"], version=entry["version"])
        for name, entry in data["providers"].items()
    )
    return ProviderManifest(providers=pins, required_version=data.get("required_version"))


def load_manifest(path: Path | None = None) -> ProviderManifest:
    """Load a manifest from `path`, or the one shipped with the package."""
    source = Path(path) if path is not None else DEFAULT_MANIFEST
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Unable to read provider manifest {source}: {exc}") from exc

    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ManifestError(f"Invalid YAML in {source}: {exc}") from exc

    manifest = parse_manifest(data)
    logger.debug("Loaded %d provider pins from %s", len(manifest.providers), source)
    return manifest


def _hcl_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("${", "$${")
    return f'"{escaped}"'


def render_required_providers(manifest: ProviderManifest) -> str:
    lines = ["terraform {"]
    if manifest.required_version is not None:
        lines.append(f"  required_version = {_hcl_string(manifest.required_version)}")
        lines.append("")
    lines.append("  required_providers {")
    for pin in manifest.providers:
        lines.append(f"    {pin.name} = {{")
        lines.append(f"      source  = {_hcl_string(pin.source)}")
        lines.append(f"      version = {_hcl_string(pin.version)}")
        lines.append("    }")
    lines.append("  }")
    lines.append("}")
    return "\n".join(lines) + "\n"
