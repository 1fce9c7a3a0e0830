"""Stack document loading and validation.

A stack document declares the resources the engine manages. Each resource
has a logical name, a kind (see schema.py) and attributes whose values may be
literals, lists, maps or reference expressions of the form
``${<resource>.<attribute>}``. References are resolvable only within the
same document.

Schema v1:

    schema_version: 1
    name: web
    settings:
      concurrency: 2
      on_error: continue
    resources:
      - name: main
        kind: vpc
        attributes:
          cidr_block: 10.0.0.0/16
      - name: public_a
        kind: subnet
        attributes:
          vpc_id: ${main.id}
          cidr_block: 10.0.1.0/24

``resources`` may also be a mapping of name -> {kind, attributes, depends_on}.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError, get_workspace_dir

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')
REFERENCE_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_]*)\}')


@dataclass(frozen=True)
class Reference:
    """Pointer from an attribute value to another resource's attribute."""
    resource: str
    attribute: str

    def __str__(self) -> str:
        return f'${{{self.resource}.{self.attribute}}}'


def find_references(value: Any) -> list[Reference]:
    """Return every reference inside a (possibly nested) attribute value.

    Order follows first appearance; duplicates are dropped.
    """
    found: list[Reference] = []

    def _walk(v: Any) -> None:
        if isinstance(v, str):
            for match in REFERENCE_PATTERN.finditer(v):
                ref = Reference(match.group(1), match.group(2))
                if ref not in found:
                    found.append(ref)
        elif isinstance(v, dict):
            for item in v.values():
                _walk(item)
        elif isinstance(v, (list, tuple)):
            for item in v:
                _walk(item)

    _walk(value)
    return found


def has_references(value: Any) -> bool:
    return bool(find_references(value))


@dataclass
class ResourceDefinition:
    """A single resource declared in a stack document.

    Attributes:
        name: Logical name, unique within the stack
        kind: Resource kind (FK to the schema registry)
        attributes: Desired attributes (literals or reference expressions)
        depends_on: Explicit ordering dependencies without attribute references
    """
    name: str
    kind: str
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    @property
    def references(self) -> list[Reference]:
        return find_references(self.attributes)

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceDefinition':
        """Create ResourceDefinition from dictionary."""
        return cls(
            name=data['name'],
            kind=data['kind'],
            attributes=dict(data.get('attributes') or {}),
            depends_on=list(data.get('depends_on') or []),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'attributes': dict(self.attributes),
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


@dataclass
class ManifestSettings:
    """Optional per-stack execution settings.

    Attributes:
        concurrency: Worker pool size override (None = engine default)
        on_error: Error handling strategy override (None = engine default)
    """
    concurrency: Optional[int] = None
    on_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ManifestSettings':
        """Create ManifestSettings from dictionary."""
        if not data:
            return cls()
        return cls(
            concurrency=data.get('concurrency'),
            on_error=data.get('on_error'),
        )


@dataclass
class Manifest:
    """Stack document: the desired configuration for one stack.

    Attributes:
        schema_version: Document schema version
        name: Stack name (also keys the default state path)
        resources: Resource definitions in document order
        description: Optional description
        settings: Optional execution settings
        source_path: Path where the document was loaded from (for debugging)
    """
    schema_version: int
    name: str
    resources: list[ResourceDefinition]
    description: str = ''
    settings: ManifestSettings = field(default_factory=ManifestSettings)
    source_path: Optional[Path] = None

    def to_dict(self) -> dict:
        """Convert manifest to dictionary (for JSON serialization)."""
        result: dict[str, Any] = {
            'schema_version': self.schema_version,
            'name': self.name,
            'description': self.description,
            'resources': [r.to_dict() for r in self.resources],
        }
        settings = {}
        if self.settings.concurrency is not None:
            settings['concurrency'] = self.settings.concurrency
        if self.settings.on_error is not None:
            settings['on_error'] = self.settings.on_error
        if settings:
            result['settings'] = settings
        return result

    def to_json(self) -> str:
        """Serialize manifest to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Args:
            data: Stack document dictionary
            source_path: Optional source path for error messages

        Returns:
            Validated Manifest instance

        Raises:
            ConfigError: If the document is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported stack schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ConfigError("Stack document missing required field: name")

        raw_resources = data.get('resources') or []
        if isinstance(raw_resources, dict):
            raw_resources = [
                {'name': name, **(body or {})} for name, body in raw_resources.items()
            ]
        if not isinstance(raw_resources, list):
            raise ConfigError("'resources' must be a list or a mapping of name -> resource")

        resources = []
        for i, resource_data in enumerate(raw_resources):
            _validate_resource(i, resource_data)
            resources.append(ResourceDefinition.from_dict(resource_data))

        _validate_names(resources)

        return cls(
            schema_version=schema_version,
            name=data['name'],
            description=data.get('description', ''),
            resources=resources,
            settings=ManifestSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid stack JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Stack JSON must be an object")
        return cls.from_dict(data)


def _validate_resource(index: int, data: Any) -> None:
    """Validate the shape of a single resource entry.

    Raises:
        ConfigError: If validation fails
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Resource {index} must be a mapping")
    if 'name' not in data:
        raise ConfigError(f"Resource {index} missing required field: name")
    name = data['name']
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ConfigError(
            f"Resource {index} has invalid name {name!r} "
            f"(letters, digits, '_' and '-', not starting with a digit)"
        )
    if 'kind' not in data:
        raise ConfigError(f"Resource {index} ({name}) missing required field: kind")
    attributes = data.get('attributes')
    if attributes is not None and not isinstance(attributes, dict):
        raise ConfigError(f"Resource '{name}': attributes must be a mapping")
    depends_on = data.get('depends_on')
    if depends_on is not None and (
            not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on)):
        raise ConfigError(f"Resource '{name}': depends_on must be a list of resource names")


def _validate_names(resources: list[ResourceDefinition]) -> None:
    """Check for duplicate logical names.

    Raises:
        ConfigError: If validation fails
    """
    seen: set[str] = set()
    for resource in resources:
        if resource.name in seen:
            raise ConfigError(f"Duplicate resource name: '{resource.name}'")
        seen.add(resource.name)


class ManifestLoader:
    """Loads stack documents from {workspace}/stacks/."""

    def __init__(self, workspace: Optional[Path] = None):
        """Initialize loader with workspace path.

        Args:
            workspace: Workspace directory. If None, uses auto-discovery
                       ($IAC_ENGINE_HOME, then the current directory).
        """
        self.workspace = Path(workspace) if workspace else get_workspace_dir()
        self.stacks_dir = self.workspace / 'stacks'

    def list_stacks(self) -> list[str]:
        """List available stack names."""
        if not self.stacks_dir.exists():
            return []
        return sorted([
            f.stem for f in self.stacks_dir.glob('*.yaml')
            if f.is_file()
        ])

    def load(self, name: str) -> Manifest:
        """Load stack document by name.

        Raises:
            ConfigError: If not found or invalid
        """
        path = self.stacks_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_stacks()
            raise ConfigError(
                f"Stack '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )

        return self.load_file(path)

    def load_file(self, path: Path) -> Manifest:
        """Load stack document from a specific file path.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Stack file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in stack {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Stack {path} must be a YAML object (dict)")

        return Manifest.from_dict(data, source_path=path)


def load_manifest(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
    workspace: Optional[Path] = None,
) -> Manifest:
    """Load a stack document from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named stack from {workspace}/stacks/

    Raises:
        ConfigError: If no source given, not found or invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    if file_path:
        return ManifestLoader(workspace).load_file(Path(file_path))
    if name:
        return ManifestLoader(workspace).load(name)
    raise ConfigError("No stack specified: use a stack name, file path or inline JSON")
