"""Resource schema registry.

Declares each resource kind's attributes: type, default, whether a change
can be applied in place (mutable) or forces replacement, which attributes
the provider computes, and which attributes name the resource (unique).

Every kind implicitly exposes a computed 'id' holding the provider-assigned
identifier.

Extra kinds can be loaded from YAML:

    kinds:
      bucket:
        attributes:
          name: {type: string, required: true, mutable: false, unique: true}
          versioning: {type: boolean, default: false}
          arn: {type: string, computed: true}
"""

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError
from manifest import has_references

logger = logging.getLogger(__name__)

ATTRIBUTE_TYPES = {
    'string': (str,),
    'integer': (int,),
    'boolean': (bool,),
    'list': (list,),
    'map': (dict,),
    'any': (object,),
}

ID_ATTRIBUTE = 'id'


class SchemaError(ConfigError):
    """Resource does not conform to its kind's schema."""


@dataclass
class AttributeSchema:
    """Schema for one attribute of a resource kind.

    Attributes:
        name: Attribute name
        type: One of ATTRIBUTE_TYPES
        required: Must be set in configuration
        default: Value applied when omitted (None = no default)
        mutable: False means a change forces replacement
        computed: Populated by the provider, never set in configuration
        unique: Names the resource; an unchanged value collides on replace
    """
    name: str
    type: str = 'string'
    required: bool = False
    default: Any = None
    mutable: bool = True
    computed: bool = False
    unique: bool = False

    def check_type(self, value: Any) -> bool:
        # bool is an int subclass; keep integers and booleans apart
        if self.type == 'integer' and isinstance(value, bool):
            return False
        return isinstance(value, ATTRIBUTE_TYPES[self.type])

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'AttributeSchema':
        data = data or {}
        attr = cls(
            name=name,
            type=data.get('type', 'string'),
            required=data.get('required', False),
            default=data.get('default'),
            mutable=data.get('mutable', True),
            computed=data.get('computed', False),
            unique=data.get('unique', False),
        )
        if attr.type not in ATTRIBUTE_TYPES:
            raise SchemaError(
                f"Attribute '{name}' has unknown type '{attr.type}'. "
                f"Supported: {', '.join(ATTRIBUTE_TYPES)}"
            )
        return attr


@dataclass
class ResourceSchema:
    """Schema for one resource kind."""
    kind: str
    attributes: dict[str, AttributeSchema] = field(default_factory=dict)

    def __post_init__(self):
        if ID_ATTRIBUTE not in self.attributes:
            self.attributes[ID_ATTRIBUTE] = AttributeSchema(name=ID_ATTRIBUTE, computed=True)

    @property
    def inputs(self) -> dict[str, AttributeSchema]:
        return {n: a for n, a in self.attributes.items() if not a.computed}

    @property
    def outputs(self) -> dict[str, AttributeSchema]:
        return {n: a for n, a in self.attributes.items() if a.computed}

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes

    def normalize(self, resource_name: str, attributes: dict) -> dict:
        """Validate desired attributes and apply defaults.

        Type checks are skipped for values that contain references; they are
        only known after the referenced resource is applied.

        Returns:
            New dict with defaults filled in

        Raises:
            SchemaError: On unknown, computed, missing or mistyped attributes
        """
        normalized: dict[str, Any] = {}
        for name, value in attributes.items():
            attr = self.attributes.get(name)
            if attr is None:
                raise SchemaError(
                    f"Resource '{resource_name}' ({self.kind}) has unknown attribute '{name}'. "
                    f"Known: {', '.join(sorted(self.inputs))}"
                )
            if attr.computed:
                raise SchemaError(
                    f"Resource '{resource_name}' ({self.kind}) sets computed attribute '{name}'"
                )
            if not has_references(value) and not attr.check_type(value):
                raise SchemaError(
                    f"Resource '{resource_name}' ({self.kind}) attribute '{name}' "
                    f"must be {attr.type}, got {type(value).__name__}"
                )
            normalized[name] = value

        for name, attr in self.inputs.items():
            if name in normalized:
                continue
            if attr.required:
                raise SchemaError(
                    f"Resource '{resource_name}' ({self.kind}) missing required attribute '{name}'"
                )
            if attr.default is not None:
                normalized[name] = copy.deepcopy(attr.default)

        return normalized

    def requires_replacement(self, changed: list[str]) -> bool:
        """True if any changed attribute cannot be updated in place."""
        for name in changed:
            attr = self.attributes.get(name)
            if attr is None or not attr.mutable:
                return True
        return False

    def collides(self, prior: dict, desired: dict) -> bool:
        """True if a replacement would reuse a unique (naming) value.

        The provider cannot hold both objects at once, so the old one must be
        destroyed before the new one is created.
        """
        for name, attr in self.attributes.items():
            if attr.unique and name in desired and prior.get(name) == desired.get(name):
                return True
        return False

    @classmethod
    def from_dict(cls, kind: str, data: Optional[dict]) -> 'ResourceSchema':
        attributes = (data or {}).get('attributes') or {}
        if not isinstance(attributes, dict):
            raise SchemaError(f"Kind '{kind}': attributes must be a mapping")
        return cls(
            kind=kind,
            attributes={name: AttributeSchema.from_dict(name, spec) for name, spec in attributes.items()},
        )


class SchemaRegistry:
    """Registry of resource kinds."""

    def __init__(self):
        self._schemas: dict[str, ResourceSchema] = {}

    def register(self, schema: ResourceSchema) -> None:
        if schema.kind in self._schemas:
            logger.debug(f"Overriding schema for kind '{schema.kind}'")
        self._schemas[schema.kind] = schema

    def get(self, kind: str) -> ResourceSchema:
        """Get a kind's schema.

        Raises:
            SchemaError: If the kind is not registered
        """
        try:
            return self._schemas[kind]
        except KeyError:
            raise SchemaError(
                f"Unknown resource kind '{kind}'. Available: {', '.join(self.kinds())}"
            ) from None

    def __contains__(self, kind: str) -> bool:
        return kind in self._schemas

    def kinds(self) -> list[str]:
        return sorted(self._schemas)

    def load_dict(self, data: dict) -> None:
        kinds = data.get('kinds') or {}
        if not isinstance(kinds, dict):
            raise SchemaError("'kinds' must be a mapping of kind -> schema")
        for kind, spec in kinds.items():
            self.register(ResourceSchema.from_dict(kind, spec))

    def load_file(self, path: Path) -> None:
        """Register kinds from a YAML schema file.

        Raises:
            SchemaError: If the file is missing or invalid
        """
        if not path.exists():
            raise SchemaError(f"Schema file not found: {path}")
        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise SchemaError(f"Invalid YAML in schema file {path}: {e}")
        if not isinstance(data, dict):
            raise SchemaError(f"Schema file {path} must be a YAML object (dict)")
        self.load_dict(data)
        logger.debug(f"Loaded schemas from {path}")

    @classmethod
    def from_dict(cls, data: dict) -> 'SchemaRegistry':
        registry = cls()
        registry.load_dict(data)
        return registry


# Built-in kinds for the network and edge topology: VPC, subnets, routing,
# security groups, load balancer, DNS and certificates.
BUILTIN_SCHEMAS: dict = {
    'kinds': {
        'vpc': {'attributes': {
            'cidr_block': {'required': True, 'mutable': False},
            'enable_dns_hostnames': {'type': 'boolean', 'default': True},
            'enable_dns_support': {'type': 'boolean', 'default': True},
            'tags': {'type': 'map'},
            'arn': {'computed': True},
            'default_route_table_id': {'computed': True},
        }},
        'subnet': {'attributes': {
            'vpc_id': {'required': True, 'mutable': False},
            'cidr_block': {'required': True, 'mutable': False},
            'availability_zone': {'mutable': False},
            'map_public_ip_on_launch': {'type': 'boolean', 'default': False},
            'tags': {'type': 'map'},
            'arn': {'computed': True},
        }},
        'internet_gateway': {'attributes': {
            'vpc_id': {'required': True},
            'tags': {'type': 'map'},
            'arn': {'computed': True},
        }},
        'route_table': {'attributes': {
            'vpc_id': {'required': True, 'mutable': False},
            'routes': {'type': 'list'},
            'tags': {'type': 'map'},
        }},
        'route_table_association': {'attributes': {
            'subnet_id': {'required': True, 'mutable': False},
            'route_table_id': {'required': True},
        }},
        'security_group': {'attributes': {
            'name': {'required': True, 'mutable': False, 'unique': True},
            'vpc_id': {'required': True, 'mutable': False},
            'description': {'mutable': False, 'default': 'Managed by iac-engine'},
            'ingress': {'type': 'list'},
            'egress': {'type': 'list'},
            'tags': {'type': 'map'},
            'arn': {'computed': True},
        }},
        'load_balancer': {'attributes': {
            'name': {'required': True, 'mutable': False, 'unique': True},
            'internal': {'type': 'boolean', 'default': False, 'mutable': False},
            'subnets': {'type': 'list', 'required': True},
            'security_groups': {'type': 'list'},
            'idle_timeout': {'type': 'integer', 'default': 60},
            'tags': {'type': 'map'},
            'arn': {'computed': True},
            'dns_name': {'computed': True},
            'zone_id': {'computed': True},
        }},
        'lb_listener': {'attributes': {
            'load_balancer_arn': {'required': True, 'mutable': False},
            'port': {'type': 'integer', 'required': True, 'mutable': False},
            'protocol': {'default': 'HTTP'},
            'certificate_arn': {},
            'default_action': {'type': 'map'},
            'arn': {'computed': True},
        }},
        'dns_record': {'attributes': {
            'zone_id': {'required': True, 'mutable': False},
            'name': {'required': True, 'mutable': False, 'unique': True},
            'type': {'required': True, 'mutable': False},
            'ttl': {'type': 'integer', 'default': 300},
            'records': {'type': 'list'},
            'alias': {'type': 'map'},
            'fqdn': {'computed': True},
        }},
        'certificate': {'attributes': {
            'domain_name': {'required': True, 'mutable': False, 'unique': True},
            'subject_alternative_names': {'type': 'list', 'mutable': False},
            'validation_method': {'default': 'DNS', 'mutable': False},
            'tags': {'type': 'map'},
            'arn': {'computed': True},
            'status': {'computed': True},
        }},
    }
}


def default_registry(extra_file: Optional[Path] = None) -> SchemaRegistry:
    """Registry with the built-in kinds, plus kinds from an optional YAML file."""
    registry = SchemaRegistry.from_dict(BUILTIN_SCHEMAS)
    if extra_file is not None:
        registry.load_file(extra_file)
    return registry
