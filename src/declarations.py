"""Stack file loading and validation.

A stack file declares resource instances and named outputs:

    schema_version: 1
    name: web
    resources:
      - kind: network
        name: main
        attributes:
          cidr_block: 10.0.0.0/16
      - kind: subnet
        name: public
        attributes:
          network_id: ${network.main.id}
    outputs:
      subnet_id: ${subnet.public.id}

Attribute values are literals or ${kind.name.attribute} references.
This module only checks structure; references and types are resolved
by converger.model.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

# Kind and instance names: no dots, they separate reference segments
NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')


@dataclass
class Declaration:
    """A single resource declaration.

    Attributes:
        kind: Resource kind (network, subnet, security_group, instance, ...)
        name: Instance name, unique within its kind
        attributes: Raw attribute values (literals or reference strings)
    """
    kind: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f'{self.kind}.{self.name}'

    @classmethod
    def from_dict(cls, data: dict) -> 'Declaration':
        """Create Declaration from dictionary."""
        return cls(
            kind=data['kind'],
            name=data['name'],
            attributes=dict(data.get('attributes') or {}),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'kind': self.kind,
            'name': self.name,
        }
        if self.attributes:
            d['attributes'] = dict(self.attributes)
        return d


@dataclass
class StackDefinition:
    """Declared stack: resources plus named outputs.

    Attributes:
        schema_version: Stack file schema version
        name: Human-readable stack name
        resources: Declarations in file order (order breaks ties when sorting)
        outputs: Output name -> raw value (usually a reference)
        description: Optional description
        source_path: Path the stack was loaded from (for error messages)
    """
    schema_version: int
    name: str
    resources: list[Declaration] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    def to_dict(self) -> dict:
        """Convert stack to dictionary (for JSON serialization)."""
        result: dict[str, Any] = {
            'schema_version': self.schema_version,
            'name': self.name,
            'resources': [r.to_dict() for r in self.resources],
        }
        if self.description:
            result['description'] = self.description
        if self.outputs:
            result['outputs'] = dict(self.outputs)
        return result

    def to_json(self) -> str:
        """Serialize stack to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'StackDefinition':
        """Create StackDefinition from dictionary.

        Raises:
            ConfigError: If the stack structure is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported stack schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ConfigError("Stack missing required field: name")

        raw_resources = data.get('resources') or []
        if not isinstance(raw_resources, list):
            raise ConfigError("Stack field 'resources' must be a list")

        resources = []
        for i, item in enumerate(raw_resources):
            if not isinstance(item, dict):
                raise ConfigError(f"Resource {i} must be a mapping")
            for key in ('kind', 'name'):
                if key not in item:
                    raise ConfigError(
                        f"Resource {i} ({item.get('name', 'unnamed')}) missing required field: {key}"
                    )
                if not isinstance(item[key], str) or not NAME_PATTERN.match(item[key]):
                    raise ConfigError(
                        f"Resource {i} has invalid {key} '{item[key]}' "
                        f"(letters, digits, '_' and '-' only)"
                    )
            if not isinstance(item.get('attributes') or {}, dict):
                raise ConfigError(f"Resource {i} ({item['name']}) attributes must be a mapping")
            resources.append(Declaration.from_dict(item))

        outputs = data.get('outputs') or {}
        if not isinstance(outputs, dict):
            raise ConfigError("Stack field 'outputs' must be a mapping")

        return cls(
            schema_version=schema_version,
            name=str(data['name']),
            resources=resources,
            outputs=dict(outputs),
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'StackDefinition':
        """Create StackDefinition from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid stack JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Stack JSON must be an object")
        return cls.from_dict(data)


def load_stack_file(path: Path) -> StackDefinition:
    """Load a stack from a YAML or JSON file.

    Raises:
        ConfigError: If file not found or invalid
    """
    if not path.exists():
        raise ConfigError(f"Stack file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Invalid stack file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Stack {path} must be a mapping")

    logger.debug(f"Loaded stack from {path}")
    return StackDefinition.from_dict(data, source_path=path)


def load_stack(file_path: Optional[str] = None, json_str: Optional[str] = None) -> StackDefinition:
    """Load a stack from a file or inline JSON.

    Priority:
    1. json_str - Inline JSON
    2. file_path - YAML/JSON file

    Raises:
        ConfigError: If no source given, or the stack is invalid
    """
    if json_str:
        return StackDefinition.from_json(json_str)
    if file_path:
        return load_stack_file(Path(file_path))
    raise ConfigError("No stack given: specify a stack file or inline JSON")
