"""Resource model: typed instances built from raw declarations.

Attribute values are parsed once into a tagged value type:
- Literal: string, number, bool or null
- Reference: ${kind.name.attribute}, pointing at another instance
- ListValue / MapValue: compounds of the above

build_model() checks that every reference targets a declared instance
and that value kinds match the attribute schema of each kind.
Downstream components only see resolved, typed values.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from common import content_hash
from converger.errors import (
    ConfigurationError,
    DuplicateDeclarationError,
    InvalidReferenceError,
    TypeMismatchError,
    UnresolvedReferenceError,
)
from converger.providers import ID_ATTRIBUTE, ProviderRegistry

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r'^\$\{([^}]*)\}$')
SEGMENT_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')


class _Unknown:
    """Placeholder for a value only known after apply."""

    def __repr__(self) -> str:
        return '(known after apply)'


UNKNOWN = _Unknown()


def address_of(kind: str, name: str) -> str:
    return f'{kind}.{name}'


@dataclass(frozen=True)
class Literal:
    value: Any

    @property
    def type(self) -> str:
        if self.value is None:
            return 'null'
        if isinstance(self.value, bool):
            return 'bool'
        if isinstance(self.value, (int, float)):
            return 'number'
        return 'string'

    def references(self) -> Iterator['Reference']:
        return iter(())

    def resolve(self, lookup: Callable[[str, str], Any]) -> Any:
        return self.value

    def to_raw(self) -> Any:
        return self.value


@dataclass(frozen=True)
class Reference:
    """Reference to another instance's attribute.

    Attributes:
        target: Address of the producer instance (kind.name)
        attribute: Attribute name on the producer
    """
    target: str
    attribute: str

    @property
    def type(self) -> str:
        return 'reference'

    @property
    def expression(self) -> str:
        return '${' + f'{self.target}.{self.attribute}' + '}'

    def references(self) -> Iterator['Reference']:
        yield self

    def resolve(self, lookup: Callable[[str, str], Any]) -> Any:
        return lookup(self.target, self.attribute)

    def to_raw(self) -> str:
        return self.expression


@dataclass(frozen=True)
class ListValue:
    items: tuple = ()

    @property
    def type(self) -> str:
        return 'list'

    def references(self) -> Iterator[Reference]:
        for item in self.items:
            yield from item.references()

    def resolve(self, lookup: Callable[[str, str], Any]) -> list:
        return [item.resolve(lookup) for item in self.items]

    def to_raw(self) -> list:
        return [item.to_raw() for item in self.items]


@dataclass(frozen=True)
class MapValue:
    entries: tuple = ()

    @property
    def type(self) -> str:
        return 'map'

    def references(self) -> Iterator[Reference]:
        for _, value in self.entries:
            yield from value.references()

    def resolve(self, lookup: Callable[[str, str], Any]) -> dict:
        return {key: value.resolve(lookup) for key, value in self.entries}

    def to_raw(self) -> dict:
        return {key: value.to_raw() for key, value in self.entries}


Value = Union[Literal, Reference, ListValue, MapValue]


def is_known(value: Any) -> bool:
    """True if a resolved value contains no UNKNOWN placeholder."""
    if value is UNKNOWN:
        return False
    if isinstance(value, list):
        return all(is_known(v) for v in value)
    if isinstance(value, dict):
        return all(is_known(v) for v in value.values())
    return True


def parse_reference(expression: str, where: str) -> Reference:
    """Parse the inside of ${...} into a Reference.

    Raises:
        InvalidReferenceError: If not exactly kind.name.attribute
    """
    parts = expression.strip().split('.')
    if len(parts) != 3 or not all(SEGMENT_PATTERN.match(p) for p in parts):
        raise InvalidReferenceError(
            f"{where}: invalid reference '${{{expression}}}' (expected ${{kind.name.attribute}})"
        )
    kind, name, attribute = parts
    return Reference(target=address_of(kind, name), attribute=attribute)


def parse_value(raw: Any, where: str) -> Value:
    """Parse a raw declaration value into a tagged Value.

    Raises:
        InvalidReferenceError: For malformed or embedded ${...} expressions
        TypeMismatchError: For values of unsupported Python types
    """
    if isinstance(raw, str):
        match = REFERENCE_PATTERN.match(raw)
        if match:
            return parse_reference(match.group(1), where)
        if '${' in raw:
            raise InvalidReferenceError(
                f"{where}: references must be the whole value, not embedded in '{raw}'"
            )
        return Literal(raw)
    if raw is None or isinstance(raw, (bool, int, float)):
        return Literal(raw)
    if isinstance(raw, (list, tuple)):
        return ListValue(tuple(parse_value(item, f'{where}[{i}]') for i, item in enumerate(raw)))
    if isinstance(raw, dict):
        return MapValue(tuple(
            (str(key), parse_value(value, f'{where}.{key}')) for key, value in raw.items()
        ))
    address, _, attribute = where.partition(':')
    raise TypeMismatchError(address, attribute or where,
                            'string, number, bool, list or map', type(raw).__name__)


@dataclass
class ResourceInstance:
    """A declared, typed resource instance.

    Attributes:
        kind: Resource kind
        name: Instance name, unique within kind
        attributes: Attribute name -> parsed Value
        index: Position in the declaration set (tie-breaker for ordering)
    """
    kind: str
    name: str
    attributes: dict[str, Value] = field(default_factory=dict)
    index: int = 0

    @property
    def address(self) -> str:
        return address_of(self.kind, self.name)

    def references(self) -> list[tuple[str, Reference]]:
        """All (attribute name, Reference) pairs, in attribute order."""
        refs = []
        for attr, value in self.attributes.items():
            for ref in value.references():
                refs.append((attr, ref))
        return refs

    @property
    def dependencies(self) -> list[str]:
        """Producer addresses, unique, in first-reference order."""
        seen: dict[str, None] = {}
        for _, ref in self.references():
            seen.setdefault(ref.target, None)
        return list(seen)

    def raw_attributes(self) -> dict:
        return {attr: value.to_raw() for attr, value in self.attributes.items()}

    @property
    def declaration_hash(self) -> str:
        """Content hash of the declaration that produced this instance."""
        return content_hash({
            'kind': self.kind,
            'name': self.name,
            'attributes': self.raw_attributes(),
        })

    def resolve(self, lookup: Callable[[str, str], Any]) -> dict:
        """Resolve every attribute using lookup(target, attribute)."""
        return {attr: value.resolve(lookup) for attr, value in self.attributes.items()}

    def __repr__(self) -> str:
        return f"ResourceInstance({self.address}, index={self.index})"


class DesiredState:
    """Immutable snapshot of declared instances for one planning cycle."""

    def __init__(self, instances: Iterable[ResourceInstance] = (),
                 outputs: Optional[dict[str, Value]] = None, name: str = ''):
        self.name = name
        self._instances: dict[str, ResourceInstance] = {}
        for inst in instances:
            self._instances[inst.address] = inst
        self._outputs = dict(outputs or {})

    def __contains__(self, address: str) -> bool:
        return address in self._instances

    def __iter__(self) -> Iterator[ResourceInstance]:
        return iter(self._instances.values())

    def __len__(self) -> int:
        return len(self._instances)

    @property
    def addresses(self) -> list[str]:
        return list(self._instances)

    @property
    def outputs(self) -> dict[str, Value]:
        return dict(self._outputs)

    def get(self, address: str) -> ResourceInstance:
        """Get an instance by address.

        Raises:
            KeyError: If address not declared
        """
        return self._instances[address]


def _types_compatible(expected: str, actual: str) -> bool:
    if expected == 'any' or actual in ('any', 'null'):
        return True
    return expected == actual


def _check_attribute(inst: ResourceInstance, attr: str, value: Value,
                     registry: ProviderRegistry) -> None:
    schema = registry.schema(inst.kind)
    if not schema.is_typed:
        return
    spec = schema.attribute(attr)
    if spec is None:
        raise ConfigurationError(
            f"'{inst.address}' sets unknown attribute '{attr}' for kind '{inst.kind}'"
        )
    if spec.computed:
        raise ConfigurationError(
            f"'{inst.address}' sets '{attr}', which is computed by the provider"
        )
    if isinstance(value, Reference):
        return  # checked once targets are known
    if not _types_compatible(spec.type, value.type):
        raise TypeMismatchError(inst.address, attr, spec.type, value.type)


def _check_reference(consumer: str, slot: Optional[tuple[str, str]], ref: Reference,
                     instances: dict[str, ResourceInstance],
                     registry: Optional[ProviderRegistry]) -> None:
    if ref.target not in instances:
        raise UnresolvedReferenceError(consumer, ref.target)
    if registry is None:
        return
    producer = instances[ref.target]
    schema = registry.schema(producer.kind)
    if not schema.is_typed:
        return
    spec = schema.attribute(ref.attribute)
    if spec is None:
        raise UnresolvedReferenceError(consumer, ref.target, ref.attribute)
    if slot is not None and not _types_compatible(slot[1], spec.type):
        raise TypeMismatchError(consumer, slot[0], slot[1], f"{spec.type} ({ref.expression})")


def build_model(declarations, registry: Optional[ProviderRegistry] = None,
                outputs: Optional[dict[str, Any]] = None, name: str = '') -> DesiredState:
    """Build the desired state from raw declarations.

    Args:
        declarations: Iterable of objects with kind, name and attributes
            (e.g. declarations.Declaration)
        registry: Optional provider registry for kind and type checks
        outputs: Optional output name -> raw value mapping
        name: Stack name carried on the snapshot

    Returns:
        DesiredState snapshot

    Raises:
        DuplicateDeclarationError: Same kind and name declared twice
        UnknownKindError: Kind not in registry
        InvalidReferenceError: Malformed reference expression
        UnresolvedReferenceError: Reference to an undeclared instance or attribute
        TypeMismatchError: Value kind does not fit the attribute
    """
    instances: dict[str, ResourceInstance] = {}

    for index, decl in enumerate(declarations):
        address = address_of(decl.kind, decl.name)
        if address in instances:
            raise DuplicateDeclarationError(f"Duplicate declaration: '{address}'")
        if registry is not None:
            registry.schema(decl.kind)

        inst = ResourceInstance(kind=decl.kind, name=decl.name, index=index)
        for attr, raw in (decl.attributes or {}).items():
            value = parse_value(raw, f'{address}:{attr}')
            if registry is not None:
                _check_attribute(inst, attr, value, registry)
            inst.attributes[attr] = value
        instances[address] = inst

    for inst in instances.values():
        for attr, value in inst.attributes.items():
            slot = None
            if registry is not None and isinstance(value, Reference):
                spec = registry.schema(inst.kind).attribute(attr)
                slot = (attr, spec.type) if spec is not None else None
            for ref in value.references():
                _check_reference(inst.address, slot, ref, instances, registry)

    parsed_outputs: dict[str, Value] = {}
    for out_name, raw in (outputs or {}).items():
        value = parse_value(raw, f'output.{out_name}')
        for ref in value.references():
            _check_reference(f'output.{out_name}', None, ref, instances, registry)
        parsed_outputs[out_name] = value

    logger.debug(f"Built model with {len(instances)} instances, {len(parsed_outputs)} outputs")
    return DesiredState(instances.values(), parsed_outputs, name=name)


def build_from_stack(stack, registry: Optional[ProviderRegistry] = None) -> DesiredState:
    """Build the desired state from a declarations.StackDefinition."""
    return build_model(stack.resources, registry, outputs=stack.outputs, name=stack.name)


def lookup_from(values: dict[str, dict[str, Any]],
                ids: Optional[dict[str, str]] = None) -> Callable[[str, str], Any]:
    """Build a reference lookup over per-address attribute maps.

    Missing addresses or attributes resolve to UNKNOWN; the id attribute
    falls back to ids[address] when the attribute map lacks it.
    """
    ids = ids or {}

    def lookup(target: str, attribute: str) -> Any:
        attrs = values.get(target)
        if attrs is None:
            return UNKNOWN
        if attribute in attrs:
            return attrs[attribute]
        if attribute == ID_ATTRIBUTE and target in ids:
            return ids[target]
        return UNKNOWN

    return lookup
