"""Differ/planner: desired state vs observed state -> ordered plan.

Each instance is classified in topological order so the classification
of a producer is known before its consumers are diffed:

- Create: declared, not observed
- Delete: observed, no longer declared
- Update: both, values differ, every changed attribute updatable in place
- Replace: both, a force_new attribute changed (Delete then Create)
- NoOp: both, values identical

References to a producer being created or replaced resolve to UNKNOWN
and count as changed; a consumer of a replaced producer is replaced too.
"""

import heapq
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from converger.graph import ResourceGraph, topological_order
from converger.model import UNKNOWN, DesiredState, ResourceInstance, is_known, lookup_from
from converger.providers import ProviderRegistry
from converger.state import ObservedState

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1


class Action(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'
    NOOP = 'noop'


def display_value(value: Any) -> Any:
    """Render a resolved value for output, UNKNOWN as a marker string."""
    if value is UNKNOWN:
        return '(known after apply)'
    if isinstance(value, list):
        return [display_value(v) for v in value]
    if isinstance(value, dict):
        return {k: display_value(v) for k, v in value.items()}
    return value


@dataclass
class Operation:
    """One step of a plan.

    Attributes:
        action: Create, update, delete or noop
        address: Instance address
        kind: Resource kind
        depends_on: Keys of operations that must be applied first
        replacing: True for both halves of a replacement
        changed: Attribute names that differ from observed state
        after: Planned attribute values (UNKNOWN where known after apply)
        resource_id: Provider id of the existing object (update, delete)
        reason: Short explanation shown in previews
        instance: Declared instance (create, update, noop)
    """
    action: Action
    address: str
    kind: str
    depends_on: list[str] = field(default_factory=list)
    replacing: bool = False
    changed: list[str] = field(default_factory=list)
    after: dict[str, Any] = field(default_factory=dict)
    resource_id: Optional[str] = None
    reason: str = ''
    instance: Optional[ResourceInstance] = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> str:
        return f'{self.action.value}:{self.address}'

    @property
    def is_change(self) -> bool:
        return self.action != Action.NOOP

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'action': self.action.value,
            'address': self.address,
            'kind': self.kind,
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.replacing:
            d['replacing'] = True
        if self.changed:
            d['changed'] = list(self.changed)
        if self.after:
            d['after'] = display_value(self.after)
        if self.resource_id:
            d['resource_id'] = self.resource_id
        if self.reason:
            d['reason'] = self.reason
        return d


class Plan:
    """Ordered operations for one apply, produced fresh per planning cycle."""

    def __init__(self, operations: list[Operation], desired: DesiredState,
                 observed_version: Optional[int] = None):
        self.operations = list(operations)
        self.desired = desired
        self.observed_version = observed_version
        self.created_at = time.time()
        self._by_key = {op.key: op for op in self.operations}

    def __iter__(self):
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def get(self, key: str) -> Operation:
        """Get an operation by key (e.g. 'create:network.main').

        Raises:
            KeyError: If no such operation
        """
        return self._by_key[key]

    @property
    def keys(self) -> list[str]:
        return [op.key for op in self.operations]

    @property
    def changes(self) -> list[Operation]:
        """Operations that touch the live system (everything but NoOps)."""
        return [op for op in self.operations if op.is_change]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def summary(self) -> dict[str, int]:
        """Count of instances per change type; a replacement counts once."""
        counts = {'create': 0, 'update': 0, 'replace': 0, 'delete': 0, 'noop': 0}
        for op in self.operations:
            if op.replacing:
                if op.action == Action.CREATE:
                    counts['replace'] += 1
                continue
            counts[op.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'format_version': PLAN_FORMAT_VERSION,
            'stack': self.desired.name,
            'created_at': self.created_at,
            'observed_version': self.observed_version,
            'summary': self.summary(),
            'operations': [op.to_dict() for op in self.operations],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def save(self, path: Path) -> Path:
        """Write the plan as JSON for audit."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(self.to_json())
        logger.debug(f"Plan saved to {path}")
        return path


def _diff(values: dict[str, Any], prior_attrs: dict[str, Any], managed: list[str]) -> list[str]:
    """Names of attributes whose planned value differs from the prior one."""
    changed = []
    for attr, value in values.items():
        if not is_known(value):
            changed.append(attr)
        elif attr not in prior_attrs or prior_attrs[attr] != value:
            changed.append(attr)
    for attr in managed:
        if attr not in values:
            changed.append(attr)
    return changed


def _observed_consumers(observed: ObservedState) -> dict[str, list[str]]:
    consumers: dict[str, list[str]] = {}
    for address in observed:
        for dep in observed.get(address).dependencies:
            consumers.setdefault(dep, []).append(address)
    return consumers


def _linearise(ops: dict[str, Operation], rank: dict[str, int]) -> list[Operation]:
    """Deterministic topological order of the operation graph.

    Ready deletes go first, consumers before producers; then creates and
    updates, producers before consumers.
    """
    def priority(op: Operation) -> tuple:
        if op.action == Action.DELETE:
            return (0, -rank[op.address], op.key)
        return (1, rank[op.address], op.key)

    waiting = {key: len(op.depends_on) for key, op in ops.items()}
    dependents: dict[str, list[str]] = {key: [] for key in ops}
    for key, op in ops.items():
        for dep in op.depends_on:
            dependents[dep].append(key)

    heap = [(priority(op), key) for key, op in ops.items() if waiting[key] == 0]
    heapq.heapify(heap)
    ordered = []
    while heap:
        _, key = heapq.heappop(heap)
        ordered.append(ops[key])
        for dependent in dependents[key]:
            waiting[dependent] -= 1
            if waiting[dependent] == 0:
                heapq.heappush(heap, (priority(ops[dependent]), dependent))
    return ordered


def build_plan(desired: DesiredState, observed: ObservedState,
               registry: Optional[ProviderRegistry] = None,
               graph: Optional[ResourceGraph] = None,
               observed_version: Optional[int] = None) -> Plan:
    """Compute the ordered plan converging observed state to desired state.

    Args:
        desired: Declared instances
        observed: Last committed observed state
        registry: Provider registry supplying force_new classification;
            without one every change is in place
        graph: Prebuilt graph for desired (built if omitted)
        observed_version: State version the plan was computed against

    Raises:
        CyclicDependencyError: If desired references form a cycle
    """
    graph = graph or ResourceGraph(desired)

    # Values each producer will have after apply, for resolving references
    planned: dict[str, dict[str, Any]] = {}
    ids: dict[str, str] = {}
    replaced: set[str] = set()
    ops: dict[str, Operation] = {}

    for address in graph.order():
        inst = desired.get(address)
        prior = observed.get(address)
        lookup = lookup_from(planned, ids)
        values = inst.resolve(lookup)

        if prior is None:
            op = Operation(Action.CREATE, address, inst.kind, after=values,
                           reason='not yet provisioned', instance=inst)
            ops[op.key] = op
            continue

        changed = _diff(values, prior.attributes, prior.managed)
        replaced_producers = [p for p in graph.producers(address) if p in replaced]
        schema = registry.schema(inst.kind) if registry is not None else None

        if replaced_producers:
            reason = f"references replaced {', '.join(replaced_producers)}"
        elif changed and schema is not None and schema.forces_replacement(changed):
            forced = [a for a in changed if schema.forces_replacement([a])]
            reason = f"{', '.join(forced)} forces replacement"
        else:
            reason = ''

        if reason:
            replaced.add(address)
            delete = Operation(Action.DELETE, address, inst.kind, replacing=True,
                               changed=changed, resource_id=prior.resource_id, reason=reason)
            create = Operation(Action.CREATE, address, inst.kind, replacing=True,
                               changed=changed, after=values, reason=reason, instance=inst)
            ops[delete.key] = delete
            ops[create.key] = create
            continue

        # Survives: its live values become visible to consumers
        planned[address] = {**prior.attributes, **values}
        ids[address] = prior.resource_id
        if changed:
            op = Operation(Action.UPDATE, address, inst.kind, changed=changed, after=values,
                           resource_id=prior.resource_id,
                           reason=f"{', '.join(changed)} changed", instance=inst)
        else:
            op = Operation(Action.NOOP, address, inst.kind, after=values,
                           resource_id=prior.resource_id, instance=inst)
        ops[op.key] = op

    for address in observed:
        if address not in desired:
            prior = observed.get(address)
            op = Operation(Action.DELETE, address, prior.kind, resource_id=prior.resource_id,
                           reason='no longer declared')
            ops[op.key] = op

    _wire_dependencies(ops, graph, observed)

    nodes = graph.order() + [a for a in observed if a not in desired]
    deps = {a: graph.producers(a) for a in graph.order()}
    for address in observed:
        if address not in desired:
            deps[address] = observed.get(address).dependencies
    order = topological_order(nodes, deps)
    rank = {address: i for i, address in enumerate(order)}

    plan = Plan(_linearise(ops, rank), desired, observed_version=observed_version)
    logger.debug(f"Plan: {plan.summary()}")
    return plan


def _wire_dependencies(ops: dict[str, Operation], graph: ResourceGraph,
                       observed: ObservedState) -> None:
    consumers = _observed_consumers(observed)

    for op in ops.values():
        deps: list[str] = []
        if op.action in (Action.CREATE, Action.UPDATE):
            for producer in graph.producers(op.address):
                for action in (Action.CREATE, Action.UPDATE):
                    key = f'{action.value}:{producer}'
                    if key in ops:
                        deps.append(key)
            if op.replacing:
                deps.append(f'delete:{op.address}')
        elif op.action == Action.DELETE:
            for consumer in consumers.get(op.address, []):
                if f'delete:{consumer}' in ops:
                    deps.append(f'delete:{consumer}')
                elif f'update:{consumer}' in ops:
                    deps.append(f'update:{consumer}')
        op.depends_on = deps
