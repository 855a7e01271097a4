"""Provider collaborators: kind schemas and live-system adapters.

Each resource kind carries a schema supplied by the provider side:
which attributes exist, their value types, which ones force replacement
when they change, which ones the provider computes, and whether
create/update calls are idempotent under an idempotency key.

Adapters implement create/read/update/delete for one kind at a time:
- InMemoryProvider: in-process store for rehearsal and tests
- RestProvider: JSON over HTTP against /resources/{kind}
"""

import itertools
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import requests

from config import ConfigError
from converger.errors import ProviderError, ResourceNotFoundError, UnknownKindError

logger = logging.getLogger(__name__)

# Value types an attribute may declare
VALUE_TYPES = {'string', 'number', 'bool', 'list', 'map', 'any'}

# Every instance exposes its provider id under this attribute name
ID_ATTRIBUTE = 'id'


@dataclass(frozen=True)
class AttributeSpec:
    """Schema entry for one attribute of a kind.

    Attributes:
        type: One of VALUE_TYPES
        force_new: Changing the value requires delete + create
        computed: Set by the provider; declarations may only reference it
    """
    type: str = 'any'
    force_new: bool = False
    computed: bool = False

    @classmethod
    def from_dict(cls, data: Any, where: str = '') -> 'AttributeSpec':
        """Create AttributeSpec from a type name or a mapping."""
        if isinstance(data, str):
            data = {'type': data}
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Attribute schema {where} must be a type name or mapping")
        spec = cls(
            type=data.get('type', 'any'),
            force_new=bool(data.get('force_new', False)),
            computed=bool(data.get('computed', False)),
        )
        if spec.type not in VALUE_TYPES:
            raise ConfigError(
                f"Attribute schema {where} has unknown type '{spec.type}'. "
                f"Supported: {', '.join(sorted(VALUE_TYPES))}"
            )
        return spec


@dataclass
class KindSchema:
    """Schema for one resource kind.

    An empty attribute map means the kind is untyped: any attribute is
    accepted and every change is applied in place.
    """
    name: str
    attributes: dict[str, AttributeSpec] = field(default_factory=dict)
    idempotent: bool = False

    @property
    def is_typed(self) -> bool:
        return bool(self.attributes)

    def attribute(self, name: str) -> Optional[AttributeSpec]:
        if name == ID_ATTRIBUTE and name not in self.attributes:
            return AttributeSpec(type='string', computed=True)
        return self.attributes.get(name)

    def forces_replacement(self, changed) -> bool:
        """True if any changed attribute is marked force_new."""
        for name in changed:
            spec = self.attributes.get(name)
            if spec is not None and spec.force_new:
                return True
        return False

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'KindSchema':
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Schema for kind '{name}' must be a mapping")
        attributes = {
            attr: AttributeSpec.from_dict(spec, where=f"'{name}.{attr}'")
            for attr, spec in (data.get('attributes') or {}).items()
        }
        return cls(name=name, attributes=attributes, idempotent=bool(data.get('idempotent', False)))


@dataclass
class ProviderResult:
    """Confirmed outcome of a create/read/update call."""
    resource_id: str
    attributes: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Provider(Protocol):
    """Live-system adapter contract.

    Every method either returns a confirmed result or raises
    ProviderError. delete raises ResourceNotFoundError when the object is
    already gone; read returns None in that case.
    """

    def create(self, kind: str, attributes: dict,
               idempotency_key: Optional[str] = None) -> ProviderResult:
        """Create one instance."""

    def read(self, kind: str, resource_id: str) -> Optional[ProviderResult]:
        """Read one instance."""

    def update(self, kind: str, resource_id: str, attributes: dict,
               idempotency_key: Optional[str] = None) -> ProviderResult:
        """Update one instance in place."""

    def delete(self, kind: str, resource_id: str) -> None:
        """Delete one instance."""


class ProviderRegistry:
    """Maps resource kinds to their schema and provider."""

    def __init__(self):
        self._schemas: dict[str, KindSchema] = {}
        self._providers: dict[str, Provider] = {}

    def register(self, schema: KindSchema, provider: Provider) -> None:
        self._schemas[schema.name] = schema
        self._providers[schema.name] = provider

    def __contains__(self, kind: str) -> bool:
        return kind in self._schemas

    @property
    def kinds(self) -> list[str]:
        return sorted(self._schemas)

    def schema(self, kind: str) -> KindSchema:
        """Get the schema for a kind.

        Raises:
            UnknownKindError: If the kind is not registered
        """
        try:
            return self._schemas[kind]
        except KeyError:
            raise UnknownKindError(
                f"Unknown resource kind '{kind}'. "
                f"Known kinds: {', '.join(self.kinds) if self._schemas else 'none'}"
            ) from None

    def provider(self, kind: str) -> Provider:
        self.schema(kind)
        return self._providers[kind]

    @classmethod
    def from_settings(cls, settings) -> 'ProviderRegistry':
        """Build a registry from EngineSettings.provider and .kinds."""
        provider = build_provider(settings.provider)
        registry = cls()
        for kind, data in settings.kinds.items():
            registry.register(KindSchema.from_dict(kind, data), provider)
        logger.debug(f"Registered {len(registry.kinds)} kinds with "
                     f"{settings.provider.get('type', 'memory')} provider")
        return registry


def build_provider(config: dict) -> Provider:
    """Create a provider from its settings mapping.

    Raises:
        ConfigError: If the provider settings are incomplete
    """
    provider_type = config.get('type', 'memory')
    if provider_type == 'memory':
        return InMemoryProvider()
    if provider_type == 'rest':
        endpoint = config.get('endpoint')
        if not endpoint:
            raise ConfigError("rest provider requires 'endpoint'")
        token = None
        if token_env := config.get('token_env'):
            token = os.environ.get(token_env)
            if not token:
                raise ConfigError(f"rest provider token variable {token_env} is not set")
        return RestProvider(
            endpoint=endpoint,
            token=token,
            verify_tls=bool(config.get('verify_tls', True)),
            timeout=float(config.get('timeout', 30.0)),
        )
    raise ConfigError(f"Unknown provider type '{provider_type}'")


class InMemoryProvider:
    """Provider keeping live objects in process memory.

    Ids are deterministic ({kind}-{n:04d}). Failures can be injected per
    operation and kind to rehearse partial applies.

    Attributes:
        objects: Live objects by id, as (kind, attributes)
        calls: Log of (operation, kind, id-or-None) in call order
    """

    def __init__(self, computed: Optional[dict[str, Callable[[str, dict], dict]]] = None,
                 latency: float = 0.0):
        """Initialize provider.

        Args:
            computed: Optional per-kind callables returning extra computed
                attributes given (resource_id, attributes)
            latency: Seconds each call sleeps before acting
        """
        self.objects: dict[str, tuple[str, dict]] = {}
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self.computed = computed or {}
        self.latency = latency
        self._failures: list[dict] = []
        self._idempotency: dict[str, str] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def fail_on(self, operation: str, kind: str,
                when: Optional[Callable[[dict], bool]] = None,
                error: Optional[ProviderError] = None,
                times: Optional[int] = None) -> None:
        """Inject a failure.

        Args:
            operation: create, read, update or delete
            kind: Resource kind the failure applies to
            when: Optional predicate on the call's attributes
            error: Exception to raise (default: non-retryable ProviderError)
            times: Fail this many matching calls, then succeed (None = always)
        """
        self._failures.append({
            'operation': operation,
            'kind': kind,
            'when': when,
            'error': error or ProviderError(f"injected {operation} failure for {kind}"),
            'remaining': times,
        })

    def _maybe_fail(self, operation: str, kind: str, attributes: dict) -> None:
        for failure in self._failures:
            if failure['operation'] != operation or failure['kind'] != kind:
                continue
            if failure['when'] is not None and not failure['when'](attributes):
                continue
            if failure['remaining'] is not None:
                if failure['remaining'] <= 0:
                    continue
                failure['remaining'] -= 1
            raise failure['error']

    def _materialize(self, kind: str, resource_id: str, attributes: dict) -> dict:
        attrs = dict(attributes)
        attrs[ID_ATTRIBUTE] = resource_id
        if fn := self.computed.get(kind):
            attrs.update(fn(resource_id, attrs))
        return attrs

    def _pause(self) -> None:
        if self.latency:
            time.sleep(self.latency)

    def create(self, kind: str, attributes: dict,
               idempotency_key: Optional[str] = None) -> ProviderResult:
        self._pause()
        with self._lock:
            self.calls.append(('create', kind, None))
            self._maybe_fail('create', kind, attributes)
            replayed = self._idempotency.get(idempotency_key) if idempotency_key else None
            if replayed is not None and replayed in self.objects:
                return ProviderResult(replayed, dict(self.objects[replayed][1]))
            resource_id = f'{kind}-{next(self._counter):04d}'
            attrs = self._materialize(kind, resource_id, attributes)
            self.objects[resource_id] = (kind, attrs)
            if idempotency_key:
                self._idempotency[idempotency_key] = resource_id
            return ProviderResult(resource_id, dict(attrs))

    def read(self, kind: str, resource_id: str) -> Optional[ProviderResult]:
        self._pause()
        with self._lock:
            self.calls.append(('read', kind, resource_id))
            current = self.objects.get(resource_id)
            self._maybe_fail('read', kind, current[1] if current else {})
            if current is None or current[0] != kind:
                return None
            return ProviderResult(resource_id, dict(current[1]))

    def update(self, kind: str, resource_id: str, attributes: dict,
               idempotency_key: Optional[str] = None) -> ProviderResult:
        self._pause()
        with self._lock:
            self.calls.append(('update', kind, resource_id))
            self._maybe_fail('update', kind, attributes)
            if resource_id not in self.objects:
                raise ResourceNotFoundError(f"{kind} {resource_id} not found")
            attrs = self._materialize(kind, resource_id, attributes)
            self.objects[resource_id] = (kind, attrs)
            return ProviderResult(resource_id, dict(attrs))

    def delete(self, kind: str, resource_id: str) -> None:
        self._pause()
        with self._lock:
            self.calls.append(('delete', kind, resource_id))
            current = self.objects.get(resource_id)
            self._maybe_fail('delete', kind, current[1] if current else {})
            if current is None:
                raise ResourceNotFoundError(f"{kind} {resource_id} not found")
            del self.objects[resource_id]


class RestProvider:
    """Provider speaking JSON over HTTP.

    Endpoints (relative to endpoint):
        POST   /resources/{kind}        create -> {"id": ..., "attributes": {...}}
        GET    /resources/{kind}/{id}   read
        PATCH  /resources/{kind}/{id}   update
        DELETE /resources/{kind}/{id}   delete

    404 maps to ResourceNotFoundError; 429, 5xx, timeouts and connection
    errors are retryable ProviderErrors; other 4xx are not.
    """

    def __init__(self, endpoint: str, token: Optional[str] = None, verify_tls: bool = True,
                 timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.endpoint = endpoint.rstrip('/')
        self.token = token
        self.verify_tls = verify_tls
        self.timeout = timeout
        self._session = session or requests.Session()

    def _request(self, method: str, path: str, payload: Optional[dict] = None,
                 idempotency_key: Optional[str] = None) -> Optional[dict]:
        url = f"{self.endpoint}/resources/{path}"
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key

        logger.debug(f"{method} {url}")
        try:
            resp = self._session.request(
                method, url, json=payload, headers=headers,
                verify=self.verify_tls, timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise ProviderError(f"Timeout calling {method} {url}", retryable=True)
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"Cannot connect to {self.endpoint}: {e}", retryable=True)

        if resp.status_code == 404:
            raise ResourceNotFoundError(f"{method} {url}: not found")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderError(
                f"{method} {url}: {resp.status_code} - {resp.text[:100]}", retryable=True)
        if resp.status_code >= 400:
            raise ProviderError(f"{method} {url}: {resp.status_code} - {resp.text[:100]}")
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{method} {url}: invalid JSON response: {e}")

    @staticmethod
    def _result(data: Optional[dict], what: str) -> ProviderResult:
        if not data or not data.get('id'):
            raise ProviderError(f"{what}: response did not include an id")
        resource_id = str(data['id'])
        attributes = dict(data.get('attributes') or {})
        attributes.setdefault(ID_ATTRIBUTE, resource_id)
        return ProviderResult(resource_id, attributes)

    def create(self, kind: str, attributes: dict,
               idempotency_key: Optional[str] = None) -> ProviderResult:
        data = self._request('POST', kind, {'attributes': attributes}, idempotency_key)
        return self._result(data, f"create {kind}")

    def read(self, kind: str, resource_id: str) -> Optional[ProviderResult]:
        try:
            data = self._request('GET', f'{kind}/{resource_id}')
        except ResourceNotFoundError:
            return None
        return self._result(data, f"read {kind}")

    def update(self, kind: str, resource_id: str, attributes: dict,
               idempotency_key: Optional[str] = None) -> ProviderResult:
        data = self._request('PATCH', f'{kind}/{resource_id}',
                             {'attributes': attributes}, idempotency_key)
        return self._result(data, f"update {kind}")

    def delete(self, kind: str, resource_id: str) -> None:
        self._request('DELETE', f'{kind}/{resource_id}')
