"""Shared pytest fixtures for converger tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import EngineSettings, RetrySettings
from converger.providers import InMemoryProvider, KindSchema, ProviderRegistry
from converger.state import MemoryStateBackend, StateStore
from declarations import Declaration


KIND_SCHEMAS = {
    'network': {
        'idempotent': True,
        'attributes': {
            'cidr_block': {'type': 'string', 'force_new': True},
            'tags': 'map',
        },
    },
    'subnet': {
        'attributes': {
            'network_id': {'type': 'string', 'force_new': True},
            'cidr_block': {'type': 'string', 'force_new': True},
            'zone': 'string',
        },
    },
    'security_group': {
        'attributes': {
            'network_id': {'type': 'string', 'force_new': True},
            'ingress': 'list',
            'description': 'string',
        },
    },
    'instance': {
        'attributes': {
            'subnet_id': {'type': 'string', 'force_new': True},
            'security_group_ids': 'list',
            'image': {'type': 'string', 'force_new': True},
            'size': 'number',
            'private_ip': {'type': 'string', 'computed': True},
        },
    },
    # Untyped: any attribute accepted, every change in place
    'thing': {},
}


def decl(kind, name, **attributes):
    """Shorthand for a Declaration."""
    return Declaration(kind=kind, name=name, attributes=attributes)


def make_registry(provider=None, schemas=None):
    """Registry with every kind in schemas served by one provider."""
    provider = provider or InMemoryProvider()
    registry = ProviderRegistry()
    for kind, data in (schemas or KIND_SCHEMAS).items():
        registry.register(KindSchema.from_dict(kind, data), provider)
    return registry


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer environment out of settings discovery."""
    monkeypatch.delenv('CONVERGER_CONFIG', raising=False)
    monkeypatch.delenv('CONVERGER_STATE_DIR', raising=False)


@pytest.fixture
def provider():
    """In-memory provider that computes private_ip for instances."""
    return InMemoryProvider(computed={
        'instance': lambda rid, attrs: {'private_ip': f'10.0.1.{int(rid.split("-")[-1])}'},
    })


@pytest.fixture
def registry(provider):
    return make_registry(provider)


@pytest.fixture
def store():
    return StateStore(MemoryStateBackend(), poll_interval=0.01)


@pytest.fixture
def settings(tmp_path):
    """Settings with state and reports under tmp_path and fast retries."""
    return EngineSettings(
        workspace='test',
        state_dir=tmp_path / 'states',
        report_dir=tmp_path / 'reports',
        operator='tester@localhost',
        lock_timeout=0.2,
        lock_poll_interval=0.01,
        concurrency=4,
        operation_timeout=5.0,
        retry=RetrySettings(max_attempts=3, delay=0.0, backoff=1.0),
        kinds=KIND_SCHEMAS,
    )


@pytest.fixture
def web_declarations():
    """net <- subnet, net <- group: the canonical three-instance stack."""
    return [
        decl('network', 'net', cidr_block='10.0.0.0/16'),
        decl('subnet', 'subnet', network_id='${network.net.id}', cidr_block='10.0.1.0/24'),
        decl('security_group', 'group', network_id='${network.net.id}', ingress=[]),
    ]


@pytest.fixture
def stack_file(tmp_path):
    """Write a stack YAML file and return its path."""
    path = tmp_path / 'web.yaml'
    path.write_text("""
schema_version: 1
name: web
resources:
  - kind: network
    name: net
    attributes:
      cidr_block: 10.0.0.0/16
  - kind: subnet
    name: subnet
    attributes:
      network_id: ${network.net.id}
      cidr_block: 10.0.1.0/24
  - kind: security_group
    name: group
    attributes:
      network_id: ${network.net.id}
      ingress: []
outputs:
  subnet_id: ${subnet.subnet.id}
  network_cidr: ${network.net.cidr_block}
""")
    return path
