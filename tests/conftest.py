"""Shared pytest fixtures for platform-driver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from manifest import Manifest
from reconciler.executor import Executor
from reconciler.graph import ResourceGraph
from reconciler.provider import InMemoryProvider, ProviderRegistry
from reconciler.secrets import SecretMaterializer
from reconciler.state import InMemoryStateStore


def five_service_data(name='dns-platform'):
    """The five-service topology: cache, db, dns-server, proxy, manager."""
    return {
        'schema_version': 1,
        'name': name,
        'resources': [
            {'type': 'container_app', 'name': 'cache',
             'properties': {'image': 'redis:7'}},
            {'type': 'container_app', 'name': 'db',
             'properties': {'image': 'postgres:16'}},
            {'type': 'container_app', 'name': 'dns-server', 'depends_on': ['db'],
             'properties': {'image': 'powerdns/pdns-auth-49'}},
            {'type': 'container_app', 'name': 'proxy', 'depends_on': ['cache', 'dns-server'],
             'properties': {'image': 'caddy:2'}},
            {'type': 'container_app', 'name': 'manager', 'depends_on': ['cache', 'dns-server'],
             'properties': {'image': 'powerdns/pdns-admin'}},
        ],
    }


def make_executor(manifest, state, provider, **kwargs):
    """Executor wired to an in-memory provider with a no-op sleep."""
    kwargs.setdefault('sleep', lambda _delay: None)
    environ = kwargs.pop('environ', {})
    return Executor(
        graph=ResourceGraph(manifest),
        state=state,
        providers=ProviderRegistry(default=provider),
        materializer=SecretMaterializer(manifest.secrets, environ=environ),
        **kwargs,
    )


@pytest.fixture
def five_service_manifest():
    return Manifest.from_dict(five_service_data())


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def state():
    """Open in-memory state store for the five-service manifest."""
    store = InMemoryStateStore(manifest_name='dns-platform')
    store.open()
    yield store
    store.close(flush=False)


@pytest.fixture
def platform_manifest_path():
    """The example manifest shipped with the repo."""
    return Path(__file__).parent.parent / 'manifests' / 'platform.yaml'
