"""Provider clients: single create/update/delete calls against the platform.

Every call is idempotent at the provider level. Re-invoking create for a
resource that already exists returns the existing id instead of making a
duplicate. Failures are classified so the executor knows whether to retry:
- TransientError: network errors, timeouts, throttling, 5xx
- PermanentError: invalid configuration, quota, conflict, other 4xx
"""

import copy
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import requests

from reconciler.errors import PermanentError, TransientError

logger = logging.getLogger(__name__)


@dataclass
class RenderedResource:
    """A resource with references expanded and secrets materialized.

    Exists only for the duration of one provider call; never persisted.
    """
    resource_id: str
    type: str
    name: str
    properties: dict = field(default_factory=dict, repr=False)


@runtime_checkable
class ProviderClient(Protocol):
    """Capability for single resource operations on the remote platform."""

    def create(self, resource: RenderedResource) -> str:
        """Create (or adopt an equivalent) resource and return its provider id."""

    def update(self, resource: RenderedResource, provider_id: str) -> None:
        """Update an existing resource in place."""

    def delete(self, provider_id: str) -> None:
        """Delete a resource. Deleting a missing resource succeeds."""

    def read(self, provider_id: str) -> dict:
        """Return the resource's current attributes (outputs)."""


class ProviderRegistry:
    """Maps resource types to provider clients, with an optional default."""

    def __init__(self, default: Optional[ProviderClient] = None):
        self.default = default
        self._clients: dict[str, ProviderClient] = {}

    def register(self, resource_type: str, client: ProviderClient) -> None:
        self._clients[resource_type] = client

    def for_type(self, resource_type: str) -> ProviderClient:
        """Get the client for a resource type.

        Raises:
            PermanentError: If no client handles the type
        """
        client = self._clients.get(resource_type, self.default)
        if client is None:
            raise PermanentError(f"No provider client for resource type '{resource_type}'")
        return client


# Attributes the in-memory provider computes on create, per type
_COMPUTED_OUTPUTS = {
    'container_app': lambda name: {'fqdn': f'{name}.internal.platform.test'},
    'container_environment': lambda name: {'defaultDomain': f'{name}.platform.test',
                                           'staticIp': '10.0.0.4'},
    'storage_account': lambda name: {'primaryKey': secrets.token_urlsafe(32)},
    'log_workspace': lambda name: {'customerId': secrets.token_hex(16),
                                   'sharedKey': secrets.token_urlsafe(32)},
}


class InMemoryProvider:
    """Provider backed by a dict, for tests and local dry runs.

    Resources are keyed by (type, name), so create is naturally
    idempotent. Failures can be queued per resource id and operation:

        provider.fail('container_app.db', PermanentError('quota'))

    Every call is appended to `calls` as (timestamp, operation, target).
    """

    def __init__(self):
        self.resources: dict[str, dict] = {}
        self.calls: list[tuple[float, str, str]] = []
        self._failures: dict[tuple[str, str], list[Exception]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def provider_id_for(resource_type: str, name: str) -> str:
        return f'/{resource_type}/{name}'

    def fail(self, target: str, *errors: Exception, operation: str = 'create') -> None:
        """Queue errors raised by the next calls of operation on target.

        target is a resource id for create/update and a provider id for
        delete/read.
        """
        with self._lock:
            self._failures.setdefault((operation, target), []).extend(errors)

    def _record(self, operation: str, target: str) -> None:
        with self._lock:
            self.calls.append((time.monotonic(), operation, target))
            queued = self._failures.get((operation, target))
            error = queued.pop(0) if queued else None
        if error is not None:
            raise error

    def calls_for(self, operation: str) -> list[str]:
        return [target for _, op, target in self.calls if op == operation]

    def create(self, resource: RenderedResource) -> str:
        self._record('create', resource.resource_id)
        provider_id = self.provider_id_for(resource.type, resource.name)
        with self._lock:
            existing = self.resources.get(provider_id)
            outputs = existing['outputs'] if existing else self._outputs(resource, provider_id)
            self.resources[provider_id] = {
                'type': resource.type,
                'name': resource.name,
                'properties': copy.deepcopy(resource.properties),
                'outputs': outputs,
            }
        return provider_id

    def update(self, resource: RenderedResource, provider_id: str) -> None:
        self._record('update', resource.resource_id)
        with self._lock:
            if provider_id not in self.resources:
                raise PermanentError(f"Resource {provider_id} not found")
            self.resources[provider_id]['properties'] = copy.deepcopy(resource.properties)

    def delete(self, provider_id: str) -> None:
        self._record('delete', provider_id)
        with self._lock:
            self.resources.pop(provider_id, None)

    def read(self, provider_id: str) -> dict:
        self._record('read', provider_id)
        with self._lock:
            entry = self.resources.get(provider_id)
            if entry is None:
                raise PermanentError(f"Resource {provider_id} not found")
            return {**entry['properties'], **entry['outputs']}

    @staticmethod
    def _outputs(resource: RenderedResource, provider_id: str) -> dict:
        outputs = {'id': provider_id, 'name': resource.name}
        computed = _COMPUTED_OUTPUTS.get(resource.type)
        if computed:
            outputs.update(computed(resource.name))
        return outputs


class HttpProvider:
    """Provider client for a REST resource API.

    Endpoints:
        PUT    {base}/resources/{type}/{name}  create-or-adopt, returns {"id": ...}
        PUT    {base}{provider_id}             update in place
        DELETE {base}{provider_id}             delete (404 counts as done)
        GET    {base}{provider_id}             read attributes
    """

    def __init__(self, base_url: str, token: str = '', timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f'{self.base_url}{path}'
        logger.debug(f"{method} {url}")
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise TransientError(f"Timeout calling {method} {path}")
        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"Cannot connect to {self.base_url}: {e}")
        except requests.exceptions.RequestException as e:
            raise PermanentError(f"Request {method} {path} failed: {e}")

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientError(f"{method} {path} returned {resp.status_code}")
        return resp

    @staticmethod
    def _raise_for_client_error(resp: requests.Response, method: str, path: str) -> None:
        if resp.status_code >= 400:
            raise PermanentError(
                f"{method} {path} returned {resp.status_code}: {resp.text[:200]}"
            )

    def create(self, resource: RenderedResource) -> str:
        path = f'/resources/{resource.type}/{resource.name}'
        resp = self._request('PUT', path, json={'properties': resource.properties})
        self._raise_for_client_error(resp, 'PUT', path)
        try:
            provider_id = resp.json()['id']
        except (ValueError, KeyError, TypeError):
            raise PermanentError(f"PUT {path} response has no resource id")
        return str(provider_id)

    def update(self, resource: RenderedResource, provider_id: str) -> None:
        resp = self._request('PUT', provider_id, json={'properties': resource.properties})
        self._raise_for_client_error(resp, 'PUT', provider_id)

    def delete(self, provider_id: str) -> None:
        resp = self._request('DELETE', provider_id)
        if resp.status_code == 404:
            logger.debug(f"{provider_id} already gone")
            return
        self._raise_for_client_error(resp, 'DELETE', provider_id)

    def read(self, provider_id: str) -> dict:
        resp = self._request('GET', provider_id)
        self._raise_for_client_error(resp, 'GET', provider_id)
        try:
            data = resp.json()
        except ValueError:
            raise PermanentError(f"GET {provider_id} returned invalid JSON")
        if not isinstance(data, dict):
            raise PermanentError(f"GET {provider_id} returned {type(data).__name__}, expected object")
        return data.get('attributes', data)
