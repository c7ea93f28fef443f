"""Tests for reconciler.executor module."""

import json
import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import five_service_data, make_executor
from manifest import Manifest
from reconciler.errors import PermanentError, StateStoreError, TransientError
from reconciler.graph import ResourceGraph
from reconciler.planner import Planner
from reconciler.provider import InMemoryProvider
from reconciler.state import FileStateStore, InMemoryStateStore
from reporting.report import (
    FAILED,
    RUN_CANCELLED,
    RUN_COMPLETE,
    RUN_PARTIAL_FAILURE,
    SKIPPED,
    SUCCEEDED,
)


def _apply(executor, destroy=False):
    planner = Planner(executor.graph, executor.state.snapshot())
    plan = planner.plan_destroy() if destroy else planner.plan()
    return executor.run(plan)


def _reference_manifest():
    return Manifest.from_dict({
        'name': 'refs',
        'secrets': [
            {'name': 'db-password', 'env': 'DB_PASSWORD'},
            {'name': 'storage-key', 'output': 'sa.primaryKey'},
        ],
        'resources': [
            {'type': 'virtual_network', 'name': 'vnet',
             'properties': {'addressSpace': '10.0.0.0/16'}},
            {'type': 'subnet', 'name': 'apps',
             'properties': {'networkRef': 'vnet', 'addressPrefix': '10.0.0.0/23'}},
            {'type': 'storage_account', 'name': 'sa',
             'properties': {'accountName': 'sa1'}},
            {'type': 'environment_storage', 'name': 'share',
             'properties': {'storageRef': 'sa', 'accountKey': {'valueRef': 'storage-key'}}},
            {'type': 'container_app', 'name': 'db', 'properties': {
                'image': 'postgres:16',
                'env': [{'name': 'POSTGRES_PASSWORD', 'secretRef': 'db-password'}],
            }},
            {'type': 'container_app', 'name': 'dns', 'properties': {
                'image': 'powerdns',
                'env': [
                    {'name': 'DB_HOST', 'value': '${container_app.db.fqdn}'},
                    {'name': 'DB_URL', 'value': 'postgres://${db.fqdn}:5432'},
                    {'name': 'DB_PASSWORD', 'secretRef': 'db-password'},
                ],
            }},
        ],
    })


class TestScenario:
    """The five-service topology under full success and partial failure."""

    def test_all_succeed(self, five_service_manifest, state, provider):
        report = _apply(make_executor(five_service_manifest, state, provider))
        assert report.status == RUN_COMPLETE
        assert len(report.succeeded) == 5
        assert len(provider.resources) == 5
        assert set(state.snapshot()) == set(five_service_manifest.ids)

    def test_db_permanent_failure(self, five_service_manifest, state, provider):
        provider.fail('container_app.db', PermanentError('quota exceeded'))
        report = _apply(make_executor(five_service_manifest, state, provider))

        assert report.outcome('container_app.cache') == SUCCEEDED
        assert report.outcome('container_app.db') == FAILED
        assert report.outcome('container_app.dns-server') == SKIPPED
        assert report.outcome('container_app.proxy') == SKIPPED
        assert report.outcome('container_app.manager') == SKIPPED
        assert report.status == RUN_PARTIAL_FAILURE
        assert 'quota exceeded' in report.get('container_app.db').error
        # Permanent errors are not retried
        assert provider.calls_for('create').count('container_app.db') == 1
        assert set(state.snapshot()) == {'container_app.cache'}

    def test_dependencies_created_first(self, five_service_manifest, state, provider):
        manifest = five_service_manifest
        executor = make_executor(manifest, state, provider)
        _apply(executor)
        order = provider.calls_for('create')
        for rid in manifest.ids:
            for dep in executor.graph.dependencies(rid):
                assert order.index(dep) < order.index(rid)

    def test_level_runs_in_parallel(self, five_service_manifest, state):
        barrier = threading.Barrier(2, timeout=5)

        class BarrierProvider(InMemoryProvider):
            def create(self, resource):
                if resource.resource_id in ('container_app.cache', 'container_app.db'):
                    barrier.wait()
                return super().create(resource)

        provider = BarrierProvider()
        report = _apply(make_executor(five_service_manifest, state, provider, concurrency=2))
        assert report.status == RUN_COMPLETE

    def test_concurrency_limit(self, five_service_manifest, state):
        lock = threading.Lock()
        active = []
        peak = []

        class CountingProvider(InMemoryProvider):
            def create(self, resource):
                with lock:
                    active.append(resource.resource_id)
                    peak.append(len(active))
                try:
                    return super().create(resource)
                finally:
                    with lock:
                        active.remove(resource.resource_id)

        provider = CountingProvider()
        _apply(make_executor(five_service_manifest, state, provider, concurrency=1))
        assert max(peak) == 1


class TestIdempotence:
    """Re-applying an applied manifest changes nothing."""

    def test_second_apply_makes_no_calls(self, five_service_manifest, state, provider):
        executor = make_executor(five_service_manifest, state, provider)
        _apply(executor)
        calls_after_first = len(provider.calls)

        plan = Planner(executor.graph, state.snapshot()).plan()
        assert not plan.has_changes
        report = executor.run(plan)
        assert report.status == RUN_COMPLETE
        assert len(provider.calls) == calls_after_first

    def test_update_after_property_change(self, state, provider):
        executor = make_executor(Manifest.from_dict(five_service_data()), state, provider)
        _apply(executor)

        data = five_service_data()
        data['resources'][0]['properties']['image'] = 'redis:7.2'
        report = _apply(make_executor(Manifest.from_dict(data), state, provider))
        assert report.get('container_app.cache').action == 'update'
        assert provider.calls_for('update') == ['container_app.cache']
        assert provider.resources['/container_app/cache']['properties']['image'] == 'redis:7.2'
        assert state.get('container_app.cache').properties['image'] == 'redis:7.2'


class TestRetry:
    """Transient errors are retried with backoff."""

    def test_transient_then_success(self, five_service_manifest, state, provider):
        delays = []
        provider.fail('container_app.cache', TransientError('throttled'), TransientError('throttled'))
        report = _apply(make_executor(five_service_manifest, state, provider,
                                      sleep=delays.append, backoff_base=1.0))
        result = report.get('container_app.cache')
        assert result.outcome == SUCCEEDED
        assert result.attempts == 3
        assert delays == [1.0, 2.0]
        assert report.status == RUN_COMPLETE

    def test_retries_exhausted(self, five_service_manifest, state, provider):
        provider.fail('container_app.cache', *[TransientError('503') for _ in range(3)])
        report = _apply(make_executor(five_service_manifest, state, provider, max_attempts=3))
        result = report.get('container_app.cache')
        assert result.outcome == FAILED
        assert result.attempts == 3
        assert report.outcome('container_app.proxy') == SKIPPED
        assert report.outcome('container_app.manager') == SKIPPED
        assert report.outcome('container_app.dns-server') == SUCCEEDED
        assert report.status == RUN_PARTIAL_FAILURE

    def test_backoff_capped(self, five_service_manifest, state, provider):
        delays = []
        provider.fail('container_app.db', *[TransientError('503') for _ in range(4)])
        _apply(make_executor(five_service_manifest, state, provider, sleep=delays.append,
                             max_attempts=5, backoff_base=1.0, backoff_max=3.0))
        assert delays == [1.0, 2.0, 3.0, 3.0]


class TestStateWriteFailure:
    """A provider success with a failed state write converges on the next apply."""

    def test_converges_without_duplicates(self, five_service_manifest, state, provider):
        original_put = state.put
        failed = []

        def flaky_put(record):
            if record.resource_id == 'container_app.db' and not failed:
                failed.append(record.resource_id)
                raise StateStoreError('disk full')
            return original_put(record)

        with patch.object(state, 'put', side_effect=flaky_put):
            report = _apply(make_executor(five_service_manifest, state, provider))

        db = report.get('container_app.db')
        assert db.outcome == FAILED
        assert 'will be reconciled on the next apply' in db.error
        assert report.outcome('container_app.dns-server') == SKIPPED
        assert '/container_app/db' in provider.resources
        assert state.get('container_app.db') is None

        report = _apply(make_executor(five_service_manifest, state, provider))
        assert report.status == RUN_COMPLETE
        assert len(provider.resources) == 5
        assert state.get('container_app.db').provider_id == '/container_app/db'


class TestCancellation:
    """Cancellation stops new actions and lets in-flight ones finish."""

    def test_cancel_during_run(self, five_service_manifest, state):
        class CancellingProvider(InMemoryProvider):
            executor = None

            def create(self, resource):
                provider_id = super().create(resource)
                if resource.resource_id == 'container_app.cache':
                    self.executor.cancel()
                return provider_id

        provider = CancellingProvider()
        executor = make_executor(five_service_manifest, state, provider, concurrency=1)
        provider.executor = executor
        report = _apply(executor)

        assert report.status == RUN_CANCELLED
        assert report.outcome('container_app.cache') == SUCCEEDED
        assert report.outcome('container_app.db') == SKIPPED
        assert report.outcome('container_app.proxy') == SKIPPED
        assert state.get('container_app.cache') is not None
        assert provider.calls_for('create') == ['container_app.cache']

    def test_cancel_before_run(self, five_service_manifest, state, provider):
        executor = make_executor(five_service_manifest, state, provider)
        executor.cancel()
        report = _apply(executor)
        assert report.status == RUN_CANCELLED
        assert len(report.skipped) == 5
        assert provider.calls == []


class TestDestructiveReplace:
    """Replacing a stateful resource needs explicit consent."""

    def _applied(self, state, provider):
        manifest = Manifest.from_dict({'name': 'test', 'resources': [
            {'type': 'storage_account', 'name': 'sa', 'properties': {'accountName': 'old'}},
        ]})
        _apply(make_executor(manifest, state, provider))
        return Manifest.from_dict({'name': 'test', 'resources': [
            {'type': 'storage_account', 'name': 'sa', 'properties': {'accountName': 'new'}},
        ]})

    def test_unconfirmed_replace_fails(self, state, provider):
        renamed = self._applied(state, provider)
        report = _apply(make_executor(renamed, state, provider))
        delete = report.get('storage_account.sa', 'delete')
        assert delete.outcome == FAILED
        assert 'not confirmed' in delete.error
        assert report.get('storage_account.sa', 'create').outcome == SKIPPED
        assert provider.calls_for('delete') == []
        assert state.get('storage_account.sa').properties == {'accountName': 'old'}

    def test_confirmed_replace(self, state, provider):
        renamed = self._applied(state, provider)
        report = _apply(make_executor(renamed, state, provider, allow_destructive=True))
        assert report.status == RUN_COMPLETE
        assert provider.calls_for('delete') == ['/storage_account/sa']
        assert state.get('storage_account.sa').properties == {'accountName': 'new'}


class TestRendering:
    """References and secrets are expanded only for the provider call."""

    def test_references_expanded(self, provider):
        manifest = _reference_manifest()
        state = InMemoryStateStore('refs').open()
        report = _apply(make_executor(manifest, state, provider,
                                      environ={'DB_PASSWORD': 'hunter2'}))
        assert report.status == RUN_COMPLETE

        subnet = provider.resources['/subnet/apps']['properties']
        assert subnet['networkRef'] == '/virtual_network/vnet'

        dns_env = provider.resources['/container_app/dns']['properties']['env']
        assert dns_env[0] == {'name': 'DB_HOST', 'value': 'db.internal.platform.test'}
        assert dns_env[1]['value'] == 'postgres://db.internal.platform.test:5432'
        assert dns_env[2] == {'name': 'DB_PASSWORD', 'value': 'hunter2'}

        # Attributes are read once per resource per run
        assert provider.calls_for('read').count('/container_app/db') == 1

    def test_output_secret(self, provider):
        manifest = _reference_manifest()
        state = InMemoryStateStore('refs').open()
        _apply(make_executor(manifest, state, provider, environ={'DB_PASSWORD': 'hunter2'}))
        key = provider.resources['/storage_account/sa']['outputs']['primaryKey']
        share = provider.resources['/environment_storage/share']['properties']
        assert share['accountKey'] == {'value': key}
        assert share['storageRef'] == '/storage_account/sa'
        assert key not in json.dumps(state.data)

    def test_secrets_never_persisted(self, provider):
        manifest = _reference_manifest()
        state = InMemoryStateStore('refs').open()
        _apply(make_executor(manifest, state, provider, environ={'DB_PASSWORD': 'hunter2'}))
        persisted = json.dumps(state.data)
        assert 'hunter2' not in persisted
        env = state.get('container_app.db').properties['env']
        assert env == [{'name': 'POSTGRES_PASSWORD', 'secretRef': 'db-password'}]

    def test_missing_secret_fails_resource(self, provider):
        manifest = _reference_manifest()
        state = InMemoryStateStore('refs').open()
        report = _apply(make_executor(manifest, state, provider, environ={}))
        assert report.outcome('container_app.db') == FAILED
        assert 'DB_PASSWORD is not set' in report.get('container_app.db').error
        assert report.outcome('container_app.dns') == SKIPPED
        assert report.outcome('subnet.apps') == SUCCEEDED

    def test_error_text_redacted(self, provider):
        manifest = _reference_manifest()
        state = InMemoryStateStore('refs').open()
        provider.fail('container_app.db', PermanentError('password hunter2 rejected'))
        report = _apply(make_executor(manifest, state, provider,
                                      environ={'DB_PASSWORD': 'hunter2'}))
        error = report.get('container_app.db').error
        assert 'hunter2' not in error
        assert '***' in error


class TestTeardown:
    """Deletes run dependents first."""

    def test_removed_resources_deleted(self, state, provider):
        _apply(make_executor(Manifest.from_dict(five_service_data()), state, provider))
        data = five_service_data()
        data['resources'] = data['resources'][:2]
        report = _apply(make_executor(Manifest.from_dict(data), state, provider))

        assert report.status == RUN_COMPLETE
        deletes = provider.calls_for('delete')
        assert set(deletes) == {'/container_app/dns-server', '/container_app/proxy',
                                '/container_app/manager'}
        assert deletes[-1] == '/container_app/dns-server'
        assert set(state.snapshot()) == {'container_app.cache', 'container_app.db'}

    def test_destroy(self, five_service_manifest, state, provider):
        executor = make_executor(five_service_manifest, state, provider)
        _apply(executor)
        report = _apply(executor, destroy=True)
        assert report.status == RUN_COMPLETE
        assert report.destroy is True
        assert provider.resources == {}
        assert state.snapshot() == {}
        deletes = provider.calls_for('delete')
        assert deletes.index('/container_app/dns-server') < deletes.index('/container_app/db')
        assert deletes.index('/container_app/proxy') < deletes.index('/container_app/cache')


class TestRunPreconditions:

    def test_requires_open_state(self, five_service_manifest, provider):
        state = InMemoryStateStore('dns-platform')
        executor = make_executor(five_service_manifest, state, provider)
        plan = Planner(executor.graph, {}).plan()
        with pytest.raises(StateStoreError, match='must be opened'):
            executor.run(plan)


class TestReplaceCascade:
    """A replaced storage account takes its file service and share with it."""

    def _manifest(self, account_name):
        return Manifest.from_dict({'name': 'test', 'resources': [
            {'type': 'storage_account', 'name': 'sa', 'properties': {'accountName': account_name}},
            {'type': 'file_service', 'name': 'fs', 'parent': 'sa'},
            {'type': 'file_share', 'name': 'share', 'parent': 'fs',
             'properties': {'shareName': 'data'}},
        ]})

    def test_dependents_deleted_first_and_recreated(self, state, provider):
        _apply(make_executor(self._manifest('old'), state, provider))
        provider.calls.clear()

        renamed = self._manifest('new')
        report = _apply(make_executor(renamed, state, provider, allow_destructive=True))
        assert report.status == RUN_COMPLETE
        assert provider.calls_for('delete') == [
            '/file_share/share', '/file_service/fs', '/storage_account/sa',
        ]
        assert provider.calls_for('create') == [
            'storage_account.sa', 'file_service.fs', 'file_share.share',
        ]
        assert state.get('storage_account.sa').properties == {'accountName': 'new'}
        assert set(provider.resources) == {
            '/storage_account/sa', '/file_service/fs', '/file_share/share',
        }
        assert not Planner(ResourceGraph(renamed), state.snapshot()).plan().has_changes

    def test_unconfirmed_cascade_deletes_nothing(self, state, provider):
        _apply(make_executor(self._manifest('old'), state, provider))
        report = _apply(make_executor(self._manifest('new'), state, provider))
        assert report.status == RUN_PARTIAL_FAILURE
        assert report.get('file_share.share', 'delete').outcome == FAILED
        assert report.get('file_share.share', 'create').outcome == SKIPPED
        assert provider.calls_for('delete') == []
        assert state.get('storage_account.sa').properties == {'accountName': 'old'}


class TestFileStateRoundTrip:
    """Typed property values reloaded from a state file still match the manifest."""

    def test_reopened_state_plans_no_changes(self, tmp_path, provider):
        manifest = Manifest.from_dict({'name': 'typed', 'resources': [
            {'type': 'container_app', 'name': 'dns', 'properties': {
                'image': 'powerdns:4.9',
                'replicas': 2,
                'cpu': 0.5,
                'ingress': {'external': True, 'targetPort': 53, 'allowInsecure': False},
                'args': ['--threads', 4, None],
                'labels': {'created': '2024-01-01'},
            }},
        ]})
        path = tmp_path / '.states' / 'state.json'
        with FileStateStore(path, manifest_name='typed') as store:
            report = _apply(make_executor(manifest, store, provider))
            assert report.status == RUN_COMPLETE

        with FileStateStore(path, manifest_name='typed') as store:
            plan = Planner(ResourceGraph(manifest), store.snapshot()).plan()
        assert not plan.has_changes
        assert plan.get('noop:container_app.dns').reason == 'up to date'
