"""Tests for reconciler.secrets module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from manifest import PropertyReference, SecretSpec
from reconciler.errors import SecretResolutionError, TransientError
from reconciler.secrets import REDACTED, SecretMaterializer


def _specs(*entries):
    return {e['name']: SecretSpec.from_dict(e) for e in entries}


@pytest.fixture
def vault_file(tmp_path):
    path = tmp_path / 'secrets.yaml'
    path.write_text("""
passwords:
  db_admin: "s3cret-admin"
api_keys:
  manager: "mgr-key-123"
  nested:
    deeper: true
""")
    return path


class TestResolve:
    """Tests for SecretMaterializer.resolve."""

    def test_env(self):
        m = SecretMaterializer(_specs({'name': 'pw', 'env': 'DB_PASSWORD'}),
                               environ={'DB_PASSWORD': 'hunter2'})
        secret = m.resolve('pw', scope='container_app.db')
        assert secret.resolved_value == 'hunter2'
        assert secret.scope == 'container_app.db'
        assert 'hunter2' not in repr(secret)

    def test_env_missing(self):
        m = SecretMaterializer(_specs({'name': 'pw', 'env': 'DB_PASSWORD'}), environ={})
        with pytest.raises(SecretResolutionError, match='DB_PASSWORD is not set') as exc_info:
            m.resolve('pw')
        assert exc_info.value.code == 'E200'

    def test_literal(self):
        m = SecretMaterializer(_specs({'name': 'pw', 'literal': 'placeholder'}), environ={})
        assert m.resolve('pw').resolved_value == 'placeholder'

    def test_vault(self, vault_file):
        m = SecretMaterializer(_specs({'name': 'pw', 'vault': 'passwords.db_admin'}),
                               vault_file=vault_file, environ={})
        assert m.resolve('pw').resolved_value == 's3cret-admin'

    def test_vault_key_missing(self, vault_file):
        m = SecretMaterializer(_specs({'name': 'pw', 'vault': 'passwords.root'}),
                               vault_file=vault_file, environ={})
        with pytest.raises(SecretResolutionError, match="vault key 'passwords.root' not found"):
            m.resolve('pw')

    def test_vault_key_not_scalar(self, vault_file):
        m = SecretMaterializer(_specs({'name': 'k', 'vault': 'api_keys.nested'}),
                               vault_file=vault_file, environ={})
        with pytest.raises(SecretResolutionError, match='not a scalar'):
            m.resolve('k')

    def test_vault_not_configured(self):
        m = SecretMaterializer(_specs({'name': 'pw', 'vault': 'passwords.db_admin'}), environ={})
        with pytest.raises(SecretResolutionError, match='no vault file configured'):
            m.resolve('pw')

    def test_output(self):
        spec = SecretSpec.from_dict({'name': 'key', 'output': 'sa.primaryKey'})
        spec.output_ref = PropertyReference('storage_account.sa', 'primaryKey', 'sa.primaryKey')
        m = SecretMaterializer({'key': spec}, environ={})
        secret = m.resolve('key', output_reader=lambda ref: f'value-of-{ref.attribute}')
        assert secret.resolved_value == 'value-of-primaryKey'

    def test_output_provider_error_propagates(self):
        spec = SecretSpec.from_dict({'name': 'key', 'output': 'sa.primaryKey'})
        spec.output_ref = PropertyReference('storage_account.sa', 'primaryKey', 'sa.primaryKey')
        m = SecretMaterializer({'key': spec}, environ={})

        def reader(ref):
            raise TransientError('throttled')

        with pytest.raises(TransientError):
            m.resolve('key', output_reader=reader)

    def test_output_without_reader(self):
        spec = SecretSpec.from_dict({'name': 'key', 'output': 'sa.primaryKey'})
        m = SecretMaterializer({'key': spec}, environ={})
        with pytest.raises(SecretResolutionError, match='no provider output'):
            m.resolve('key')

    def test_undeclared(self):
        m = SecretMaterializer({}, environ={})
        with pytest.raises(SecretResolutionError, match='not declared'):
            m.resolve('pw')

    def test_value_must_not_change_within_run(self):
        environ = {'DB_PASSWORD': 'first'}
        m = SecretMaterializer(_specs({'name': 'pw', 'env': 'DB_PASSWORD'}), environ=environ)
        m.resolve('pw', scope='container_app.db')
        environ['DB_PASSWORD'] = 'second'
        with pytest.raises(SecretResolutionError, match='changed during this apply run'):
            m.resolve('pw', scope='container_app.dns-server')

    def test_clear_resets_consistency(self):
        environ = {'DB_PASSWORD': 'first'}
        m = SecretMaterializer(_specs({'name': 'pw', 'env': 'DB_PASSWORD'}), environ=environ)
        m.resolve('pw')
        m.clear()
        environ['DB_PASSWORD'] = 'second'
        assert m.resolve('pw').resolved_value == 'second'


class TestRedact:
    """Tests for SecretMaterializer.redact."""

    def test_masks_resolved_values(self):
        m = SecretMaterializer(_specs({'name': 'pw', 'env': 'DB_PASSWORD'}),
                               environ={'DB_PASSWORD': 'hunter2'})
        m.resolve('pw')
        assert m.redact('auth failed for hunter2') == f'auth failed for {REDACTED}'

    def test_nothing_resolved(self):
        m = SecretMaterializer({}, environ={})
        assert m.redact('plain text') == 'plain text'

    def test_clear_forgets_values(self):
        m = SecretMaterializer(_specs({'name': 'pw', 'env': 'DB_PASSWORD'}),
                               environ={'DB_PASSWORD': 'hunter2'})
        m.resolve('pw')
        m.clear()
        assert m.redact('hunter2') == 'hunter2'
