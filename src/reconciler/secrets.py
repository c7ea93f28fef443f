"""Secret materialization for apply runs.

Resolves declared secrets from their source at the moment an action
needs them:
- env: environment variable
- vault: dotted key into a YAML secrets file (e.g. passwords.db_admin)
- literal: placeholder value written in the manifest
- output: attribute read back from a provisioned resource

Resolved values live only in this object's memory for one apply run.
They are never written to state and never logged; redact() masks them
in any text that might be.
"""

import hashlib
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import yaml

from manifest import PropertyReference, SecretSpec
from reconciler.errors import ProviderError, SecretResolutionError

logger = logging.getLogger(__name__)

REDACTED = '***'

OutputReader = Callable[[PropertyReference], Any]


@dataclass
class Secret:
    """A resolved secret, scoped to the resource that requested it."""
    name: str
    resolved_value: str = field(repr=False)
    scope: str = ''


class SecretMaterializer:
    """Resolves secrets for a single apply run.

    Each resolve() call reads the source again; every value for a given
    name must be byte-identical within the run or resolution fails.
    """

    def __init__(
        self,
        declared: Mapping[str, SecretSpec],
        vault_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.declared = dict(declared)
        self.vault_file = Path(vault_file) if vault_file else None
        self._environ = environ if environ is not None else os.environ
        self._vault: Optional[dict] = None
        self._digests: dict[str, str] = {}
        self._values: set[str] = set()
        self._lock = threading.Lock()

    def resolve(self, name: str, scope: str = '',
                output_reader: Optional[OutputReader] = None) -> Secret:
        """Resolve one secret for the given resource scope.

        Raises:
            SecretResolutionError: If undeclared, unavailable, or inconsistent
        """
        spec = self.declared.get(name)
        if spec is None:
            raise SecretResolutionError(name, 'not declared in manifest')

        value = self._read(spec, output_reader)
        digest = hashlib.sha256(value.encode('utf-8')).hexdigest()
        with self._lock:
            first = self._digests.setdefault(name, digest)
            if first != digest:
                raise SecretResolutionError(name, 'value changed during this apply run')
            if value:
                self._values.add(value)
        logger.debug(f"Resolved secret '{name}' for {scope or 'run'} from {spec.source}")
        return Secret(name=name, resolved_value=value, scope=scope)

    def _read(self, spec: SecretSpec, output_reader: Optional[OutputReader]) -> str:
        if spec.source == 'literal':
            return spec.value or ''

        if spec.source == 'env':
            value = self._environ.get(spec.key)
            if value is None:
                raise SecretResolutionError(spec.name, f"environment variable {spec.key} is not set")
            return value

        if spec.source == 'vault':
            return self._read_vault(spec)

        if spec.source == 'output':
            if output_reader is None or spec.output_ref is None:
                raise SecretResolutionError(spec.name, 'no provider output available')
            try:
                value = output_reader(spec.output_ref)
            except ProviderError:
                raise
            except Exception as e:
                raise SecretResolutionError(
                    spec.name, f"cannot read {spec.output_ref.expression}: {e}"
                ) from e
            if value is None:
                raise SecretResolutionError(
                    spec.name, f"{spec.output_ref.expression} has no value"
                )
            return str(value)

        raise SecretResolutionError(spec.name, f"unsupported source '{spec.source}'")

    def _load_vault(self) -> dict:
        """Load the vault YAML file (cached per run)."""
        if self._vault is None:
            if self.vault_file is None:
                raise SecretResolutionError('vault', 'no vault file configured')
            if not self.vault_file.exists():
                raise SecretResolutionError('vault', f"vault file not found: {self.vault_file}")
            try:
                with open(self.vault_file, encoding='utf-8') as f:
                    self._vault = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise SecretResolutionError('vault', f"cannot read {self.vault_file}: {e}")
        return self._vault

    def _read_vault(self, spec: SecretSpec) -> str:
        node: Any = self._load_vault()
        for part in spec.key.split('.'):
            if not isinstance(node, dict) or part not in node:
                raise SecretResolutionError(spec.name, f"vault key '{spec.key}' not found")
            node = node[part]
        if node is None or isinstance(node, (dict, list)):
            raise SecretResolutionError(spec.name, f"vault key '{spec.key}' is not a scalar")
        return str(node)

    def redact(self, text: str) -> str:
        """Mask every resolved secret value in text."""
        with self._lock:
            values = sorted(self._values, key=len, reverse=True)
        for value in values:
            text = text.replace(value, REDACTED)
        return text

    def clear(self) -> None:
        """Forget all resolved values (end of the apply run)."""
        with self._lock:
            self._values.clear()
            self._digests.clear()
        self._vault = None
