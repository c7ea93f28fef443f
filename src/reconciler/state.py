"""Live state persistence for reconciliation.

Records, per resource, what was last applied: the provider-assigned id,
the declared (non-secret) properties and a timestamp. The planner diffs
the manifest against a snapshot; the executor is the only writer.

State has an explicit lifecycle: open() loads it, every put()/remove()
flushes it, close() flushes and releases it.
"""

import copy
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from reconciler.errors import StateStoreError

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class LiveStateRecord:
    """Last-known live state of one resource.

    Attributes:
        resource_id: Manifest resource id (<type>.<name>)
        provider_id: Identifier assigned by the provider on create
        properties: Declared properties as last applied (secrets unresolved)
        last_applied_at: Timestamp of the last successful create/update
        resource_type: Resource type, for tearing down orphaned records
        dependencies: Resource ids this one depended on when applied
    """
    resource_id: str
    provider_id: str
    properties: dict = field(default_factory=dict)
    last_applied_at: float = field(default_factory=time.time)
    resource_type: str = ''
    dependencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'resource_id': self.resource_id,
            'provider_id': self.provider_id,
            'resource_type': self.resource_type,
            'properties': self.properties,
            'dependencies': list(self.dependencies),
            'last_applied_at': self.last_applied_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LiveStateRecord':
        return cls(
            resource_id=data['resource_id'],
            provider_id=data.get('provider_id', ''),
            properties=data.get('properties', {}),
            last_applied_at=data.get('last_applied_at', 0.0),
            resource_type=data.get('resource_type', ''),
            dependencies=list(data.get('dependencies', [])),
        )


class StateStore:
    """Resource-keyed state with per-resource locking.

    Writes for different resource ids may proceed concurrently; writes
    for the same id are serialized. Subclasses implement _load() and
    _persist() for their backing medium.
    """

    def __init__(self, manifest_name: str = ''):
        self.manifest_name = manifest_name
        self._records: dict[str, LiveStateRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._flush_lock = threading.Lock()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> 'StateStore':
        """Load persisted records."""
        self._records = self._load()
        self._open = True
        logger.debug(f"Opened state store ({len(self._records)} records)")
        return self

    def close(self, flush: bool = True) -> None:
        """Release the store, flushing first unless read-only use."""
        if not self._open:
            return
        try:
            if flush:
                self.flush()
        finally:
            self._open = False

    def __enter__(self) -> 'StateStore':
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self._open:
            raise StateStoreError("State store is not open")

    def lock(self, resource_id: str) -> threading.Lock:
        """Get the lock guarding writes for one resource id."""
        with self._locks_guard:
            return self._locks.setdefault(resource_id, threading.Lock())

    def snapshot(self) -> dict[str, LiveStateRecord]:
        """Point-in-time copy of all records."""
        self._require_open()
        with self._flush_lock:
            return copy.deepcopy(self._records)

    def get(self, resource_id: str) -> Optional[LiveStateRecord]:
        self._require_open()
        with self._flush_lock:
            record = self._records.get(resource_id)
            return copy.deepcopy(record) if record else None

    def put(self, record: LiveStateRecord) -> None:
        """Store a record and flush.

        Raises:
            StateStoreError: If the flush fails (the record is not kept)
        """
        self._require_open()
        with self.lock(record.resource_id):
            with self._flush_lock:
                previous = self._records.get(record.resource_id)
                self._records[record.resource_id] = copy.deepcopy(record)
                try:
                    self._persist(self._serialize())
                except StateStoreError:
                    self._restore(record.resource_id, previous)
                    raise
        logger.debug(f"Recorded state for {record.resource_id}")

    def remove(self, resource_id: str) -> None:
        """Delete a record and flush.

        Raises:
            StateStoreError: If the flush fails (the record is kept)
        """
        self._require_open()
        with self.lock(resource_id):
            with self._flush_lock:
                previous = self._records.pop(resource_id, None)
                if previous is None:
                    return
                try:
                    self._persist(self._serialize())
                except StateStoreError:
                    self._restore(resource_id, previous)
                    raise
        logger.debug(f"Removed state for {resource_id}")

    def flush(self) -> None:
        self._require_open()
        with self._flush_lock:
            self._persist(self._serialize())

    def _restore(self, resource_id: str, previous: Optional[LiveStateRecord]) -> None:
        if previous is None:
            self._records.pop(resource_id, None)
        else:
            self._records[resource_id] = previous

    def _serialize(self) -> dict[str, Any]:
        return {
            'version': STATE_VERSION,
            'manifest': self.manifest_name,
            'resources': {rid: rec.to_dict() for rid, rec in sorted(self._records.items())},
        }

    def _deserialize(self, data: Any, source: str) -> dict[str, LiveStateRecord]:
        if not isinstance(data, dict):
            raise StateStoreError(f"State in {source} must be a JSON object")
        version = data.get('version', STATE_VERSION)
        if version != STATE_VERSION:
            raise StateStoreError(f"Unsupported state version {version} in {source}")
        recorded_name = data.get('manifest')
        if recorded_name and self.manifest_name and recorded_name != self.manifest_name:
            raise StateStoreError(
                f"State in {source} belongs to manifest '{recorded_name}', "
                f"not '{self.manifest_name}'"
            )
        records = {}
        try:
            for rid, rec in data.get('resources', {}).items():
                records[rid] = LiveStateRecord.from_dict(rec)
        except (KeyError, TypeError, AttributeError) as e:
            raise StateStoreError(f"Malformed state record in {source}: {e}")
        return records

    def _load(self) -> dict[str, LiveStateRecord]:
        raise NotImplementedError

    def _persist(self, data: dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryStateStore(StateStore):
    """State store backed by a dict, for tests and dry runs.

    The last persisted document is kept in `data` so tests can inspect
    exactly what would have been written.
    """

    def __init__(self, manifest_name: str = '', data: Optional[dict] = None):
        super().__init__(manifest_name)
        self.data: dict[str, Any] = copy.deepcopy(data) if data else {}
        self.flush_count = 0

    def _load(self) -> dict[str, LiveStateRecord]:
        if not self.data:
            return {}
        return self._deserialize(self.data, 'memory')

    def _persist(self, data: dict[str, Any]) -> None:
        self.data = copy.deepcopy(data)
        self.flush_count += 1


class FileStateStore(StateStore):
    """State store persisted as JSON.

    Flushes write a temporary file and rename it over the state file so
    a crash never leaves a truncated document.
    """

    def __init__(self, path: Path, manifest_name: str = ''):
        super().__init__(manifest_name)
        self.path = Path(path)

    def _load(self) -> dict[str, LiveStateRecord]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid state JSON in {self.path}: {e}")
        except OSError as e:
            raise StateStoreError(f"Cannot read state file {self.path}: {e}")
        logger.debug(f"Loaded state from {self.path}")
        return self._deserialize(data, str(self.path))

    def _persist(self, data: dict[str, Any]) -> None:
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StateStoreError(f"Cannot write state file {self.path}: {e}")
