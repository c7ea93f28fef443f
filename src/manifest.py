"""Manifest loading and validation for platform reconciliation.

Manifests declare the desired state of a deployment as a list of typed
resources plus the secrets they consume. Relationships between resources
come from three places:
- explicit depends_on lists
- parent references (file_share -> file_service -> storage_account)
- property references: ${<resource>.<attribute>} interpolations and
  resource-valued keys ending in 'Ref' (storageRef, environmentRef, ...)

Loading is pure: it parses and validates, it never talks to a provider.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

from reconciler.errors import ManifestError

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

# ${container_app.db.fqdn} or ${db.fqdn}
REFERENCE_PATTERN = re.compile(r'\$\{([^}]*)\}')

NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]*$')

# Keys whose value names a secret rather than a resource
SECRET_REF_KEYS = frozenset({'secretRef', 'valueRef'})

SECRET_SOURCES = ('env', 'vault', 'literal', 'output')

INGRESS_TRANSPORTS = frozenset({'auto', 'http', 'http2', 'tcp'})

VOLUME_ACCESS_MODES = frozenset({'ReadWrite', 'ReadOnly'})

# Property values that survive a JSON round trip unchanged
_JSON_SCALARS = (str, int, float, bool)


@dataclass(frozen=True)
class ResourceType:
    """Per-type behaviour the planner needs.

    Attributes:
        name: Type identifier used in manifests
        replace_on: Property keys the remote API cannot change in place
        stateful: Resource holds persistent data (replacement loses it)
    """
    name: str
    replace_on: frozenset = frozenset()
    stateful: bool = False

    def is_stateful(self, properties: dict) -> bool:
        """True if replacing a resource with these properties loses data."""
        if self.stateful:
            return True
        # Container apps with mounted volumes carry persistent data
        return self.name == 'container_app' and bool(properties.get('volumes'))


RESOURCE_TYPES: dict[str, ResourceType] = {
    t.name: t for t in (
        ResourceType('resource_group', frozenset({'location'})),
        ResourceType('log_workspace', frozenset({'location'})),
        ResourceType('virtual_network', frozenset({'location', 'addressSpace'})),
        ResourceType('subnet', frozenset({'addressPrefix', 'networkRef'})),
        ResourceType('storage_account',
                     frozenset({'accountName', 'location', 'kind', 'sku'}),
                     stateful=True),
        ResourceType('file_service'),
        ResourceType('file_share', frozenset({'shareName'}), stateful=True),
        ResourceType('container_environment',
                     frozenset({'location', 'subnetRef', 'workspaceRef'})),
        ResourceType('environment_storage', frozenset({'storageRef', 'shareName'})),
        ResourceType('container_app', frozenset({'environmentRef'})),
    )
}


def get_resource_type(name: str) -> ResourceType:
    """Look up a resource type.

    Raises:
        ManifestError: If the type is not supported
    """
    if not isinstance(name, str):
        raise ManifestError(f"Resource type must be a string, got {name!r}")
    try:
        return RESOURCE_TYPES[name]
    except KeyError:
        raise ManifestError(
            f"Unknown resource type '{name}'. "
            f"Supported: {', '.join(sorted(RESOURCE_TYPES))}"
        ) from None


@dataclass(frozen=True)
class PropertyReference:
    """A property-level reference to another resource's attribute.

    Attributes:
        resource_id: Resolved id of the referenced resource
        attribute: Attribute name ('id' for the provider-assigned id)
        expression: The raw reference text as written in the manifest
    """
    resource_id: str
    attribute: str
    expression: str


@dataclass
class SecretSpec:
    """A declared secret input.

    Exactly one source is set:
    - env: name of an environment variable
    - vault: dotted key into the vault YAML file
    - literal: placeholder value written in the manifest
    - output: <resource>.<attribute> read back from a provisioned resource

    Attributes:
        name: Secret name referenced by secretRef/valueRef
        source: One of SECRET_SOURCES
        key: Env var name, vault key, or output expression
        value: Literal value (literal source only)
        output_ref: Resolved output reference (output source only)
    """
    name: str
    source: str
    key: str = ''
    value: Optional[str] = field(default=None, repr=False)
    output_ref: Optional[PropertyReference] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'SecretSpec':
        """Create SecretSpec from dictionary."""
        if not isinstance(data, dict) or 'name' not in data:
            raise ManifestError(f"Secret entry must be a mapping with a name: {data!r}")
        name = data['name']
        if not isinstance(name, str) or not name:
            raise ManifestError(f"Secret name must be a non-empty string: {name!r}")
        sources = [s for s in SECRET_SOURCES if s in data]
        if not sources:
            raise ManifestError(
                f"Secret '{name}' has no declared source "
                f"(one of: {', '.join(SECRET_SOURCES)})"
            )
        if len(sources) > 1:
            raise ManifestError(
                f"Secret '{name}' declares multiple sources: {', '.join(sources)}"
            )
        source = sources[0]
        raw = data[source]
        if not isinstance(raw, str) or (source != 'literal' and not raw):
            raise ManifestError(f"Secret '{name}' {source} source must be a non-empty string")
        if source == 'literal':
            return cls(name=name, source=source, value=raw)
        return cls(name=name, source=source, key=raw)

    def to_dict(self) -> dict:
        """Convert to dictionary. Literal values are masked."""
        if self.source == 'literal':
            return {'name': self.name, 'literal': '***'}
        return {'name': self.name, self.source: self.key}


@dataclass
class Resource:
    """A declared unit of desired infrastructure state.

    Attributes:
        type: Resource type (key of RESOURCE_TYPES)
        name: Resource name, unique per type
        properties: Declared attribute values (references unexpanded)
        depends_on: Explicit dependencies (resolved to ids after load)
        parent: Parent resource (resolved to an id after load)
        references: Property references discovered at load time
        secret_refs: Manifest-level secret names consumed by this resource
    """
    type: str
    name: str
    properties: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    parent: Optional[str] = None
    references: list[PropertyReference] = field(default_factory=list)
    secret_refs: set[str] = field(default_factory=set)

    @property
    def id(self) -> str:
        return f'{self.type}.{self.name}'

    @property
    def resource_type(self) -> ResourceType:
        return get_resource_type(self.type)

    @classmethod
    def from_dict(cls, data: dict) -> 'Resource':
        """Create Resource from dictionary."""
        depends_on = data.get('depends_on', data.get('dependsOn', [])) or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ManifestError(
                f"Resource '{data['name']}' depends_on must be a list of resource names"
            )
        properties = data.get('properties', {})
        if properties is None:
            properties = {}
        if not isinstance(properties, dict):
            raise ManifestError(f"Resource '{data['name']}' properties must be a mapping")
        return cls(
            type=data['type'],
            name=data['name'],
            properties=properties,
            depends_on=list(depends_on),
            parent=data.get('parent'),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
        }
        if self.parent is not None:
            d['parent'] = self.parent
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.properties:
            d['properties'] = self.properties
        return d


@dataclass
class ManifestSettings:
    """Optional per-manifest execution settings.

    Attributes:
        concurrency: Override for the max concurrent actions per level
        max_attempts: Override for attempts per action on transient errors
    """
    concurrency: Optional[int] = None
    max_attempts: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ManifestSettings':
        """Create ManifestSettings from dictionary."""
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ManifestError("Manifest settings must be a mapping")
        settings = cls(
            concurrency=data.get('concurrency'),
            max_attempts=data.get('max_attempts'),
        )
        for key in ('concurrency', 'max_attempts'):
            value = getattr(settings, key)
            if value is not None and (not isinstance(value, int) or value < 1):
                raise ManifestError(f"settings.{key} must be a positive integer")
        return settings


@dataclass
class Manifest:
    """Desired-state document: resources plus declared secrets.

    Attributes:
        schema_version: Manifest schema version
        name: Manifest name (also keys the state file)
        resources: Declared resources in document order
        secrets: Declared secrets by name
        description: Optional description
        settings: Optional execution settings
        source_path: Path where manifest was loaded from (for debugging)
    """
    schema_version: int
    name: str
    resources: list[Resource]
    secrets: dict[str, SecretSpec] = field(default_factory=dict)
    description: str = ''
    settings: ManifestSettings = field(default_factory=ManifestSettings)
    source_path: Optional[Path] = None

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.resources]

    def get(self, resource_id: str) -> Resource:
        """Get a resource by id.

        Raises:
            KeyError: If resource id not found
        """
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        raise KeyError(resource_id)

    def to_dict(self) -> dict:
        """Convert manifest to dictionary (for JSON serialization)."""
        result: dict[str, Any] = {
            'schema_version': self.schema_version,
            'name': self.name,
            'description': self.description,
            'secrets': [s.to_dict() for s in self.secrets.values()],
            'resources': [r.to_dict() for r in self.resources],
        }
        settings = {k: v for k, v in vars(self.settings).items() if v is not None}
        if settings:
            result['settings'] = settings
        return result

    @classmethod
    def from_dict(cls, data: Any, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Args:
            data: Manifest data dictionary
            source_path: Optional source path for error messages

        Returns:
            Validated Manifest instance

        Raises:
            ManifestError: If manifest is invalid
        """
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a mapping")

        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ManifestError(
                f"Unsupported manifest schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ManifestError("Manifest missing required field: name")
        if not isinstance(data['name'], str) or not data['name']:
            raise ManifestError("Manifest name must be a non-empty string")
        if 'resources' not in data:
            raise ManifestError("Manifest missing required field: resources")
        if not isinstance(data['resources'], list):
            raise ManifestError("Manifest resources must be a list")

        secrets: dict[str, SecretSpec] = {}
        for entry in data.get('secrets', []) or []:
            spec = SecretSpec.from_dict(entry)
            if spec.name in secrets:
                raise ManifestError(f"Duplicate secret name: '{spec.name}'")
            secrets[spec.name] = spec

        resources = []
        for i, resource_data in enumerate(data['resources']):
            if not isinstance(resource_data, dict):
                raise ManifestError(f"Resource {i} must be a mapping")
            if 'name' not in resource_data:
                raise ManifestError(f"Resource {i} missing required field: name")
            if 'type' not in resource_data:
                raise ManifestError(
                    f"Resource {i} ({resource_data['name']}) missing required field: type"
                )
            resources.append(Resource.from_dict(resource_data))

        manifest = cls(
            schema_version=schema_version,
            name=data['name'],
            description=data.get('description', ''),
            resources=resources,
            secrets=secrets,
            settings=ManifestSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )
        _validate(manifest)
        return manifest

    @classmethod
    def from_yaml(cls, text: str, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from a YAML (or JSON) string."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            where = f" {source_path}" if source_path else ''
            raise ManifestError(f"Invalid YAML in manifest{where}: {e}")
        return cls.from_dict(data, source_path=source_path)

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Invalid manifest JSON: {e}")
        return cls.from_dict(data)


class _ReferenceIndex:
    """Resolves resource references written as full ids or bare names."""

    def __init__(self, resources: list[Resource]):
        self.ids = {r.id for r in resources}
        self._by_name: dict[str, list[str]] = {}
        for r in resources:
            self._by_name.setdefault(r.name, []).append(r.id)

    def resolve(self, target: Any, where: str) -> str:
        if not isinstance(target, str) or not target:
            raise ManifestError(f"{where}: resource reference must be a non-empty string")
        if target in self.ids:
            return target
        matches = self._by_name.get(target, [])
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise ManifestError(
                f"{where}: ambiguous reference '{target}' "
                f"(matches {', '.join(sorted(matches))}); use <type>.<name>"
            )
        raise ManifestError(f"{where}: references unknown resource '{target}'")

    def resolve_attribute(self, expression: str, where: str) -> PropertyReference:
        """Resolve '<resource>.<attribute>' where <resource> is an id or a name."""
        target, sep, attribute = expression.strip().rpartition('.')
        if not sep or not target or not attribute:
            raise ManifestError(
                f"{where}: malformed reference '{expression}' "
                "(expected <resource>.<attribute>)"
            )
        return PropertyReference(
            resource_id=self.resolve(target, where),
            attribute=attribute,
            expression=expression,
        )


def _walk(value: Any, path: str) -> Iterator[tuple[str, Optional[str], Any]]:
    """Yield (path, key, value) for every leaf and mapping entry."""
    if isinstance(value, dict):
        for key, item in value.items():
            child = f'{path}.{key}'
            yield child, key, item
            yield from _walk(item, child)
    elif isinstance(value, list):
        for i, item in enumerate(value):
            child = f'{path}[{i}]'
            yield child, None, item
            yield from _walk(item, child)


def _check_json_value(value: Any, path: str, where: str) -> None:
    """Require plain JSON data so state round-trips compare equal.

    YAML turns unquoted dates into date objects and allows non-string
    mapping keys; neither survives the JSON state file unchanged.
    """
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ManifestError(
                    f"{where} {path}: mapping key {key!r} must be a string (quote it)"
                )
            _check_json_value(item, f'{path}.{key}', where)
    elif isinstance(value, list):
        for i, item in enumerate(value):
            _check_json_value(item, f'{path}[{i}]', where)
    elif value is not None and not isinstance(value, _JSON_SCALARS):
        raise ManifestError(
            f"{where} {path}: {type(value).__name__} value {value!r} is not supported; "
            "quote it to keep it as a string"
        )
    elif isinstance(value, float) and not math.isfinite(value):
        raise ManifestError(f"{where} {path}: non-finite number {value!r} is not supported")


def _app_secret_names(resource: Resource) -> set[str]:
    """Names declared in a container app's own secrets list."""
    names = set()
    for entry in resource.properties.get('secrets', []) or []:
        if isinstance(entry, dict) and isinstance(entry.get('name'), str):
            names.add(entry['name'])
    return names


def _validate(manifest: Manifest) -> None:
    """Validate resource identity, references and property shapes.

    Checks for:
    - Unknown resource types and invalid names
    - Duplicate resource ids
    - Dangling or ambiguous depends_on/parent/property references
    - Secret references without a declared source
    - Malformed container app properties
    - Property values that do not round-trip through JSON state

    Resolves depends_on and parent to full ids and fills in each
    resource's references and secret_refs.

    Raises:
        ManifestError: If validation fails
    """
    seen: set[str] = set()
    for resource in manifest.resources:
        get_resource_type(resource.type)
        if not isinstance(resource.name, str) or not NAME_PATTERN.match(resource.name):
            raise ManifestError(f"Invalid resource name: {resource.name!r}")
        if resource.id in seen:
            raise ManifestError(f"Duplicate resource id: '{resource.id}'")
        seen.add(resource.id)

    index = _ReferenceIndex(manifest.resources)

    for spec in manifest.secrets.values():
        if spec.source == 'output':
            spec.output_ref = index.resolve_attribute(spec.key, f"Secret '{spec.name}'")

    for resource in manifest.resources:
        where = f"Resource '{resource.id}'"
        resource.depends_on = [index.resolve(d, f'{where} depends_on') for d in resource.depends_on]
        if resource.parent is not None:
            resource.parent = index.resolve(resource.parent, f'{where} parent')
        _check_json_value(resource.properties, 'properties', where)

        app_secrets = _app_secret_names(resource)
        references: list[PropertyReference] = []
        secret_refs: set[str] = set()

        for path, key, value in _walk(resource.properties, 'properties'):
            if key in SECRET_REF_KEYS:
                if not isinstance(value, str):
                    raise ManifestError(f"{where} {path}: secret reference must be a string")
                # env secretRef may name the app's own secret entry
                if key == 'secretRef' and value in app_secrets:
                    continue
                if value not in manifest.secrets:
                    raise ManifestError(
                        f"{where} {path}: secret '{value}' has no declared source"
                    )
                secret_refs.add(value)
            elif isinstance(key, str) and key.endswith('Ref'):
                target = index.resolve(value, f'{where} {path}')
                references.append(PropertyReference(target, 'id', value))
            if isinstance(value, str):
                for expression in REFERENCE_PATTERN.findall(value):
                    references.append(index.resolve_attribute(expression, f'{where} {path}'))

        resource.references = references
        resource.secret_refs = secret_refs

        if resource.type == 'container_app':
            _validate_container_app(resource, manifest)

    logger.debug(f"Validated manifest '{manifest.name}' ({len(manifest.resources)} resources)")


def _validate_container_app(resource: Resource, manifest: Manifest) -> None:
    """Validate the container app property shapes (ingress, env, volumes)."""
    where = f"Resource '{resource.id}'"
    props = resource.properties

    ingress = props.get('ingress')
    if ingress is not None:
        if not isinstance(ingress, dict):
            raise ManifestError(f"{where}: ingress must be a mapping")
        port = ingress.get('targetPort')
        if port is not None and (not isinstance(port, int) or isinstance(port, bool)
                                 or not 1 <= port <= 65535):
            raise ManifestError(f"{where}: ingress.targetPort must be a port number, got {port!r}")
        transport = ingress.get('transport')
        if transport is not None and (not isinstance(transport, str)
                                      or transport not in INGRESS_TRANSPORTS):
            raise ManifestError(
                f"{where}: ingress.transport must be one of "
                f"{', '.join(sorted(INGRESS_TRANSPORTS))}, got {transport!r}"
            )
        external = ingress.get('externalEnabled')
        if external is not None and not isinstance(external, bool):
            raise ManifestError(f"{where}: ingress.externalEnabled must be a boolean")

    for entry in _list_of_mappings(props, 'secrets', where):
        if 'name' not in entry or 'valueRef' not in entry:
            raise ManifestError(f"{where}: secrets entries need name and valueRef")

    for entry in _list_of_mappings(props, 'env', where):
        if 'name' not in entry:
            raise ManifestError(f"{where}: env entry missing name")
        if ('value' in entry) == ('secretRef' in entry):
            raise ManifestError(
                f"{where}: env '{entry['name']}' needs exactly one of value or secretRef"
            )

    volume_names = set()
    for entry in _list_of_mappings(props, 'volumes', where):
        if not isinstance(entry.get('name'), str):
            raise ManifestError(f"{where}: volume entry missing name")
        mode = entry.get('accessMode')
        if mode is not None and (not isinstance(mode, str) or mode not in VOLUME_ACCESS_MODES):
            raise ManifestError(
                f"{where}: volume '{entry['name']}' accessMode must be one of "
                f"{', '.join(sorted(VOLUME_ACCESS_MODES))}"
            )
        volume_names.add(entry['name'])

    for entry in _list_of_mappings(props, 'volumeMounts', where):
        if not isinstance(entry.get('name'), str) or 'path' not in entry:
            raise ManifestError(f"{where}: volumeMounts entries need name and path")
        if entry['name'] not in volume_names:
            raise ManifestError(
                f"{where}: volumeMount '{entry['name']}' does not match a declared volume"
            )


def _list_of_mappings(props: dict, key: str, where: str) -> list[dict]:
    entries = props.get(key, []) or []
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise ManifestError(f"{where}: {key} must be a list of mappings")
    return entries


def load_manifest(
    file_path: Optional[str] = None,
    yaml_str: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Manifest:
    """Load manifest from various sources.

    Priority:
    1. json_str - Inline JSON
    2. yaml_str - Inline YAML
    3. file_path - Manifest file (YAML or JSON)

    Raises:
        ManifestError: If no source given, file not found, or manifest invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    if yaml_str:
        return Manifest.from_yaml(yaml_str)
    if not file_path:
        raise ManifestError("No manifest source given")

    path = Path(file_path)
    if not path.exists():
        raise ManifestError(f"Manifest file not found: {path}")
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ManifestError(f"Cannot read manifest {path}: {e}")
    return Manifest.from_yaml(text, source_path=path)
