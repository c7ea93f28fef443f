"""Driver configuration management.

Configuration is loaded from an optional YAML file and then overridden by
environment variables and, finally, CLI flags:
- platform-driver.yaml (or $PLATFORM_DRIVER_CONFIG): driver defaults
- PLATFORM_DRIVER_* environment variables: per-invocation overrides

The merge order is: built-in defaults → config file → environment → CLI.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

CONFIG_ENV_VAR = 'PLATFORM_DRIVER_CONFIG'
DEFAULT_CONFIG_FILE = 'platform-driver.yaml'

# Environment overrides: env var -> (attribute, converter)
ENV_OVERRIDES = {
    'PLATFORM_DRIVER_STATE_FILE': ('state_file', Path),
    'PLATFORM_DRIVER_CONCURRENCY': ('concurrency', int),
    'PLATFORM_DRIVER_MAX_ATTEMPTS': ('max_attempts', int),
    'PLATFORM_DRIVER_PROVIDER': ('provider', str),
    'PLATFORM_DRIVER_PROVIDER_URL': ('provider_url', str),
    'PLATFORM_DRIVER_PROVIDER_TOKEN_ENV': ('provider_token_env', str),
    'PLATFORM_DRIVER_VAULT_FILE': ('vault_file', Path),
    'PLATFORM_DRIVER_REPORT_DIR': ('report_dir', Path),
}

SUPPORTED_PROVIDERS = ('http', 'memory')


class ConfigError(Exception):
    """Configuration error."""


def get_base_dir() -> Path:
    """Get the driver working directory (where .states/ lives)."""
    return Path(os.environ.get('PLATFORM_DRIVER_HOME', os.getcwd()))


@dataclass
class DriverConfig:
    """Settings for a reconciliation run.

    Attributes:
        state_file: Path to the persisted state JSON
        concurrency: Max concurrent actions within a level
        max_attempts: Attempts per action before a transient error escalates
        backoff_base: First retry delay in seconds (doubles per attempt)
        backoff_max: Upper bound for a single retry delay
        provider: Provider backend ('http' or 'memory')
        provider_url: Base URL of the provider API (http backend)
        provider_token_env: Env var holding the provider API token
        provider_timeout: Per-request timeout in seconds
        vault_file: YAML file backing 'vault' secret sources
        report_dir: Directory for apply reports (None disables)
    """
    state_file: Path = Path('.states') / 'state.json'
    concurrency: int = 4
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    provider: str = 'http'
    provider_url: str = ''
    provider_token_env: str = 'PLATFORM_DRIVER_TOKEN'
    provider_timeout: int = 30
    vault_file: Optional[Path] = None
    report_dir: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_file, str):
            self.state_file = Path(self.state_file)
        if isinstance(self.vault_file, str):
            self.vault_file = Path(self.vault_file)
        if isinstance(self.report_dir, str):
            self.report_dir = Path(self.report_dir)

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If any setting is out of range
        """
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigError("backoff delays must be non-negative")
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Unknown provider '{self.provider}'. "
                f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        if self.provider == 'http' and not self.provider_url:
            raise ConfigError(
                "provider_url is required for the http provider "
                "(set PLATFORM_DRIVER_PROVIDER_URL or provider_url in config)"
            )

    def get_provider_token(self) -> str:
        """Get the provider API token from the configured env var."""
        return os.environ.get(self.provider_token_env, '')

    def apply_overrides(self, **overrides) -> None:
        """Apply non-None overrides (typically parsed CLI flags)."""
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(self, key):
                raise ConfigError(f"Unknown config setting: {key}")
            setattr(self, key, value)
        self.__post_init__()


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML mapping file."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def discover_config_file() -> Optional[Path]:
    """Find the config file.

    Resolution order:
    1. PLATFORM_DRIVER_CONFIG environment variable
    2. ./platform-driver.yaml
    """
    if env_path := os.environ.get(CONFIG_ENV_VAR):
        path = Path(env_path)
        if not path.is_file():
            raise ConfigError(f"{CONFIG_ENV_VAR} points to missing file: {path}")
        return path
    default = get_base_dir() / DEFAULT_CONFIG_FILE
    if default.is_file():
        return default
    return None


def load_config(path: Optional[Path] = None) -> DriverConfig:
    """Load driver configuration.

    Args:
        path: Explicit config file. Auto-discovered if not provided.

    Returns:
        DriverConfig with file and environment overrides applied

    Raises:
        ConfigError: If the file is invalid or a value fails to convert
    """
    config = DriverConfig()

    if path is None:
        path = discover_config_file()
    if path is not None:
        data = _parse_yaml(Path(path))
        unknown = sorted(k for k in data if not hasattr(config, k))
        if unknown:
            raise ConfigError(f"Unknown config setting(s) in {path}: {', '.join(unknown)}")
        config.apply_overrides(**data)

    for env_var, (attr, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_var)
        if raw is None or raw == '':
            continue
        try:
            setattr(config, attr, convert(raw))
        except ValueError:
            raise ConfigError(f"Invalid value for {env_var}: {raw!r}")

    config.__post_init__()
    return config
