"""Error taxonomy for the reconciliation engine.

Manifest-level errors (ManifestError, DependencyCycleError) abort a run
before any remote call. Resource-level errors are contained to the
affected action and its dependents.
"""

from typing import Iterable


class DriverError(Exception):
    """Base exception for driver errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ManifestError(DriverError):
    """Manifest is malformed or fails validation."""

    def __init__(self, message: str):
        super().__init__("E100", message)


class DependencyCycleError(DriverError):
    """Resource graph contains a cycle."""

    def __init__(self, resource_ids: Iterable[str]):
        self.resource_ids = sorted(resource_ids)
        super().__init__(
            "E101",
            f"Dependency cycle among resources: {', '.join(self.resource_ids)}",
        )


class SecretResolutionError(DriverError):
    """Secret could not be resolved from its declared source."""

    def __init__(self, name: str, reason: str):
        self.name = name
        super().__init__("E200", f"Cannot resolve secret '{name}': {reason}")


class ProviderError(DriverError):
    """Base for errors raised by provider clients."""


class TransientError(ProviderError):
    """Retryable provider failure (network, throttling, 5xx)."""

    def __init__(self, message: str):
        super().__init__("E300", message)


class PermanentError(ProviderError):
    """Non-retryable provider failure (invalid config, quota, conflict)."""

    def __init__(self, message: str):
        super().__init__("E301", message)


class StateStoreError(DriverError):
    """State could not be read or persisted."""

    def __init__(self, message: str):
        super().__init__("E400", message)
