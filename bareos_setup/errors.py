"""Fatal error taxonomy for the provisioning run."""

from __future__ import annotations


class ProvisionError(RuntimeError):
    """Raised when a step cannot complete and the run must stop.

    ``result`` names the entry in the CLI result table, ``hint`` carries the
    remediation printed next to the failure, and ``state`` keeps whatever
    diagnostics were collected on the way.
    """

    result = "FAIL_GENERIC"

    def __init__(self, message: str, *, hint: str | None = None, state: dict | None = None) -> None:
        super().__init__(message)
        self.hint = hint
        self.state = state or {}


class ConfigError(ProvisionError):
    result = "FAIL_CONFIG"


class MissingToolError(ProvisionError):
    result = "FAIL_MISSING_TOOL"


class DeviceValidationError(ProvisionError):
    result = "FAIL_INVALID_DEVICE"


class WipeAbortedError(ProvisionError):
    result = "FAIL_WIPE_ABORTED"


class PoolError(ProvisionError):
    result = "FAIL_POOL"


class KeyFetchError(ProvisionError):
    result = "FAIL_REPO_KEY"


class PackageInstallError(ProvisionError):
    result = "FAIL_PACKAGES"


class DatabaseUnavailableError(ProvisionError):
    result = "FAIL_DATABASE"


class CatalogError(ProvisionError):
    result = "FAIL_CATALOG"


class ServiceStartError(ProvisionError):
    result = "FAIL_SERVICES"
