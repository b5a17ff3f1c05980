"""Custom exceptions for spread-adhoc-allocator."""

from __future__ import annotations

from typing import List, Optional


class AllocatorError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        # failures of best-effort cleanup that ran after this error
        self.cleanup_errors: List[BaseException] = []


class ConfigError(AllocatorError):
    """Malformed catalog, settings or request."""


class SystemNotFoundError(ConfigError):
    """Requested system is not defined in the catalog."""


class ProvisioningError(AllocatorError):
    """The backend refused to create an instance."""


class ReadinessTimeoutError(AllocatorError):
    """An instance did not become reachable within its bound."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage} readiness timed out: {message}")
        self.stage = stage


class ConfigurationError(AllocatorError):
    """A setup step or the credential step failed inside the instance."""

    def __init__(self, index: int, step: str, message: str) -> None:
        super().__init__(f"setup step #{index} failed: {message}\n  step: {step.strip()}")
        self.index = index
        self.step = step


class UnknownAddressError(AllocatorError):
    """No live allocation is registered for an address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"no allocation registered for address {address}")
        self.address = address


class BackendError(AllocatorError):
    """A backend operation failed."""


class CommandTimeoutError(BackendError):
    """A command inside an instance ran past its timeout."""


class RegistryError(AllocatorError):
    """The allocation registry cannot be read or written."""


class RegistryLockError(RegistryError):
    """The registry lock could not be acquired in time."""


class AllocationCancelled(AllocatorError):
    """The allocating process was asked to terminate."""

    def __init__(self, signame: Optional[str] = None) -> None:
        super().__init__(f"allocation cancelled ({signame})" if signame else "allocation cancelled")


class ReconciliationWarning(UserWarning):
    """Cleanup found and repaired a mismatch between backend and registry."""
