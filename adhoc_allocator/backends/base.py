"""Backend capability contract shared by all providers."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import List, Optional

from adhoc_allocator.constants import ADDRESS_ERROR_LIMIT
from adhoc_allocator.exceptions import BackendError, ReadinessTimeoutError
from adhoc_allocator.models import CommandResult, InstanceSpec
from adhoc_allocator.utils import log


class Backend(ABC):
    """Abstract base class for virtualization providers.

    Handles are opaque strings owned by the provider. Every operation may
    block and may raise BackendError (or a subclass).
    """

    name = "abstract"

    @abstractmethod
    def provision(self, spec: InstanceSpec) -> str:
        """Create and start an instance; may return before it has an address."""

    @abstractmethod
    def address(self, handle: str) -> Optional[str]:
        """Return the instance's reachable address, or None if not assigned yet."""

    @abstractmethod
    def execute(self, handle: str, command: str, timeout: float) -> CommandResult:
        """Run a shell command inside the instance."""

    @abstractmethod
    def destroy(self, handle: str) -> None:
        """Remove the instance. Destroying an absent instance is a no-op."""

    @abstractmethod
    def list(self, tag: str) -> List[str]:
        """Return handles of all instances carrying tag."""

    def instance_name(self, system: str, suffix: int) -> str:
        """Name for a new instance of system; must equal the handle provision() returns."""
        return f"{system}-{suffix}"

    def close(self) -> None:
        pass

    def await_address(
        self,
        handle: str,
        timeout: float,
        interval: float = 1.0,
        error_limit: int = ADDRESS_ERROR_LIMIT,
    ) -> str:
        """Poll for an address until one is assigned or timeout elapses.

        Never destroys the instance; the caller decides what to do with it.
        """
        deadline = time.monotonic() + timeout
        failures = 0
        while True:
            try:
                addr = self.address(handle)
            except BackendError as exc:
                failures += 1
                if failures >= error_limit:
                    raise
                log("DEBUG", f"address query for {handle} failed ({failures}/{error_limit}): {exc}")
                addr = None
            if addr:
                log("DEBUG", f"found address {addr} for {handle}")
                return addr
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeoutError(
                    "network", f"{handle} got no address within {timeout:g}s"
                )
            log("DEBUG", f"waiting for address of {handle}")
            time.sleep(min(interval, remaining))
