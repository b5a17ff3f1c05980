"""Allocation lifecycle: provision, wait for readiness, configure, register.

One allocation walks MATCHED -> PROVISIONING -> AWAITING_NETWORK ->
AWAITING_SERVICE -> CONFIGURING -> READY. Every state carries a failure
action in ``DESTROY_ON_FAILURE``: once a failure happens the attempt moves to
FAILED, an instance that exists by then is destroyed best-effort, and the
pending claim is released. Entering READY writes the registry entry; that
write is the commit point after which only discard or cleanup remove the
instance.
"""

from __future__ import annotations

import random
import shlex
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from adhoc_allocator.backends.base import Backend
from adhoc_allocator.config import Catalog, Settings
from adhoc_allocator.constants import USERNAME_RE
from adhoc_allocator.exceptions import (
    AllocationCancelled,
    AllocatorError,
    CommandTimeoutError,
    ConfigError,
    ConfigurationError,
    ReadinessTimeoutError,
    UnknownAddressError,
)
from adhoc_allocator.models import (
    AllocationRequest,
    AllocationState,
    InstanceSpec,
    PendingClaim,
    RegistryEntry,
    SystemDefinition,
)
from adhoc_allocator.registry import Registry
from adhoc_allocator.utils import format_address, log, split_address, tcp_reachable

# Whether a failure while in this state destroys the instance.
DESTROY_ON_FAILURE: Dict[AllocationState, bool] = {
    AllocationState.MATCHED: False,
    AllocationState.PROVISIONING: False,
    AllocationState.AWAITING_NETWORK: True,
    AllocationState.AWAITING_SERVICE: True,
    AllocationState.CONFIGURING: True,
    AllocationState.READY: True,
}


def validate_credentials(username: str, password: str) -> None:
    if not USERNAME_RE.match(username or ""):
        raise ConfigError(f"invalid username '{username}'")
    if not password:
        raise ConfigError("password must not be empty")
    if "\n" in password or "\r" in password:
        raise ConfigError("password must not contain newlines")


def credential_command(username: str, password: str) -> Tuple[str, str]:
    """Return the chpasswd command and a printable version with the password masked."""
    command = f"echo {shlex.quote(f'{username}:{password}')} | chpasswd"
    return command, f"echo {username}:******** | chpasswd"


@dataclass
class AllocationAttempt:
    """Working state of one allocate call."""

    request: AllocationRequest
    system: SystemDefinition
    spec: InstanceSpec
    steps: Tuple[str, ...]
    claim: str
    handle: Optional[str] = None
    host: Optional[str] = None
    address: Optional[str] = None


class LifecycleEngine:
    def __init__(
        self,
        catalog: Optional[Catalog],
        backend: Backend,
        registry: Registry,
        settings: Settings,
    ) -> None:
        self.catalog = catalog
        self.backend = backend
        self.registry = registry
        self.settings = settings
        self.state: Optional[AllocationState] = None
        self.failed_in: Optional[AllocationState] = None

    def _enter(self, state: AllocationState) -> None:
        log("DEBUG", f"allocation state: {self.state.value if self.state else '-'} -> {state.value}")
        self.state = state

    def _stages(self) -> List[Tuple[AllocationState, Callable[[AllocationAttempt], None]]]:
        return [
            (AllocationState.PROVISIONING, self._provision),
            (AllocationState.AWAITING_NETWORK, self._await_network),
            (AllocationState.AWAITING_SERVICE, self._await_service),
            (AllocationState.CONFIGURING, self._configure),
            (AllocationState.READY, self._commit),
        ]

    def allocate(self, request: AllocationRequest) -> str:
        """Run one allocation to completion and return its ``host:port`` address."""
        self.state = None
        self.failed_in = None
        self._enter(AllocationState.MATCHED)
        try:
            attempt = self._match(request)
        except ConfigError:
            self.failed_in, self.state = self.state, AllocationState.FAILED
            raise

        for state, action in self._stages():
            self._enter(state)
            try:
                action(attempt)
            except KeyboardInterrupt as exc:
                cancelled = AllocationCancelled("SIGINT")
                self._fail(attempt, cancelled)
                raise cancelled from exc
            except BaseException as exc:
                self._fail(attempt, exc)
                raise

        assert attempt.address is not None
        log("SUCCESS", f"{attempt.system.name} allocated at {attempt.address} ({attempt.handle})")
        return attempt.address

    def _match(self, request: AllocationRequest) -> AllocationAttempt:
        if self.catalog is None:
            raise ConfigError("no catalog loaded")
        system = self.catalog.lookup(request.system)
        validate_credentials(request.username, request.password)
        name = self.backend.instance_name(system.name, random.getrandbits(32))
        spec = InstanceSpec(
            name=name,
            image=system.image,
            vm=system.vm,
            cpu=system.resources.cpu,
            memory=system.resources.memory,
            root_size=system.resources.size,
            secure_boot=system.secure_boot,
            tag=self.settings.tag,
        )
        return AllocationAttempt(
            request=request,
            system=system,
            spec=spec,
            steps=self.catalog.steps_for(system),
            claim=name,
        )

    def _provision(self, attempt: AllocationAttempt) -> None:
        spec = attempt.spec
        log("INFO", f"Allocating {attempt.system.name} as {spec.name} ({'vm' if spec.vm else 'container'}, {spec.image})")
        self.registry.reserve(attempt.claim, PendingClaim.new(attempt.system.name))
        attempt.handle = self.backend.provision(spec)
        if attempt.handle != attempt.claim:
            self.registry.reserve(attempt.handle, PendingClaim.new(attempt.system.name))
            self.registry.release(attempt.claim)
            attempt.claim = attempt.handle

    def _await_network(self, attempt: AllocationAttempt) -> None:
        assert attempt.handle is not None
        attempt.host = self.backend.await_address(
            attempt.handle,
            timeout=self.settings.address_timeout,
            interval=self.settings.address_interval,
        )
        log("INFO", f"{attempt.handle} has address {attempt.host}")

    def _await_service(self, attempt: AllocationAttempt) -> None:
        host = attempt.host
        port = self.settings.service_port
        attempts = self.settings.service_attempts
        for count in range(1, attempts + 1):
            if tcp_reachable(host, port, self.settings.service_connect_timeout):
                log("DEBUG", f"{host}:{port} accepts connections")
                return
            log("DEBUG", f"{host}:{port} not reachable yet ({count}/{attempts})")
            if count < attempts:
                time.sleep(self.settings.service_interval)
        raise ReadinessTimeoutError("service", f"{host}:{port} not reachable after {attempts} attempts")

    def _configure(self, attempt: AllocationAttempt) -> None:
        handle = attempt.handle
        commands: List[Tuple[str, str]] = [(step, step) for step in attempt.steps]
        commands.append(credential_command(attempt.request.username, attempt.request.password))
        timeout = self.settings.step_timeout
        for index, (command, shown) in enumerate(commands, start=1):
            log("DEBUG", f"setup step #{index} on {handle}: {shown}")
            try:
                result = self.backend.execute(handle, command, timeout=timeout)
            except CommandTimeoutError as exc:
                raise ConfigurationError(index, shown, f"timed out after {timeout}s") from exc
            if result.exit_status != 0:
                detail = (result.stderr or result.stdout).strip()
                message = f"exit status {result.exit_status}"
                if detail:
                    message += f"\n{detail}"
                raise ConfigurationError(index, shown, message)

    def _commit(self, attempt: AllocationAttempt) -> None:
        address = format_address(attempt.host, self.settings.service_port)
        with self.registry.address_lock(address):
            self.registry.commit(address, RegistryEntry.new(attempt.handle, attempt.system.name))
        attempt.address = address

    def _fail(self, attempt: AllocationAttempt, exc: BaseException) -> None:
        self.failed_in = self.state
        self.state = AllocationState.FAILED
        failures: List[BaseException] = []
        handle = attempt.handle
        if handle is not None and self.failed_in is not None and DESTROY_ON_FAILURE[self.failed_in]:
            log("WARN", f"Allocation failed while {self.failed_in.value}; destroying {handle}")
            try:
                self.backend.destroy(handle)
            except Exception as cleanup_exc:
                log("WARN", f"cannot destroy {handle}: {cleanup_exc}")
                failures.append(cleanup_exc)
        try:
            self.registry.release(attempt.claim)
        except AllocatorError as cleanup_exc:
            log("WARN", f"cannot release pending claim {attempt.claim}: {cleanup_exc}")
            failures.append(cleanup_exc)
        if isinstance(exc, AllocatorError):
            exc.cleanup_errors.extend(failures)

    def discard(self, address: str) -> None:
        """Destroy the instance registered for address and forget it."""
        host, port = split_address(address)
        address = format_address(host, port)
        with self.registry.address_lock(address):
            entry = self.registry.get(address)
            if entry is None:
                raise UnknownAddressError(address)
            log("INFO", f"Discarding {address} ({entry.handle}, {entry.system})")
            self.backend.destroy(entry.handle)
            self.registry.delete(address, expected_handle=entry.handle)
        log("SUCCESS", f"{address} discarded")

    def discard_all(self) -> List[str]:
        """Discard every registered address; returns those that were discarded."""
        addresses = sorted(self.registry.list_all())
        discarded: List[str] = []
        failures: List[BaseException] = []
        for address in addresses:
            try:
                self.discard(address)
            except UnknownAddressError:
                log("DEBUG", f"{address} was discarded concurrently")
            except AllocatorError as exc:
                log("ERROR", f"cannot discard {address}: {exc}")
                failures.append(exc)
            else:
                discarded.append(address)
        if failures:
            error = AllocatorError(f"{len(failures)} of {len(addresses)} allocations could not be discarded")
            error.cleanup_errors.extend(failures)
            raise error
        return discarded
