"""Reconcile backend instances against the allocation registry."""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field
from typing import Dict, List, Set

from adhoc_allocator.backends.base import Backend
from adhoc_allocator.config import Settings
from adhoc_allocator.exceptions import AllocatorError, ReconciliationWarning
from adhoc_allocator.models import PendingClaim, RegistryEntry
from adhoc_allocator.registry import Registry
from adhoc_allocator.utils import log, pid_alive


@dataclass
class ReconcileReport:
    destroyed: List[str] = field(default_factory=list)  # leaked handles
    forgotten: List[str] = field(default_factory=list)  # stale addresses
    dropped_claims: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # in-flight handles
    warnings: List[ReconciliationWarning] = field(default_factory=list)
    errors: List[AllocatorError] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.destroyed or self.forgotten or self.dropped_claims or self.errors)


class OrphanReaper:
    def __init__(self, backend: Backend, registry: Registry, settings: Settings) -> None:
        self.backend = backend
        self.registry = registry
        self.settings = settings

    def _warn(self, report: ReconcileReport, message: str) -> None:
        report.warnings.append(ReconciliationWarning(message))
        log("WARN", message)

    def claim_alive(self, claim: PendingClaim, now: float) -> bool:
        """Whether the allocation behind a pending claim may still be running.

        Claims made on this host live exactly as long as their owner process.
        Owners on other hosts cannot be checked, so their claims expire after
        the grace period.
        """
        if claim.owner.host == socket.gethostname():
            return pid_alive(claim.owner.pid)
        return now - claim.created <= self.settings.pending_grace

    def reconcile(self) -> ReconcileReport:
        """Destroy leaked instances and forget stale registry entries.

        Only the symmetric difference between the backend listing and the
        registry is touched; matching pairs are left alone.
        """
        report = ReconcileReport()
        listed_at = time.time()
        handles: Set[str] = set(self.backend.list(self.settings.tag))
        snapshot = self.registry.snapshot()
        log(
            "DEBUG",
            f"{len(handles)} tagged instances, {len(snapshot.entries)} registry entries, "
            f"{len(snapshot.pending)} pending claims",
        )

        registered: Dict[str, str] = {entry.handle: address for address, entry in snapshot.entries.items()}
        live_claims: Set[str] = set()
        for handle, claim in sorted(snapshot.pending.items()):
            if self.claim_alive(claim, listed_at):
                live_claims.add(handle)
                continue
            self._drop_claim(handle, claim, report)

        for handle in sorted(handles):
            if handle in registered:
                continue
            if handle in live_claims:
                log("DEBUG", f"{handle} is being allocated; skipped")
                report.skipped.append(handle)
                continue
            self._destroy_leak(handle, report)

        for address, entry in sorted(snapshot.entries.items()):
            if entry.handle in handles or entry.created >= listed_at:
                continue
            self._forget_stale(address, entry, listed_at, report)

        if report.clean:
            log("DEBUG", "registry and backend agree")
        return report

    def _drop_claim(self, handle: str, claim: PendingClaim, report: ReconcileReport) -> None:
        try:
            self.registry.release(handle)
        except AllocatorError as exc:
            log("ERROR", f"cannot drop pending claim {handle}: {exc}")
            report.errors.append(exc)
            return
        report.dropped_claims.append(handle)
        self._warn(report, f"dropped abandoned pending claim {handle} (pid {claim.owner.pid} on {claim.owner.host})")

    def _destroy_leak(self, handle: str, report: ReconcileReport) -> None:
        try:
            self.backend.destroy(handle)
        except AllocatorError as exc:
            log("ERROR", f"cannot destroy leaked instance {handle}: {exc}")
            report.errors.append(exc)
            return
        report.destroyed.append(handle)
        self._warn(report, f"destroyed leaked instance {handle}")

    def _forget_stale(self, address: str, entry: RegistryEntry, listed_at: float, report: ReconcileReport) -> None:
        try:
            with self.registry.address_lock(address):
                current = self.registry.get(address)
                if current is None or current.handle != entry.handle or current.created >= listed_at:
                    log("DEBUG", f"{address} changed during cleanup; skipped")
                    return
                if not self.registry.delete(address, expected_handle=entry.handle):
                    return
        except AllocatorError as exc:
            log("ERROR", f"cannot forget stale entry {address}: {exc}")
            report.errors.append(exc)
            return
        report.forgotten.append(address)
        self._warn(report, f"forgot stale registry entry {address} ({entry.handle} no longer exists)")
