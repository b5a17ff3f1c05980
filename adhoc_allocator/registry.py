"""Durable, multi-process allocation registry for spread-adhoc-allocator.

The registry is a JSON document in the state directory. Every access holds an
flock on a sibling lock file: shared for reads, exclusive for
read-modify-write. Updates are written to a temporary file and renamed over
the document, so a crashed writer never leaves a torn registry behind.
"""

from __future__ import annotations

import fcntl
import json
import os
import re
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from adhoc_allocator.constants import (
    LOCK_POLL_SECONDS,
    REGISTRY_FILE_NAME,
    REGISTRY_LOCK_NAME,
    REGISTRY_VERSION,
)
from adhoc_allocator.exceptions import RegistryError, RegistryLockError
from adhoc_allocator.models import PendingClaim, RegistryEntry
from adhoc_allocator.utils import ensure_directory, log


@dataclass(frozen=True)
class RegistrySnapshot:
    entries: Dict[str, RegistryEntry]
    pending: Dict[str, PendingClaim]


def _lock_name(address: str) -> str:
    return re.sub(r"[^0-9A-Za-z._-]", "_", address) + ".lock"


class Registry:
    def __init__(self, state_dir: Path, lock_timeout: float = 60.0) -> None:
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / REGISTRY_FILE_NAME
        self.lock_path = self.state_dir / REGISTRY_LOCK_NAME
        self.locks_dir = self.state_dir / "locks"
        self.lock_timeout = lock_timeout
        ensure_directory(self.state_dir)
        ensure_directory(self.locks_dir)

    @contextmanager
    def _flock(self, path: Path, exclusive: bool) -> Iterator[None]:
        mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        deadline = time.monotonic() + max(self.lock_timeout, 0.0)
        with path.open("a+") as handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), mode | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise RegistryLockError(
                            f"cannot lock {path} within {self.lock_timeout}s; another invocation holds it"
                        ) from None
                    time.sleep(LOCK_POLL_SECONDS)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": REGISTRY_VERSION, "entries": {}, "pending": {}}
        try:
            document = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            raise RegistryError(f"cannot read registry {self.path}: {exc}") from exc
        if not isinstance(document, dict):
            raise RegistryError(f"registry {self.path} is corrupt: expected a JSON object")
        version = document.get("version", REGISTRY_VERSION)
        if version != REGISTRY_VERSION:
            raise RegistryError(f"registry {self.path} has unsupported version {version}")
        document.setdefault("entries", {})
        document.setdefault("pending", {})
        return document

    def _store(self, document: Dict[str, Any]) -> None:
        document["version"] = REGISTRY_VERSION
        fd, tmp_name = tempfile.mkstemp(prefix=".registry-", dir=self.state_dir)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump(document, tmp, indent=2, sort_keys=True)
                tmp.write("\n")
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

    @contextmanager
    def _transaction(self) -> Iterator[Dict[str, Any]]:
        """Exclusive read-modify-write; the document is stored when the block exits cleanly."""
        with self._flock(self.lock_path, exclusive=True):
            document = self._load()
            yield document
            self._store(document)

    def _read(self) -> Dict[str, Any]:
        with self._flock(self.lock_path, exclusive=False):
            return self._load()

    @contextmanager
    def address_lock(self, address: str) -> Iterator[None]:
        """Exclusive ownership of one address across processes."""
        with self._flock(self.locks_dir / _lock_name(address), exclusive=True):
            yield

    def get(self, address: str) -> Optional[RegistryEntry]:
        raw = self._read()["entries"].get(address)
        return RegistryEntry.from_dict(raw) if raw is not None else None

    def put(self, address: str, entry: RegistryEntry) -> Optional[RegistryEntry]:
        """Store entry under address, returning the record it replaced."""
        with self._transaction() as document:
            previous = document["entries"].get(address)
            document["entries"][address] = entry.to_dict()
        if previous is not None:
            log("WARN", f"registry entry for {address} replaced (stale handle {previous.get('handle')})")
            return RegistryEntry.from_dict(previous)
        return None

    def delete(self, address: str, expected_handle: Optional[str] = None) -> bool:
        """Remove the entry for address.

        With expected_handle, the entry is only removed while it still refers to
        that handle, so a record committed concurrently for the same address
        survives.
        """
        with self._transaction() as document:
            current = document["entries"].get(address)
            if current is None:
                return False
            if expected_handle is not None and current.get("handle") != expected_handle:
                log("WARN", f"registry entry for {address} now refers to {current.get('handle')}; kept")
                return False
            del document["entries"][address]
        return True

    def list_all(self) -> Dict[str, RegistryEntry]:
        return {
            address: RegistryEntry.from_dict(raw)
            for address, raw in self._read()["entries"].items()
        }

    def reserve(self, handle: str, claim: PendingClaim) -> None:
        with self._transaction() as document:
            document["pending"][handle] = claim.to_dict()

    def release(self, handle: str) -> bool:
        with self._transaction() as document:
            removed = document["pending"].pop(handle, None)
        return removed is not None

    def commit(self, address: str, entry: RegistryEntry) -> Optional[RegistryEntry]:
        """Register a ready allocation and drop its pending claim in one update."""
        with self._transaction() as document:
            previous = document["entries"].get(address)
            document["entries"][address] = entry.to_dict()
            document["pending"].pop(entry.handle, None)
        if previous is not None:
            log("WARN", f"registry entry for {address} replaced (stale handle {previous.get('handle')})")
            return RegistryEntry.from_dict(previous)
        return None

    def snapshot(self) -> RegistrySnapshot:
        document = self._read()
        return RegistrySnapshot(
            entries={address: RegistryEntry.from_dict(raw) for address, raw in document["entries"].items()},
            pending={handle: PendingClaim.from_dict(raw) for handle, raw in document["pending"].items()},
        )
