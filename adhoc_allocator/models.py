"""Data models for spread-adhoc-allocator."""

from __future__ import annotations

import os
import socket
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional, Tuple

from adhoc_allocator.constants import DEFAULT_CPU, DEFAULT_MEMORY, DEFAULT_ROOT_SIZE


@dataclass(frozen=True)
class ResourceShape:
    memory: int = DEFAULT_MEMORY  # bytes
    cpu: int = DEFAULT_CPU
    size: int = DEFAULT_ROOT_SIZE  # root disk, bytes


@dataclass(frozen=True)
class SetupStepSequence:
    name: str
    steps: Tuple[str, ...]


@dataclass(frozen=True)
class SystemDefinition:
    name: str
    image: str
    vm: bool = True
    resources: ResourceShape = field(default_factory=ResourceShape)
    secure_boot: bool = False
    setup_steps: Optional[str] = None


@dataclass(frozen=True)
class AllocationRequest:
    system: str
    username: str
    password: str

    def __repr__(self) -> str:
        return f"AllocationRequest(system={self.system!r}, username={self.username!r}, password='********')"


@dataclass(frozen=True)
class InstanceSpec:
    """What a backend needs to create one instance."""

    name: str
    image: str
    vm: bool
    cpu: int
    memory: int
    root_size: int
    secure_boot: bool
    tag: str


class CommandResult(NamedTuple):
    exit_status: int
    stdout: str = ""
    stderr: str = ""


@dataclass(frozen=True)
class OwnerMarker:
    """Identifies the process that created a registry record."""

    pid: int
    host: str

    @classmethod
    def current(cls) -> "OwnerMarker":
        return cls(pid=os.getpid(), host=socket.gethostname())


@dataclass(frozen=True)
class RegistryEntry:
    handle: str
    system: str
    created: float
    owner: OwnerMarker

    @classmethod
    def new(cls, handle: str, system: str) -> "RegistryEntry":
        return cls(handle=handle, system=system, created=time.time(), owner=OwnerMarker.current())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistryEntry":
        owner = data.get("owner") or {}
        return cls(
            handle=str(data["handle"]),
            system=str(data.get("system", "")),
            created=float(data.get("created", 0.0)),
            owner=OwnerMarker(pid=int(owner.get("pid", 0)), host=str(owner.get("host", ""))),
        )


@dataclass(frozen=True)
class PendingClaim:
    """An allocation in flight: provisioned (or about to be) but not yet registered."""

    system: str
    created: float
    owner: OwnerMarker

    @classmethod
    def new(cls, system: str) -> "PendingClaim":
        return cls(system=system, created=time.time(), owner=OwnerMarker.current())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingClaim":
        owner = data.get("owner") or {}
        return cls(
            system=str(data.get("system", "")),
            created=float(data.get("created", 0.0)),
            owner=OwnerMarker(pid=int(owner.get("pid", 0)), host=str(owner.get("host", ""))),
        )


class AllocationState(str, Enum):
    MATCHED = "matched"
    PROVISIONING = "provisioning"
    AWAITING_NETWORK = "awaiting-network"
    AWAITING_SERVICE = "awaiting-service"
    CONFIGURING = "configuring"
    READY = "ready"
    FAILED = "failed"
