"""Shared test fixtures: an in-memory backend, a sample catalog and an on-disk registry."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import pytest

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from adhoc_allocator import constants
from adhoc_allocator.backends.base import Backend
from adhoc_allocator.config import Catalog, Settings, parse_catalog
from adhoc_allocator.exceptions import BackendError, CommandTimeoutError
from adhoc_allocator.models import CommandResult, InstanceSpec
from adhoc_allocator.registry import Registry

SSHD_EDIT = (
    "sed -i -e 's/^PermitRootLogin.*/PermitRootLogin yes/' "
    "-e 's/^PasswordAuthentication.*/PasswordAuthentication yes/' /etc/ssh/sshd_config"
)

CATALOG_YAML = f"""
resources:
  big: &big-resources
    mem: 4096MiB
    cpu: 4
    size: 15GiB

system:
  ubuntu-24.04-64:
    image: ubuntu:24.04
    resources: *big-resources
    setup-steps: ubuntu
  ubuntu-22.04-64:
    image: ubuntu:22.04
    resources: *big-resources
    setup-steps: ubuntu
    secure-boot: true
  alpine-container:
    image: images:alpine/edge
    vm: false

setup:
  ubuntu:
    - cloud-init status --wait
    - {SSHD_EDIT}
    - killall -HUP sshd || true
"""


class FakeClock:
    """Stand-in for the ``time`` module in polling loops."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBackend(Backend):
    """In-memory provider recording every call."""

    name = "fake"

    def __init__(self) -> None:
        self.instances: Dict[str, InstanceSpec] = {}
        self.calls: List[Tuple[str, str]] = []
        self.executed: List[Tuple[str, str]] = []
        self.address_script: List[Optional[str]] = []
        self.default_address: Optional[str] = "10.0.0.5"
        self.failing_commands: Dict[str, CommandResult] = {}
        self.timeout_commands: List[str] = []
        self.provision_error: Optional[BaseException] = None
        self.destroy_error: Optional[BaseException] = None

    def provision(self, spec: InstanceSpec) -> str:
        self.calls.append(("provision", spec.name))
        if self.provision_error is not None:
            raise self.provision_error
        self.instances[spec.name] = spec
        return spec.name

    def address(self, handle: str) -> Optional[str]:
        self.calls.append(("address", handle))
        if handle not in self.instances:
            raise BackendError(f"instance {handle} not found")
        if self.address_script:
            return self.address_script.pop(0)
        return self.default_address

    def execute(self, handle: str, command: str, timeout: float) -> CommandResult:
        self.calls.append(("execute", handle))
        self.executed.append((handle, command))
        for marker in self.timeout_commands:
            if marker in command:
                raise CommandTimeoutError(f"{marker} timed out")
        for marker, result in self.failing_commands.items():
            if marker in command:
                return result
        return CommandResult(0, "", "")

    def destroy(self, handle: str) -> None:
        self.calls.append(("destroy", handle))
        if self.destroy_error is not None:
            raise self.destroy_error
        self.instances.pop(handle, None)

    def list(self, tag: str) -> List[str]:
        self.calls.append(("list", tag))
        return sorted(name for name, spec in self.instances.items() if spec.tag == tag)

    def calls_of(self, verb: str) -> List[str]:
        return [arg for name, arg in self.calls if name == verb]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the invoking user's environment and state."""
    for name in (
        "ADHOC_BACKEND",
        "ADHOC_CONFIG",
        "ADHOC_STATE_DIR",
        "ADHOC_ADDRESS_TIMEOUT",
        "ADHOC_ADDRESS_INTERVAL",
        "ADHOC_SERVICE_PORT",
        "ADHOC_SERVICE_ATTEMPTS",
        "ADHOC_SERVICE_INTERVAL",
        "ADHOC_SERVICE_CONNECT_TIMEOUT",
        "ADHOC_STEP_TIMEOUT",
        "ADHOC_LOCK_TIMEOUT",
        "ADHOC_PENDING_GRACE",
        "ADHOC_LXD_PROJECT",
        "ADHOC_IMAGES_DIR",
        "ADHOC_TAG",
        "LIBVIRT_URI",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(constants, "_LOG_VERBOSE", False)
    monkeypatch.setattr("adhoc_allocator.config.USER_CONFIG_PATH", tmp_path / "no-user-config.yaml")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        images_dir=tmp_path / "images",
        address_timeout=30,
        address_interval=1,
        service_attempts=3,
        service_interval=1,
        service_connect_timeout=1,
        step_timeout=60,
        lock_timeout=1,
    )


@pytest.fixture
def registry(settings) -> Registry:
    return Registry(settings.state_dir, lock_timeout=settings.lock_timeout)


@pytest.fixture
def catalog() -> Catalog:
    return parse_catalog(yaml.safe_load(CATALOG_YAML))


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock(monkeypatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr("adhoc_allocator.backends.base.time", fake)
    monkeypatch.setattr("adhoc_allocator.engine.time", fake)
    return fake


@pytest.fixture
def service_up(monkeypatch):
    """Make every service check succeed; returns the list of checked (host, port)."""
    attempts_made: List[Tuple[str, int]] = []

    def _connect(host, port, timeout):
        attempts_made.append((host, port))
        return True

    monkeypatch.setattr("adhoc_allocator.engine.tcp_reachable", _connect)
    return attempts_made


@pytest.fixture
def catalog_yaml() -> str:
    return CATALOG_YAML
