"""LXD provider driving the ``lxc`` command line client."""

from __future__ import annotations

import ipaddress
import json
import subprocess
from typing import Any, Dict, List, Optional, Sequence

from adhoc_allocator.backends.base import Backend
from adhoc_allocator.constants import LXD_PROJECT_NAME, LXD_TAG_KEY
from adhoc_allocator.exceptions import BackendError, CommandTimeoutError, ProvisioningError
from adhoc_allocator.models import CommandResult, InstanceSpec
from adhoc_allocator.utils import format_size, log


class LxcCommandError(BackendError):
    def __init__(self, args: Sequence[str], exit_code: int, stderr: str) -> None:
        super().__init__(f"lxc {' '.join(args[:2])} exited with status {exit_code}, stderr:\n{stderr}")
        self.exit_code = exit_code
        self.stderr = stderr


def lxdfy_name(name: str) -> str:
    """Turn a system name into a valid LXD instance name."""
    return "".join("-" if c in ".:_" else c for c in name)


def lxc_command(args: Sequence[str], project: Optional[str] = None) -> List[str]:
    cmd = ["lxc"]
    if project:
        cmd.extend(["--project", project])
    cmd.extend(args)
    return cmd


class LxcCommandRunner:
    """Runs lxc and returns its output."""

    def run(
        self,
        args: Sequence[str],
        project: Optional[str] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> CommandResult:
        cmd = lxc_command(args, project)
        log("DEBUG", f"running lxc with: {cmd[1:]}")
        try:
            res = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError as exc:
            raise BackendError(f"cannot start lxc: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(f"lxc {' '.join(args[:2])} timed out after {timeout}s") from exc
        if check and res.returncode != 0:
            raise LxcCommandError(args, res.returncode, (res.stderr or "").strip())
        return CommandResult(res.returncode, res.stdout or "", res.stderr or "")


def _first_ipv4(instance: Dict[str, Any]) -> Optional[str]:
    state = instance.get("state") or {}
    for ifname, ifstate in (state.get("network") or {}).items():
        if ifname == "lo":
            continue
        for ifaceaddr in (ifstate or {}).get("addresses") or []:
            if ifaceaddr.get("family") != "inet":
                continue
            try:
                return str(ipaddress.IPv4Address(ifaceaddr.get("address", "")))
            except ValueError:
                log("DEBUG", f"cannot parse address {ifaceaddr.get('address')!r}")
    return None


class LxdBackend(Backend):
    """Allocates nodes as LXD instances inside a dedicated project."""

    name = "lxd"

    def __init__(self, project: str = LXD_PROJECT_NAME, runner: Optional[LxcCommandRunner] = None) -> None:
        self.project = project
        self.runner = runner or LxcCommandRunner()
        self._project_ready = False

    def _json(self, args: Sequence[str], project: Optional[str] = None) -> Any:
        output = self.runner.run(args, project=project).stdout
        try:
            return json.loads(output or "[]")
        except ValueError as exc:
            raise BackendError(f"cannot parse lxc {args[0]} output: {exc}") from exc

    def ensure_project(self) -> None:
        if self._project_ready:
            return
        projects = self._json(["project", "list", "--format=json"])
        found = any(p.get("name") == self.project for p in projects)
        log("DEBUG", f"project {self.project} found: {found}")
        if not found:
            log("INFO", f"Creating LXD project {self.project}")
            self.runner.run(
                [
                    "project",
                    "create",
                    self.project,
                    "-c",
                    "features.images=false",
                    "-c",
                    "features.profiles=false",
                ]
            )
        self._project_ready = True

    def instance_name(self, system: str, suffix: int) -> str:
        return lxdfy_name(f"{system}-{suffix}")

    def _instances(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        args = ["list", "--format=json"]
        if name is not None:
            args.append(f"^{name}$")
        instances = self._json(args, project=self.project)
        if name is not None:
            instances = [i for i in instances if i.get("name") == name]
        return instances

    def provision(self, spec: InstanceSpec) -> str:
        name = lxdfy_name(spec.name)
        args = ["launch", "--ephemeral"]
        if spec.vm:
            args.append("--vm")
        args += [
            "--config",
            f"limits.memory={format_size(spec.memory)}",
            "--config",
            f"limits.cpu={spec.cpu}",
        ]
        if spec.vm:
            args += ["--config", f"security.secureboot={str(spec.secure_boot).lower()}"]
        args += [
            "--config",
            f"{LXD_TAG_KEY}={spec.tag}",
            "--device",
            f"root,size={format_size(spec.root_size)}",
            spec.image,
            name,
        ]
        try:
            self.ensure_project()
            self.runner.run(args, project=self.project)
        except BackendError as exc:
            raise ProvisioningError(f"cannot launch {name} from {spec.image}: {exc}") from exc
        log("DEBUG", f"launched {name}")
        return name

    def address(self, handle: str) -> Optional[str]:
        instances = self._instances(handle)
        if not instances:
            raise BackendError(f"instance {handle} not found")
        instance = instances[0]
        if instance.get("status") != "Running":
            log("DEBUG", f"{handle} not yet running, in state {instance.get('status')}")
            return None
        return _first_ipv4(instance)

    def execute(self, handle: str, command: str, timeout: float) -> CommandResult:
        return self.runner.run(
            ["exec", handle, "--", "/bin/bash", "-c", command],
            project=self.project,
            timeout=timeout,
            check=False,
        )

    def destroy(self, handle: str) -> None:
        log("DEBUG", f"deallocate by name '{handle}'")
        try:
            self.runner.run(["delete", "--force", handle], project=self.project)
        except LxcCommandError as exc:
            if not self._instances(handle):
                log("DEBUG", f"{handle} already gone")
                return
            raise BackendError(f"cannot delete {handle}: {exc}") from exc

    def list(self, tag: str) -> List[str]:
        self.ensure_project()
        return [
            instance["name"]
            for instance in self._instances()
            if (instance.get("config") or {}).get(LXD_TAG_KEY) == tag
        ]
