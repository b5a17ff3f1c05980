"""Libvirt provider: qcow2 overlay VMs reached through DHCP leases and the QEMU guest agent."""

from __future__ import annotations

import base64
import hashlib
import json
import shutil
import subprocess
import tempfile
import textwrap
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, register_namespace, tostring

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

# libvirt bindings need the C library; only this provider depends on them
try:
    import libvirt  # type: ignore

    LIBVIRT_AVAILABLE = True
except ImportError:
    libvirt = None
    LIBVIRT_AVAILABLE = False

from adhoc_allocator.backends.base import Backend
from adhoc_allocator.constants import (
    DEFAULT_IMAGES_DIR,
    LIBVIRT_METADATA_NS,
    LIBVIRT_METADATA_PREFIX,
    LIBVIRT_URI,
    SECURE_BOOT_FIRMWARE,
)
from adhoc_allocator.exceptions import (
    AllocatorError,
    BackendError,
    CommandTimeoutError,
    ProvisioningError,
)
from adhoc_allocator.models import CommandResult, InstanceSpec
from adhoc_allocator.utils import download_file, ensure_directory, kvm_available, log, run

AGENT_TIMEOUT = 300.0
AGENT_POLL_INTERVAL = 3.0
EXEC_POLL_INTERVAL = 0.5
NETWORK_NAME = "default"


def _sanitize_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "-" for c in name)


class LibvirtBackend(Backend):
    """Allocates nodes as transient-disk libvirt domains."""

    name = "libvirt"

    def __init__(self, uri: str = LIBVIRT_URI, images_dir: Path = DEFAULT_IMAGES_DIR) -> None:
        if not LIBVIRT_AVAILABLE:
            raise BackendError("libvirt python bindings not available; install the 'libvirt' extra")
        self.uri = uri
        self.images_dir = Path(images_dir)
        self.base_dir = self.images_dir / "base"
        self.vms_dir = self.images_dir / "vms"
        self.conn = None
        self._agent_ready: Dict[str, bool] = {}

    def instance_name(self, system: str, suffix: int) -> str:
        return _sanitize_name(f"{system}-{suffix}")

    def connect(self):
        if self.conn is None:
            try:
                self.conn = libvirt.open(self.uri)
            except libvirt.libvirtError as exc:
                raise BackendError(f"Failed to open libvirt connection to {self.uri}: {exc}") from exc
            if self.conn is None:
                raise BackendError(f"Failed to open libvirt connection to {self.uri}")
        return self.conn

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _lookup(self, handle: str):
        conn = self.connect()
        try:
            return conn.lookupByName(handle)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise BackendError(f"cannot look up domain {handle}: {exc}") from exc

    def _base_image(self, image: str) -> Path:
        ensure_directory(self.base_dir)
        if image.startswith(("http://", "https://")):
            digest = hashlib.sha256(image.encode("utf-8")).hexdigest()[:16]
            cached = self.base_dir / f"{digest}-{Path(image).name}"
            if not cached.exists():
                download_file(image, cached, label="Downloading base image")
            return cached
        path = Path(image)
        if not path.is_absolute():
            path = self.base_dir / path
        if not path.exists():
            raise ProvisioningError(f"base image {path} does not exist")
        return path

    def _prepare_disk(self, vm_dir: Path, base: Path, size: int) -> Path:
        disk = vm_dir / "disk.qcow2"
        log("INFO", f"Creating working disk {disk}")
        run(
            ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2", "-b", str(base), str(disk), str(size)],
            capture_output=True,
        )
        return disk

    def _generate_seed(self, vm_dir: Path, name: str) -> Path:
        seed = vm_dir / "seed.iso"
        vendor_cfg: Dict[str, object] = {
            "packages": ["qemu-guest-agent"],
            "ssh_pwauth": True,
            "write_files": [
                # RHEL family blocklists guest-exec by default
                {
                    "path": "/etc/sysconfig/qemu-ga",
                    "content": "BLACKLIST_RPC=\n",
                },
            ],
            "runcmd": [
                [
                    "sh",
                    "-c",
                    "command -v systemctl >/dev/null 2>&1"
                    " && systemctl enable qemu-guest-agent"
                    " && systemctl restart qemu-guest-agent"
                    " || true",
                ],
            ],
        }
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            vendor_data = "#cloud-config\n" + yaml.safe_dump(vendor_cfg, sort_keys=False, default_flow_style=False)
            (tmp / "vendor-data").write_text(vendor_data, encoding="utf-8")
            (tmp / "user-data").write_text("", encoding="utf-8")
            meta_data = (
                textwrap.dedent(
                    f"""
                instance-id: iid-{name}
                local-hostname: {name}
                """
                ).strip()
                + "\n"
            )
            (tmp / "meta-data").write_text(meta_data, encoding="utf-8")
            run(
                [
                    "genisoimage",
                    "-output",
                    str(seed),
                    "-volid",
                    "cidata",
                    "-joliet",
                    "-rock",
                    str(tmp / "meta-data"),
                    str(tmp / "user-data"),
                    str(tmp / "vendor-data"),
                ],
                capture_output=True,
            )
        return seed

    def _prepare_firmware(self, vm_dir: Path) -> Tuple[Path, Path]:
        loader = SECURE_BOOT_FIRMWARE["loader"]
        vars_template = SECURE_BOOT_FIRMWARE["vars_template"]
        if not loader.exists():
            raise ProvisioningError(f"OVMF firmware not found at {loader}. Ensure the 'ovmf' package is installed.")
        if not vars_template.exists():
            raise ProvisioningError(f"OVMF variable template not found at {vars_template}.")
        nvram = vm_dir / "OVMF_VARS.fd"
        shutil.copy2(vars_template, nvram)
        return loader, nvram

    def render_domain_xml(
        self,
        spec: InstanceSpec,
        name: str,
        disk: Path,
        seed: Path,
        firmware: Optional[Tuple[Path, Path]] = None,
    ) -> str:
        register_namespace(LIBVIRT_METADATA_PREFIX, LIBVIRT_METADATA_NS)
        domain = Element("domain", type="kvm" if kvm_available() else "qemu")
        SubElement(domain, "name").text = name
        SubElement(domain, "memory", unit="KiB").text = str(spec.memory // 1024)
        SubElement(domain, "vcpu", placement="static").text = str(spec.cpu)

        metadata = SubElement(domain, "metadata")
        SubElement(metadata, f"{{{LIBVIRT_METADATA_NS}}}instance", tag=spec.tag)

        os_el = SubElement(domain, "os")
        SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
        if firmware is not None:
            loader, nvram = firmware
            SubElement(os_el, "loader", readonly="yes", secure="yes", type="pflash").text = str(loader)
            SubElement(os_el, "nvram").text = str(nvram)

        features = SubElement(domain, "features")
        SubElement(features, "acpi")
        SubElement(features, "apic")
        if firmware is not None:
            SubElement(features, "smm", state="on")

        if kvm_available():
            SubElement(domain, "cpu", mode="host-passthrough")

        devices = SubElement(domain, "devices")
        disk_el = SubElement(devices, "disk", type="file", device="disk")
        SubElement(disk_el, "driver", name="qemu", type="qcow2")
        SubElement(disk_el, "source", file=str(disk))
        SubElement(disk_el, "target", dev="vda", bus="virtio")

        seed_el = SubElement(devices, "disk", type="file", device="cdrom")
        SubElement(seed_el, "driver", name="qemu", type="raw")
        SubElement(seed_el, "source", file=str(seed))
        SubElement(seed_el, "target", dev="sda", bus="sata")
        SubElement(seed_el, "readonly")

        iface = SubElement(devices, "interface", type="network")
        SubElement(iface, "source", network=NETWORK_NAME)
        SubElement(iface, "model", type="virtio")

        channel = SubElement(devices, "channel", type="unix")
        SubElement(channel, "target", type="virtio", name="org.qemu.guest_agent.0")

        serial = SubElement(devices, "serial", type="pty")
        SubElement(serial, "target", port="0")
        rng = SubElement(devices, "rng", model="virtio")
        SubElement(rng, "backend", model="random").text = "/dev/urandom"

        return tostring(domain, encoding="unicode")

    def _remove_partial(self, name: str, vm_dir: Path, domain, error: ProvisioningError) -> None:
        if domain is not None:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
            except libvirt.libvirtError as exc:
                log("WARN", f"cannot undefine domain {name}: {exc}")
                error.cleanup_errors.append(exc)
        shutil.rmtree(vm_dir, ignore_errors=True)

    def provision(self, spec: InstanceSpec) -> str:
        if not spec.vm:
            raise ProvisioningError("the libvirt backend only supports virtual machines (vm: true)")
        name = _sanitize_name(spec.name)
        vm_dir = self.vms_dir / name
        domain = None
        try:
            ensure_directory(vm_dir)
            base = self._base_image(spec.image)
            disk = self._prepare_disk(vm_dir, base, spec.root_size)
            seed = self._generate_seed(vm_dir, name)
            firmware = self._prepare_firmware(vm_dir) if spec.secure_boot else None
            xml = self.render_domain_xml(spec, name, disk, seed, firmware)
            domain = self.connect().defineXML(xml)
            if domain is None:
                raise ProvisioningError(f"Failed to define libvirt domain {name}")
            domain.create()
        except (AllocatorError, OSError, subprocess.CalledProcessError, libvirt.libvirtError) as exc:
            if isinstance(exc, ProvisioningError):
                error = exc
            else:
                error = ProvisioningError(f"cannot create domain {name}: {exc}")
            self._remove_partial(name, vm_dir, domain, error)
            if error is exc:
                raise
            raise error from exc
        log("SUCCESS", f"Domain {name} started")
        return name

    def address(self, handle: str) -> Optional[str]:
        domain = self._lookup(handle)
        if domain is None:
            raise BackendError(f"domain {handle} not found")
        try:
            if not domain.isActive():
                return None
            interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0)
        except libvirt.libvirtError as exc:
            raise BackendError(f"cannot query addresses of {handle}: {exc}") from exc
        for ifname, info in (interfaces or {}).items():
            if ifname == "lo":
                continue
            for addr in info.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4 and addr.get("addr"):
                    return addr["addr"]
        return None

    def _agent_command(self, handle: str, payload: Dict[str, Any], timeout: float = 10) -> Dict[str, Any]:
        try:
            result = subprocess.run(
                ["virsh", "-c", self.uri, "qemu-agent-command", handle, json.dumps(payload)],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise BackendError(f"guest agent of {handle} did not answer within {timeout}s") from exc
        except FileNotFoundError as exc:
            raise BackendError(f"cannot start virsh: {exc}") from exc
        if result.returncode != 0:
            raise BackendError(f"guest agent command failed on {handle}: {result.stderr.strip()}")
        try:
            return json.loads(result.stdout).get("return", {})
        except ValueError as exc:
            raise BackendError(f"cannot parse guest agent reply from {handle}: {exc}") from exc

    def wait_for_guest_agent(self, handle: str, timeout: float = AGENT_TIMEOUT) -> None:
        """Poll QEMU Guest Agent until it responds to guest-ping."""
        if self._agent_ready.get(handle):
            return
        log("INFO", f"Waiting for guest agent of {handle}...")
        deadline = time.monotonic() + timeout
        while True:
            try:
                self._agent_command(handle, {"execute": "guest-ping"}, timeout=5)
            except BackendError as exc:
                if time.monotonic() >= deadline:
                    raise BackendError(f"guest agent of {handle} not ready within {int(timeout)}s: {exc}") from exc
                time.sleep(AGENT_POLL_INTERVAL)
                continue
            self._agent_ready[handle] = True
            return

    def execute(self, handle: str, command: str, timeout: float) -> CommandResult:
        self.wait_for_guest_agent(handle)
        started = self._agent_command(
            handle,
            {
                "execute": "guest-exec",
                "arguments": {"path": "/bin/bash", "arg": ["-c", command], "capture-output": True},
            },
        )
        pid = started.get("pid")
        if pid is None:
            raise BackendError(f"guest agent of {handle} returned no pid")

        deadline = time.monotonic() + timeout
        status_payload = {"execute": "guest-exec-status", "arguments": {"pid": pid}}
        while True:
            ret = self._agent_command(handle, status_payload)
            if ret.get("exited"):
                stdout = base64.b64decode(ret.get("out-data", "")).decode("utf-8", errors="replace")
                stderr = base64.b64decode(ret.get("err-data", "")).decode("utf-8", errors="replace")
                return CommandResult(int(ret.get("exitcode", -1)), stdout, stderr)
            if time.monotonic() >= deadline:
                raise CommandTimeoutError(f"command in {handle} did not finish within {timeout:g}s")
            time.sleep(EXEC_POLL_INTERVAL)

    def destroy(self, handle: str) -> None:
        domain = self._lookup(handle)
        if domain is not None:
            try:
                if domain.isActive():
                    log("INFO", f"Shutting down domain {handle}")
                    domain.destroy()
                domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
            except libvirt.libvirtError as exc:
                if exc.get_error_code() != libvirt.VIR_ERR_NO_DOMAIN:
                    raise BackendError(f"cannot destroy domain {handle}: {exc}") from exc
        else:
            log("DEBUG", f"domain {handle} already gone")
        self._agent_ready.pop(handle, None)
        vm_dir = self.vms_dir / handle
        if vm_dir.exists():
            shutil.rmtree(vm_dir, ignore_errors=True)

    def _domain_tag(self, domain) -> Optional[str]:
        try:
            raw = domain.metadata(libvirt.VIR_DOMAIN_METADATA_ELEMENT, LIBVIRT_METADATA_NS, 0)
        except libvirt.libvirtError:
            return None
        try:
            return fromstring(raw).get("tag")
        except ParseError:
            return None

    def list(self, tag: str) -> List[str]:
        try:
            domains = self.connect().listAllDomains(0)
        except libvirt.libvirtError as exc:
            raise BackendError(f"cannot list domains: {exc}") from exc
        return [domain.name() for domain in domains if self._domain_tag(domain) == tag]
