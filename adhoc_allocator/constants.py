"""Global constants and path configuration for spread-adhoc-allocator."""

from __future__ import annotations

import os
import re
from pathlib import Path

PROGRAM_NAME = "spread-adhoc-allocator"

SPREAD_CONF_NAME = "spread.yaml"
DEFAULT_BACKEND = "lxd"
SUPPORTED_BACKENDS = ("lxd", "libvirt")

_XDG_CONFIG_HOME = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
_XDG_STATE_HOME = Path(os.environ.get("XDG_STATE_HOME") or Path.home() / ".local" / "state")
USER_CONFIG_PATH = _XDG_CONFIG_HOME / PROGRAM_NAME / "config.yaml"
DEFAULT_STATE_DIR = _XDG_STATE_HOME / PROGRAM_NAME
DEFAULT_IMAGES_DIR = DEFAULT_STATE_DIR / "images"

DEFAULT_TAG = "spread-adhoc"
LXD_PROJECT_NAME = "spread-adhoc"
LXD_TAG_KEY = "user.spread-adhoc.tag"
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
LIBVIRT_METADATA_NS = "urn:spread-adhoc-allocator:metadata:1"
LIBVIRT_METADATA_PREFIX = "adhoc"

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Resource defaults and sanity bounds for catalog shapes
MiB = 1024**2
GiB = 1024**3
TiB = 1024**4
DEFAULT_MEMORY = 2 * GiB
DEFAULT_CPU = 2
DEFAULT_ROOT_SIZE = 10 * GiB
MEMORY_BOUNDS = (64 * MiB, 4 * TiB)
CPU_BOUNDS = (1, 512)
ROOT_SIZE_BOUNDS = (1 * GiB, 64 * TiB)

SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgtp]?)(i?)(b?)\s*$", re.IGNORECASE)
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")
ADDRESS_RE = re.compile(r"^(?P<host>[^\s:]+):(?P<port>\d{1,5})$")

# Readiness and locking defaults (seconds unless noted)
DEFAULT_ADDRESS_TIMEOUT = 180
DEFAULT_ADDRESS_INTERVAL = 1
ADDRESS_ERROR_LIMIT = 10
DEFAULT_SERVICE_PORT = 22
DEFAULT_SERVICE_ATTEMPTS = 60
DEFAULT_SERVICE_INTERVAL = 2
DEFAULT_SERVICE_CONNECT_TIMEOUT = 3
DEFAULT_STEP_TIMEOUT = 900
DEFAULT_LOCK_TIMEOUT = 60
DEFAULT_PENDING_GRACE = 3600
LOCK_POLL_SECONDS = 0.05

REGISTRY_FILE_NAME = "registry.json"
REGISTRY_LOCK_NAME = "registry.lock"
REGISTRY_VERSION = 1

SECURE_BOOT_FIRMWARE = {
    "loader": Path("/usr/share/OVMF/OVMF_CODE_4M.ms.fd"),
    "vars_template": Path("/usr/share/OVMF/OVMF_VARS_4M.ms.fd"),
}
