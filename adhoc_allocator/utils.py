"""Utility functions for spread-adhoc-allocator."""

from __future__ import annotations

import math
import os
import socket
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from adhoc_allocator import constants
from adhoc_allocator.constants import ADDRESS_RE, SIZE_RE
from adhoc_allocator.exceptions import AllocatorError, ConfigError


def set_verbose(enabled: bool) -> None:
    constants._LOG_VERBOSE = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging; stdout is reserved for command results."""
    if level == "DEBUG" and not constants._LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", file=sys.stderr, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str, min_val: float = 0.0) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number (got '{raw}')")
    if not math.isfinite(value):
        raise ConfigError(f"{name} must be a finite number (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val:g} (got {value:g})")
    return value


def parse_size_to_bytes(raw: object) -> int:
    """Parse a size such as 4096MiB, 15GiB, 4GB, 20G or a plain byte count.

    Units with an ``i`` (KiB, MiB, ...) and bare qemu-style suffixes (K, M, G)
    are binary; ``KB``, ``MB``, ``GB`` are decimal.
    """
    if isinstance(raw, bool):
        raise ValueError(f"invalid size {raw!r}")
    if isinstance(raw, int):
        return raw
    match = SIZE_RE.match(str(raw))
    if not match:
        raise ValueError(f"invalid size {raw!r}")
    number, prefix, binary, byte_suffix = match.groups()
    exponent = "kmgtp".find(prefix.lower()) + 1 if prefix else 0
    if exponent and byte_suffix and not binary:
        base = 1000
    else:
        base = 1024
    value = float(number) * base**exponent
    if value != int(value):
        raise ValueError(f"size {raw!r} is not a whole number of bytes")
    return int(value)


def format_size(size: int) -> str:
    for unit, factor in (("TiB", 1024**4), ("GiB", 1024**3), ("MiB", 1024**2), ("KiB", 1024)):
        if size >= factor and size % factor == 0:
            return f"{size // factor}{unit}"
    return f"{size}B"


def split_address(address: str) -> Tuple[str, int]:
    """Split ``host:port`` into its parts."""
    match = ADDRESS_RE.match(address.strip())
    if not match:
        raise AllocatorError(f"invalid address '{address}', expected <addr>:<port>")
    port = int(match.group("port"))
    if not 0 < port < 65536:
        raise AllocatorError(f"invalid port in address '{address}'")
    return match.group("host"), port


def format_address(host: str, port: int) -> str:
    return f"{host}:{port}"


def tcp_reachable(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to host:port succeeds within timeout."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file atomically into destination."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": f"{constants.PROGRAM_NAME}/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise AllocatorError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise AllocatorError(f"Failed to download {url}: {exc.reason}")

    downloaded = 0
    start_time = time.time()
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            while True:
                chunk = response.read(1024 * 256)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
            tmp.flush()
            tmp_path.replace(destination)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True
