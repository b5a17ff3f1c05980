"""Catalog loading and environment variable parsing for spread-adhoc-allocator."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from adhoc_allocator.constants import (
    CPU_BOUNDS,
    DEFAULT_ADDRESS_INTERVAL,
    DEFAULT_ADDRESS_TIMEOUT,
    DEFAULT_BACKEND,
    DEFAULT_CPU,
    DEFAULT_IMAGES_DIR,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_MEMORY,
    DEFAULT_PENDING_GRACE,
    DEFAULT_ROOT_SIZE,
    DEFAULT_SERVICE_ATTEMPTS,
    DEFAULT_SERVICE_INTERVAL,
    DEFAULT_SERVICE_PORT,
    DEFAULT_SERVICE_CONNECT_TIMEOUT,
    DEFAULT_STATE_DIR,
    DEFAULT_STEP_TIMEOUT,
    DEFAULT_TAG,
    LIBVIRT_URI,
    LXD_PROJECT_NAME,
    MEMORY_BOUNDS,
    ROOT_SIZE_BOUNDS,
    SPREAD_CONF_NAME,
    SUPPORTED_BACKENDS,
    USER_CONFIG_PATH,
)
from adhoc_allocator.exceptions import ConfigError, SystemNotFoundError
from adhoc_allocator.models import ResourceShape, SetupStepSequence, SystemDefinition
from adhoc_allocator.utils import format_size, get_env, log, parse_float_env, parse_int_env, parse_size_to_bytes


def catalog_file_name(backend: str) -> str:
    return f"spread-{backend}.yaml"


def locate_catalog(name: str, start: Optional[Path] = None) -> Path:
    """Find the catalog file which is expected to sit next to spread.yaml.

    Walks up from start (the current directory by default) to the first
    directory holding spread.yaml.
    """
    override = get_env("ADHOC_CONFIG")
    if override:
        path = Path(override)
        if not path.exists():
            raise ConfigError(f"catalog file {path} (from ADHOC_CONFIG) does not exist")
        return path

    curdir = (start or Path.cwd()).resolve()
    for directory in (curdir, *curdir.parents):
        log("DEBUG", f"checking {directory}")
        spread_conf = directory / SPREAD_CONF_NAME
        if spread_conf.exists():
            log("DEBUG", f"found spread config {spread_conf}")
            catalog = directory / name
            if not catalog.exists():
                raise ConfigError(f"backend config file {name} not found next to {spread_conf}")
            return catalog
    raise ConfigError(f"cannot find {SPREAD_CONF_NAME} in {curdir} or any parent directory")


class Catalog:
    """Read-only view of the configured systems and setup step sequences."""

    def __init__(self, systems: Dict[str, SystemDefinition], setup: Dict[str, SetupStepSequence]) -> None:
        self._systems = dict(systems)
        self._setup = dict(setup)

    @property
    def systems(self) -> Tuple[SystemDefinition, ...]:
        return tuple(self._systems[name] for name in sorted(self._systems))

    def lookup(self, name: str) -> SystemDefinition:
        try:
            return self._systems[name]
        except KeyError:
            raise SystemNotFoundError(f'system "{name}" not found in configuration') from None

    def steps_for(self, system: SystemDefinition) -> Tuple[str, ...]:
        if system.setup_steps is None:
            log("WARN", f"no setup steps declared for system {system.name}")
            return ()
        return self._setup[system.setup_steps].steps


def _check_bounds(system: str, label: str, value: int, bounds: Tuple[int, int], fmt=str) -> None:
    low, high = bounds
    if not low <= value <= high:
        raise ConfigError(
            f"system \"{system}\": resources.{label} {fmt(value)} is out of range ({fmt(low)}..{fmt(high)})"
        )


def _parse_resources(system: str, raw: Any) -> ResourceShape:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f'system "{system}": resources must be a mapping')
    unknown = set(raw) - {"mem", "cpu", "size"}
    if unknown:
        raise ConfigError(f'system "{system}": unknown resource keys: {", ".join(sorted(unknown))}')
    try:
        memory = parse_size_to_bytes(raw.get("mem", DEFAULT_MEMORY))
        size = parse_size_to_bytes(raw.get("size", DEFAULT_ROOT_SIZE))
    except ValueError as exc:
        raise ConfigError(f'system "{system}": {exc}') from exc
    cpu = raw.get("cpu", DEFAULT_CPU)
    if isinstance(cpu, bool) or not isinstance(cpu, int):
        raise ConfigError(f'system "{system}": resources.cpu must be an integer (got {cpu!r})')
    _check_bounds(system, "mem", memory, MEMORY_BOUNDS, format_size)
    _check_bounds(system, "cpu", cpu, CPU_BOUNDS)
    _check_bounds(system, "size", size, ROOT_SIZE_BOUNDS, format_size)
    return ResourceShape(memory=memory, cpu=cpu, size=size)


def _parse_bool(system: str, key: str, raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    if not isinstance(raw, bool):
        raise ConfigError(f'system "{system}": {key} must be true or false (got {raw!r})')
    return raw


def parse_catalog(data: Any) -> Catalog:
    """Validate a loaded catalog document and build a Catalog."""
    if not isinstance(data, Mapping):
        raise ConfigError("catalog must be a mapping with 'system' and 'setup' sections")

    raw_setup = data.get("setup") or {}
    if not isinstance(raw_setup, Mapping):
        raise ConfigError("'setup' must map sequence names to lists of commands")
    setup: Dict[str, SetupStepSequence] = {}
    for name, steps in raw_setup.items():
        if not isinstance(steps, list):
            raise ConfigError(f'setup steps "{name}" must be a list of commands')
        for idx, step in enumerate(steps, start=1):
            if not isinstance(step, str) or not step.strip():
                raise ConfigError(f'setup steps "{name}": step #{idx} must be a non-empty string')
        setup[str(name)] = SetupStepSequence(name=str(name), steps=tuple(steps))

    raw_systems = data.get("system")
    if not isinstance(raw_systems, Mapping) or not raw_systems:
        raise ConfigError("catalog defines no systems (missing 'system' section)")

    systems: Dict[str, SystemDefinition] = {}
    for name, raw in raw_systems.items():
        name = str(name)
        if not isinstance(raw, Mapping):
            raise ConfigError(f'system "{name}" must be a mapping')
        image = raw.get("image")
        if not isinstance(image, str) or not image.strip():
            raise ConfigError(f'system "{name}": image is required')
        setup_ref = raw.get("setup-steps")
        if setup_ref is not None:
            setup_ref = str(setup_ref)
            if setup_ref not in setup:
                raise ConfigError(f'system "{name}": setup steps "{setup_ref}" not found in configuration')
        vm = _parse_bool(name, "vm", raw.get("vm"), True)
        secure_boot = _parse_bool(name, "secure-boot", raw.get("secure-boot"), False)
        if secure_boot and not vm:
            log("WARN", f'system "{name}": secure-boot only applies to virtual machines; ignored')
            secure_boot = False
        systems[name] = SystemDefinition(
            name=name,
            image=image.strip(),
            vm=vm,
            resources=_parse_resources(name, raw.get("resources")),
            secure_boot=secure_boot,
            setup_steps=setup_ref,
        )
    return Catalog(systems, setup)


def load_catalog(path: Path) -> Catalog:
    if not path.exists():
        raise ConfigError(f"catalog file missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot load configuration {path}: {exc}") from exc
    catalog = parse_catalog(data)
    log("DEBUG", f"loaded {len(catalog.systems)} systems from {path}")
    return catalog


@dataclass
class Settings:
    backend: str = DEFAULT_BACKEND
    tag: str = DEFAULT_TAG
    state_dir: Path = DEFAULT_STATE_DIR
    images_dir: Path = DEFAULT_IMAGES_DIR
    address_timeout: int = DEFAULT_ADDRESS_TIMEOUT
    address_interval: float = DEFAULT_ADDRESS_INTERVAL
    service_port: int = DEFAULT_SERVICE_PORT
    service_attempts: int = DEFAULT_SERVICE_ATTEMPTS
    service_interval: float = DEFAULT_SERVICE_INTERVAL
    service_connect_timeout: float = DEFAULT_SERVICE_CONNECT_TIMEOUT
    step_timeout: int = DEFAULT_STEP_TIMEOUT
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    pending_grace: int = DEFAULT_PENDING_GRACE
    lxd_project: str = LXD_PROJECT_NAME
    libvirt_uri: str = LIBVIRT_URI


def load_user_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Return the settings mapping from the optional user configuration file."""
    if path is None:
        path = USER_CONFIG_PATH
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot load user configuration {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"user configuration {path} must be a mapping")
    log("DEBUG", f"loaded user configuration from {path}")
    return {str(key).replace("-", "_"): value for key, value in data.items()}


def parse_env(user_config: Optional[Mapping[str, Any]] = None) -> Settings:
    """Build settings from defaults, the user configuration file and the environment."""
    if user_config is None:
        user_config = load_user_config()
    unknown = set(user_config) - set(Settings.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"unknown user configuration keys: {', '.join(sorted(unknown))}")
    defaults = Settings(**user_config)

    def _int(name: str, default: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
        return parse_int_env(name, str(default), min_val=min_val, max_val=max_val)

    def _float(name: str, default: object, min_val: float) -> float:
        return parse_float_env(name, str(default), min_val=min_val)

    backend = (get_env("ADHOC_BACKEND") or defaults.backend).strip().lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ConfigError(f"Unsupported backend '{backend}'. Supported: {', '.join(SUPPORTED_BACKENDS)}")
    state_dir = Path(get_env("ADHOC_STATE_DIR") or defaults.state_dir)

    return Settings(
        backend=backend,
        tag=(get_env("ADHOC_TAG") or defaults.tag).strip() or DEFAULT_TAG,
        state_dir=state_dir,
        images_dir=Path(get_env("ADHOC_IMAGES_DIR") or user_config.get("images_dir") or state_dir / "images"),
        address_timeout=_int("ADHOC_ADDRESS_TIMEOUT", defaults.address_timeout),
        address_interval=_float("ADHOC_ADDRESS_INTERVAL", defaults.address_interval, min_val=0.1),
        service_port=_int("ADHOC_SERVICE_PORT", defaults.service_port, max_val=65535),
        service_attempts=_int("ADHOC_SERVICE_ATTEMPTS", defaults.service_attempts),
        service_interval=_float("ADHOC_SERVICE_INTERVAL", defaults.service_interval, min_val=0.0),
        service_connect_timeout=_float("ADHOC_SERVICE_CONNECT_TIMEOUT", defaults.service_connect_timeout, min_val=0.1),
        step_timeout=_int("ADHOC_STEP_TIMEOUT", defaults.step_timeout),
        lock_timeout=_float("ADHOC_LOCK_TIMEOUT", defaults.lock_timeout, min_val=0.0),
        pending_grace=_int("ADHOC_PENDING_GRACE", defaults.pending_grace),
        lxd_project=(get_env("ADHOC_LXD_PROJECT") or defaults.lxd_project).strip(),
        libvirt_uri=get_env("LIBVIRT_URI") or defaults.libvirt_uri,
    )
