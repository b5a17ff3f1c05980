"""Virtualization providers for spread-adhoc-allocator."""

from __future__ import annotations

from adhoc_allocator.backends.base import Backend
from adhoc_allocator.config import Settings
from adhoc_allocator.exceptions import ConfigError


def get_backend(settings: Settings) -> Backend:
    """Instantiate the provider selected by settings.backend."""
    if settings.backend == "lxd":
        from adhoc_allocator.backends.lxd import LxdBackend

        return LxdBackend(project=settings.lxd_project)
    if settings.backend == "libvirt":
        from adhoc_allocator.backends.libvirt import LibvirtBackend

        return LibvirtBackend(uri=settings.libvirt_uri, images_dir=settings.images_dir)
    raise ConfigError(f"Unsupported backend '{settings.backend}'")


__all__ = ["Backend", "get_backend"]
