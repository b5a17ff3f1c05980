"""spread-adhoc-allocator package."""

__version__ = "0.1.0"

__all__ = [
    "backends",
    "cli",
    "config",
    "constants",
    "engine",
    "exceptions",
    "models",
    "reaper",
    "registry",
    "utils",
]
