"""container-host package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "extract",
    "ignition",
    "image",
    "keys",
    "launcher",
    "models",
    "progress",
    "qemu",
    "utils",
]
