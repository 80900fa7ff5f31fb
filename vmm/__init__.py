"""Firecracker microVM manager package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "images",
    "manager",
    "models",
    "mounts",
    "network",
    "storage",
    "store",
    "supervisor",
    "tools",
    "utils",
]
