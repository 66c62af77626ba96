"""qemulab package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "images",
    "manager",
    "models",
    "runtime",
    "selection",
    "specs",
    "template",
    "utils",
]
