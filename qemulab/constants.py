"""Global constants and path configuration for qemulab."""

from __future__ import annotations

import os
import re
from pathlib import Path

PACKAGE_DATA_DIR = Path(__file__).resolve().parent / "data"
EMBEDDED_CONFIG = PACKAGE_DATA_DIR / "config.yaml"
EMBEDDED_IMAGES = PACKAGE_DATA_DIR / "images.yaml"
EMBEDDED_IMAGES_HEADER = PACKAGE_DATA_DIR / "images-header"
SYSTEM_CONFIG_DIR = Path("/etc/qemulab")

CONFIG_FILE_NAME = "config.yaml"
IMAGES_FILE_NAME = "images.yaml"
VM_SPEC_FILE_NAME = "vm.yaml"
URL_RESOLVERS_DIR_NAME = "get-url-progs"

PID_FILE_NAME = "qemu.pid"
MONITOR_SOCKET_NAME = "monitor.sock"
SEED_ISO_NAME = "seed.iso"

TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
SECONDS_PER_DAY = 60 * 60 * 24

ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
    "ppc64le": "ppc64",
    "ppc64el": "ppc64",
    "powerpc64": "ppc64",
    "riscv": "riscv64",
}

QEMU_MACHINES = {
    "x86_64": "q35",
    "aarch64": "virt",
    "ppc64": "pseries",
    "s390x": "s390-ccw-virtio",
    "riscv64": "virt",
}

# Fields of a catalog entry that take part in an upgrade merge, in the
# persisted (kebab-case) spelling used by keep-<field> / update-<field>.
CATALOG_FIELDS = (
    "url",
    "get-url-prog",
    "description",
    "change",
    "update-after-days",
    "arch-mapping",
)

CREATE_EXISTS_ACTIONS = {"fail", "ignore", "replace"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")

_SENSITIVE_FIELDS = {"password"}


def config_dir() -> Path:
    explicit = os.environ.get("QEMULAB_CONFIG_DIR")
    if explicit:
        return Path(explicit).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "qemulab"


def data_dir() -> Path:
    explicit = os.environ.get("QEMULAB_DATA_DIR")
    if explicit:
        return Path(explicit).expanduser()
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".local" / "share"
    return base / "qemulab"
