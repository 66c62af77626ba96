"""Data models for qemulab."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Set

from qemulab.constants import IMAGES_FILE_NAME, MONITOR_SOCKET_NAME, PID_FILE_NAME, SEED_ISO_NAME


@dataclass
class ImagesConfig:
    directory: Path
    other_directories_ro: List[Path] = field(default_factory=list)
    update_after_days: Optional[int] = None

    def search_dirs(self) -> List[Path]:
        """Primary directory first, then the read-only fallbacks."""
        return [self.directory, *self.other_directories_ro]


@dataclass
class WaitSSHConfig:
    repeat: int = 60
    sleep: float = 1
    attempts: int = 1
    timeout: int = 1


@dataclass
class CommandsConfig:
    list_fold: bool = False
    list_all: bool = False
    create_exists: str = "fail"
    start_cloud_init: bool = False
    wait_ssh: WaitSSHConfig = field(default_factory=WaitSSHConfig)


@dataclass
class Config:
    config_dir: Path
    vms_dir: Path
    images: ImagesConfig
    commands: CommandsConfig = field(default_factory=CommandsConfig)
    default: Dict[str, Any] = field(default_factory=dict)
    templates: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def images_file(self) -> Path:
        return self.config_dir / IMAGES_FILE_NAME


@dataclass
class CatalogEntry:
    """One image as persisted in the catalog file."""

    url: str
    get_url_prog: Optional[str] = None
    description: Optional[str] = None
    change: List[str] = field(default_factory=list)
    update_after_days: Optional[int] = None
    arch_mapping: Optional[Dict[str, str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogEntry":
        return cls(
            url=data["url"],
            get_url_prog=data.get("get-url-prog"),
            description=data.get("description"),
            change=list(data.get("change") or []),
            update_after_days=data.get("update-after-days"),
            arch_mapping=data.get("arch-mapping"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"url": self.url}
        if self.get_url_prog is not None:
            data["get-url-prog"] = self.get_url_prog
        if self.description is not None:
            data["description"] = self.description
        if self.change:
            data["change"] = list(self.change)
        if self.update_after_days is not None:
            data["update-after-days"] = self.update_after_days
        if self.arch_mapping is not None:
            data["arch-mapping"] = dict(self.arch_mapping)
        return data


@dataclass(frozen=True)
class Directives:
    """Known upgrade directives of a catalog entry; unknown strings are dropped."""

    delete: bool = False
    update_all: bool = False
    keep: FrozenSet[str] = frozenset()
    update: FrozenSet[str] = frozenset()

    def takes_new(self, field_name: str) -> bool:
        if field_name in self.keep:
            return False
        return self.update_all or field_name in self.update


class RunningStateMode(enum.Enum):
    """How process liveness takes part in VM resolution."""

    WITHOUT = "without"  # never probe
    FILTER = "filter"  # drop VMs without a live process
    ERROR = "error"  # fail when a selected VM has no live process
    OPTION = "option"  # probe and annotate only


@dataclass
class SelectionCriteria:
    names: Set[str] = field(default_factory=set)
    parents: Set[str] = field(default_factory=set)
    tags: Set[str] = field(default_factory=set)
    all: bool = False
    vm_config: Dict[str, Any] = field(default_factory=dict)
    minimal_vm_config: bool = False
    running_mode: RunningStateMode = RunningStateMode.WITHOUT
    error_on_empty: bool = False


@dataclass
class DeclaredSpec:
    """A VM spec as found in storage, after name-pattern fan-out."""

    name: str
    folded_name: str
    source_dir: Path
    data: Dict[str, Any]
    index: str = ""

    def vm_dir(self) -> Path:
        """Fan-out instances live in a per-index directory below the pattern's."""
        return self.source_dir / self.index if self.index else self.source_dir


@dataclass
class ResolvedVM:
    name: str
    folded_name: str
    vm_dir: Path
    spec: Dict[str, Any]
    lineage: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    context_vars: Dict[str, str] = field(default_factory=dict)
    pid: Optional[int] = None

    def has_pid(self) -> bool:
        return self.pid is not None

    def hyphenized(self) -> str:
        return self.name.replace("/", "-")

    def context(self) -> Dict[str, str]:
        return dict(self.context_vars)

    def disk_path(self) -> Path:
        disk = self.spec.get("disk") or f"{self.hyphenized()}.qcow2"
        path = Path(disk)
        return path if path.is_absolute() else self.vm_dir / path

    def pid_file(self) -> Path:
        return self.vm_dir / PID_FILE_NAME

    def monitor_socket(self) -> Path:
        return self.vm_dir / MONITOR_SOCKET_NAME

    def seed_iso(self) -> Path:
        return self.vm_dir / SEED_ISO_NAME
