"""High-level VM operations shared by the CLI subcommands."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemulab import images, template
from qemulab.exceptions import FileSystemError, ManagerError, VMExistsError
from qemulab.models import Config, ResolvedVM, RunningStateMode
from qemulab.runtime import VMRuntime
from qemulab.selection import VMSelector
from qemulab.specs import SpecStore, spec_file
from qemulab.utils import ensure_directory, log, run, validate_disk_size

T = TypeVar("T")


def for_each_vm(vms: Iterable[ResolvedVM], action: Callable[[ResolvedVM], T], what: str) -> List[T]:
    """Run ``action`` on every VM, even when an earlier one fails.

    Failures are logged as they happen and reported together at the end.
    """
    results: List[T] = []
    failed: List[str] = []
    for vm in vms:
        try:
            results.append(action(vm))
        except ManagerError as exc:
            log("ERROR", f"{what} {vm.name}: {exc}")
            failed.append(vm.name)
    if failed:
        raise ManagerError(f"{what} failed for: {', '.join(failed)}")
    return results


def create_vm(config: Config, name: str, image: Optional[str] = None, exists: Optional[str] = None) -> List[ResolvedVM]:
    """Create the VM directory, its spec file and (with ``image``) its disks.

    ``name`` may be a fan-out pattern; every instance gets its own directory
    and disk. ``exists`` is one of ``fail``, ``ignore`` or ``replace`` and
    defaults to ``commands.create.exists``. Returns the created VMs, empty
    when an existing VM was left alone.
    """
    exists = exists or config.commands.create_exists
    vm_dir = config.vms_dir / name
    path = spec_file(config.vms_dir, name)
    if vm_dir.exists():
        if exists == "ignore":
            log("INFO", f"VM {name} already exists; skipping")
            return []
        if exists == "replace":
            log("INFO", f"Replacing VM {name}")
            shutil.rmtree(vm_dir)
        else:
            raise VMExistsError(f"VM '{name}' already exists at {vm_dir}")

    base_image = None
    if image:
        base_image = images.find(config.images.search_dirs(), image)

    try:
        ensure_directory(vm_dir)
        data = {"image": image} if image else {}
        path.write_text(yaml.safe_dump(data, sort_keys=True, default_flow_style=False), encoding="utf-8")
    except OSError as exc:
        raise FileSystemError(f"Cannot create VM {name}: {exc}")

    selector = VMSelector(config, SpecStore(config)).name(name).with_pid(RunningStateMode.WITHOUT).error_on_empty()
    vms = selector.resolve()
    for vm in vms:
        try:
            ensure_directory(vm.vm_dir)
        except OSError as exc:
            raise FileSystemError(f"Cannot create VM {vm.name}: {exc}")
        if base_image is not None:
            _create_disk(vm, base_image)
    log("SUCCESS", f"Created VM {name}")
    return vms


def _create_disk(vm: ResolvedVM, base_image: Path) -> None:
    disk = vm.disk_path()
    log("INFO", f"Creating disk {disk} from {base_image}")
    run(["qemu-img", "convert", "-O", "qcow2", str(base_image), str(disk)])
    disk_size = vm.spec.get("disk_size")
    if disk_size:
        run(["qemu-img", "resize", str(disk), validate_disk_size(str(disk_size))])


def start_vms(
    config: Config,
    vms: Sequence[ResolvedVM],
    cloud_init: bool = False,
    drives: Sequence[str] = (),
    wait_ssh: bool = False,
) -> None:
    for_each_vm(vms, lambda vm: VMRuntime(vm).start(cloud_init, drives), "start")
    if not wait_ssh:
        return
    settings = config.commands.wait_ssh
    options = [f"ConnectionAttempts={settings.attempts}", f"ConnectTimeout={settings.timeout}"]
    for vm in vms:
        VMRuntime(vm).wait_for_ssh(settings.repeat, settings.sleep, options)


def list_names(vms: Iterable[ResolvedVM], fold: bool = False) -> List[str]:
    return sorted({vm.folded_name if fold else vm.name for vm in vms})


def store_disks(config: Config, vms: Sequence[ResolvedVM], image_template: Optional[str], force: bool) -> List[Path]:
    def _store(vm: ResolvedVM) -> Path:
        name = template.render(vm.context(), image_template, "image store") if image_template else vm.hyphenized()
        return VMRuntime(vm).store_disk(config.images.directory / name, force)

    return for_each_vm(vms, _store, "store")
