"""CLI entry points for qemulab."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemulab import images, manager, template
from qemulab.config import install_all, install_main_config, load_config
from qemulab.constants import _SENSITIVE_FIELDS, CONFIG_FILE_NAME, EMBEDDED_IMAGES, config_dir
from qemulab.exceptions import ManagerError, SSHFailed
from qemulab.models import Config, ResolvedVM, RunningStateMode
from qemulab.runtime import VMRuntime
from qemulab.selection import VMSelector
from qemulab.utils import confirm, log, run


def parse_user_at_name(user_at_name: str) -> Tuple[Optional[str], str]:
    if "@" in user_at_name:
        user, name = user_at_name.split("@", 1)
        return user, name
    return None, user_at_name


def args_without_host(argv: List[str]) -> List[str]:
    """Drop the first ``--host``/``-H`` option (and its value) from ``argv``."""
    args: List[str] = []
    found = False
    skip = False
    for arg in argv:
        if skip:
            skip = False
            continue
        if not found and arg in ("--host", "-H"):
            found = True
            skip = True
            continue
        if not found and arg.startswith("--host="):
            found = True
            continue
        args.append(arg)
    return args


def apply_selection_flags(selector: VMSelector, args: argparse.Namespace) -> None:
    name = getattr(args, "NAME", None)
    if name:
        _user, name = parse_user_at_name(name)
        selector.name(name)
    if getattr(args, "names", None):
        selector.names(args.names)
    if getattr(args, "parents", None):
        selector.parents(args.parents)
    if getattr(args, "tags", None):
        selector.tags(args.tags)
    if getattr(args, "running", False):
        selector.with_pid(RunningStateMode.FILTER)


def _user_from_args(args: argparse.Namespace) -> Optional[str]:
    user = getattr(args, "user", None)
    if user:
        return user
    if getattr(args, "NAME", None):
        return parse_user_at_name(args.NAME)[0]
    return None


def _running_or_error(selector: VMSelector) -> None:
    selector.with_pid(RunningStateMode.FILTER if selector.is_all() else RunningStateMode.ERROR)
    selector.error_on_empty()


def _mask(value, key: str = ""):
    if key in _SENSITIVE_FIELDS and value is not None:
        return "********"
    if isinstance(value, dict):
        return {k: _mask(v, k) for k, v in value.items()}
    return value


def show_vm(vm: ResolvedVM) -> None:
    """Print the resolved VM definition."""
    data = {
        "name": vm.name,
        "folded_name": vm.folded_name,
        "vm_dir": str(vm.vm_dir),
        "pid": vm.pid,
        "lineage": vm.lineage,
        "spec": _mask(vm.spec),
    }
    print(yaml.safe_dump(data, sort_keys=False, default_flow_style=False).rstrip())
    print("---")


# -- image subcommands ---------------------------------------------------


def cmd_image_list(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    for name in images.list_images(config.images.search_dirs()):
        print(name)
    return 0


def cmd_image_available(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    catalog = images.available(config.images, config.images_file)
    if not len(catalog):
        log("WARN", "No images in catalog")
        return 0
    width = max(len(name) for name in catalog.names())
    for image in catalog:
        marks = "*" if image.exists() else " "
        if image.outdated():
            marks += "!"
        print(f"{marks:<2} {image.name:<{width}}  {image.description or ''}".rstrip())
    return 0


def cmd_image_outdated(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    for image in images.available(config.images, config.images_file).exists().outdated():
        print(image.name)
    return 0


def cmd_image_pull(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    catalog = images.available(config.images, config.images_file)
    if args.outdated:
        images.pull_outdated(catalog)
        return 0
    if not args.IMAGES:
        raise ManagerError("Name at least one image to pull, or use --outdated")
    failed = []
    for name in args.IMAGES:
        try:
            catalog.get_result(name).pull()
        except ManagerError as exc:
            log("ERROR", f"pull {name}: {exc}")
            failed.append(name)
    if failed:
        raise ManagerError(f"pull failed for: {', '.join(failed)}")
    return 0


def cmd_image_update(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    images.synchronize(EMBEDDED_IMAGES.read_bytes(), config.images_file)
    return 0


def cmd_image_remove(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    for name in args.IMAGES:
        images.remove(config.images.directory, name)
    return 0


def cmd_image_store(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    apply_selection_flags(selector, args)
    selector.with_pid(RunningStateMode.WITHOUT)
    selector.error_on_empty()
    manager.store_disks(config, selector.resolve(), args.image, args.force)
    return 0


# -- VM subcommands ------------------------------------------------------


def _create_names(args: argparse.Namespace) -> List[str]:
    if args.names:
        return list(args.names)
    if args.NAME:
        return [parse_user_at_name(args.NAME)[1]]
    return []


def cmd_create(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    exists = None
    if args.exists_fail:
        exists = "fail"
    elif args.exists_ignore:
        exists = "ignore"
    elif args.exists_replace:
        exists = "replace"
    for name in _create_names(args):
        manager.create_vm(config, name, args.image, exists)
    return 0


def cmd_start(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    apply_selection_flags(selector, args)
    cloud_init = (config.commands.start_cloud_init and not args.no_cloud_init) or args.cloud_init
    selector.with_pid(RunningStateMode.WITHOUT)
    selector.error_on_empty()
    vms = selector.resolve()
    manager.start_vms(config, vms, cloud_init=cloud_init, drives=args.drives or [], wait_ssh=args.wait_ssh)
    return 0


def cmd_run(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    cmd_create(config, args, selector)
    return cmd_start(config, args, selector)


def cmd_stop(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    apply_selection_flags(selector, args)
    selector.with_pid(RunningStateMode.FILTER)
    selector.error_on_empty()
    manager.for_each_vm(selector.resolve(), lambda vm: VMRuntime(vm).stop(args.force), "stop")
    return 0


def cmd_ssh(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    apply_selection_flags(selector, args)
    user = _user_from_args(args)
    flags = []
    if args.A:
        flags.append("-A")
    if args.Y:
        flags.append("-Y")
    _running_or_error(selector)
    for vm in selector.resolve():
        status = VMRuntime(vm).ssh(user, args.ssh_options or [], flags, args.cmd or None)
        if status != 0 and args.check:
            raise SSHFailed(vm.name)
    return 0


def _rsync_options(args: argparse.Namespace) -> List[str]:
    options = list(args.rsync_options or [])
    if args.archive:
        options.append("--archive")
    if args.verbose:
        options.append("--verbose")
    if args.P:
        options.append("-P")
    return options


def cmd_rsync_to(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    apply_selection_flags(selector, args)
    user = _user_from_args(args)
    destination = None if args.list else (args.destination or "~")
    _running_or_error(selector)
    vms = selector.resolve()
    if args.template:
        for vm in vms:
            source = template.render(vm.context(), args.template, "rsync-to template")
            VMRuntime(vm).rsync_to(user, _rsync_options(args), [source], destination)
    else:
        for vm in vms:
            VMRuntime(vm).rsync_to(user, _rsync_options(args), args.sources, destination)
    return 0


def cmd_rsync_from(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    apply_selection_flags(selector, args)
    user = _user_from_args(args)
    destination = None if args.list else (args.destination or os.getcwd())
    _running_or_error(selector)
    for vm in selector.resolve():
        VMRuntime(vm).rsync_from(user, _rsync_options(args), args.sources, destination)
    return 0


def cmd_show(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    if args.all:
        selector.all()
    apply_selection_flags(selector, args)
    selector.with_pid(RunningStateMode.FILTER if args.running else RunningStateMode.OPTION)
    selector.error_on_empty()
    for vm in selector.resolve():
        show_vm(vm)
    return 0


def cmd_list(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    selector.all()
    if not args.all and not config.commands.list_all:
        selector.with_pid(RunningStateMode.FILTER)
    apply_selection_flags(selector, args)
    if config.commands.list_fold:
        fold = args.fold or not args.unfold
    else:
        fold = args.fold and not args.unfold
    for name in manager.list_names(selector.resolve(), fold=fold):
        print(name)
    return 0


def cmd_monitor(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    apply_selection_flags(selector, args)
    _running_or_error(selector)
    for vm in selector.resolve():
        runtime = VMRuntime(vm)
        if args.command:
            reply = runtime.monitor_command(args.command)
            if reply:
                print(reply)
        else:
            runtime.monitor()
    return 0


def cmd_rm(config: Config, args: argparse.Namespace, selector: VMSelector) -> int:
    apply_selection_flags(selector, args)
    selector.with_pid(RunningStateMode.OPTION if args.force else RunningStateMode.WITHOUT)
    vms = selector.resolve()
    if not vms:
        log("INFO", "No VMs to remove")
        return 0
    for name in manager.list_names(vms):
        print(name)
    if not args.yes and not confirm("Do you really want to remove that vms?"):
        return 0

    def _remove(vm: ResolvedVM) -> None:
        runtime = VMRuntime(vm)
        if args.force and vm.has_pid():
            runtime.stop(force=True)
        runtime.remove()

    manager.for_each_vm(vms, _remove, "remove")
    return 0


# -- parser --------------------------------------------------------------


def _add_selection(parser: argparse.ArgumentParser, name: bool = True) -> None:
    if name:
        parser.add_argument("NAME", nargs="?", help="VM name ([user@]name for ssh/rsync)")
    parser.add_argument("-n", "--names", nargs="+", metavar="NAME", help="VM names")
    parser.add_argument("-p", "--parents", nargs="+", metavar="PARENT", help="Select VMs descending from PARENT")
    parser.add_argument("-t", "--tags", nargs="+", metavar="TAG", help="Select VMs carrying TAG")
    parser.add_argument("--running", action="store_true", help="Only running VMs")


def _add_rsync(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-u", "--user", help="Remote user")
    parser.add_argument("-a", "--archive", action="store_true", help="rsync --archive")
    parser.add_argument("-v", "--verbose", action="store_true", help="rsync --verbose")
    parser.add_argument("-P", action="store_true", help="rsync -P")
    parser.add_argument("--rsync-options", nargs="+", metavar="OPTION", help="Extra rsync options")
    parser.add_argument("--list", action="store_true", help="List files instead of copying")
    parser.add_argument("-d", "--destination", help="Destination path")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qemulab", description="QEMU virtual machine lab manager")
    parser.add_argument("-H", "--host", help="Run the command on HOST over ssh")
    parser.add_argument("--all-vms", action="store_true", help="Select all VMs")
    parser.add_argument("--vm-config", metavar="FILE", help="YAML spec applied on top of every selected VM")
    parser.add_argument("--minimal-vm-config", action="store_true", help="Do not start from the config defaults")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    image = sub.add_parser("image", help="Manage base images")
    image_sub = image.add_subparsers(dest="image_command", metavar="IMAGE_COMMAND")
    image_sub.required = True
    image_sub.add_parser("list", help="List local images").set_defaults(handler=cmd_image_list)
    image_sub.add_parser("available", help="List catalog images").set_defaults(handler=cmd_image_available)
    image_sub.add_parser("outdated", help="List outdated local images").set_defaults(handler=cmd_image_outdated)
    pull = image_sub.add_parser("pull", help="Download catalog images")
    pull.add_argument("IMAGES", nargs="*")
    pull.add_argument("--outdated", action="store_true", help="Re-download every outdated image")
    pull.set_defaults(handler=cmd_image_pull)
    image_sub.add_parser("update", help="Merge the upstream catalog into the local one").set_defaults(
        handler=cmd_image_update
    )
    remove = image_sub.add_parser("remove", help="Delete local images")
    remove.add_argument("IMAGES", nargs="+")
    remove.set_defaults(handler=cmd_image_remove)
    store = image_sub.add_parser("store", help="Store VM disks as images")
    _add_selection(store)
    store.add_argument("-i", "--image", help="Image name template (default: hyphenized VM name)")
    store.add_argument("-f", "--force", action="store_true", help="Overwrite an existing image")
    store.set_defaults(handler=cmd_image_store)

    def _add_create(p: argparse.ArgumentParser) -> None:
        p.add_argument("-i", "--image", help="Base image")
        exists = p.add_mutually_exclusive_group()
        exists.add_argument("--exists-fail", action="store_true")
        exists.add_argument("--exists-ignore", action="store_true")
        exists.add_argument("--exists-replace", action="store_true")

    def _add_start(p: argparse.ArgumentParser) -> None:
        p.add_argument("--wait-ssh", action="store_true", help="Wait until ssh answers")
        cloud = p.add_mutually_exclusive_group()
        cloud.add_argument("--cloud-init", action="store_true")
        cloud.add_argument("--no-cloud-init", action="store_true")
        p.add_argument("--drives", nargs="+", metavar="DRIVE", help="Extra drive files")

    create = sub.add_parser("create", help="Create VMs")
    _add_selection(create)
    _add_create(create)
    create.set_defaults(handler=cmd_create)

    start = sub.add_parser("start", help="Start VMs")
    _add_selection(start)
    _add_start(start)
    start.set_defaults(handler=cmd_start)

    run_parser = sub.add_parser("run", help="Create and start VMs")
    _add_selection(run_parser)
    _add_create(run_parser)
    _add_start(run_parser)
    run_parser.set_defaults(handler=cmd_run)

    stop = sub.add_parser("stop", help="Stop running VMs")
    _add_selection(stop)
    stop.add_argument("-f", "--force", action="store_true", help="Kill instead of powering down")
    stop.set_defaults(handler=cmd_stop)

    ssh = sub.add_parser("ssh", help="ssh into VMs")
    _add_selection(ssh)
    ssh.add_argument("-u", "--user", help="Remote user")
    ssh.add_argument("-o", "--ssh-options", nargs="+", metavar="OPTION", help="Extra ssh -o options")
    ssh.add_argument("-A", action="store_true", help="Forward the agent")
    ssh.add_argument("-Y", action="store_true", help="Trusted X11 forwarding")
    ssh.add_argument("--check", action="store_true", help="Fail when ssh exits non-zero")
    ssh.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run")
    ssh.set_defaults(handler=cmd_ssh)

    rsync_to = sub.add_parser("rsync-to", help="Copy files to VMs")
    _add_selection(rsync_to)
    _add_rsync(rsync_to)
    sources = rsync_to.add_mutually_exclusive_group(required=True)
    sources.add_argument("-s", "--sources", nargs="+", metavar="SOURCE")
    sources.add_argument("-T", "--template", help="Source path template rendered per VM")
    rsync_to.set_defaults(handler=cmd_rsync_to)

    rsync_from = sub.add_parser("rsync-from", help="Copy files from VMs")
    _add_selection(rsync_from)
    _add_rsync(rsync_from)
    rsync_from.add_argument("-s", "--sources", nargs="+", metavar="SOURCE", required=True)
    rsync_from.set_defaults(handler=cmd_rsync_from)

    show = sub.add_parser("show", help="Show resolved VM definitions")
    _add_selection(show)
    show.add_argument("-a", "--all", action="store_true", help="Show all VMs")
    show.set_defaults(handler=cmd_show)

    list_parser = sub.add_parser("list", help="List VM names")
    _add_selection(list_parser, name=False)
    list_parser.add_argument("-a", "--all", action="store_true", help="Include VMs that are not running")
    fold = list_parser.add_mutually_exclusive_group()
    fold.add_argument("--fold", action="store_true", help="Print name patterns instead of expansions")
    fold.add_argument("--unfold", action="store_true", help="Print every expanded name")
    list_parser.set_defaults(handler=cmd_list)

    monitor = sub.add_parser("monitor", help="Talk to the QEMU monitor")
    _add_selection(monitor)
    monitor.add_argument("-c", "--command", help="Monitor command to send")
    monitor.set_defaults(handler=cmd_monitor)

    rm = sub.add_parser("rm", help="Remove VMs")
    _add_selection(rm)
    rm.add_argument("-f", "--force", action="store_true", help="Kill running VMs first")
    rm.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    rm.set_defaults(handler=cmd_rm)

    return parser


def run_on_host(host: str, argv: List[str], tty: bool) -> int:
    cmd = ["ssh"]
    if tty:
        cmd.append("-t")
    cmd += [host, "qemulab", *args_without_host(argv)]
    return run(cmd, check=False).returncode


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.host:
        try:
            return run_on_host(args.host, argv, tty=args.command == "ssh")
        except ManagerError as exc:
            log("ERROR", str(exc))
            return 1

    try:
        install_main_config()
        config = load_config(config_dir() / CONFIG_FILE_NAME)
        install_all(config)
        selector = VMSelector(config)
        if args.all_vms:
            selector.all()
        if args.vm_config:
            try:
                selector.vm_config(Path(args.vm_config).read_text(encoding="utf-8"))
            except OSError as exc:
                raise ManagerError(f"Cannot read VM config override {args.vm_config}: {exc}")
        if args.minimal_vm_config:
            selector.minimal_vm_config()
        return args.handler(config, args, selector)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug. Please report it.")
        import traceback

        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
