"""Process-level operations on a resolved VM: QEMU, monitor, ssh and rsync."""

from __future__ import annotations

import os
import re
import shlex
import shutil
import signal
import socket
import tempfile
import textwrap
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemulab.constants import MAC_ADDRESS_RE, QEMU_MACHINES
from qemulab.exceptions import FileSystemError, ManagerError, NotRunningError
from qemulab.models import ResolvedVM
from qemulab.utils import deterministic_mac, ensure_directory, hash_password, kvm_available, log, pid_alive, run

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]|\x1b[@-_]")
MONITOR_PROMPT = b"(qemu) "


def find_pid(vm: ResolvedVM) -> Optional[int]:
    """PID from the VM's pidfile, if that process is still alive."""
    try:
        raw = vm.pid_file().read_text().strip()
    except OSError:
        return None
    try:
        pid = int(raw)
    except ValueError:
        return None
    return pid if pid_alive(pid) else None


def _read_until_prompt(sock: socket.socket) -> bytes:
    data = b""
    while not data.endswith(MONITOR_PROMPT):
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    return data


class VMRuntime:
    """Runtime actions for one resolved VM."""

    def __init__(self, vm: ResolvedVM) -> None:
        self.vm = vm
        self.spec = vm.spec

    # -- qemu ------------------------------------------------------------

    def _ssh_port(self) -> Optional[int]:
        ssh = self.spec.get("ssh") or {}
        net = self.spec.get("net") or {}
        port = ssh.get("port") or net.get("ssh_port")
        return int(port) if port else None

    def _net_args(self) -> List[str]:
        net = self.spec.get("net") or {}
        net_type = str(net.get("type") or "user")
        mac = str(net.get("mac") or deterministic_mac(self.vm.name)).lower()
        if not MAC_ADDRESS_RE.match(mac):
            raise ManagerError(f"VM '{self.vm.name}': invalid net.mac '{mac}'")
        if net_type == "none":
            return ["-nic", "none"]
        if net_type == "user":
            netdev = "user,id=net0"
            port = net.get("ssh_port")
            if port:
                netdev += f",hostfwd=tcp:127.0.0.1:{port}-:22"
        elif net_type == "bridge":
            if not net.get("bridge"):
                raise ManagerError(f"VM '{self.vm.name}': net.bridge is required when net.type is bridge")
            netdev = f"bridge,id=net0,br={net['bridge']}"
        elif net_type == "tap":
            netdev = f"tap,id=net0,ifname={self.vm.hyphenized()},script=no,downscript=no"
        else:
            raise ManagerError(f"VM '{self.vm.name}': unsupported net.type '{net_type}'. Expected user, bridge, tap, none")
        return ["-netdev", netdev, "-device", f"virtio-net-pci,netdev=net0,mac={mac}"]

    def qemu_command(self, cloud_init: bool = False, drives: Sequence[str] = ()) -> List[str]:
        arch = str(self.spec.get("arch") or "x86_64")
        cmd = [
            f"qemu-system-{arch}",
            "-name", self.vm.name,
            "-machine", QEMU_MACHINES.get(arch, "virt"),
            "-m", str(self.spec.get("memory") or "1G"),
            "-smp", str(self.spec.get("cpus") or 1),
            "-display", str(self.spec.get("display") or "none"),
            "-daemonize",
            "-pidfile", str(self.vm.pid_file()),
            "-monitor", f"unix:{self.vm.monitor_socket()},server,nowait",
            "-drive", f"file={self.vm.disk_path()},if=virtio",
        ]
        if kvm_available():
            cmd += ["-enable-kvm", "-cpu", "host"]
        cmd += self._net_args()
        if cloud_init:
            cmd += ["-drive", f"file={self.vm.seed_iso()},format=raw,if=virtio,readonly=on"]
        for drive in drives:
            cmd += ["-drive", f"file={drive},if=virtio"]
        cmd += [str(arg) for arg in self.spec.get("qemu_args") or []]
        return cmd

    def start(self, cloud_init: bool = False, drives: Sequence[str] = ()) -> None:
        if find_pid(self.vm) is not None:
            log("WARN", f"VM '{self.vm.name}' is already running")
            return
        disk = self.vm.disk_path()
        if not disk.exists():
            raise FileSystemError(f"Disk {disk} of VM '{self.vm.name}' does not exist; create the VM first")
        ensure_directory(self.vm.vm_dir)
        if cloud_init:
            write_cloud_init(self.vm)
        log("INFO", f"Starting VM {self.vm.name}")
        result = run(self.qemu_command(cloud_init, drives), check=False)
        if result.returncode != 0:
            raise ManagerError(f"qemu failed to start VM '{self.vm.name}' (exit {result.returncode})")
        log("SUCCESS", f"VM {self.vm.name} started")

    def stop(self, force: bool = False) -> None:
        pid = self.vm.pid if self.vm.pid is not None else find_pid(self.vm)
        if pid is None:
            raise NotRunningError(self.vm.name)
        if force:
            log("INFO", f"Killing VM {self.vm.name} (pid {pid})")
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            self.vm.pid_file().unlink(missing_ok=True)
        else:
            log("INFO", f"Powering down VM {self.vm.name}")
            self.monitor_command("system_powerdown")
        self.vm.pid = None

    # -- monitor ---------------------------------------------------------

    def monitor_command(self, command: str, timeout: float = 5.0) -> Optional[str]:
        path = self.vm.monitor_socket()
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(timeout)
                sock.connect(str(path))
                _read_until_prompt(sock)
                sock.sendall(command.encode("utf-8") + b"\n")
                raw = _read_until_prompt(sock)
        except OSError as exc:
            raise ManagerError(f"Cannot talk to monitor of VM '{self.vm.name}' at {path}: {exc}")
        text = _ANSI_RE.sub("", raw.decode("utf-8", errors="replace")).replace("\r", "")
        lines = text.split("\n")
        # First line echoes the command, last holds the next prompt.
        reply = "\n".join(line for line in lines[1:] if line.strip() and line.strip() != "(qemu)")
        return reply or None

    def monitor(self) -> int:
        cmd = ["socat", "-", f"UNIX-CONNECT:{self.vm.monitor_socket()}"]
        return run(cmd, check=False).returncode

    # -- ssh / rsync -----------------------------------------------------

    def _ssh_target(self, user: Optional[str]) -> str:
        ssh = self.spec.get("ssh") or {}
        user = user or ssh.get("user")
        host = ssh.get("host") or "localhost"
        return f"{user}@{host}" if user else str(host)

    def _ssh_options(self, options: Sequence[str]) -> List[str]:
        ssh = self.spec.get("ssh") or {}
        args: List[str] = []
        port = self._ssh_port()
        if port:
            args += ["-p", str(port)]
        if ssh.get("key"):
            args += ["-i", str(Path(str(ssh["key"])).expanduser())]
        for option in list(ssh.get("options") or []) + list(options):
            args += ["-o", str(option)]
        return args

    def ssh(
        self,
        user: Optional[str] = None,
        options: Sequence[str] = (),
        flags: Sequence[str] = (),
        cmd: Optional[Sequence[str]] = None,
    ) -> int:
        args = ["ssh", *flags, *self._ssh_options(options), self._ssh_target(user)]
        if cmd:
            args += list(cmd)
        return run(args, check=False).returncode

    def _rsync(self, options: Sequence[str], sources: Sequence[str], destination: Optional[str]) -> int:
        ssh_cmd = " ".join(shlex.quote(arg) for arg in ["ssh", *self._ssh_options(())])
        args = ["rsync", "-e", ssh_cmd, *options, *sources]
        if destination is not None:
            args.append(destination)
        return run(args, check=False).returncode

    def rsync_to(
        self,
        user: Optional[str],
        options: Sequence[str],
        sources: Sequence[str],
        destination: Optional[str] = "~",
    ) -> int:
        remote = f"{self._ssh_target(user)}:{destination}" if destination is not None else None
        return self._rsync(options, sources, remote)

    def rsync_from(
        self,
        user: Optional[str],
        options: Sequence[str],
        sources: Sequence[str],
        destination: Optional[str] = ".",
    ) -> int:
        target = self._ssh_target(user)
        return self._rsync(options, [f"{target}:{source}" for source in sources], destination)

    # -- disks -----------------------------------------------------------

    def store_disk(self, destination: Path, force: bool = False) -> Path:
        if destination.exists() and not force:
            raise FileSystemError(f"Image {destination} already exists (use --force to overwrite)")
        disk = self.vm.disk_path()
        if not disk.exists():
            raise FileSystemError(f"Disk {disk} of VM '{self.vm.name}' does not exist")
        log("INFO", f"Storing disk of {self.vm.name} as {destination}")
        with tempfile.TemporaryDirectory(dir=destination.parent) as tmpdir:
            tmp = Path(tmpdir) / destination.name
            run(["qemu-img", "convert", "-O", "qcow2", str(disk), str(tmp)])
            tmp.replace(destination)
        return destination

    def remove(self) -> None:
        if self.vm.has_pid():
            raise ManagerError(f"VM '{self.vm.name}' is running; stop it first")
        try:
            shutil.rmtree(self.vm.vm_dir)
        except FileNotFoundError:
            raise FileSystemError(f"VM directory {self.vm.vm_dir} does not exist")
        except OSError as exc:
            raise FileSystemError(f"Cannot remove {self.vm.vm_dir}: {exc}")
        log("INFO", f"Removed VM {self.vm.name}")

    def wait_for_ssh(self, repeat: int, sleep: float, options: Sequence[str] = ()) -> bool:
        """Retry ``ssh true`` up to ``repeat`` times, sleeping between attempts."""
        for attempt in range(repeat):
            if self.ssh(None, options, (), ["true"]) == 0:
                log("SUCCESS", f"SSH available on {self.vm.name}")
                return True
            log("DEBUG", f"SSH not ready on {self.vm.name} (attempt {attempt + 1}/{repeat})")
            time.sleep(sleep)
        log("WARN", f"SSH timeout waiting for {self.vm.name}")
        return False


def write_cloud_init(vm: ResolvedVM) -> Path:
    """Build the NoCloud seed ISO for ``vm`` from its ``cloud_init`` settings."""
    settings: Dict[str, object] = dict(vm.spec.get("cloud_init") or {})
    user = str(settings.get("user") or (vm.spec.get("ssh") or {}).get("user") or "user")
    user_cfg: Dict[str, object] = {
        "name": user,
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "shell": "/bin/bash",
        "lock_passwd": settings.get("password") is None,
    }
    if settings.get("password") is not None:
        user_cfg["passwd"] = hash_password(str(settings["password"]))
    if settings.get("ssh_pubkey"):
        key = str(settings["ssh_pubkey"])
        key_path = Path(key).expanduser()
        if key_path.is_file():
            key = key_path.read_text(encoding="utf-8").strip()
        user_cfg["ssh_authorized_keys"] = [key]

    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        user_data_path = settings.get("user_data")
        if user_data_path:
            user_data = Path(str(user_data_path)).expanduser().read_text(encoding="utf-8")
        else:
            cloud_cfg = {"users": [user_cfg], "ssh_pwauth": settings.get("password") is not None}
            user_data = "#cloud-config\n" + yaml.safe_dump(cloud_cfg, sort_keys=False, default_flow_style=False)
        (tmp / "user-data").write_text(user_data, encoding="utf-8")
        meta_data = (
            textwrap.dedent(
                f"""
            instance-id: iid-{vm.hyphenized()}
            local-hostname: {vm.hyphenized()}
            """
            ).strip()
            + "\n"
        )
        (tmp / "meta-data").write_text(meta_data, encoding="utf-8")
        seed = vm.seed_iso()
        run(
            [
                "genisoimage",
                "-output", str(seed),
                "-volid", "cidata",
                "-joliet",
                "-rock",
                str(tmp / "user-data"),
                str(tmp / "meta-data"),
            ],
            capture_output=True,
        )
    return seed
