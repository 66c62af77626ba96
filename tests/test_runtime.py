"""Tests for qemulab.runtime module."""

from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from qemulab.exceptions import FileSystemError, ManagerError, NotRunningError
from qemulab.models import ResolvedVM
from qemulab.runtime import VMRuntime, find_pid, write_cloud_init


def make_vm(tmp_path, name="web", pid=None, **spec) -> ResolvedVM:
    vm_dir = tmp_path / "vms" / name
    vm_dir.mkdir(parents=True, exist_ok=True)
    spec.setdefault("arch", "x86_64")
    return ResolvedVM(name=name, folded_name=name, vm_dir=vm_dir, spec=spec, pid=pid)


def completed(returncode=0, stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout)


@pytest.fixture(autouse=True)
def no_kvm():
    with patch("qemulab.runtime.kvm_available", return_value=False):
        yield


class TestFindPid:
    def test_live_pid(self, tmp_path):
        vm = make_vm(tmp_path)
        vm.pid_file().write_text(f"{os.getpid()}\n")
        assert find_pid(vm) == os.getpid()

    def test_missing_pidfile(self, tmp_path):
        assert find_pid(make_vm(tmp_path)) is None

    def test_garbage_pidfile(self, tmp_path):
        vm = make_vm(tmp_path)
        vm.pid_file().write_text("not-a-pid")
        assert find_pid(vm) is None

    def test_dead_pid(self, tmp_path):
        vm = make_vm(tmp_path)
        vm.pid_file().write_text("12345")
        with patch("qemulab.runtime.pid_alive", return_value=False):
            assert find_pid(vm) is None


class TestQemuCommand:
    def test_basic_command(self, tmp_path):
        vm = make_vm(tmp_path, memory="2G", cpus=2, net={"type": "user", "ssh_port": 2222})
        cmd = VMRuntime(vm).qemu_command()
        assert cmd[0] == "qemu-system-x86_64"
        assert cmd[cmd.index("-machine") + 1] == "q35"
        assert cmd[cmd.index("-m") + 1] == "2G"
        assert cmd[cmd.index("-smp") + 1] == "2"
        assert cmd[cmd.index("-pidfile") + 1] == str(vm.pid_file())
        assert f"file={vm.disk_path()},if=virtio" in cmd
        assert "user,id=net0,hostfwd=tcp:127.0.0.1:2222-:22" in cmd
        assert "-enable-kvm" not in cmd

    def test_kvm_enabled(self, tmp_path):
        vm = make_vm(tmp_path)
        with patch("qemulab.runtime.kvm_available", return_value=True):
            cmd = VMRuntime(vm).qemu_command()
        assert "-enable-kvm" in cmd

    def test_cloud_init_drives_and_extra_args(self, tmp_path):
        vm = make_vm(tmp_path, qemu_args=["-usb", 1])
        cmd = VMRuntime(vm).qemu_command(cloud_init=True, drives=["/tmp/extra.img"])
        assert f"file={vm.seed_iso()},format=raw,if=virtio,readonly=on" in cmd
        assert "file=/tmp/extra.img,if=virtio" in cmd
        assert cmd[-2:] == ["-usb", "1"]

    def test_aarch64_machine(self, tmp_path):
        cmd = VMRuntime(make_vm(tmp_path, arch="aarch64")).qemu_command()
        assert cmd[0] == "qemu-system-aarch64"
        assert cmd[cmd.index("-machine") + 1] == "virt"

    def test_no_network(self, tmp_path):
        cmd = VMRuntime(make_vm(tmp_path, net={"type": "none"})).qemu_command()
        assert cmd[cmd.index("-nic") + 1] == "none"

    def test_bridge_requires_name(self, tmp_path):
        with pytest.raises(ManagerError, match="net.bridge is required"):
            VMRuntime(make_vm(tmp_path, net={"type": "bridge"})).qemu_command()

    def test_invalid_mac(self, tmp_path):
        with pytest.raises(ManagerError, match="invalid net.mac"):
            VMRuntime(make_vm(tmp_path, net={"mac": "52:54:00:zz"})).qemu_command()

    def test_explicit_mac(self, tmp_path):
        cmd = VMRuntime(make_vm(tmp_path, net={"mac": "52:54:00:AA:BB:CC"})).qemu_command()
        assert "virtio-net-pci,netdev=net0,mac=52:54:00:aa:bb:cc" in cmd

    def test_unsupported_net_type(self, tmp_path):
        with pytest.raises(ManagerError, match="unsupported net.type 'vde'"):
            VMRuntime(make_vm(tmp_path, net={"type": "vde"})).qemu_command()


class TestStartStop:
    def test_start_requires_disk(self, tmp_path):
        with pytest.raises(FileSystemError, match="does not exist"):
            VMRuntime(make_vm(tmp_path)).start()

    def test_start_runs_qemu(self, tmp_path):
        vm = make_vm(tmp_path)
        vm.disk_path().write_bytes(b"")
        with patch("qemulab.runtime.run", return_value=completed()) as mock_run:
            VMRuntime(vm).start()
        assert mock_run.call_args[0][0][0] == "qemu-system-x86_64"

    def test_start_creates_missing_vm_directory(self, tmp_path):
        disk = tmp_path / "shared.qcow2"
        disk.write_bytes(b"")
        state_dir = tmp_path / "vms" / "cluster" / "1"
        vm = ResolvedVM(name="node1", folded_name="node{1..2}", vm_dir=state_dir, spec={"arch": "x86_64", "disk": str(disk)})
        with patch("qemulab.runtime.run", return_value=completed()):
            VMRuntime(vm).start()
        assert state_dir.is_dir()

    def test_start_failure(self, tmp_path):
        vm = make_vm(tmp_path)
        vm.disk_path().write_bytes(b"")
        with patch("qemulab.runtime.run", return_value=completed(1)):
            with pytest.raises(ManagerError, match="qemu failed to start VM 'web'"):
                VMRuntime(vm).start()

    def test_start_running_vm_is_noop(self, tmp_path):
        vm = make_vm(tmp_path)
        with patch("qemulab.runtime.find_pid", return_value=99), patch("qemulab.runtime.run") as mock_run:
            VMRuntime(vm).start()
        mock_run.assert_not_called()

    def test_stop_not_running(self, tmp_path):
        with pytest.raises(NotRunningError):
            VMRuntime(make_vm(tmp_path)).stop()

    def test_force_stop_kills_and_clears_pidfile(self, tmp_path):
        vm = make_vm(tmp_path, pid=4321)
        vm.pid_file().write_text("4321")
        with patch("qemulab.runtime.os.kill") as mock_kill:
            VMRuntime(vm).stop(force=True)
        mock_kill.assert_called_once_with(4321, signal.SIGKILL)
        assert not vm.pid_file().exists()
        assert vm.pid is None

    def test_graceful_stop_uses_monitor(self, tmp_path):
        vm = make_vm(tmp_path, pid=4321)
        with patch.object(VMRuntime, "monitor_command") as mock_monitor:
            VMRuntime(vm).stop()
        mock_monitor.assert_called_once_with("system_powerdown")

    def test_monitor_unreachable(self, tmp_path):
        with pytest.raises(ManagerError, match="Cannot talk to monitor"):
            VMRuntime(make_vm(tmp_path)).monitor_command("info status", timeout=0.1)


class TestSsh:
    def test_ssh_arguments(self, tmp_path):
        vm = make_vm(tmp_path, ssh={"host": "localhost", "user": "debian", "port": 2222, "options": ["A=b"]})
        with patch("qemulab.runtime.run", return_value=completed()) as mock_run:
            assert VMRuntime(vm).ssh(None, ["C=d"], ["-A"], ["uname", "-a"]) == 0
        assert mock_run.call_args[0][0] == [
            "ssh", "-A", "-p", "2222", "-o", "A=b", "-o", "C=d", "debian@localhost", "uname", "-a",
        ]

    def test_explicit_user_wins(self, tmp_path):
        vm = make_vm(tmp_path, ssh={"host": "10.0.0.5", "user": "debian"})
        with patch("qemulab.runtime.run", return_value=completed(255)) as mock_run:
            assert VMRuntime(vm).ssh("root") == 255
        assert mock_run.call_args[0][0][-1] == "root@10.0.0.5"

    def test_port_from_net_forward(self, tmp_path):
        vm = make_vm(tmp_path, net={"ssh_port": 2200})
        with patch("qemulab.runtime.run", return_value=completed()) as mock_run:
            VMRuntime(vm).ssh()
        assert mock_run.call_args[0][0] == ["ssh", "-p", "2200", "localhost"]

    def test_rsync_to(self, tmp_path):
        vm = make_vm(tmp_path, ssh={"user": "u", "port": 2222})
        with patch("qemulab.runtime.run", return_value=completed()) as mock_run:
            VMRuntime(vm).rsync_to(None, ["--archive"], ["a", "b"], "/srv")
        assert mock_run.call_args[0][0] == ["rsync", "-e", "ssh -p 2222", "--archive", "a", "b", "u@localhost:/srv"]

    def test_rsync_from_list_only(self, tmp_path):
        vm = make_vm(tmp_path, ssh={"user": "u"})
        with patch("qemulab.runtime.run", return_value=completed()) as mock_run:
            VMRuntime(vm).rsync_from(None, [], ["/etc/hosts"], None)
        assert mock_run.call_args[0][0] == ["rsync", "-e", "ssh", "u@localhost:/etc/hosts"]

    def test_wait_for_ssh_gives_up(self, tmp_path):
        vm = make_vm(tmp_path)
        with patch.object(VMRuntime, "ssh", return_value=255) as mock_ssh, patch("qemulab.runtime.time.sleep"):
            assert VMRuntime(vm).wait_for_ssh(3, 0) is False
        assert mock_ssh.call_count == 3

    def test_wait_for_ssh_succeeds(self, tmp_path):
        vm = make_vm(tmp_path)
        with patch.object(VMRuntime, "ssh", side_effect=[255, 0]), patch("qemulab.runtime.time.sleep"):
            assert VMRuntime(vm).wait_for_ssh(5, 0) is True


class TestDisks:
    def test_remove_running_vm_refused(self, tmp_path):
        with pytest.raises(ManagerError, match="is running"):
            VMRuntime(make_vm(tmp_path, pid=1)).remove()

    def test_remove_deletes_directory(self, tmp_path):
        vm = make_vm(tmp_path)
        VMRuntime(vm).remove()
        assert not vm.vm_dir.exists()

    def test_store_disk_refuses_overwrite(self, tmp_path):
        vm = make_vm(tmp_path)
        destination = tmp_path / "stored"
        destination.write_bytes(b"")
        with pytest.raises(FileSystemError, match="already exists"):
            VMRuntime(vm).store_disk(destination)

    def test_store_disk_converts_then_moves(self, tmp_path):
        vm = make_vm(tmp_path)
        vm.disk_path().write_bytes(b"disk")
        destination = tmp_path / "stored"

        def fake_convert(cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"converted")
            return completed()

        with patch("qemulab.runtime.run", side_effect=fake_convert):
            assert VMRuntime(vm).store_disk(destination) == destination
        assert destination.read_bytes() == b"converted"


class TestCloudInit:
    def test_user_data_contents(self, tmp_path):
        vm = make_vm(tmp_path, cloud_init={"user": "lab", "password": "secret", "ssh_pubkey": "ssh-ed25519 AAAA"})
        captured = {}

        def fake_genisoimage(cmd, **kwargs):
            captured["user-data"] = Path(cmd[-2]).read_text()
            captured["meta-data"] = Path(cmd[-1]).read_text()
            return completed()

        with patch("qemulab.runtime.run", side_effect=fake_genisoimage):
            assert write_cloud_init(vm) == vm.seed_iso()

        assert captured["user-data"].startswith("#cloud-config\n")
        user_data = yaml.safe_load(captured["user-data"])
        user = user_data["users"][0]
        assert user["name"] == "lab"
        assert user["passwd"].startswith("$2")
        assert user["ssh_authorized_keys"] == ["ssh-ed25519 AAAA"]
        assert user_data["ssh_pwauth"] is True
        assert "local-hostname: web" in captured["meta-data"]

    def test_user_data_file_override(self, tmp_path):
        custom = tmp_path / "user-data.sh"
        custom.write_text("#!/bin/sh\necho hi\n")
        vm = make_vm(tmp_path, cloud_init={"user_data": str(custom)})
        captured = {}

        def fake_genisoimage(cmd, **kwargs):
            captured["user-data"] = Path(cmd[-2]).read_text()
            return completed()

        with patch("qemulab.runtime.run", side_effect=fake_genisoimage):
            write_cloud_init(vm)
        assert captured["user-data"] == "#!/bin/sh\necho hi\n"
