"""Tests for qemulab.utils module."""

from __future__ import annotations

import io
import os
import re
import subprocess
from unittest.mock import patch

import pytest

from qemulab.exceptions import ManagerError
from qemulab.utils import (
    confirm,
    deterministic_mac,
    ensure_directory,
    get_env,
    hash_password,
    host_arch,
    log,
    pid_alive,
    run,
    validate_disk_size,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestValidateDiskSize:
    @pytest.mark.parametrize("size", ["10G", "500M", "1T", "1024K", "100", "20g"])
    def test_valid_sizes(self, size):
        assert validate_disk_size(size) == size

    @pytest.mark.parametrize("size", ["abc", "", "-1G", "10X", "+5G"])
    def test_invalid_sizes(self, size):
        with pytest.raises(ManagerError, match="Invalid disk size"):
            validate_disk_size(size)


class TestHostArch:
    @pytest.mark.parametrize(
        "machine, expected",
        [("x86_64", "x86_64"), ("AMD64", "x86_64"), ("arm64", "aarch64"), ("aarch64", "aarch64"), ("s390x", "s390x")],
    )
    def test_normalizes_machine(self, machine, expected):
        with patch("qemulab.utils.platform.machine", return_value=machine):
            assert host_arch() == expected


class TestDeterministicMac:
    def test_same_seed_same_mac(self):
        assert deterministic_mac("web") == deterministic_mac("web")

    def test_different_seed_different_mac(self):
        assert deterministic_mac("web") != deterministic_mac("db")

    def test_format(self):
        assert re.match(r"^52:54:00:[0-9a-f]{2}:[0-9a-f]{2}:[0-9a-f]{2}$", deterministic_mac("web"))

    def test_locally_administered_bit(self):
        octet = int(deterministic_mac("web").split(":")[3], 16)
        assert octet & 0x02 == 0x02
        assert octet & 0x01 == 0x00


class TestHashPassword:
    def test_bcrypt_format(self):
        assert hash_password("password").startswith("$2")

    def test_different_calls_different_hashes(self):
        assert hash_password("password") != hash_password("password")


class TestPidAlive:
    def test_own_pid(self):
        assert pid_alive(os.getpid()) is True

    def test_absent_pid(self):
        with patch("qemulab.utils.Path.exists", return_value=False):
            assert pid_alive(999999) is False


class TestConfirm:
    @pytest.mark.parametrize("answer", ["y\n", "yes\n", "YES\n"])
    def test_accepts(self, monkeypatch, answer):
        monkeypatch.setattr("sys.stdin", io.StringIO(answer))
        assert confirm("Remove?") is True

    @pytest.mark.parametrize("answer", ["n\n", "\n", ""])
    def test_rejects(self, monkeypatch, answer):
        monkeypatch.setattr("sys.stdin", io.StringIO(answer))
        assert confirm("Remove?") is False


class TestRun:
    def test_missing_executable(self):
        with patch("qemulab.utils.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(ManagerError, match="Required executable not found: qemu-img"):
                run(["qemu-img", "info"])

    def test_failed_checked_run(self):
        error = subprocess.CalledProcessError(2, ["qemu-img"])
        with patch("qemulab.utils.subprocess.run", side_effect=error):
            with pytest.raises(ManagerError, match="exit status 2"):
                run(["qemu-img", "info"])

    def test_passes_through_kwargs(self):
        done = subprocess.CompletedProcess(args=["true"], returncode=0)
        with patch("qemulab.utils.subprocess.run", return_value=done) as mock_run:
            assert run(["true"], check=False, capture_output=True) is done
        mock_run.assert_called_once_with(["true"], check=False, text=True, capture_output=True)


class TestEnsureDirectory:
    def test_creates_parents(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_directory(target)
        ensure_directory(target)
        assert target.is_dir()
