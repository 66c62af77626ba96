"""Utility functions for qemulab."""

from __future__ import annotations

import hashlib
import http.client
import os
import platform
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from qemulab.constants import (
    _LOG_VERBOSE,
    ARCH_ALIASES,
    DISK_SIZE_RE,
)
from qemulab.exceptions import DownloadError, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a colour per level."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ManagerError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def host_arch() -> str:
    """Return the normalized machine architecture of this host."""
    machine = platform.machine().lower() or "x86_64"
    return ARCH_ALIASES.get(machine, machine)


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download ``url`` to ``destination`` with a progress line.

    Data lands in a temporary file beside the destination and is renamed into
    place only once the whole body has been read, so an existing file is left
    untouched by a failed download.
    """
    log("INFO", f"{label}: {url}")
    try:
        req = Request(url, headers={"User-Agent": "qemulab/1.0"})
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise DownloadError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise DownloadError(f"Failed to download {url}: {exc.reason}")
    except (OSError, ValueError, http.client.HTTPException) as exc:
        raise DownloadError(f"Failed to download {url}: {exc}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=".download-") as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                try:
                    chunk = response.read(chunk_size)
                except (OSError, http.client.HTTPException) as exc:
                    raise DownloadError(f"Failed to download {url}: {exc}")
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    print(
                        f"\r  {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)
            if total_bytes is not None and downloaded != total_bytes:
                raise DownloadError(f"Incomplete download of {url}: got {downloaded} of {total_bytes} bytes")
            tmp.flush()
            tmp.close()
            tmp_path.replace(destination)
            log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {time.time() - start_time:.1f}s")
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            response.close()


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    octets[3] = octets[3] | 0x02  # ensure locally administered bit
    octets[3] = octets[3] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)


def pid_alive(pid: int) -> bool:
    return Path(f"/proc/{pid}").exists()


def confirm(message: str) -> bool:
    print(message, flush=True)
    answer = sys.stdin.readline().strip().lower()
    return answer in {"y", "yes"}


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging; a missing binary or a failed checked run raise ManagerError."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, check=check, text=True, **kwargs)
    except FileNotFoundError:
        raise ManagerError(f"Required executable not found: {cmd[0]}")
    except subprocess.CalledProcessError as exc:
        raise ManagerError(f"Command failed with exit status {exc.returncode}: {' '.join(cmd)}")
