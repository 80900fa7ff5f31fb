"""Utility functions for the microVM manager."""
from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import time
import uuid
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from vmm.constants import MAC_PREFIX
from vmm.exceptions import ExternalToolFailure, ManagerError

_verbose = False


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a coloured level prefix."""
    if level == "DEBUG" and not _verbose:
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
    stream = sys.stderr if level in {"WARN", "ERROR"} else sys.stdout
    print(f"{colour}[{level}]{reset} {message}", file=stream, flush=True)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging; raise ExternalToolFailure on a non-zero exit."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    kwargs.setdefault("capture_output", True)
    try:
        result = subprocess.run(cmd, check=False, text=True, **kwargs)
    except FileNotFoundError as exc:
        raise ExternalToolFailure(cmd[0], f"command not found: {exc.filename or cmd[0]}") from exc
    if check and result.returncode != 0:
        output = "\n".join(part for part in (result.stdout, result.stderr) if part)
        raise ExternalToolFailure(cmd[0], output, result.returncode)
    return result


def succeeds(cmd: List[str]) -> bool:
    """Return True if the command exits zero (used for probes such as iptables -C)."""
    try:
        return run(cmd, check=False).returncode == 0
    except ExternalToolFailure:
        return False


def ensure_directory(path: Path, mode: int = 0o755) -> None:
    path.mkdir(parents=True, exist_ok=True, mode=mode)


def generate_vm_id() -> str:
    return uuid.uuid4().hex[:8]


def deterministic_mac(vm_id: str) -> str:
    """Derive the guest MAC from the first three characters of the VM id."""
    if len(vm_id) < 3:
        raise ManagerError(f"VM id '{vm_id}' is too short to derive a MAC address")
    octets = [f"{ord(char) & 0xFF:02X}" for char in vm_id[:3]]
    return ":".join([MAC_PREFIX] + octets)


def atomic_write_text(path: Path, content: str, mode: int = 0o644) -> None:
    """Write a file via temp-file-then-rename so readers never see a partial write."""
    ensure_directory(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def exclusive_write_text(path: Path, content: str, mode: int = 0o644) -> None:
    """Like :func:`atomic_write_text` but raise ``FileExistsError`` instead of replacing ``path``."""
    ensure_directory(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.link(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def copy_file(source: Path, destination: Path, chunk_size: int = 4 * 1024 * 1024) -> None:
    """Byte-for-byte copy through a temporary sibling, renamed into place on success."""
    ensure_directory(destination.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent)
    tmp_path = Path(tmp_name)
    try:
        with open(source, "rb") as src, os.fdopen(fd, "wb") as dst:
            while True:
                chunk = src.read(chunk_size)
                if not chunk:
                    break
                dst.write(chunk)
            dst.flush()
            os.fsync(dst.fileno())
        os.replace(tmp_path, destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def directory_size(path: Path) -> int:
    """Apparent size in bytes of every regular file below path (symlinks not followed)."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                stat = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            total += stat.st_size
    return total


def mib_ceil(size_bytes: int) -> int:
    return -(-size_bytes // (1024 * 1024))


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress line; the destination only appears on success."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vmm/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    ensure_directory(destination.parent)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, suffix=".tmp") as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
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
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {time.time() - start_time:.1f}s")


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def wait_for_path(path: Path, timeout: float = 10.0, interval: float = 0.1) -> bool:
    """Poll for a filesystem path to show up (e.g. the hypervisor API socket)."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if path.exists():
            return True
        time.sleep(interval)
    return path.exists()


def expand_user_path(raw: str, home: Optional[Path]) -> Path:
    """Expand a leading '~' against an explicit home directory."""
    if raw.startswith("~") and home is not None:
        return home / raw[1:].lstrip("/")
    return Path(raw).expanduser()
