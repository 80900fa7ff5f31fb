"""Base image and kernel catalogue: download, list, import and delete."""

from __future__ import annotations

import platform
import shutil
import struct
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import requests

from vmm.config import Config
from vmm.constants import (
    DEFAULT_KERNEL_NAME,
    DEFAULT_ROOTFS_NAME,
    IMAGE_NAME_RE,
    IMAGE_SUFFIX,
    KERNEL_RELEASE_PREFIX,
    KERNEL_RELEASES_API,
)
from vmm.exceptions import AlreadyExists, Conflict, ImageNotFound, KernelNotFound, ValidationFailure
from vmm.storage import StorageProvisioner, rootfs_image_path
from vmm.tools import ContainerExporter, DockerExporter
from vmm.utils import copy_file, download_file, ensure_directory, log

REQUEST_TIMEOUT = 15
USER_AGENT = "vmm/1.0"
DEFAULT_IMPORT_SIZE_MB = 2048

ELF_MAGIC = b"\x7fELF"
ET_EXEC = 2
ELF_MACHINES = {
    "x86_64": 62,
    "amd64": 62,
    "aarch64": 183,
    "arm64": 183,
}

SERIAL_GETTY_UNIT = """[Unit]
Description=Serial Console on ttyS0
After=systemd-user-sessions.service

[Service]
ExecStart=/sbin/agetty -o '-p -- \\\\u' --keep-baud 115200,38400,9600 ttyS0 xterm-256color
Type=idle
Restart=always
RestartSec=0
UtmpIdentifier=ttyS0
TTYPath=/dev/ttyS0
TTYReset=yes
TTYVHangup=yes

[Install]
WantedBy=multi-user.target
"""

NETWORKD_ETH0 = """[Match]
Name=eth0

[Network]
DHCP=no
"""

GUEST_FSTAB = """# /etc/fstab - generated by vmm
/dev/vda / ext4 defaults 0 1
"""


@dataclass
class ImageInfo:
    name: str
    path: Path
    size: int
    modified: datetime
    is_default: bool = False

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)


def validate_image_name(name: str, kind: str = "image") -> str:
    if not name or not IMAGE_NAME_RE.match(name):
        raise ValidationFailure(f"Invalid {kind} name '{name}'")
    return name


def validate_kernel_binary(path: Path, machine: Optional[str] = None) -> None:
    """Accept only an executable ELF built for the host architecture."""
    try:
        with open(path, "rb") as handle:
            header = handle.read(20)
    except OSError as exc:
        raise ValidationFailure(f"Cannot read kernel {path}: {exc}")
    if len(header) < 20 or header[:4] != ELF_MAGIC:
        raise ValidationFailure(f"{path} is not a valid ELF binary")
    byte_order = "<" if header[5] == 1 else ">"
    e_type, e_machine = struct.unpack(f"{byte_order}HH", header[16:20])
    if e_type != ET_EXEC:
        raise ValidationFailure(f"{path} is not an executable kernel image (ELF type {e_type})")
    host = (machine or platform.machine()).lower()
    expected = ELF_MACHINES.get(host)
    if expected is None:
        raise ValidationFailure(f"Unsupported host architecture: {host}")
    if e_machine != expected:
        raise ValidationFailure(
            f"Architecture mismatch: kernel machine {e_machine}, host {host} expects {expected}"
        )


def prepare_rootfs_tree(root: Path) -> None:
    """Rewrite an exported container filesystem so it boots under Firecracker."""
    if not (root / "etc" / "debian_version").exists() and not (root / "etc" / "apt").exists():
        raise ValidationFailure("Only Debian/Ubuntu-based container images are supported")

    for directory in ("dev", "proc", "sys", "run", "tmp", "var/run", "var/log", "root"):
        ensure_directory(root / directory)

    systemd = root / "etc" / "systemd" / "system"
    wants = systemd / "multi-user.target.wants"
    ensure_directory(wants)
    (systemd / "serial-getty@ttyS0.service").write_text(SERIAL_GETTY_UNIT)
    _relink(wants / "serial-getty@ttyS0.service", "/etc/systemd/system/serial-getty@ttyS0.service")

    ssh_unit = "ssh.service" if (root / "lib" / "systemd" / "system" / "ssh.service").exists() else "sshd.service"
    _relink(wants / "ssh.service", f"/lib/systemd/system/{ssh_unit}")

    sshd_config = root / "etc" / "ssh" / "sshd_config"
    if sshd_config.exists():
        content = sshd_config.read_text()
        if "PermitRootLogin" not in content:
            content += "\nPermitRootLogin prohibit-password\n"
        else:
            content = content.replace("PermitRootLogin no", "PermitRootLogin prohibit-password")
            content = content.replace("#PermitRootLogin", "PermitRootLogin")
        sshd_config.write_text(content)

    (root / "etc" / "fstab").write_text(GUEST_FSTAB)
    (root / "etc" / "hostname").write_text("vmm-guest\n")

    network_dir = root / "etc" / "systemd" / "network"
    ensure_directory(network_dir)
    (network_dir / "10-eth0.network").write_text(NETWORKD_ETH0)
    _relink(wants / "systemd-networkd.service", "/lib/systemd/system/systemd-networkd.service")

    # Lock the root password; key-based SSH login still works.
    shadow = root / "etc" / "shadow"
    if shadow.exists():
        lines = shadow.read_text().split("\n")
        for index, line in enumerate(lines):
            if line.startswith("root:"):
                parts = line.split(":", 2)
                if len(parts) == 3:
                    lines[index] = f"root:*:{parts[2]}"
        shadow.write_text("\n".join(lines))


def _relink(link: Path, target: str) -> None:
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(target)


def _info(path: Path, is_default: bool) -> ImageInfo:
    stat = path.stat()
    return ImageInfo(
        name=path.name,
        path=path,
        size=stat.st_size,
        modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        is_default=is_default,
    )


class ImageManager:
    def __init__(
        self,
        config: Config,
        storage: StorageProvisioner,
        exporter: Optional[ContainerExporter] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self.paths = config.paths()
        self.storage = storage
        self.exporter = exporter or DockerExporter()
        self.session = session

    # ----- paths ------------------------------------------------------

    def default_kernel_path(self) -> Path:
        return self.paths.kernels / DEFAULT_KERNEL_NAME

    def default_rootfs_path(self) -> Path:
        return rootfs_image_path(self.paths.rootfs, DEFAULT_ROOTFS_NAME)

    def image_path(self, name: str) -> Path:
        return rootfs_image_path(self.paths.rootfs, validate_image_name(name))

    def image_exists(self, name: str) -> bool:
        return self.image_path(name).exists()

    def kernel_path(self, name: str = "") -> Path:
        if not name:
            return self.default_kernel_path()
        return self.paths.kernels / validate_image_name(name, "kernel")

    def kernel_exists(self, name: str) -> bool:
        return self.kernel_path(name).is_file()

    # ----- downloads --------------------------------------------------

    def latest_kernel_url(self) -> str:
        """Download URL of the newest ``kernel-*`` release asset, or "" if none is reachable."""
        session = self.session or requests.Session()
        session.headers["User-Agent"] = USER_AGENT
        try:
            resp = session.get(KERNEL_RELEASES_API, timeout=REQUEST_TIMEOUT)
            if resp.status_code != 200:
                log("DEBUG", f"Kernel release lookup returned HTTP {resp.status_code}")
                return ""
            releases = resp.json()
        except (requests.RequestException, ValueError) as exc:
            log("DEBUG", f"Kernel release lookup failed: {exc}")
            return ""
        for release in releases if isinstance(releases, list) else []:
            if not str(release.get("tag_name", "")).startswith(KERNEL_RELEASE_PREFIX):
                continue
            for asset in release.get("assets") or []:
                if asset.get("name") == DEFAULT_KERNEL_NAME and asset.get("browser_download_url"):
                    return asset["browser_download_url"]
        return ""

    def ensure_base_images(self) -> None:
        """Download the default kernel and rootfs when they are not already present."""
        kernel = self.default_kernel_path()
        if not kernel.exists():
            url = self.config.kernel_url
            if not url:
                url = self.latest_kernel_url()
                if url:
                    log("INFO", "Found kernel in release assets")
                else:
                    log("WARN", "Kernel releases unavailable, using fallback URL")
                    url = self.config.fallback_kernel_url
            download_file(url, kernel, "Downloading default kernel")
        rootfs = self.default_rootfs_path()
        if not rootfs.exists():
            download_file(self.config.rootfs_url, rootfs, "Downloading default rootfs")

    # ----- listing ----------------------------------------------------

    def list_rootfs(self) -> List[ImageInfo]:
        if not self.paths.rootfs.is_dir():
            return []
        default = self.default_rootfs_path()
        images = []
        for path in sorted(self.paths.rootfs.glob(f"*{IMAGE_SUFFIX}")):
            if path.is_file() and not path.name.startswith("."):
                info = _info(path, path == default)
                info.name = path.name[: -len(IMAGE_SUFFIX)]
                images.append(info)
        return images

    def list_kernels(self) -> List[ImageInfo]:
        if not self.paths.kernels.is_dir():
            return []
        default = self.default_kernel_path()
        return [
            _info(path, path == default)
            for path in sorted(self.paths.kernels.iterdir())
            if path.is_file() and not path.name.startswith(".")
        ]

    # ----- mutation ---------------------------------------------------

    def delete_image(self, name: str) -> None:
        """Remove a named rootfs. Reference checks against VMs are the caller's job."""
        path = self.image_path(name)
        if not path.exists():
            raise ImageNotFound(f"Image '{name}' not found")
        path.unlink()
        log("SUCCESS", f"Deleted image '{name}'")

    def delete_kernel(self, name: str) -> None:
        if name == DEFAULT_KERNEL_NAME:
            raise Conflict(f"Cannot delete the default kernel '{DEFAULT_KERNEL_NAME}'")
        path = self.kernel_path(name)
        if not path.exists():
            raise KernelNotFound(f"Kernel '{name}' not found")
        path.unlink()
        log("SUCCESS", f"Deleted kernel '{name}'")

    def import_kernel(self, source: Path, name: str, force: bool = False) -> Path:
        destination = self.kernel_path(validate_image_name(name, "kernel"))
        if destination.exists() and not force:
            raise AlreadyExists(f"Kernel '{name}' already exists; use --force to overwrite")
        if not source.is_file():
            raise ValidationFailure(f"Kernel source {source} does not exist")
        validate_kernel_binary(source)
        log("INFO", f"Importing kernel '{name}' from {source}")
        copy_file(source, destination)
        log("SUCCESS", f"Imported kernel '{name}' ({destination.stat().st_size / (1024 * 1024):.2f} MiB)")
        return destination

    def import_container_image(self, image_ref: str, name: str, size_mb: int = DEFAULT_IMPORT_SIZE_MB) -> Path:
        """Export a container image, make it bootable and pack it into a named ext4 rootfs."""
        destination = self.image_path(name)
        if destination.exists():
            raise AlreadyExists(f"Image '{name}' already exists at {destination}")
        size_mb = size_mb or DEFAULT_IMPORT_SIZE_MB
        log("INFO", f"Importing container image '{image_ref}' as '{name}'")
        workdir = Path(tempfile.mkdtemp(prefix="vmm-import-"))
        try:
            tree = workdir / "rootfs"
            ensure_directory(tree)
            log("INFO", "Exporting container filesystem")
            self.exporter.export(image_ref, tree)
            log("INFO", "Configuring rootfs for Firecracker")
            prepare_rootfs_tree(tree)
            log("INFO", f"Creating {size_mb} MiB ext4 image")
            self.storage.build_image_from_tree(tree, destination, size_mb, "rootfs")
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
        log("SUCCESS", f"Imported '{image_ref}' as '{name}' ({destination})")
        return destination
