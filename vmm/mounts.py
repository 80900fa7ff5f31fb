"""Host directories exposed to guests as attached ext4 images."""

from __future__ import annotations

import shutil
import string
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from vmm.config import Config
from vmm.constants import (
    GUEST_DEVICE_PREFIX,
    GUEST_MOUNT_ROOT,
    IMAGE_SUFFIX,
    MOUNT_IMAGE_GROWTH,
    MOUNT_IMAGE_MIN_MB,
    MOUNT_IMAGE_OVERHEAD_MB,
    MOUNT_TAG_RE,
)
from vmm.exceptions import ValidationFailure, VMRunning
from vmm.models import MountDeclaration, MountDrive, MountEntry
from vmm.storage import StorageProvisioner
from vmm.utils import directory_size, expand_user_path, log, mib_ceil

# a..z; slot 0 is the root drive.
MAX_SLOTS = len(string.ascii_lowercase)


def parse_mount_spec(spec: str, home: Optional[Path] = None) -> MountDeclaration:
    """Parse ``/host/path:tag[:ro|rw]`` into a declaration."""
    parts = spec.split(":")
    if len(parts) not in (2, 3):
        raise ValidationFailure(f"Invalid mount spec '{spec}': expected /host/path:tag[:ro|rw]")
    raw_path, tag = parts[0], parts[1]
    mode = parts[2].lower() if len(parts) == 3 else "rw"
    if mode not in ("ro", "rw"):
        raise ValidationFailure(f"Invalid mount mode '{parts[2]}' in '{spec}' (expected ro or rw)")
    if not raw_path:
        raise ValidationFailure(f"Invalid mount spec '{spec}': host path is empty")
    host_path = expand_user_path(raw_path, home)
    if not host_path.is_absolute():
        raise ValidationFailure(f"Mount host path must be absolute: {raw_path}")
    if not host_path.is_dir():
        raise ValidationFailure(f"Mount host path does not exist or is not a directory: {host_path}")
    validate_tag(tag)
    return MountDeclaration(host_path=str(host_path), guest_tag=tag, read_only=mode == "ro")


def validate_tag(tag: str) -> str:
    if not tag or not MOUNT_TAG_RE.match(tag):
        raise ValidationFailure(f"Invalid mount tag '{tag}': use letters, digits, '_' or '-'")
    return tag


def validate_mounts(mounts: Sequence[MountDeclaration]) -> None:
    seen = set()
    for mount in mounts:
        if mount.guest_tag in seen:
            raise ValidationFailure(f"Duplicate mount tag '{mount.guest_tag}'")
        seen.add(mount.guest_tag)
    if len(mounts) >= MAX_SLOTS:
        raise ValidationFailure(f"At most {MAX_SLOTS - 1} mounts are supported per VM")


def device_for_slot(slot: int) -> str:
    if not 0 <= slot < MAX_SLOTS:
        raise ValidationFailure(f"Drive slot {slot} out of range")
    return f"{GUEST_DEVICE_PREFIX}{string.ascii_lowercase[slot]}"


def guest_mount_path(tag: str) -> str:
    return f"{GUEST_MOUNT_ROOT}/{tag}"


def mount_entries(mounts: Sequence[MountDeclaration]) -> List[MountEntry]:
    return [
        MountEntry(device_for_slot(slot), guest_mount_path(mount.guest_tag), mount.read_only)
        for slot, mount in enumerate(mounts, start=1)
    ]


def mount_drives(mounts: Sequence[MountDeclaration]) -> List[MountDrive]:
    return [MountDrive(mount.image_path, mount.guest_tag, mount.read_only) for mount in mounts]


def image_size_mb(content_bytes: int) -> int:
    """Content size plus 20% and fixed headroom, never below the minimum."""
    size = mib_ceil(int(content_bytes * MOUNT_IMAGE_GROWTH)) + MOUNT_IMAGE_OVERHEAD_MB
    return max(size, MOUNT_IMAGE_MIN_MB)


class MountManager:
    def __init__(self, config: Config, storage: StorageProvisioner) -> None:
        self.config = config
        self.paths = config.paths()
        self.storage = storage

    def image_path_for(self, vm_name: str, tag: str) -> Path:
        return self.paths.mounts / vm_name / f"{tag}{IMAGE_SUFFIX}"

    def create_mount_image(self, declaration: MountDeclaration, vm_name: str) -> Path:
        source = Path(declaration.host_path)
        if not source.is_dir():
            raise ValidationFailure(f"Mount source {source} no longer exists")
        size_mb = image_size_mb(directory_size(source))
        destination = self.image_path_for(vm_name, declaration.guest_tag)
        log("INFO", f"Building {size_mb} MiB mount image '{declaration.guest_tag}' from {source}")
        self.storage.build_image_from_tree(source, destination, size_mb, declaration.guest_tag)
        declaration.image_path = str(destination)
        return destination

    def create_all(self, mounts: Iterable[MountDeclaration], vm_name: str) -> None:
        for declaration in mounts:
            self.create_mount_image(declaration, vm_name)

    def sync_mount_image(self, declaration: MountDeclaration, vm_name: str, running: bool) -> Path:
        """Rebuild the image from the host directory; only allowed while the VM is down."""
        if running:
            raise VMRunning(f"VM '{vm_name}' is running; stop it before syncing mounts")
        return self.create_mount_image(declaration, vm_name)

    def delete_mount_images(self, vm_name: str, mounts: Sequence[MountDeclaration] = ()) -> None:
        for declaration in mounts:
            if declaration.image_path:
                Path(declaration.image_path).unlink(missing_ok=True)
        directory = self.paths.mounts / vm_name
        if directory.is_dir():
            shutil.rmtree(directory)
