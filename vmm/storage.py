"""Per-VM rootfs materialisation and in-image customisation."""

from __future__ import annotations

import fcntl
import hashlib
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from vmm.config import Config
from vmm.constants import DEFAULT_DNS_SERVERS, DEFAULT_ROOTFS_NAME, FSTAB_SENTINEL, IMAGE_SUFFIX
from vmm.exceptions import DefaultImageMissing, ExternalToolFailure, ImageNotFound, ResourceBusy
from vmm.models import MountEntry
from vmm.tools import FilesystemResizer, HostFilesystemResizer, HostLoopMounter, LoopImageMounter
from vmm.utils import copy_file, ensure_directory, log

MIB = 1024 * 1024


def rootfs_image_path(rootfs_dir: Path, name: str) -> Path:
    return rootfs_dir / f"{name}{IMAGE_SUFFIX}"


class ImageLocks:
    """Exclusive per-image locks shared by threads and by separate processes.

    A thread lock keyed by the resolved image path excludes workers inside one
    process; an ``flock`` on a lock file under ``lock_dir`` excludes other
    invocations of the CLI.
    """

    poll_interval = 0.1

    def __init__(self, lock_dir: Path, timeout: float) -> None:
        self.lock_dir = Path(lock_dir)
        self.timeout = timeout
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _key(self, image_path: Path) -> str:
        return str(Path(image_path).resolve())

    def _thread_lock(self, key: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(key, threading.Lock())

    def lock_file_for(self, image_path: Path) -> Path:
        digest = hashlib.sha1(self._key(image_path).encode()).hexdigest()
        return self.lock_dir / f"{digest}.lock"

    @contextmanager
    def hold(self, image_path: Path, timeout: Optional[float] = None) -> Iterator[None]:
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        key = self._key(image_path)
        thread_lock = self._thread_lock(key)
        if not thread_lock.acquire(timeout=max(timeout, 0)):
            raise ResourceBusy(f"Timed out after {timeout:.0f}s waiting for lock on {image_path}")
        try:
            ensure_directory(self.lock_dir)
            with open(self.lock_file_for(image_path), "a") as handle:
                while True:
                    try:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() >= deadline:
                            raise ResourceBusy(
                                f"Timed out after {timeout:.0f}s waiting for lock on {image_path}"
                            )
                        time.sleep(self.poll_interval)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            thread_lock.release()


class StorageProvisioner:
    def __init__(
        self,
        config: Config,
        mounter: Optional[LoopImageMounter] = None,
        resizer: Optional[FilesystemResizer] = None,
        locks: Optional[ImageLocks] = None,
    ) -> None:
        self.config = config
        self.paths = config.paths()
        self.mounter = mounter or HostLoopMounter()
        self.resizer = resizer or HostFilesystemResizer()
        self.locks = locks or ImageLocks(self.paths.locks, config.mount_lock_timeout)

    # ----- scoped mount -----------------------------------------------

    @contextmanager
    def mounted_image(self, image_path: Path) -> Iterator[Path]:
        """Lock, loop-mount into a fresh directory, yield it, then always unmount and unlock."""
        with self.locks.hold(image_path):
            mount_point = Path(tempfile.mkdtemp(prefix="vmm-rootfs-"))
            try:
                self.mounter.mount(image_path, mount_point)
                try:
                    yield mount_point
                except BaseException:
                    self._unmount_quietly(mount_point)
                    raise
                else:
                    self.mounter.unmount(mount_point)
            finally:
                try:
                    mount_point.rmdir()
                except OSError as exc:
                    log("WARN", f"Could not remove mount point {mount_point}: {exc}")

    def _unmount_quietly(self, mount_point: Path) -> None:
        try:
            self.mounter.unmount(mount_point)
        except ExternalToolFailure as exc:
            log("WARN", f"Failed to unmount {mount_point}: {exc}")

    # ----- instance images --------------------------------------------

    def base_image_path(self, image_ref: str = "") -> Path:
        return rootfs_image_path(self.paths.rootfs, image_ref or DEFAULT_ROOTFS_NAME)

    def instance_path(self, vm_name: str) -> Path:
        return self.paths.vms / f"{vm_name}{IMAGE_SUFFIX}"

    def materialize_instance(self, vm_name: str, image_ref: str = "", disk_size_mb: int = 0) -> Path:
        """Return the VM's private rootfs, copying and growing the base image the first time."""
        destination = self.instance_path(vm_name)
        if destination.exists():
            log("DEBUG", f"Reusing rootfs {destination}")
            return destination

        source = self.base_image_path(image_ref)
        if not source.exists():
            if image_ref:
                raise ImageNotFound(f"Image '{image_ref}' not found at {source}")
            raise DefaultImageMissing(f"Default rootfs not found at {source}; run 'vmm image pull'")

        label = f"image '{image_ref}'" if image_ref else "the default image"
        log("INFO", f"Creating rootfs for VM '{vm_name}' from {label}")
        staging = destination.with_name(f".{destination.name}.partial")
        try:
            copy_file(source, staging)
            current_mb = staging.stat().st_size // MIB
            if disk_size_mb > current_mb:
                log("INFO", f"Resizing rootfs to {disk_size_mb} MiB")
                self.resizer.grow(staging, disk_size_mb)
            else:
                log("DEBUG", f"Requested {disk_size_mb} MiB <= image size {current_mb} MiB; not resizing")
            os.replace(staging, destination)
        except BaseException:
            staging.unlink(missing_ok=True)
            raise
        return destination

    def delete_instance(self, vm_name: str) -> None:
        self.instance_path(vm_name).unlink(missing_ok=True)

    def build_image_from_tree(self, source: Path, destination: Path, size_mb: int, label: str) -> Path:
        """Format a fresh ext4 image and stream ``source`` into it; renamed into place on success."""
        ensure_directory(destination.parent)
        staging = destination.with_name(f".{destination.name}.partial")
        # The staging file is shared by every builder of this destination.
        with self.locks.hold(destination):
            staging.unlink(missing_ok=True)
            try:
                self.resizer.create_filesystem(staging, size_mb, label)
                with self.mounted_image(staging) as root:
                    self.mounter.copy_tree(source, root)
                os.replace(staging, destination)
            except BaseException:
                staging.unlink(missing_ok=True)
                raise
        return destination

    # ----- customisation ----------------------------------------------

    def inject_ssh_key(self, image_path: Path, public_key: str) -> None:
        if not public_key.strip():
            return
        with self.mounted_image(image_path) as root:
            self._write_ssh_key(root, public_key)

    def inject_dns_config(self, image_path: Path, servers: Sequence[str]) -> None:
        with self.mounted_image(image_path) as root:
            self._write_resolv_conf(root, servers)

    def inject_mount_table(self, image_path: Path, entries: Sequence[MountEntry]) -> None:
        with self.mounted_image(image_path) as root:
            self._write_fstab(root, entries)

    def customize_instance(
        self,
        image_path: Path,
        public_key: str,
        dns_servers: Sequence[str],
        entries: Sequence[MountEntry],
    ) -> None:
        """Apply SSH key, resolv.conf and mount table under a single mount."""
        with self.mounted_image(image_path) as root:
            if public_key.strip():
                log("INFO", "Injecting SSH public key")
                self._write_ssh_key(root, public_key)
            log("INFO", "Configuring DNS")
            self._write_resolv_conf(root, dns_servers)
            self._write_fstab(root, entries)

    @staticmethod
    def _write_ssh_key(root: Path, public_key: str) -> None:
        home = root / "root"
        ensure_directory(home, mode=0o700)
        ssh_dir = home / ".ssh"
        ensure_directory(ssh_dir, mode=0o700)
        os.chmod(ssh_dir, 0o700)
        keys = ssh_dir / "authorized_keys"
        keys.write_text(public_key.strip() + "\n")
        os.chmod(keys, 0o600)
        owner = home.stat()
        os.chown(ssh_dir, owner.st_uid, owner.st_gid)
        os.chown(keys, owner.st_uid, owner.st_gid)

    @staticmethod
    def _write_resolv_conf(root: Path, servers: Sequence[str]) -> None:
        servers = list(servers) or list(DEFAULT_DNS_SERVERS)
        etc = root / "etc"
        ensure_directory(etc)
        resolv = etc / "resolv.conf"
        if resolv.is_symlink() or resolv.exists():
            resolv.unlink()
        lines = ["# Generated by vmm"] + [f"nameserver {server}" for server in servers]
        resolv.write_text("\n".join(lines) + "\n")
        os.chmod(resolv, 0o644)

    @staticmethod
    def _write_fstab(root: Path, entries: Sequence[MountEntry]) -> None:
        fstab = root / "etc" / "fstab"
        ensure_directory(fstab.parent)
        existing = fstab.read_text() if fstab.exists() else ""
        kept: List[str] = [line for line in existing.splitlines() if FSTAB_SENTINEL not in line]
        while kept and not kept[-1].strip():
            kept.pop()
        for entry in entries:
            options = "defaults,nofail,ro" if entry.read_only else "defaults,nofail"
            kept.append(f"{entry.device} {entry.mount_path} ext4 {options} 0 2 {FSTAB_SENTINEL}")
            ensure_directory(root / entry.mount_path.lstrip("/"))
        fstab.write_text("\n".join(kept) + "\n" if kept else "")
