"""Shared fixtures and in-process fakes for every host capability."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Dict, List, Set, Tuple
from unittest.mock import MagicMock

import pytest

from vmm.config import Config
from vmm.constants import DEFAULT_KERNEL_NAME
from vmm.exceptions import ExternalToolFailure
from vmm.images import ImageManager
from vmm.manager import VMManager
from vmm.models import LaunchSpec, Liveness
from vmm.mounts import MountManager
from vmm.network import NetworkManager
from vmm.storage import StorageProvisioner
from vmm.utils import set_verbose

MIB = 1024 * 1024


class FakeNetworkController:
    """Tracks links and firewall rules in memory."""

    def __init__(self) -> None:
        self.links: Dict[str, dict] = {}
        self.rules: List[Tuple[str, str, Tuple[str, ...]]] = []
        self.ip_forwarding = False
        self.fail_on: Set[str] = set()

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise ExternalToolFailure("ip", f"injected {op} failure", 2)

    def link_exists(self, name):
        return name in self.links

    def create_bridge(self, name):
        self._maybe_fail("create_bridge")
        if name in self.links:
            raise ExternalToolFailure("ip", "RTNETLINK answers: File exists", 2)
        self.links[name] = {"kind": "bridge", "master": None, "up": False, "addresses": []}

    def create_tap(self, name):
        self._maybe_fail("create_tap")
        if name in self.links:
            raise ExternalToolFailure("ip", "ioctl(TUNSETIFF): Device or resource busy", 1)
        self.links[name] = {"kind": "tap", "master": None, "up": False, "addresses": []}

    def add_address(self, name, cidr):
        self._maybe_fail("add_address")
        self.links[name]["addresses"].append(cidr)

    def set_master(self, name, bridge):
        self._maybe_fail("set_master")
        if bridge not in self.links:
            raise ExternalToolFailure("ip", f"Cannot find device \"{bridge}\"", 1)
        self.links[name]["master"] = bridge

    def set_up(self, name):
        self._maybe_fail("set_up")
        self.links[name]["up"] = True

    def delete_link(self, name):
        self._maybe_fail("delete_link")
        if name not in self.links:
            raise ExternalToolFailure("ip", f"Cannot find device \"{name}\"", 1)
        del self.links[name]

    def enable_ip_forwarding(self):
        self.ip_forwarding = True

    def rule_exists(self, table, chain, spec):
        return (table, chain, tuple(spec)) in self.rules

    def append_rule(self, table, chain, spec):
        self._maybe_fail("append_rule")
        self.rules.append((table, chain, tuple(spec)))

    def delete_rule(self, table, chain, spec):
        key = (table, chain, tuple(spec))
        if key not in self.rules:
            raise ExternalToolFailure("iptables", "Bad rule (does a matching rule exist in that chain?)", 1)
        self.rules.remove(key)

    def dnat_rules(self):
        return [rule for rule in self.rules if rule[1] == "PREROUTING"]


class FakeLoopMounter:
    """Mounting replaces the target directory with a symlink to a per-image backing directory.

    Backing directories are keyed by inode, so an image keeps its contents
    across renames the way a real ext4 file would.
    """

    def __init__(self, backing_root: Path) -> None:
        self.backing_root = backing_root
        self.mounted: Dict[Path, Path] = {}
        self.mount_calls: List[Path] = []
        self.unmount_calls: List[Path] = []

    def backing_dir(self, image_path: Path) -> Path:
        stat = os.stat(image_path)
        directory = self.backing_root / f"{stat.st_dev}-{stat.st_ino}"
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def forget(self, image_path: Path) -> None:
        shutil.rmtree(self.backing_dir(image_path))

    def mount(self, image_path, target):
        if not Path(image_path).exists():
            raise ExternalToolFailure("mount", f"special device {image_path} does not exist", 32)
        backing = self.backing_dir(image_path)
        target.rmdir()
        target.symlink_to(backing, target_is_directory=True)
        self.mounted[target] = Path(image_path)
        self.mount_calls.append(Path(image_path))

    def unmount(self, target):
        if target not in self.mounted:
            raise ExternalToolFailure("umount", f"{target}: not mounted", 32)
        target.unlink()
        target.mkdir()
        self.unmount_calls.append(self.mounted.pop(target))

    def copy_tree(self, source, target):
        shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)


class FakeResizer:
    def __init__(self, mounter: FakeLoopMounter = None) -> None:
        self.mounter = mounter
        self.created: List[Tuple[str, int, str]] = []
        self.grown: List[Tuple[str, int]] = []

    def create_filesystem(self, image_path, size_mb, label):
        with open(image_path, "wb") as handle:
            handle.truncate(size_mb * MIB)
        if self.mounter is not None:
            self.mounter.forget(image_path)
        self.created.append((Path(image_path).name, size_mb, label))

    def grow(self, image_path, size_mb):
        with open(image_path, "r+b") as handle:
            handle.truncate(size_mb * MIB)
        self.grown.append((Path(image_path).name, size_mb))


class FakeExporter:
    """Produces a minimal Debian-like filesystem tree."""

    def __init__(self) -> None:
        self.exported: List[str] = []

    def export(self, image_ref, destination):
        self.exported.append(image_ref)
        (destination / "etc" / "ssh").mkdir(parents=True)
        (destination / "etc" / "debian_version").write_text("12.5\n")
        (destination / "etc" / "ssh" / "sshd_config").write_text("#PermitRootLogin prohibit-password\n")
        (destination / "etc" / "shadow").write_text("root:!:19000:0:99999:7:::\ndaemon:*:19000:0:99999:7:::\n")
        (destination / "lib" / "systemd" / "system").mkdir(parents=True)
        (destination / "lib" / "systemd" / "system" / "ssh.service").write_text("[Unit]\n")


class FakeSupervisor:
    def __init__(self) -> None:
        self.next_pid = 4000
        self.alive: Dict[int, Liveness] = {}
        self.sockets: Dict[str, int] = {}
        self.started: List[LaunchSpec] = []
        self.stop_requests: List[Path] = []
        self.killed: List[int] = []
        self.fail_for: Set[str] = set()
        self.ignore_stop = False

    def start(self, spec):
        if spec.vm_name in self.fail_for:
            raise ExternalToolFailure("firecracker", f"failed to boot {spec.vm_name}", 1)
        self.next_pid += 1
        pid = self.next_pid
        self.alive[pid] = Liveness.ALIVE
        spec.socket_path.parent.mkdir(parents=True, exist_ok=True)
        spec.socket_path.touch()
        self.sockets[str(spec.socket_path)] = pid
        self.started.append(spec)
        return pid, spec.socket_path

    def stop(self, socket_path, timeout):
        self.stop_requests.append(Path(socket_path))
        pid = self.sockets.get(str(socket_path))
        if pid is not None and not self.ignore_stop:
            self.alive[pid] = Liveness.DEAD

    def kill(self, pid):
        self.killed.append(pid)
        self.alive[pid] = Liveness.DEAD

    def is_alive(self, pid):
        if pid <= 0:
            return Liveness.DEAD
        return self.alive.get(pid, Liveness.DEAD)


@pytest.fixture(autouse=True)
def _quiet_logging():
    set_verbose(False)
    yield
    set_verbose(False)


@pytest.fixture
def config(tmp_path) -> Config:
    """Config rooted at a throwaway data directory with short timeouts."""
    home = tmp_path / "home"
    home.mkdir()
    cfg = Config(
        data_dir=tmp_path / "data",
        stop_timeout=0.2,
        mount_lock_timeout=2.0,
        source_path=tmp_path / "config.yaml",
        user_home=home,
    )
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def base_images(config):
    """Default kernel and a 2 MiB default rootfs, so nothing is downloaded."""
    paths = config.paths()
    kernel = paths.kernels / DEFAULT_KERNEL_NAME
    kernel.write_bytes(b"\x7fELF-kernel")
    rootfs = paths.rootfs / "rootfs.ext4"
    with open(rootfs, "wb") as handle:
        handle.truncate(2 * MIB)
    return kernel, rootfs


@pytest.fixture
def network_controller() -> FakeNetworkController:
    return FakeNetworkController()


@pytest.fixture
def mounter(tmp_path) -> FakeLoopMounter:
    return FakeLoopMounter(tmp_path / "backing")


@pytest.fixture
def resizer(mounter) -> FakeResizer:
    return FakeResizer(mounter)


@pytest.fixture
def exporter() -> FakeExporter:
    return FakeExporter()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def storage(config, mounter, resizer) -> StorageProvisioner:
    return StorageProvisioner(config, mounter=mounter, resizer=resizer)


@pytest.fixture
def network(config, network_controller) -> NetworkManager:
    return NetworkManager(config, network_controller)


@pytest.fixture
def images(config, storage, exporter) -> ImageManager:
    return ImageManager(config, storage, exporter=exporter, session=MagicMock())


@pytest.fixture
def manager(config, network, storage, images, supervisor, base_images) -> VMManager:
    """Fully wired manager with every host tool faked."""
    return VMManager(
        config,
        network=network,
        storage=storage,
        images=images,
        mounts=MountManager(config, storage),
        supervisor=supervisor,
    )
