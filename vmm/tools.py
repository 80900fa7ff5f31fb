"""Narrow wrappers around the host tools the manager shells out to.

Each capability is a small protocol with one host implementation that runs the
real command. Orchestration code only talks to the protocols, so tests can
substitute in-process fakes.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Protocol, Sequence

from vmm.exceptions import ExternalToolFailure
from vmm.utils import log, run, succeeds


class NetworkDeviceController(Protocol):
    def link_exists(self, name: str) -> bool: ...

    def create_bridge(self, name: str) -> None: ...

    def create_tap(self, name: str) -> None: ...

    def add_address(self, name: str, cidr: str) -> None: ...

    def set_master(self, name: str, bridge: str) -> None: ...

    def set_up(self, name: str) -> None: ...

    def delete_link(self, name: str) -> None: ...

    def enable_ip_forwarding(self) -> None: ...

    def rule_exists(self, table: str, chain: str, spec: Sequence[str]) -> bool: ...

    def append_rule(self, table: str, chain: str, spec: Sequence[str]) -> None: ...

    def delete_rule(self, table: str, chain: str, spec: Sequence[str]) -> None: ...


class LoopImageMounter(Protocol):
    def mount(self, image_path: Path, target: Path) -> None: ...

    def unmount(self, target: Path) -> None: ...

    def copy_tree(self, source: Path, target: Path) -> None: ...


class FilesystemResizer(Protocol):
    def create_filesystem(self, image_path: Path, size_mb: int, label: str) -> None: ...

    def grow(self, image_path: Path, size_mb: int) -> None: ...


class ContainerExporter(Protocol):
    def export(self, image_ref: str, destination: Path) -> None: ...


class HostNetworkController:
    """iproute2 / sysctl / iptables backed implementation."""

    sys_class_net = Path("/sys/class/net")

    def link_exists(self, name: str) -> bool:
        return (self.sys_class_net / name).exists()

    def create_bridge(self, name: str) -> None:
        run(["ip", "link", "add", name, "type", "bridge"])

    def create_tap(self, name: str) -> None:
        run(["ip", "tuntap", "add", "dev", name, "mode", "tap"])

    def add_address(self, name: str, cidr: str) -> None:
        run(["ip", "addr", "add", cidr, "dev", name])

    def set_master(self, name: str, bridge: str) -> None:
        run(["ip", "link", "set", name, "master", bridge])

    def set_up(self, name: str) -> None:
        run(["ip", "link", "set", name, "up"])

    def delete_link(self, name: str) -> None:
        run(["ip", "link", "del", name])

    def enable_ip_forwarding(self) -> None:
        run(["sysctl", "-w", "net.ipv4.ip_forward=1"])

    @staticmethod
    def _iptables(action: str, table: str, chain: str, spec: Sequence[str]) -> List[str]:
        return ["iptables", "-t", table, action, chain, *spec]

    def rule_exists(self, table: str, chain: str, spec: Sequence[str]) -> bool:
        return succeeds(self._iptables("-C", table, chain, spec))

    def append_rule(self, table: str, chain: str, spec: Sequence[str]) -> None:
        run(self._iptables("-A", table, chain, spec))

    def delete_rule(self, table: str, chain: str, spec: Sequence[str]) -> None:
        run(self._iptables("-D", table, chain, spec))


class HostLoopMounter:
    """mount -o loop / umount / tar-pipe copy."""

    def mount(self, image_path: Path, target: Path) -> None:
        run(["mount", "-o", "loop", str(image_path), str(target)])

    def unmount(self, target: Path) -> None:
        run(["umount", str(target)])

    def copy_tree(self, source: Path, target: Path) -> None:
        """Archive-stream copy so permissions, owners and special files survive."""
        log("DEBUG", f"Copying {source} -> {target} via tar")
        try:
            producer = subprocess.Popen(
                ["tar", "-cf", "-", "-C", str(source), "."],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExternalToolFailure("tar", "command not found") from exc
        consumer = subprocess.Popen(
            ["tar", "-xf", "-", "-C", str(target)],
            stdin=producer.stdout,
            stderr=subprocess.PIPE,
        )
        assert producer.stdout is not None
        producer.stdout.close()
        _, consumer_err = consumer.communicate()
        _, producer_err = producer.communicate()
        if producer.returncode != 0:
            raise ExternalToolFailure("tar", producer_err.decode(errors="replace"), producer.returncode)
        if consumer.returncode != 0:
            raise ExternalToolFailure("tar", consumer_err.decode(errors="replace"), consumer.returncode)


class HostFilesystemResizer:
    """truncate + mkfs.ext4 / e2fsck + resize2fs."""

    def create_filesystem(self, image_path: Path, size_mb: int, label: str) -> None:
        with open(image_path, "wb") as handle:
            handle.truncate(size_mb * 1024 * 1024)
        try:
            run(["mkfs.ext4", "-F", "-q", "-L", label[:16], str(image_path)])
        except ExternalToolFailure:
            image_path.unlink(missing_ok=True)
            raise

    def grow(self, image_path: Path, size_mb: int) -> None:
        with open(image_path, "r+b") as handle:
            handle.truncate(size_mb * 1024 * 1024)
        # e2fsck exits 1 when it fixed something; resize2fs is the real check.
        check = run(["e2fsck", "-f", "-y", str(image_path)], check=False)
        if check.returncode > 1:
            log("WARN", f"e2fsck reported problems on {image_path} (exit {check.returncode})")
        run(["resize2fs", str(image_path)])


class DockerExporter:
    """docker create + docker export piped into tar."""

    def export(self, image_ref: str, destination: Path) -> None:
        created = run(["docker", "create", image_ref])
        container_id = created.stdout.strip()
        try:
            exporter = subprocess.Popen(
                ["docker", "export", container_id],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
            extractor = subprocess.Popen(
                ["tar", "-xf", "-", "-C", str(destination)],
                stdin=exporter.stdout,
                stderr=subprocess.PIPE,
            )
            assert exporter.stdout is not None
            exporter.stdout.close()
            _, extract_err = extractor.communicate()
            _, export_err = exporter.communicate()
            if exporter.returncode != 0:
                raise ExternalToolFailure("docker export", export_err.decode(errors="replace"), exporter.returncode)
            if extractor.returncode != 0:
                raise ExternalToolFailure("tar", extract_err.decode(errors="replace"), extractor.returncode)
        finally:
            removed = run(["docker", "rm", container_id], check=False)
            if removed.returncode != 0:
                log("WARN", f"Failed to remove temporary container {container_id}")
