"""Data models for the microVM manager."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional


class VMState(str, enum.Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class Liveness(enum.Enum):
    ALIVE = "alive"
    DEAD = "dead"
    UNKNOWN = "unknown"


@dataclass
class PortForward:
    host_port: int
    guest_port: int
    protocol: str = "tcp"


@dataclass
class MountDeclaration:
    host_path: str
    guest_tag: str
    read_only: bool = False
    image_path: str = ""


class MountEntry(NamedTuple):
    """One fstab line for an attached mount image inside the guest."""

    device: str
    mount_path: str
    read_only: bool


@dataclass
class MountDrive:
    """Extra block device handed to the hypervisor."""

    image_path: str
    tag: str
    read_only: bool = False


@dataclass
class LaunchSpec:
    """Fully resolved resource handles for one guest boot."""

    vm_name: str
    kernel_path: Path
    rootfs_path: Path
    cpus: int
    memory_mb: int
    tap_device: str
    mac_address: str
    ip_address: str
    gateway: str
    netmask: str
    socket_path: Path
    log_path: Optional[Path] = None
    drives: List[MountDrive] = field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class VMRecord:
    name: str
    id: str
    state: VMState = VMState.CREATED
    cpus: int = 1
    memory_mb: int = 512
    disk_size_mb: int = 1024
    image: str = ""
    kernel: str = ""
    rootfs_path: str = ""
    kernel_path: str = ""
    ip_address: str = ""
    tap_device: str = ""
    mac_address: str = ""
    ssh_public_key: str = ""
    dns_servers: List[str] = field(default_factory=list)
    socket_path: str = ""
    auto_start: bool = True
    pid: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    port_forwards: List[PortForward] = field(default_factory=list)
    mounts: List[MountDeclaration] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.state == VMState.RUNNING

    def find_mount(self, tag: str) -> Optional[MountDeclaration]:
        for mount in self.mounts:
            if mount.guest_tag == tag:
                return mount
        return None

    def clear_runtime(self) -> None:
        """Drop the fields that are only meaningful while a guest process exists."""
        self.pid = 0
        self.ip_address = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["created_at"] = _format_time(self.created_at)
        data["started_at"] = _format_time(self.started_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMRecord":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "name" not in values or "id" not in values:
            raise ValueError("VM record requires 'name' and 'id'")
        values["state"] = VMState(values.get("state", VMState.CREATED.value))
        values["created_at"] = _parse_time(values.get("created_at")) or utcnow()
        values["started_at"] = _parse_time(values.get("started_at"))
        values["dns_servers"] = list(values.get("dns_servers") or [])
        values["port_forwards"] = [_port_forward_from(item) for item in values.get("port_forwards") or []]
        values["mounts"] = [_mount_from(item) for item in values.get("mounts") or []]
        return cls(**values)


def _port_forward_from(item: Dict[str, Any]) -> PortForward:
    return PortForward(
        host_port=int(item["host_port"]),
        guest_port=int(item["guest_port"]),
        protocol=str(item.get("protocol") or "tcp"),
    )


def _mount_from(item: Dict[str, Any]) -> MountDeclaration:
    return MountDeclaration(
        host_path=str(item["host_path"]),
        guest_tag=str(item["guest_tag"]),
        read_only=bool(item.get("read_only", False)),
        image_path=str(item.get("image_path") or ""),
    )
