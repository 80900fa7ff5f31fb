"""Configuration loading for the microVM manager.

The configuration is built once per process by :func:`load_config` and passed
explicitly into every component. This is the only module that consults the
process environment.
"""

from __future__ import annotations

import ipaddress
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmm.constants import (
    CONFIG_FILE_NAME,
    DEFAULT_BRIDGE_NAME,
    DEFAULT_CPUS,
    DEFAULT_DATA_DIR,
    DEFAULT_DISK_SIZE_MB,
    DEFAULT_FIRECRACKER_BIN,
    DEFAULT_GATEWAY,
    DEFAULT_HOST_INTERFACE,
    DEFAULT_MEMORY_MB,
    DEFAULT_MOUNT_LOCK_TIMEOUT,
    DEFAULT_ROOTFS_URL,
    DEFAULT_STOP_TIMEOUT,
    DEFAULT_SUBNET,
    FALLBACK_KERNEL_URL,
    TRUTHY,
)
from vmm.exceptions import ManagerError
from vmm.utils import atomic_write_text, ensure_directory, log


@dataclass
class VMDefaults:
    """Values applied by ``create`` when the caller leaves them unset (0 / empty)."""

    cpus: int = 0
    memory_mb: int = 0
    disk_size_mb: int = 0
    image: str = ""
    kernel: str = ""
    ssh_key_path: str = ""
    dns_servers: List[str] = field(default_factory=list)

    def resolved_cpus(self) -> int:
        return self.cpus or DEFAULT_CPUS

    def resolved_memory_mb(self) -> int:
        return self.memory_mb or DEFAULT_MEMORY_MB

    def resolved_disk_size_mb(self) -> int:
        return self.disk_size_mb or DEFAULT_DISK_SIZE_MB


@dataclass
class Paths:
    config: Path
    vms: Path
    images: Path
    kernels: Path
    rootfs: Path
    mounts: Path
    sockets: Path
    logs: Path
    state: Path

    @property
    def locks(self) -> Path:
        return self.state / "locks"


@dataclass
class Config:
    data_dir: Path = DEFAULT_DATA_DIR
    bridge_name: str = DEFAULT_BRIDGE_NAME
    subnet: str = DEFAULT_SUBNET
    gateway: str = DEFAULT_GATEWAY
    host_interface: str = DEFAULT_HOST_INTERFACE
    kernel_url: str = ""
    rootfs_url: str = DEFAULT_ROOTFS_URL
    fallback_kernel_url: str = FALLBACK_KERNEL_URL
    firecracker_bin: str = DEFAULT_FIRECRACKER_BIN
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    mount_lock_timeout: float = DEFAULT_MOUNT_LOCK_TIMEOUT
    autostart_workers: int = 1
    log_verbose: bool = False
    defaults: VMDefaults = field(default_factory=VMDefaults)
    # Not persisted: where this config came from and whose home "~" means.
    source_path: Optional[Path] = None
    user_home: Optional[Path] = None

    def paths(self) -> Paths:
        data = Path(self.data_dir)
        return Paths(
            config=data / "config",
            vms=data / "vms",
            images=data / "images",
            kernels=data / "images" / "kernels",
            rootfs=data / "images" / "rootfs",
            mounts=data / "mounts",
            sockets=data / "sockets",
            logs=data / "logs",
            state=data / "state",
        )

    def ensure_directories(self) -> None:
        paths = self.paths()
        for directory in (
            paths.config,
            paths.vms,
            paths.kernels,
            paths.rootfs,
            paths.mounts,
            paths.sockets,
            paths.logs,
            paths.state,
            paths.locks,
        ):
            ensure_directory(directory)

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.subnet, strict=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("source_path", None)
        data.pop("user_home", None)
        data["data_dir"] = str(self.data_dir)
        return data

    def validate(self) -> None:
        try:
            network = ipaddress.IPv4Network(self.subnet, strict=False)
        except ValueError as exc:
            raise ManagerError(f"Invalid subnet '{self.subnet}': {exc}")
        try:
            gateway = ipaddress.IPv4Address(self.gateway)
        except ValueError as exc:
            raise ManagerError(f"Invalid gateway '{self.gateway}': {exc}")
        if gateway not in network:
            raise ManagerError(f"Gateway {gateway} is not inside subnet {network}")
        if not self.bridge_name or len(self.bridge_name) > 15:
            raise ManagerError(f"Invalid bridge name '{self.bridge_name}' (1-15 characters)")
        if self.autostart_workers < 1:
            raise ManagerError(f"autostart_workers must be >= 1 (got {self.autostart_workers})")
        if self.stop_timeout <= 0:
            raise ManagerError(f"stop_timeout must be > 0 (got {self.stop_timeout})")
        if self.mount_lock_timeout <= 0:
            raise ManagerError(f"mount_lock_timeout must be > 0 (got {self.mount_lock_timeout})")
        for label in ("cpus", "memory_mb", "disk_size_mb"):
            value = getattr(self.defaults, label)
            if value < 0:
                raise ManagerError(f"defaults.{label} must be >= 0 (got {value})")


def invoking_user_home(env: Optional[Mapping[str, str]] = None) -> Path:
    """Home directory of the user who ran the command, looking through sudo."""
    env = os.environ if env is None else env
    sudo_user = env.get("SUDO_USER")
    if sudo_user and sudo_user != "root":
        return Path("/home") / sudo_user
    if sudo_user == "root":
        return Path("/root")
    home = env.get("HOME")
    return Path(home) if home else Path.home()


def config_path(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    explicit = env.get("VMM_CONFIG")
    if explicit:
        return Path(explicit)
    xdg = env.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "vmm" / CONFIG_FILE_NAME
    return invoking_user_home(env) / ".config" / "vmm" / CONFIG_FILE_NAME


_INT_FIELDS = {"autostart_workers"}
_FLOAT_FIELDS = {"stop_timeout", "mount_lock_timeout"}
_STR_FIELDS = {
    "bridge_name",
    "subnet",
    "gateway",
    "host_interface",
    "kernel_url",
    "rootfs_url",
    "fallback_kernel_url",
    "firecracker_bin",
}


def _parse_defaults(raw: Any, source: Path) -> VMDefaults:
    if raw is None:
        return VMDefaults()
    if not isinstance(raw, dict):
        raise ManagerError(f"{source}: 'defaults' must be a mapping")
    defaults = VMDefaults()
    for key, value in raw.items():
        if key in {"cpus", "memory_mb", "disk_size_mb"}:
            try:
                setattr(defaults, key, int(value or 0))
            except (TypeError, ValueError):
                raise ManagerError(f"{source}: defaults.{key} must be an integer (got '{value}')")
        elif key in {"image", "kernel", "ssh_key_path"}:
            setattr(defaults, key, str(value or ""))
        elif key == "dns_servers":
            if isinstance(value, str):
                value = [item.strip() for item in value.split(",") if item.strip()]
            defaults.dns_servers = [str(item) for item in value or []]
        else:
            log("WARN", f"{source}: ignoring unknown key defaults.{key}")
    return defaults


def config_from_dict(data: Mapping[str, Any], source: Path) -> Config:
    cfg = Config(source_path=source)
    for key, value in data.items():
        if key == "data_dir":
            cfg.data_dir = Path(str(value))
        elif key == "defaults":
            cfg.defaults = _parse_defaults(value, source)
        elif key in _STR_FIELDS:
            setattr(cfg, key, str(value or ""))
        elif key in _INT_FIELDS:
            try:
                setattr(cfg, key, int(value))
            except (TypeError, ValueError):
                raise ManagerError(f"{source}: {key} must be an integer (got '{value}')")
        elif key in _FLOAT_FIELDS:
            try:
                setattr(cfg, key, float(value))
            except (TypeError, ValueError):
                raise ManagerError(f"{source}: {key} must be a number (got '{value}')")
        elif key == "log_verbose":
            cfg.log_verbose = str(value).lower() in TRUTHY
        else:
            log("WARN", f"{source}: ignoring unknown config key '{key}'")
    return cfg


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Config:
    env = os.environ if env is None else env
    if path is None:
        path = config_path(env)
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ManagerError(f"Config file {path} contains invalid YAML: {exc}")
        except OSError as exc:
            raise ManagerError(f"Cannot read config file {path}: {exc}")
        if not isinstance(data, dict):
            raise ManagerError(f"Config file {path} must contain a YAML mapping")
        cfg = config_from_dict(data, path)
    else:
        cfg = Config(source_path=path)

    verbose_env = env.get("VMM_LOG_VERBOSE")
    if verbose_env is not None:
        cfg.log_verbose = verbose_env.lower() in TRUTHY
    cfg.user_home = invoking_user_home(env)
    cfg.validate()
    return cfg


def save_config(cfg: Config, path: Optional[Path] = None) -> Path:
    target = path or cfg.source_path or config_path()
    content = yaml.safe_dump(cfg.to_dict(), sort_keys=False, default_flow_style=False)
    atomic_write_text(target, content)
    return target
