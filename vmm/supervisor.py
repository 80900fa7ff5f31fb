"""Firecracker process supervision over the API socket."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from vmm.config import Config
from vmm.constants import BOOT_ARGS
from vmm.exceptions import ExternalToolFailure
from vmm.models import LaunchSpec, Liveness
from vmm.utils import ensure_directory, log, wait_for_path

API_BASE_URL = "http://localhost"
SOCKET_WAIT_TIMEOUT = 5.0
API_TIMEOUT = 10.0


class HypervisorSupervisor(Protocol):
    def start(self, spec: LaunchSpec) -> Tuple[int, Path]: ...

    def stop(self, socket_path: Path, timeout: float) -> None: ...

    def kill(self, pid: int) -> None: ...

    def is_alive(self, pid: int) -> Liveness: ...


def boot_args(spec: LaunchSpec) -> str:
    return f"{BOOT_ARGS} ip={spec.ip_address}::{spec.gateway}:{spec.netmask}::eth0:off"


def api_payloads(spec: LaunchSpec) -> Dict[str, Dict[str, Any]]:
    """Ordered ``path -> body`` map of PUT requests that configure one guest."""
    payloads: Dict[str, Dict[str, Any]] = {
        "/machine-config": {
            "vcpu_count": spec.cpus,
            "mem_size_mib": spec.memory_mb,
        },
        "/boot-source": {
            "kernel_image_path": str(spec.kernel_path),
            "boot_args": boot_args(spec),
        },
        "/drives/rootfs": {
            "drive_id": "rootfs",
            "path_on_host": str(spec.rootfs_path),
            "is_root_device": True,
            "is_read_only": False,
        },
    }
    for drive in spec.drives:
        payloads[f"/drives/{drive.tag}"] = {
            "drive_id": drive.tag,
            "path_on_host": drive.image_path,
            "is_root_device": False,
            "is_read_only": drive.read_only,
        }
    payloads["/network-interfaces/eth0"] = {
        "iface_id": "eth0",
        "guest_mac": spec.mac_address,
        "host_dev_name": spec.tap_device,
    }
    return payloads


def _is_zombie(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    # The state field follows the parenthesised command name.
    return stat.rpartition(")")[2].split()[:1] == ["Z"]


class FirecrackerSupervisor:
    def __init__(self, config: Config) -> None:
        self.binary = config.firecracker_bin

    def _client(self, socket_path: Path, timeout: float = API_TIMEOUT) -> httpx.Client:
        transport = httpx.HTTPTransport(uds=str(socket_path))
        return httpx.Client(transport=transport, base_url=API_BASE_URL, timeout=timeout)

    @staticmethod
    def _put(client: httpx.Client, path: str, payload: Dict[str, Any]) -> None:
        response = client.put(path, json=payload)
        if response.status_code >= 400:
            raise ExternalToolFailure(
                f"firecracker API {path}", f"{response.status_code} {response.text.strip()}"
            )

    def start(self, spec: LaunchSpec) -> Tuple[int, Path]:
        socket_path = Path(spec.socket_path)
        ensure_directory(socket_path.parent)
        socket_path.unlink(missing_ok=True)
        log_path = spec.log_path or socket_path.with_suffix(".log")
        ensure_directory(log_path.parent)

        log("DEBUG", f"Spawning {self.binary} --api-sock {socket_path}")
        with open(log_path, "ab") as console:
            try:
                process = subprocess.Popen(
                    [self.binary, "--api-sock", str(socket_path)],
                    stdin=subprocess.DEVNULL,
                    stdout=console,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise ExternalToolFailure(self.binary, "command not found") from exc

        try:
            if not wait_for_path(socket_path, SOCKET_WAIT_TIMEOUT) or process.poll() is not None:
                raise ExternalToolFailure(
                    self.binary,
                    f"API socket {socket_path} did not appear\n{tail(log_path)}",
                    process.poll(),
                )
            with self._client(socket_path) as client:
                for path, payload in api_payloads(spec).items():
                    self._put(client, path, payload)
                self._put(client, "/actions", {"action_type": "InstanceStart"})
        except (ExternalToolFailure, httpx.HTTPError) as exc:
            process.kill()
            process.wait()
            socket_path.unlink(missing_ok=True)
            if isinstance(exc, ExternalToolFailure):
                raise
            raise ExternalToolFailure(f"firecracker API {socket_path}", str(exc)) from exc
        return process.pid, socket_path

    def stop(self, socket_path: Path, timeout: float) -> None:
        """Ask the guest to shut down. A missing or dead socket means nothing to stop."""
        socket_path = Path(socket_path)
        if not socket_path.exists():
            log("DEBUG", f"No API socket at {socket_path}; nothing to stop")
            return
        try:
            with self._client(socket_path, timeout=timeout) as client:
                self._put(client, "/actions", {"action_type": "SendCtrlAltDel"})
        except httpx.ConnectError as exc:
            log("DEBUG", f"API socket {socket_path} refused connection: {exc}")
        except httpx.HTTPError as exc:
            raise ExternalToolFailure(f"firecracker API {socket_path}", str(exc)) from exc

    def kill(self, pid: int) -> None:
        if pid <= 0:
            return
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def is_alive(self, pid: int) -> Liveness:
        """Probe with signal 0. Permission denied means someone else's live process."""
        if pid <= 0:
            return Liveness.DEAD
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return Liveness.DEAD
        except PermissionError:
            return Liveness.ALIVE
        except OSError:
            return Liveness.UNKNOWN
        if _is_zombie(pid):
            self._reap(pid)
            return Liveness.DEAD
        return Liveness.ALIVE

    @staticmethod
    def _reap(pid: int) -> None:
        try:
            os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            pass


def wait_until_dead(supervisor: HypervisorSupervisor, pid: int, timeout: float, interval: float = 0.2) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        if supervisor.is_alive(pid) == Liveness.DEAD:
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


def tail(path: Optional[Path], lines: int = 20) -> str:
    if path is None or not path.exists():
        return ""
    return "\n".join(path.read_text(errors="replace").splitlines()[-lines:])
