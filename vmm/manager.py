"""VM lifecycle orchestration: create, start, stop, delete and batch policies."""

from __future__ import annotations

import ipaddress
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from vmm.config import Config
from vmm.constants import DEFAULT_KERNEL_NAME, DEFAULT_ROOTFS_NAME
from vmm.exceptions import (
    AlreadyExists,
    AlreadyRunning,
    Conflict,
    ImageNotFound,
    KernelNotFound,
    ManagerError,
    MountNotFound,
    NotRunning,
    ValidationFailure,
    VMRunning,
)
from vmm.images import ImageManager
from vmm.models import LaunchSpec, Liveness, MountDeclaration, MountEntry, PortForward, VMRecord, VMState, utcnow
from vmm.mounts import MountManager, mount_drives, mount_entries, parse_mount_spec, validate_mounts
from vmm.network import NetworkManager, tap_name_for, validate_port, validate_protocol
from vmm.storage import StorageProvisioner
from vmm.store import VMStore, validate_vm_name
from vmm.supervisor import FirecrackerSupervisor, HypervisorSupervisor, wait_until_dead
from vmm.utils import deterministic_mac, expand_user_path, generate_vm_id, log

KILL_WAIT_TIMEOUT = 5.0
ACTIVE_STATES = (VMState.STARTING, VMState.RUNNING, VMState.STOPPING)
SSH_KEY_NAMES = ("id_ed25519", "id_rsa", "id_ecdsa", "id_dsa")


@dataclass
class BatchResult:
    """Outcome of autostart/autostop; ``failed`` maps VM name to the error text."""

    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.succeeded)

    @property
    def ok(self) -> bool:
        return not self.failed


def parse_port_spec(spec: str) -> Tuple[int, int]:
    """``HOST:GUEST`` -> (host_port, guest_port)."""
    host, sep, guest = spec.partition(":")
    if not sep:
        raise ValidationFailure(f"Invalid port spec '{spec}', expected HOST_PORT:GUEST_PORT")
    return validate_port(host, "host port"), validate_port(guest, "guest port")


class VMManager:
    def __init__(
        self,
        config: Config,
        store: Optional[VMStore] = None,
        network: Optional[NetworkManager] = None,
        storage: Optional[StorageProvisioner] = None,
        images: Optional[ImageManager] = None,
        mounts: Optional[MountManager] = None,
        supervisor: Optional[HypervisorSupervisor] = None,
    ) -> None:
        self.config = config
        self.paths = config.paths()
        self.store = store or VMStore(self.paths.vms)
        self.network = network or NetworkManager(config)
        self.storage = storage or StorageProvisioner(config)
        self.images = images or ImageManager(config, self.storage)
        self.mounts = mounts or MountManager(config, self.storage)
        self.supervisor = supervisor or FirecrackerSupervisor(config)

    # ----- reconciliation ---------------------------------------------

    def reconcile(self, record: VMRecord) -> VMRecord:
        """Bring the persisted state in line with the hypervisor process."""
        if record.state not in ACTIVE_STATES:
            return record
        # UNKNOWN counts as alive: never report a guest stopped on a failed probe.
        if self.supervisor.is_alive(record.pid) != Liveness.DEAD:
            return record
        previous = record.state
        record.state = VMState.ERROR if previous == VMState.STARTING else VMState.STOPPED
        self._release_host_resources(record)
        record.clear_runtime()
        self.store.save(record)
        log("DEBUG", f"Reconciled VM '{record.name}': {previous.value} -> {record.state.value}")
        return record

    def get(self, name: str) -> VMRecord:
        return self.reconcile(self.store.load(name))

    def list(self) -> List[VMRecord]:
        return [self.reconcile(record) for record in self.store.list()]

    # ----- create -----------------------------------------------------

    def create(
        self,
        name: str,
        cpus: int = 0,
        memory_mb: int = 0,
        disk_size_mb: int = 0,
        image: str = "",
        kernel: str = "",
        ssh_key_path: str = "",
        dns_servers: Optional[Sequence[str]] = None,
        mounts: Sequence[str] = (),
        auto_start: bool = True,
    ) -> VMRecord:
        """Validate the request and persist a new record. No host resources are touched."""
        validate_vm_name(name)
        if self.store.exists(name):
            raise AlreadyExists(f"VM '{name}' already exists")

        defaults = self.config.defaults
        cpus = cpus or defaults.resolved_cpus()
        memory_mb = memory_mb or defaults.resolved_memory_mb()
        disk_size_mb = disk_size_mb or defaults.resolved_disk_size_mb()
        for label, value in (("cpus", cpus), ("memory", memory_mb), ("disk size", disk_size_mb)):
            if value <= 0:
                raise ValidationFailure(f"Invalid {label} {value}: must be positive")

        image = image or defaults.image
        if image and not self.images.image_exists(image):
            raise ImageNotFound(f"Image '{image}' not found; see 'vmm image list'")
        kernel = kernel or defaults.kernel
        if kernel and not self.images.kernel_exists(kernel):
            raise KernelNotFound(f"Kernel '{kernel}' not found; see 'vmm kernel list'")

        public_key = self._read_public_key(ssh_key_path or defaults.ssh_key_path)
        servers = list(dns_servers if dns_servers else defaults.dns_servers)
        for server in servers:
            try:
                ipaddress.ip_address(server)
            except ValueError:
                raise ValidationFailure(f"Invalid DNS server address '{server}'")

        declarations = [parse_mount_spec(spec, self.config.user_home) for spec in mounts]
        validate_mounts(declarations)

        vm_id = generate_vm_id()
        record = VMRecord(
            name=name,
            id=vm_id,
            cpus=cpus,
            memory_mb=memory_mb,
            disk_size_mb=disk_size_mb,
            image=image,
            kernel=kernel,
            tap_device=tap_name_for(vm_id),
            mac_address=deterministic_mac(vm_id),
            ssh_public_key=public_key,
            dns_servers=servers,
            socket_path=str(self.paths.sockets / f"{name}.sock"),
            auto_start=auto_start,
            mounts=declarations,
        )
        self.store.create(record)
        log("SUCCESS", f"Created VM '{name}' (id {vm_id}, {cpus} vCPU, {memory_mb} MiB)")
        return record

    def _read_public_key(self, raw_path: str) -> str:
        if not raw_path:
            return ""
        path = expand_user_path(raw_path, self.config.user_home)
        try:
            return path.read_text().strip()
        except OSError as exc:
            raise ValidationFailure(f"Cannot read SSH public key {path}: {exc}")

    # ----- start ------------------------------------------------------

    def address_index(self, name: str) -> int:
        """Position of ``name`` among all records in creation order."""
        for index, record in enumerate(self.store.list()):
            if record.name == name:
                return index
        raise ManagerError(f"VM '{name}' disappeared while allocating an address")

    def start(self, name: str) -> VMRecord:
        record = self.get(name)
        # After reconcile an active state means the hypervisor process is still there.
        if record.is_running:
            raise AlreadyRunning(f"VM '{name}' is already running")
        if record.state in ACTIVE_STATES:
            raise AlreadyRunning(f"VM '{name}' still has a live process (state: {record.state.value})")
        log("INFO", f"Starting VM '{name}'")
        record.state = VMState.STARTING
        record.clear_runtime()
        self.store.save(record)
        try:
            self._provision(record)
        except Exception as exc:
            self._fail_start(record, exc)
            raise
        self._apply_port_forwards(record)
        log("SUCCESS", f"VM '{name}' started (IP {record.ip_address}, PID {record.pid})")
        return record

    def _provision(self, record: VMRecord) -> None:
        if not record.image or not record.kernel:
            self.images.ensure_base_images()
        kernel = self.images.kernel_path(record.kernel)
        if not kernel.exists():
            raise KernelNotFound(f"Kernel '{record.kernel or kernel.name}' not found at {kernel}")

        rootfs = self.storage.materialize_instance(record.name, record.image, record.disk_size_mb)
        record.rootfs_path = str(rootfs)
        record.kernel_path = str(kernel)

        if record.mounts:
            log("INFO", "Creating mount images")
            self.mounts.create_all(record.mounts, record.name)
        self.storage.customize_instance(
            rootfs,
            record.ssh_public_key,
            record.dns_servers,
            mount_entries(record.mounts),
        )
        self.store.save(record)

        self.network.ensure_bridge()
        self.network.create_interface(record.tap_device)
        record.ip_address = self.network.allocate_address(self.address_index(record.name))
        self.store.save(record)

        spec = LaunchSpec(
            vm_name=record.name,
            kernel_path=kernel,
            rootfs_path=rootfs,
            cpus=record.cpus,
            memory_mb=record.memory_mb,
            tap_device=record.tap_device,
            mac_address=record.mac_address,
            ip_address=record.ip_address,
            gateway=self.config.gateway,
            netmask=self.network.netmask,
            socket_path=Path(record.socket_path),
            log_path=self.paths.logs / f"{record.name}.log",
            drives=mount_drives(record.mounts),
        )
        pid, socket_path = self.supervisor.start(spec)
        record.pid = pid
        record.socket_path = str(socket_path)
        record.state = VMState.RUNNING
        record.started_at = utcnow()
        self.store.save(record)

    def _fail_start(self, record: VMRecord, exc: Exception) -> None:
        log("DEBUG", f"Start of '{record.name}' failed: {exc}")
        record.state = VMState.ERROR
        record.clear_runtime()
        try:
            self.network.delete_interface(record.tap_device)
        except ManagerError as cleanup_exc:
            log("WARN", f"Failed to release TAP {record.tap_device}: {cleanup_exc}")
        self.store.save(record)

    # ----- stop -------------------------------------------------------

    def stop(self, name: str) -> VMRecord:
        record = self.get(name)
        if not record.is_running:
            raise NotRunning(f"VM '{name}' is not running (state: {record.state.value})")
        log("INFO", f"Stopping VM '{name}'")
        self._shutdown(record)
        log("SUCCESS", f"VM '{name}' stopped")
        return record

    def _shutdown(self, record: VMRecord) -> None:
        record.state = VMState.STOPPING
        self.store.save(record)

        timeout = self.config.stop_timeout
        graceful = True
        try:
            self.supervisor.stop(Path(record.socket_path), timeout)
        except ManagerError as exc:
            log("WARN", f"Graceful shutdown of '{record.name}' failed: {exc}")
            graceful = False
        if not wait_until_dead(self.supervisor, record.pid, timeout if graceful else 0):
            log("WARN", f"VM '{record.name}' still running; sending SIGKILL to {record.pid}")
            self.supervisor.kill(record.pid)
            if not wait_until_dead(self.supervisor, record.pid, KILL_WAIT_TIMEOUT):
                raise ManagerError(f"VM '{record.name}' (pid {record.pid}) did not exit after SIGKILL")

        self._release_host_resources(record)
        record.state = VMState.STOPPED
        record.clear_runtime()
        self.store.save(record)

    def _release_host_resources(self, record: VMRecord) -> None:
        """Drop the forwards, TAP and socket of a guest whose process is gone. Failures only warn."""
        self._remove_port_forwards(record)
        try:
            self.network.delete_interface(record.tap_device)
        except ManagerError as exc:
            log("WARN", f"Failed to delete TAP {record.tap_device}: {exc}")
        if record.socket_path:
            try:
                Path(record.socket_path).unlink(missing_ok=True)
            except OSError as exc:
                log("WARN", f"Failed to remove control socket {record.socket_path}: {exc}")

    # ----- delete -----------------------------------------------------

    def delete(self, name: str, force: bool = False) -> None:
        record = self.get(name)
        if record.state in (VMState.RUNNING, VMState.STOPPING):
            if not force:
                raise VMRunning(f"VM '{name}' is running; stop it first or use --force")
            log("INFO", f"Stopping VM '{name}' before deletion")
            self._shutdown(record)

        cleanup = (
            ("TAP device", lambda: self.network.delete_interface(record.tap_device)),
            ("rootfs", lambda: self.storage.delete_instance(name)),
            ("mount images", lambda: self.mounts.delete_mount_images(name, record.mounts)),
            ("control socket", lambda: Path(record.socket_path).unlink(missing_ok=True)),
        )
        for label, action in cleanup:
            try:
                action()
            except (ManagerError, OSError) as exc:
                log("WARN", f"Failed to remove {label} of '{name}': {exc}")
        self.store.delete(name)
        log("SUCCESS", f"Deleted VM '{name}'")

    # ----- batch ------------------------------------------------------

    def autostart(self, workers: Optional[int] = None) -> BatchResult:
        """Start every auto-start VM that is not running; one failure does not stop the rest."""
        result = BatchResult()
        pending: List[str] = []
        for record in self.list():
            if not record.auto_start:
                continue
            if record.state in ACTIVE_STATES:
                log("INFO", f"VM '{record.name}' is already {record.state.value}")
                result.skipped.append(record.name)
                continue
            pending.append(record.name)
        if not pending:
            return result

        try:
            self.network.ensure_bridge()
        except ManagerError as exc:
            log("WARN", f"Failed to set up bridge: {exc}")

        workers = workers or self.config.autostart_workers
        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            futures = [(name, pool.submit(self.start, name)) for name in pending]
            for name, future in futures:
                try:
                    future.result()
                except Exception as exc:
                    log("ERROR", f"Auto-start of '{name}' failed: {exc}")
                    result.failed[name] = str(exc)
                else:
                    result.succeeded.append(name)
        log("INFO", f"Auto-started {result.count} VM(s)")
        return result

    def autostop(self) -> BatchResult:
        """Stop every running VM, continuing past failures."""
        result = BatchResult()
        for record in self.list():
            if not record.is_running:
                continue
            try:
                self.stop(record.name)
            except Exception as exc:
                log("ERROR", f"Auto-stop of '{record.name}' failed: {exc}")
                result.failed[record.name] = str(exc)
            else:
                result.succeeded.append(record.name)
        log("INFO", f"Stopped {result.count} VM(s)")
        return result

    # ----- port forwards ----------------------------------------------

    def add_port_forward(self, name: str, host_port: int, guest_port: int, protocol: str = "tcp") -> PortForward:
        """Record a forward; it takes effect now if the VM runs and at every later start."""
        record = self.get(name)
        forward = PortForward(
            host_port=validate_port(host_port, "host port"),
            guest_port=validate_port(guest_port, "guest port"),
            protocol=validate_protocol(protocol),
        )
        if record.is_running and record.ip_address:
            self.network.add_port_forward(forward.host_port, forward.guest_port, record.ip_address, forward.protocol)
            log("SUCCESS", f"Forwarding {forward.host_port} -> {record.ip_address}:{forward.guest_port}")
        else:
            log("INFO", f"VM '{name}' is not running; forward will be applied at next start")
        record.port_forwards.append(forward)
        self.store.save(record)
        return forward

    def _apply_port_forwards(self, record: VMRecord) -> None:
        for forward in record.port_forwards:
            try:
                self.network.add_port_forward(
                    forward.host_port, forward.guest_port, record.ip_address, forward.protocol
                )
            except ManagerError as exc:
                log("WARN", f"Failed to apply port forward {forward.host_port}->{forward.guest_port}: {exc}")

    def _remove_port_forwards(self, record: VMRecord) -> None:
        if not record.ip_address:
            return
        for forward in record.port_forwards:
            try:
                self.network.remove_port_forward(
                    forward.host_port, forward.guest_port, record.ip_address, forward.protocol
                )
            except ManagerError as exc:
                log("WARN", f"Failed to remove port forward {forward.host_port}->{forward.guest_port}: {exc}")

    # ----- mounts -----------------------------------------------------

    def list_mounts(self, name: str) -> List[Tuple[MountDeclaration, MountEntry]]:
        record = self.store.load(name)
        return list(zip(record.mounts, mount_entries(record.mounts)))

    def sync_mount(self, name: str, tag: str) -> MountDeclaration:
        record = self.get(name)
        declaration = record.find_mount(tag)
        if declaration is None:
            raise MountNotFound(f"Mount '{tag}' not found in VM '{name}'")
        self.mounts.sync_mount_image(declaration, name, running=record.is_running)
        self.store.save(record)
        log("SUCCESS", f"Mount '{tag}' synced")
        return declaration

    # ----- images -----------------------------------------------------

    def vms_using_image(self, image: str) -> List[str]:
        return [record.name for record in self.store.list() if (record.image or DEFAULT_ROOTFS_NAME) == image]

    def vms_using_kernel(self, kernel: str) -> List[str]:
        return [record.name for record in self.store.list() if (record.kernel or DEFAULT_KERNEL_NAME) == kernel]

    def delete_image(self, image: str) -> None:
        users = self.vms_using_image(image)
        if users:
            raise Conflict(f"Image '{image}' is used by VM(s): {', '.join(users)}")
        self.images.delete_image(image)

    def delete_kernel(self, kernel: str) -> None:
        users = self.vms_using_kernel(kernel)
        if users:
            log("WARN", f"VM(s) {', '.join(users)} use kernel '{kernel}' and will fail to start without it")
        self.images.delete_kernel(kernel)

    # ----- ssh --------------------------------------------------------

    def ssh_command(self, name: str, user: str = "root", extra: Iterable[str] = ()) -> List[str]:
        record = self.get(name)
        if not record.is_running:
            raise NotRunning(f"VM '{name}' is not running")
        if not record.ip_address:
            raise ManagerError(f"VM '{name}' has no IP address assigned")
        cmd = ["ssh", "-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
        if self.config.user_home is not None:
            for key_name in SSH_KEY_NAMES:
                key = self.config.user_home / ".ssh" / key_name
                if key.exists():
                    cmd += ["-i", str(key)]
                    break
        cmd.append(f"{user}@{record.ip_address}")
        cmd.extend(extra)
        return cmd
