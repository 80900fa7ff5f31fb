"""Bridge, TAP, NAT and port-forward management for guest networking."""

from __future__ import annotations

import ipaddress
import threading
from typing import List, Optional, Tuple

from vmm.config import Config
from vmm.constants import PROTOCOLS, TAP_PREFIX
from vmm.exceptions import AddressSpaceExhausted, ExternalToolFailure, ManagerError, ValidationFailure
from vmm.tools import HostNetworkController, NetworkDeviceController
from vmm.utils import log

# Bridge and firewall mutation is serialised across every manager in the process.
_NETWORK_LOCK = threading.Lock()


def tap_name_for(vm_id: str) -> str:
    if len(vm_id) < 6:
        raise ManagerError(f"VM id '{vm_id}' is too short to derive a TAP name")
    return f"{TAP_PREFIX}{vm_id[:6]}"


def validate_protocol(protocol: str) -> str:
    value = (protocol or "tcp").lower()
    if value not in PROTOCOLS:
        raise ValidationFailure(f"Unsupported protocol '{protocol}' (expected tcp or udp)")
    return value


def validate_port(port: int, label: str = "port") -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise ValidationFailure(f"Invalid {label} '{port}'")
    if not 1 <= value <= 65535:
        raise ValidationFailure(f"Invalid {label} {value}: must be 1-65535")
    return value


class NetworkManager:
    def __init__(self, config: Config, controller: Optional[NetworkDeviceController] = None) -> None:
        self.config = config
        self.controller = controller or HostNetworkController()
        self.network = config.network
        self.bridge = config.bridge_name
        self.host_interface = config.host_interface

    # ----- bridge -----------------------------------------------------

    def _nat_rules(self) -> List[Tuple[str, str, List[str]]]:
        return [
            ("nat", "POSTROUTING", ["-s", str(self.network), "-o", self.host_interface, "-j", "MASQUERADE"]),
            ("filter", "FORWARD", ["-i", self.bridge, "-o", self.host_interface, "-j", "ACCEPT"]),
            (
                "filter",
                "FORWARD",
                [
                    "-i", self.host_interface,
                    "-o", self.bridge,
                    "-m", "conntrack",
                    "--ctstate", "RELATED,ESTABLISHED",
                    "-j", "ACCEPT",
                ],
            ),
        ]

    def ensure_bridge(self) -> None:
        """Create the bridge once; re-assert forwarding and NAT on every call."""
        with _NETWORK_LOCK:
            if not self.controller.link_exists(self.bridge):
                log("INFO", f"Creating bridge {self.bridge} ({self.config.gateway}/{self.network.prefixlen})")
                self.controller.create_bridge(self.bridge)
                try:
                    self.controller.add_address(self.bridge, f"{self.config.gateway}/{self.network.prefixlen}")
                except ExternalToolFailure as exc:
                    log("WARN", f"Could not assign gateway address to {self.bridge}: {exc}")
                self.controller.set_up(self.bridge)
            self.controller.enable_ip_forwarding()
            for table, chain, spec in self._nat_rules():
                if not self.controller.rule_exists(table, chain, spec):
                    log("DEBUG", f"Adding {table}/{chain} rule: {' '.join(spec)}")
                    self.controller.append_rule(table, chain, spec)

    # ----- TAP interfaces ---------------------------------------------

    def interface_exists(self, name: str) -> bool:
        return self.controller.link_exists(name)

    def create_interface(self, name: str) -> None:
        if self.controller.link_exists(name):
            log("DEBUG", f"TAP {name} already exists")
            return
        self.controller.create_tap(name)
        try:
            self.controller.set_master(name, self.bridge)
            self.controller.set_up(name)
        except ExternalToolFailure:
            self._teardown(name)
            raise
        log("DEBUG", f"TAP {name} attached to {self.bridge}")

    def _teardown(self, name: str) -> None:
        try:
            self.controller.delete_link(name)
        except ExternalToolFailure as exc:
            log("WARN", f"Failed to remove half-created TAP {name}: {exc}")

    def delete_interface(self, name: str) -> None:
        if not name or not self.controller.link_exists(name):
            return
        self.controller.delete_link(name)

    # ----- addressing -------------------------------------------------

    def allocate_address(self, index: int) -> str:
        """Address for the guest at zero-based ordinal ``index``: network + 2 + index.

        The result depends on the index alone. Callers derive the index from the
        VM's position in creation order, so deleting an earlier VM shifts the
        addresses of every later one at their next start.
        """
        if index < 0:
            raise AddressSpaceExhausted(f"Negative address index {index}")
        candidate = self.network.network_address + 2 + index
        if candidate not in self.network or candidate == self.network.broadcast_address:
            raise AddressSpaceExhausted(f"No address left in {self.network} for index {index}")
        return str(candidate)

    @property
    def netmask(self) -> str:
        return str(self.network.netmask)

    # ----- port forwards ----------------------------------------------

    @staticmethod
    def _dnat_spec(host_port: int, guest_port: int, guest_address: str, protocol: str) -> List[str]:
        return [
            "-p", protocol,
            "--dport", str(host_port),
            "-j", "DNAT",
            "--to-destination", f"{guest_address}:{guest_port}",
        ]

    def add_port_forward(self, host_port: int, guest_port: int, guest_address: str, protocol: str = "tcp") -> None:
        """Append one DNAT rule. Duplicates are not detected."""
        protocol = validate_protocol(protocol)
        try:
            ipaddress.IPv4Address(guest_address)
        except ValueError:
            raise ValidationFailure(f"Invalid guest address '{guest_address}'")
        spec = self._dnat_spec(host_port, guest_port, guest_address, protocol)
        with _NETWORK_LOCK:
            self.controller.append_rule("nat", "PREROUTING", spec)
        log("DEBUG", f"Forwarding {protocol}/{host_port} -> {guest_address}:{guest_port}")

    def remove_port_forward(self, host_port: int, guest_port: int, guest_address: str, protocol: str = "tcp") -> None:
        protocol = validate_protocol(protocol)
        spec = self._dnat_spec(host_port, guest_port, guest_address, protocol)
        with _NETWORK_LOCK:
            self.controller.delete_rule("nat", "PREROUTING", spec)
