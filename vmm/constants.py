"""Global constants and default paths for the microVM manager."""

from __future__ import annotations

import re
from pathlib import Path

DEFAULT_DATA_DIR = Path("/var/lib/vmm")
DEFAULT_BRIDGE_NAME = "vmm-br0"
DEFAULT_SUBNET = "172.16.0.0/16"
DEFAULT_GATEWAY = "172.16.0.1"
DEFAULT_HOST_INTERFACE = "eth0"
DEFAULT_FIRECRACKER_BIN = "firecracker"
CONFIG_FILE_NAME = "config.yaml"

DEFAULT_CPUS = 1
DEFAULT_MEMORY_MB = 512
DEFAULT_DISK_SIZE_MB = 1024
DEFAULT_STOP_TIMEOUT = 10.0
DEFAULT_MOUNT_LOCK_TIMEOUT = 300.0

# GitHub repo publishing Firecracker-compatible kernels as release assets.
KERNEL_RELEASES_API = "https://api.github.com/repos/raesene/baremetalvmm/releases"
KERNEL_RELEASE_PREFIX = "kernel-"
FALLBACK_KERNEL_URL = (
    "https://s3.amazonaws.com/spec.ccfc.min/img/quickstart_guide/x86_64/kernels/vmlinux.bin"
)
DEFAULT_ROOTFS_URL = (
    "https://s3.amazonaws.com/spec.ccfc.min/img/quickstart_guide/x86_64/rootfs/bionic.rootfs.ext4"
)
DEFAULT_KERNEL_NAME = "vmlinux.bin"
DEFAULT_ROOTFS_NAME = "rootfs"
IMAGE_SUFFIX = ".ext4"

DEFAULT_DNS_SERVERS = ("8.8.8.8", "8.8.4.4", "1.1.1.1")

TRUTHY = {"1", "true", "yes", "on"}

VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
IMAGE_NAME_RE = VM_NAME_RE
MOUNT_TAG_RE = re.compile(r"^[A-Za-z0-9_-]+$")

TAP_PREFIX = "vmm-"
MAC_PREFIX = "AA:FC:00"
PROTOCOLS = {"tcp", "udp"}

# Marker appended to every fstab line we own inside a guest rootfs.
FSTAB_SENTINEL = "# vmm-mount"
GUEST_MOUNT_ROOT = "/mnt"
GUEST_DEVICE_PREFIX = "/dev/vd"

MOUNT_IMAGE_MIN_MB = 64
MOUNT_IMAGE_OVERHEAD_MB = 32
MOUNT_IMAGE_GROWTH = 1.2

BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off"
