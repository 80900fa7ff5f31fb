"""Command-line interface for the microVM manager."""

from __future__ import annotations

import argparse
import subprocess
import traceback
from pathlib import Path
from typing import List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmm.config import Config, load_config, save_config
from vmm.exceptions import ManagerError
from vmm.manager import VMManager, parse_port_spec
from vmm.mounts import guest_mount_path
from vmm.utils import kvm_available, log, set_verbose


def build_manager(cfg: Config) -> VMManager:
    cfg.ensure_directories()
    return VMManager(cfg)


def _print_table(headers: List[str], rows: List[List[str]]) -> None:
    widths = [len(header) for header in headers]
    for row in rows:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]
    for row in [headers] + rows:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


# ----- VM commands -----------------------------------------------------


def cmd_create(args: argparse.Namespace, cfg: Config) -> int:
    manager = build_manager(cfg)
    record = manager.create(
        args.name,
        cpus=args.cpus,
        memory_mb=args.memory,
        disk_size_mb=args.disk,
        image=args.image,
        kernel=args.kernel,
        ssh_key_path=args.ssh_key,
        dns_servers=args.dns,
        mounts=args.mount,
        auto_start=not args.no_autostart,
    )
    print(f"  TAP device: {record.tap_device}")
    print(f"  MAC:        {record.mac_address}")
    for mount in record.mounts:
        mode = "ro" if mount.read_only else "rw"
        print(f"  Mount:      {mount.host_path} -> {guest_mount_path(mount.guest_tag)} ({mode})")
    print(f"Start it with: vmm start {record.name}")
    return 0


def cmd_start(args: argparse.Namespace, cfg: Config) -> int:
    if not kvm_available():
        log("WARN", "/dev/kvm is not accessible; Firecracker will fail to boot the guest")
    record = build_manager(cfg).start(args.name)
    print(f"  IP address: {record.ip_address}")
    print(f"  PID:        {record.pid}")
    print(f"  Socket:     {record.socket_path}")
    return 0


def cmd_stop(args: argparse.Namespace, cfg: Config) -> int:
    build_manager(cfg).stop(args.name)
    return 0


def cmd_delete(args: argparse.Namespace, cfg: Config) -> int:
    build_manager(cfg).delete(args.name, force=args.force)
    return 0


def cmd_list(args: argparse.Namespace, cfg: Config) -> int:
    records = build_manager(cfg).list()
    if not records:
        print("No VMs found. Create one with: vmm create <name>")
        return 0
    rows = [
        [
            record.name,
            record.state.value,
            str(record.cpus),
            f"{record.memory_mb}M",
            record.ip_address or "-",
            record.image or "default",
            "yes" if record.auto_start else "no",
        ]
        for record in records
    ]
    _print_table(["NAME", "STATE", "CPUS", "MEMORY", "IP", "IMAGE", "AUTOSTART"], rows)
    return 0


def cmd_ssh(args: argparse.Namespace, cfg: Config) -> int:
    extra = list(args.ssh_args or [])
    if extra and extra[0] == "--":
        extra = extra[1:]
    cmd = build_manager(cfg).ssh_command(args.name, user=args.user, extra=extra)
    log("DEBUG", f"Running: {' '.join(cmd)}")
    return subprocess.call(cmd)


def cmd_port_forward(args: argparse.Namespace, cfg: Config) -> int:
    host_port, guest_port = parse_port_spec(args.spec)
    build_manager(cfg).add_port_forward(args.name, host_port, guest_port, args.protocol)
    return 0


def cmd_autostart(args: argparse.Namespace, cfg: Config) -> int:
    result = build_manager(cfg).autostart(workers=args.workers)
    return 0 if result.ok else 1


def cmd_autostop(args: argparse.Namespace, cfg: Config) -> int:
    result = build_manager(cfg).autostop()
    return 0 if result.ok else 1


# ----- mount commands --------------------------------------------------


def cmd_mount_list(args: argparse.Namespace, cfg: Config) -> int:
    mounts = build_manager(cfg).list_mounts(args.name)
    if not mounts:
        print(f"VM '{args.name}' has no mounts configured")
        return 0
    print(f"Mounts for VM '{args.name}':")
    for declaration, entry in mounts:
        mode = "ro" if declaration.read_only else "rw"
        print(f"  {declaration.guest_tag}: {declaration.host_path} -> {entry.mount_path} ({mode}) [{entry.device}]")
        if declaration.image_path:
            print(f"       Image: {declaration.image_path}")
    return 0


def cmd_mount_sync(args: argparse.Namespace, cfg: Config) -> int:
    build_manager(cfg).sync_mount(args.name, args.tag)
    return 0


# ----- image / kernel commands -----------------------------------------


def cmd_image_list(args: argparse.Namespace, cfg: Config) -> int:
    manager = build_manager(cfg)
    kernels = manager.images.list_kernels()
    print("Kernels:")
    print("\n".join(f"  - {info.name}" for info in kernels) or "  (none)")
    print("\nRoot filesystems:")
    images = manager.images.list_rootfs()
    print(
        "\n".join(
            f"  - {info.name}{' (default)' if info.is_default else ''} ({info.size_mb:.0f} MiB)" for info in images
        )
        or "  (none)"
    )
    return 0


def cmd_image_pull(args: argparse.Namespace, cfg: Config) -> int:
    manager = build_manager(cfg)
    manager.images.ensure_base_images()
    log("SUCCESS", "Default images available")
    print(f"  Kernel: {manager.images.default_kernel_path()}")
    print(f"  Rootfs: {manager.images.default_rootfs_path()}")
    return 0


def cmd_image_import(args: argparse.Namespace, cfg: Config) -> int:
    build_manager(cfg).images.import_container_image(args.ref, args.name, args.size)
    return 0


def cmd_image_delete(args: argparse.Namespace, cfg: Config) -> int:
    build_manager(cfg).delete_image(args.name)
    return 0


def cmd_kernel_list(args: argparse.Namespace, cfg: Config) -> int:
    kernels = build_manager(cfg).images.list_kernels()
    if not kernels:
        print("No kernels found. Run 'vmm image pull' to download the default kernel.")
        return 0
    print("Available kernels:")
    for info in kernels:
        marker = " (default)" if info.is_default else ""
        print(f"  - {info.name}{marker} ({info.size_mb:.2f} MiB)")
    return 0


def cmd_kernel_import(args: argparse.Namespace, cfg: Config) -> int:
    build_manager(cfg).images.import_kernel(Path(args.path), args.name, force=args.force)
    return 0


def cmd_kernel_delete(args: argparse.Namespace, cfg: Config) -> int:
    build_manager(cfg).delete_kernel(args.name)
    return 0


# ----- config commands -------------------------------------------------


def cmd_config_show(args: argparse.Namespace, cfg: Config) -> int:
    source = cfg.source_path
    exists = source is not None and source.exists()
    print(f"# Config file: {source}{'' if exists else ' (not found, using defaults)'}")
    print(yaml.safe_dump(cfg.to_dict(), sort_keys=False, default_flow_style=False), end="")
    return 0


def cmd_config_init(args: argparse.Namespace, cfg: Config) -> int:
    target = cfg.source_path
    if target is not None and target.exists() and not args.force:
        raise ManagerError(f"{target} already exists; use --force to overwrite")
    path = save_config(cfg, target)
    cfg.ensure_directories()
    log("SUCCESS", f"Wrote {path}")
    log("INFO", f"Data directories created under {cfg.data_dir}")
    return 0


# ----- parser ----------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmm", description="Firecracker microVM manager")
    parser.add_argument("-c", "--config", help="Path to config.yaml (default: $VMM_CONFIG or ~/.config/vmm)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", metavar="<command>")
    sub.required = True

    p = sub.add_parser("create", help="Create a microVM")
    p.add_argument("name")
    p.add_argument("--cpus", type=int, default=0, help="vCPU count")
    p.add_argument("--memory", type=int, default=0, help="Memory in MiB")
    p.add_argument("--disk", type=int, default=0, help="Root disk size in MiB")
    p.add_argument("--image", default="", help="Named rootfs image (default image if omitted)")
    p.add_argument("--kernel", default="", help="Named kernel (default kernel if omitted)")
    p.add_argument("--ssh-key", default="", help="Path to an SSH public key to inject")
    p.add_argument("--dns", action="append", default=[], help="DNS server (repeatable)")
    p.add_argument("--mount", action="append", default=[], help="Host directory: /host/path:tag[:ro|rw]")
    p.add_argument("--no-autostart", action="store_true", help="Do not start this VM at boot")
    p.set_defaults(handler=cmd_create)

    for name, handler, help_text in (
        ("start", cmd_start, "Start a microVM"),
        ("stop", cmd_stop, "Stop a microVM"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("name")
        p.set_defaults(handler=handler)

    p = sub.add_parser("delete", help="Delete a microVM and its resources")
    p.add_argument("name")
    p.add_argument("-f", "--force", action="store_true", help="Stop the VM first if it is running")
    p.set_defaults(handler=cmd_delete)

    p = sub.add_parser("list", help="List microVMs")
    p.set_defaults(handler=cmd_list)

    p = sub.add_parser("ssh", help="SSH into a running microVM")
    p.add_argument("name")
    p.add_argument("-u", "--user", default="root", help="SSH user")
    p.add_argument("ssh_args", nargs=argparse.REMAINDER, help="Extra ssh arguments after --")
    p.set_defaults(handler=cmd_ssh)

    p = sub.add_parser("port-forward", help="Forward a host port to a VM")
    p.add_argument("name")
    p.add_argument("spec", help="HOST_PORT:GUEST_PORT")
    p.add_argument("-p", "--protocol", default="tcp", choices=["tcp", "udp"])
    p.set_defaults(handler=cmd_port_forward)

    mount = sub.add_parser("mount", help="Manage directory mounts").add_subparsers(dest="mount_command", metavar="<action>")
    mount.required = True
    p = mount.add_parser("list", help="List mounts of a VM")
    p.add_argument("name")
    p.set_defaults(handler=cmd_mount_list)
    p = mount.add_parser("sync", help="Rebuild a mount image from its host directory")
    p.add_argument("name")
    p.add_argument("tag")
    p.set_defaults(handler=cmd_mount_sync)

    image = sub.add_parser("image", help="Manage rootfs images").add_subparsers(dest="image_command", metavar="<action>")
    image.required = True
    image.add_parser("list", help="List kernels and rootfs images").set_defaults(handler=cmd_image_list)
    image.add_parser("pull", help="Download the default kernel and rootfs").set_defaults(handler=cmd_image_pull)
    p = image.add_parser("import", help="Import a container image as a rootfs")
    p.add_argument("ref", help="Container image reference, e.g. ubuntu:22.04")
    p.add_argument("--name", required=True)
    p.add_argument("--size", type=int, default=2048, help="Image size in MiB")
    p.set_defaults(handler=cmd_image_import)
    p = image.add_parser("delete", help="Delete an imported rootfs image")
    p.add_argument("name")
    p.set_defaults(handler=cmd_image_delete)

    kernel = sub.add_parser("kernel", help="Manage kernels").add_subparsers(dest="kernel_command", metavar="<action>")
    kernel.required = True
    kernel.add_parser("list", help="List kernels").set_defaults(handler=cmd_kernel_list)
    p = kernel.add_parser("import", help="Import a vmlinux ELF kernel")
    p.add_argument("path")
    p.add_argument("--name", required=True)
    p.add_argument("-f", "--force", action="store_true", help="Overwrite an existing kernel")
    p.set_defaults(handler=cmd_kernel_import)
    p = kernel.add_parser("delete", help="Delete a kernel")
    p.add_argument("name")
    p.set_defaults(handler=cmd_kernel_delete)

    config = sub.add_parser("config", help="Show or initialise configuration").add_subparsers(
        dest="config_command", metavar="<action>"
    )
    config.required = True
    config.add_parser("show", help="Print the resolved configuration").set_defaults(handler=cmd_config_show)
    p = config.add_parser("init", help="Write a config file and create data directories")
    p.add_argument("-f", "--force", action="store_true", help="Overwrite an existing config file")
    p.set_defaults(handler=cmd_config_init)

    # Used by the systemd unit; not listed in help.
    p = sub.add_parser("autostart")
    p.add_argument("--workers", type=int, default=None, help="Parallel starts")
    p.set_defaults(handler=cmd_autostart)
    p = sub.add_parser("autostop")
    p.set_defaults(handler=cmd_autostop)
    return parser


def _context(args: argparse.Namespace) -> str:
    parts = [args.command]
    for attr in ("mount_command", "image_command", "kernel_command", "config_command"):
        value = getattr(args, attr, None)
        if value:
            parts.append(value)
    name = getattr(args, "name", None)
    if name:
        parts.append(name)
    return " ".join(parts)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = load_config(Path(args.config) if args.config else None)
    except ManagerError as exc:
        log("ERROR", f"config: {exc}")
        return 1
    if args.verbose:
        cfg.log_verbose = True
    set_verbose(cfg.log_verbose)
    log("DEBUG", f"Config: {cfg.source_path}; data dir {cfg.data_dir}; bridge {cfg.bridge_name}")

    try:
        return args.handler(args, cfg)
    except ManagerError as exc:
        log("ERROR", f"{_context(args)}: {exc}")
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"{_context(args)}: unexpected error: {exc}")
        traceback.print_exc()
        return 1
