"""QEMU command composition for the RISC-V virt machine."""

from __future__ import annotations

from rvos_forge.errors import LaunchError
from rvos_forge.toolchain.emulator import SYSTEM_EMULATOR
from rvos_forge.types import DriveSpec, LaunchConfig, NetdevSpec

# Device model per bus name
BLOCK_DEVICES = {"virtio-blk": "virtio-blk-device"}
NET_DEVICES = {"virtio-net": "virtio-net-device"}
NETDEV_BACKENDS = ("user",)


def drive_args(index: int, drive: DriveSpec) -> list[str]:
    """Arguments attaching one image as a virtio-mmio block device."""
    device = BLOCK_DEVICES.get(drive.bus)
    if device is None:
        raise LaunchError(
            f"Unsupported drive bus '{drive.bus}'", code="unsupported_device"
        )
    drive_id = f"x{index}"
    return [
        "-drive",
        f"file={drive.path},if=none,format={drive.format},id={drive_id}",
        "-device",
        f"{device},drive={drive_id},bus=virtio-mmio-bus.{index}",
    ]


def netdev_args(index: int, netdev: NetdevSpec) -> list[str]:
    """Arguments for one user-mode network device."""
    device = NET_DEVICES.get(netdev.bus)
    if device is None or netdev.kind not in NETDEV_BACKENDS:
        raise LaunchError(
            f"Unsupported network device '{netdev.kind}' on '{netdev.bus}'",
            code="unsupported_device",
        )
    netdev_id = f"net{index}"
    backend = f"{netdev.kind},id={netdev_id}"
    for forward in netdev.host_forwards:
        backend += f",hostfwd={forward}"
    return [
        "-netdev",
        backend,
        "-device",
        f"{device},netdev={netdev_id}",
    ]


def compose_qemu_command(config: LaunchConfig, binary: str = SYSTEM_EMULATOR) -> list[str]:
    """Compose the emulator command line for ``config``.

    Args:
        config: Launch configuration.
        binary: Emulator executable name or path.

    Returns:
        Command as a list of arguments.

    Raises:
        LaunchError: If a device type is not supported.
    """
    cmd = [
        binary,
        "-machine",
        config.machine,
        "-m",
        f"{config.memory_mb}M",
    ]
    if config.display_mode == "none":
        cmd.append("-nographic")
    else:
        cmd.extend(["-display", config.display_mode])
    cmd.extend(
        [
            "-smp",
            str(config.core_count),
            "-bios",
            str(config.firmware_path),
            "-kernel",
            str(config.kernel_path),
        ]
    )
    for index, drive in enumerate(config.drives):
        cmd.extend(drive_args(index, drive))
    for index, netdev in enumerate(config.netdevs):
        cmd.extend(netdev_args(index, netdev))
    return cmd


__all__ = [
    "BLOCK_DEVICES",
    "NET_DEVICES",
    "compose_qemu_command",
    "drive_args",
    "netdev_args",
]
