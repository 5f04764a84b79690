"""Emulation launch module.

This module handles:
- Composing the QEMU command line for the RISC-V virt machine
- Pre-flight checks of firmware, kernel and drive images
- Running the emulator in the foreground and stopping it on interrupt
"""

from rvos_forge.launch.qemu import compose_qemu_command
from rvos_forge.launch.service import (
    EmulatorProcess,
    build_launch_config,
    launch,
    preflight,
    run_emulator,
)

__all__ = [
    "EmulatorProcess",
    "build_launch_config",
    "compose_qemu_command",
    "launch",
    "preflight",
    "run_emulator",
]
