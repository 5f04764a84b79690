"""rvos-forge - build, assemble and boot a bare-metal RISC-V OS image.

This package provisions a pinned cross-compilation and emulation environment,
compiles kernel and user programs, assembles a FAT disk image and launches
the result under QEMU.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
