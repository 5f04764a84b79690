"""QEMU source build helpers.

Command composition and installed-version probing for a RISC-V QEMU built
from source into the environment prefix.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

QEMU_TARGET_LIST = ("riscv64-softmmu", "riscv64-linux-user")
SYSTEM_EMULATOR = "qemu-system-riscv64"
USER_EMULATOR = "qemu-riscv64"
EMULATOR_BINARIES = (SYSTEM_EMULATOR, USER_EMULATOR)

VERSION_RE = re.compile(r"version\s+(\d+\.\d+\.\d+)")


def parse_emulator_version(output: str) -> str | None:
    """Extract the release number from ``qemu-* --version`` output.

    Args:
        output: Tool output, e.g. ``QEMU emulator version 7.0.0``.

    Returns:
        Version string or None if not found.
    """
    match = VERSION_RE.search(output)
    return match.group(1) if match else None


def installed_emulator_version(
    bin_dir: Path,
    binary: str = SYSTEM_EMULATOR,
    env: Mapping[str, str] | None = None,
    timeout: int = 60,
) -> str | None:
    """Return the version of an emulator installed in ``bin_dir``.

    Returns:
        Version string, or None if the binary is missing or unusable.
    """
    path = bin_dir / binary
    if not path.exists():
        return None
    try:
        result = subprocess.run(
            [str(path), "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
            env=dict(env) if env is not None else None,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Could not probe %s: %s", path, e)
        return None
    if result.returncode != 0:
        return None
    return parse_emulator_version(result.stdout)


def compose_configure_command(
    prefix: Path,
    target_list: tuple[str, ...] = QEMU_TARGET_LIST,
) -> list[str]:
    """Compose the ``./configure`` invocation for the RISC-V targets."""
    return [
        "./configure",
        f"--prefix={prefix}",
        f"--target-list={','.join(target_list)}",
    ]


def compose_compile_command(jobs: int) -> list[str]:
    return ["make", f"-j{max(1, jobs)}"]


def compose_install_command() -> list[str]:
    return ["make", "install"]


__all__ = [
    "EMULATOR_BINARIES",
    "QEMU_TARGET_LIST",
    "SYSTEM_EMULATOR",
    "USER_EMULATOR",
    "compose_compile_command",
    "compose_configure_command",
    "compose_install_command",
    "installed_emulator_version",
    "parse_emulator_version",
]
