"""Emulator launch service.

This module provides the high-level launch API:
- preflight(): check every file the emulator will open
- launch(): start the emulator in the foreground with inherited stdio
- run_emulator(): launch and wait, stopping the guest on operator interrupt
- build_launch_config(): derive a LaunchConfig from the project description
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING

from rvos_forge.config import get_settings
from rvos_forge.errors import LaunchError
from rvos_forge.launch.qemu import compose_qemu_command
from rvos_forge.toolchain.emulator import SYSTEM_EMULATOR
from rvos_forge.types import BuildContext, DriveSpec, LaunchConfig

if TYPE_CHECKING:
    from rvos_forge.config import Settings
    from rvos_forge.layout import ProjectLayout
    from rvos_forge.project import ProjectSchema

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 5.0


class EmulatorProcess:
    """A running emulator.

    The guest console is attached to the caller's terminal; the process is
    not restarted after it exits.
    """

    def __init__(self, popen: subprocess.Popen, command: list[str]) -> None:
        self._popen = popen
        self.command = command

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def returncode(self) -> int | None:
        return self._popen.returncode

    def poll(self) -> int | None:
        return self._popen.poll()

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the emulator to exit.

        Returns:
            Exit status (always 0).

        Raises:
            LaunchError: If the emulator exits with a non-zero status.
            subprocess.TimeoutExpired: If ``timeout`` elapses first.
        """
        status = self._popen.wait(timeout=timeout)
        if status != 0:
            raise LaunchError(
                f"Emulator exited with status {status}",
                exit_status=status,
                code="emulator_failed",
            )
        logger.info("Emulator exited normally")
        return status

    def terminate(self, grace: float = DEFAULT_GRACE_PERIOD) -> int:
        """Stop the emulator: SIGTERM, then SIGKILL after ``grace`` seconds.

        Returns:
            The exit status of the stopped process.
        """
        if self._popen.poll() is not None:
            return self._popen.returncode
        logger.info("Stopping emulator (pid %d)", self.pid)
        self._popen.terminate()
        try:
            return self._popen.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("Emulator did not stop within %.1fs, killing", grace)
            self._popen.kill()
            return self._popen.wait()

    def __enter__(self) -> EmulatorProcess:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.terminate()


def preflight(config: LaunchConfig) -> None:
    """Check that every referenced file exists and the topology is valid.

    Raises:
        LaunchError: Before anything is spawned.
    """
    if config.memory_mb <= 0:
        raise LaunchError(
            f"Invalid memory size: {config.memory_mb} MiB", code="invalid_config"
        )
    if config.core_count <= 0:
        raise LaunchError(
            f"Invalid core count: {config.core_count}", code="invalid_config"
        )
    for path in config.referenced_files():
        if not path.is_file():
            raise LaunchError(f"File not found: {path}", code="missing_file")


def _resolve_emulator(binary: str, context: BuildContext | None) -> str:
    found = context.which(binary) if context is not None else shutil.which(binary)
    if found is None:
        raise LaunchError(
            f"Emulator '{binary}' not found (run provisioning first)",
            code="emulator_missing",
        )
    return found


def launch(
    config: LaunchConfig,
    context: BuildContext | None = None,
    binary: str = SYSTEM_EMULATOR,
) -> EmulatorProcess:
    """Start the emulator in the foreground.

    Args:
        config: Launch configuration.
        context: Build context supplying the emulator search path.
        binary: Emulator executable name.

    Returns:
        EmulatorProcess for the running guest.

    Raises:
        LaunchError: If pre-flight fails or the process cannot be spawned.
    """
    preflight(config)
    executable = _resolve_emulator(binary, context)
    cmd = compose_qemu_command(config, executable)
    env = context.environ() if context is not None else None

    logger.info("Launching: %s", shlex.join(cmd))
    try:
        popen = subprocess.Popen(cmd, env=env)
    except OSError as e:
        raise LaunchError(f"Failed to start emulator: {e}", code="spawn_failed") from e

    logger.debug("Emulator started with pid %d", popen.pid)
    return EmulatorProcess(popen, cmd)


def run_emulator(
    config: LaunchConfig,
    context: BuildContext | None = None,
    grace: float = DEFAULT_GRACE_PERIOD,
) -> int:
    """Launch the emulator and wait for it, stopping it on interrupt.

    Raises:
        LaunchError: On pre-flight failure or non-zero exit.
        KeyboardInterrupt: Re-raised after the emulator has been stopped.
    """
    process = launch(config, context)
    try:
        return process.wait()
    except KeyboardInterrupt:
        logger.warning("Interrupted, stopping emulator")
        process.terminate(grace)
        raise


def build_launch_config(
    layout: ProjectLayout,
    project: ProjectSchema,
    settings: Settings | None = None,
    image: Path | None = None,
) -> LaunchConfig:
    """Derive the launch configuration from the project description.

    Args:
        layout: Project layout (published kernel, firmware and image paths).
        project: Project description.
        settings: Application settings (uses defaults if not provided).
        image: Disk image to attach (defaults to the layout's image when the
            project attaches one).
    """
    if settings is None:
        settings = get_settings()

    spec = project.launch
    drives: tuple[DriveSpec, ...] = ()
    if image is not None:
        drives = (DriveSpec(path=image, format=project.image.format),)
    elif spec.attach_image:
        drives = (DriveSpec(path=layout.disk_image, format=project.image.format),)

    return LaunchConfig(
        memory_mb=spec.memory_mb or settings.memory_mb,
        core_count=spec.smp or settings.smp,
        firmware_path=layout.firmware_image,
        kernel_path=layout.kernel_image,
        drives=drives,
        netdevs=tuple(n.to_spec() for n in spec.netdevs),
        display_mode=spec.display,
    )


__all__ = [
    "DEFAULT_GRACE_PERIOD",
    "EmulatorProcess",
    "build_launch_config",
    "launch",
    "preflight",
    "run_emulator",
]
