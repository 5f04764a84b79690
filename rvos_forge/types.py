"""Shared type definitions for rvos_forge.

This module contains the value types passed between pipeline stages:
toolchain specs, build context, artifacts, disk images and launch
configuration. They live here to avoid circular imports between the
stage subpackages.
"""

import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

DEFAULT_TARGET_TRIPLE = "riscv64gc-unknown-none-elf"
DEFAULT_EMULATOR_VERSION = "7.0.0"
DEFAULT_COMPILER_CHANNEL = "nightly"
DEFAULT_EXTRA_COMPONENTS = frozenset(
    {"cargo-binutils", "rust-src", "llvm-tools-preview", "rustfmt", "clippy"}
)


class PipelineState(str, Enum):
    """State of the build-assemble-launch pipeline."""

    INIT = "init"
    PROVISIONED = "provisioned"
    BUILT = "built"
    ASSEMBLED = "assembled"
    RUNNING = "running"
    STOPPED = "stopped"
    CLEANED = "cleaned"


class ArtifactKind(str, Enum):
    """Kind of a build artifact."""

    KERNEL = "kernel"
    BOOTLOADER = "bootloader"
    USER_PROGRAM = "user_program"


class BuildProfile(str, Enum):
    """Cargo build profile."""

    RELEASE = "release"
    DEBUG = "debug"


class VendorMode(str, Enum):
    """How compiles are pointed at the vendored crate cache."""

    CONFIG_ARG = "config-arg"
    SWAP = "swap"


@dataclass(frozen=True)
class ToolchainSpec:
    """Pinned versions of the emulator and compiler toolchain."""

    emulator_version: str = DEFAULT_EMULATOR_VERSION
    compiler_channel: str = DEFAULT_COMPILER_CHANNEL
    target_triple: str = DEFAULT_TARGET_TRIPLE
    extra_components: frozenset[str] = DEFAULT_EXTRA_COMPONENTS

    def to_dict(self) -> dict[str, object]:
        """Serialize with a stable component order."""
        return {
            "emulator_version": self.emulator_version,
            "compiler_channel": self.compiler_channel,
            "target_triple": self.target_triple,
            "extra_components": sorted(self.extra_components),
        }


@dataclass(frozen=True)
class BuildContext:
    """Explicit build environment produced by provisioning.

    Child processes get their search path and toolchain homes from
    ``environ()``; the interpreter's own environment is never modified.

    Attributes:
        env_root: Root of the provisioned environment.
        rustup_home: RUSTUP_HOME inside the environment.
        cargo_home: CARGO_HOME inside the environment.
        path_entries: Directories prepended to PATH, in priority order.
        toolchain: The spec the environment was provisioned for.
    """

    env_root: Path
    rustup_home: Path
    cargo_home: Path
    path_entries: tuple[Path, ...]
    toolchain: ToolchainSpec

    @property
    def vendor_root(self) -> Path:
        return self.env_root / "vendor"

    def search_path(self, base: str | None = None) -> str:
        """Return PATH with the environment's directories first."""
        if base is None:
            base = os.environ.get("PATH", "")
        parts = [str(p) for p in self.path_entries]
        if base:
            parts.append(base)
        return os.pathsep.join(parts)

    def environ(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Build a child-process environment.

        Args:
            base: Environment to start from (defaults to os.environ).

        Returns:
            New mapping with PATH, RUSTUP_HOME and CARGO_HOME set.
        """
        env = dict(os.environ if base is None else base)
        env["PATH"] = self.search_path(env.get("PATH", ""))
        env["RUSTUP_HOME"] = str(self.rustup_home)
        env["CARGO_HOME"] = str(self.cargo_home)
        return env

    def which(self, name: str) -> str | None:
        """Locate a tool by name on the context's search path."""
        return shutil.which(name, path=self.search_path())


@dataclass(frozen=True)
class BuildArtifact:
    """A compiled output at its conventional host path."""

    kind: ArtifactKind
    name: str
    host_path: Path
    target_triple: str
    sha256: str | None = None


@dataclass(frozen=True)
class Placement:
    """A host file and the path it should occupy inside the disk image."""

    host_path: Path
    image_path: str


@dataclass(frozen=True)
class DiskImage:
    """An assembled disk image.

    Attributes:
        host_path: Path of the image file on the host.
        format: Image container format passed to the emulator.
        size_bytes: Image size.
        contained_files: (image_path, host_path) pairs after resolving
            duplicate image paths, in placement order.
    """

    host_path: Path
    format: str
    size_bytes: int
    contained_files: tuple[tuple[str, Path], ...] = ()

    @property
    def image_paths(self) -> list[str]:
        return [image_path for image_path, _ in self.contained_files]


@dataclass(frozen=True)
class DriveSpec:
    """A block device backed by a host image file."""

    path: Path
    format: str = "raw"
    bus: str = "virtio-blk"


@dataclass(frozen=True)
class NetdevSpec:
    """A network device using host user-mode networking.

    ``host_forwards`` entries use QEMU hostfwd syntax
    (e.g. ``tcp::5555-:5555``); none are exposed by default.
    """

    kind: str = "user"
    bus: str = "virtio-net"
    host_forwards: tuple[str, ...] = ()


@dataclass(frozen=True)
class LaunchConfig:
    """Virtual machine launch configuration, built fresh per launch."""

    memory_mb: int
    core_count: int
    firmware_path: Path
    kernel_path: Path
    drives: tuple[DriveSpec, ...] = ()
    netdevs: tuple[NetdevSpec, ...] = ()
    display_mode: str = "none"
    machine: str = "virt"

    def referenced_files(self) -> list[Path]:
        """Host files that must exist before the emulator starts."""
        return [self.firmware_path, self.kernel_path, *(d.path for d in self.drives)]


__all__ = [
    "DEFAULT_COMPILER_CHANNEL",
    "DEFAULT_EMULATOR_VERSION",
    "DEFAULT_EXTRA_COMPONENTS",
    "DEFAULT_TARGET_TRIPLE",
    "ArtifactKind",
    "BuildArtifact",
    "BuildContext",
    "BuildProfile",
    "DiskImage",
    "DriveSpec",
    "LaunchConfig",
    "NetdevSpec",
    "PipelineState",
    "Placement",
    "ToolchainSpec",
    "VendorMode",
]
