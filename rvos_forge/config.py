"""Configuration settings for rvos_forge.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from rvos_forge.types import VendorMode

# Packages the original environment image installs before building QEMU
DEFAULT_PREREQUISITE_PACKAGES = [
    "autoconf",
    "automake",
    "autotools-dev",
    "curl",
    "libmpc-dev",
    "libmpfr-dev",
    "libgmp-dev",
    "gawk",
    "build-essential",
    "bison",
    "flex",
    "texinfo",
    "gperf",
    "libtool",
    "patchutils",
    "bc",
    "zlib1g-dev",
    "libexpat-dev",
    "git",
    "ninja-build",
    "pkg-config",
    "libglib2.0-dev",
    "libpixman-1-dev",
    "libsdl2-dev",
]


def _default_env_root() -> Path:
    """Return the default installed environment root."""
    return Path.home() / ".local" / "share" / "rvos-forge" / "env"


def _default_parallelism() -> int:
    """Return the default number of parallel compile jobs."""
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the RVFORGE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="RVFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    project_root: Path = Field(
        default_factory=Path.cwd,
        description="Root of the OS checkout (contains os/, user/, bootloader/)",
    )
    project_file: str = Field(
        default="rvforge.yaml",
        description="Project description file, relative to project_root",
    )
    env_root: Path = Field(
        default_factory=_default_env_root,
        description="Root directory of the provisioned toolchain environment",
    )

    # Sources
    qemu_download_base: str = Field(
        default="https://download.qemu.org",
        description="Mirror for QEMU source tarballs",
    )
    qemu_sha256: str | None = Field(
        default=None,
        description="Pinned SHA-256 of the QEMU source tarball (optional)",
    )
    rustup_init_url: str = Field(
        default="https://static.rust-lang.org/rustup/dist/x86_64-unknown-linux-gnu/rustup-init",
        description="Download URL for rustup-init",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - never download during provisioning",
    )
    install_prerequisites: bool = Field(
        default=False,
        description="Install missing host build tools with the package manager",
    )
    prerequisite_install_command: list[str] = Field(
        default_factory=lambda: ["apt-get", "install", "-y"],
        description="Package manager command used to install prerequisites",
    )
    prerequisite_packages: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PREREQUISITE_PACKAGES),
        description="Host packages needed to build the emulator",
    )
    vendor_mode: VendorMode = Field(
        default=VendorMode.CONFIG_ARG,
        description="How builds are redirected to the vendored crate cache",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_parallel_builds: int = Field(
        default_factory=_default_parallelism,
        ge=1,
        le=256,
        description="Maximum concurrent compile targets",
    )

    # Launch / image defaults
    memory_mb: int = Field(default=128, ge=16, description="Guest memory in MiB")
    smp: int = Field(default=2, ge=1, le=64, description="Virtual processor count")
    image_size_bytes: int = Field(
        default=64 * 1024 * 1024,
        ge=1024 * 1024,
        description="Default disk image size",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for source and installer downloads",
    )
    compile_timeout: int = Field(
        default=7200,
        ge=60,
        description="Timeout for a single compile or install command",
    )
    tool_timeout: int = Field(
        default=300,
        ge=10,
        description="Timeout for short tool invocations (image tools, probes)",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_PREREQUISITE_PACKAGES",
    "Settings",
    "get_settings",
    "print_settings_json",
]
