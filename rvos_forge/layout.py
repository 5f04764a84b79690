"""Conventional on-disk layout.

All persisted state lives at fixed paths derived from the project root and
the environment root, so every stage (and every separate CLI invocation)
finds the others' outputs without an index file.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from rvos_forge.types import BuildProfile

if TYPE_CHECKING:
    from rvos_forge.config import Settings
    from rvos_forge.project import ComponentSchema, ProjectSchema

# Cargo config directory names: the override is kept staged under
# STAGED_CONFIG_DIR and becomes active when renamed to ACTIVE_CONFIG_DIR.
STAGED_CONFIG_DIR = "cargo"
ACTIVE_CONFIG_DIR = ".cargo"

KERNEL_IMAGE_NAME = "kernel-qemu"
FIRMWARE_IMAGE_NAME = "sbi-qemu"
STATE_DIR_NAME = ".rvforge"
TOOLCHAIN_STAMP_NAME = "toolchain.json"
ACTIVATION_SCRIPT_NAME = "env.sh"


@dataclass(frozen=True)
class Component:
    """A cargo workspace directory that the build stage compiles."""

    name: str
    directory: Path
    binary: str | None = None

    @property
    def staged_config_dir(self) -> Path:
        return self.directory / STAGED_CONFIG_DIR

    @property
    def active_config_dir(self) -> Path:
        return self.directory / ACTIVE_CONFIG_DIR

    @property
    def target_dir(self) -> Path:
        return self.directory / "target"

    @property
    def vendor_source(self) -> Path:
        """Pre-fetched crate cache shipped in the checkout."""
        return self.directory / "vendor"

    def output_dir(self, triple: str, profile: BuildProfile) -> Path:
        return self.target_dir / triple / profile.value

    def output_path(self, triple: str, profile: BuildProfile, binary: str) -> Path:
        return self.output_dir(triple, profile) / binary


@dataclass(frozen=True)
class ProjectLayout:
    """Fixed paths for a checkout and its provisioned environment."""

    project_root: Path
    env_root: Path
    kernel: Component
    user: Component
    firmware_source: Path
    disk_image: Path

    @classmethod
    def from_project(
        cls,
        settings: Settings,
        project: ProjectSchema,
    ) -> ProjectLayout:
        """Derive the layout from settings and the project description."""
        root = settings.project_root.resolve()

        def component(schema: ComponentSchema) -> Component:
            return Component(
                name=schema.name,
                directory=root / schema.directory,
                binary=schema.binary,
            )

        return cls(
            project_root=root,
            env_root=settings.env_root,
            kernel=component(project.build.kernel),
            user=component(project.build.user),
            firmware_source=root / project.build.firmware,
            disk_image=root / project.image.path,
        )

    @property
    def components(self) -> tuple[Component, Component]:
        return (self.kernel, self.user)

    # Published boot artifacts

    @property
    def kernel_image(self) -> Path:
        return self.project_root / KERNEL_IMAGE_NAME

    @property
    def firmware_image(self) -> Path:
        return self.project_root / FIRMWARE_IMAGE_NAME

    # Checkout-local state

    @property
    def state_dir(self) -> Path:
        return self.project_root / STATE_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def checkout_lock(self) -> Path:
        return self.state_dir / "checkout.lock"

    @property
    def build_manifest(self) -> Path:
        return self.state_dir / "build.json"

    # Provisioned environment

    @property
    def env_bin(self) -> Path:
        return self.env_root / "bin"

    @property
    def rustup_home(self) -> Path:
        return self.env_root / "rustup"

    @property
    def cargo_home(self) -> Path:
        return self.env_root / "cargo"

    @property
    def sources_dir(self) -> Path:
        return self.env_root / "src"

    @property
    def environment_lock(self) -> Path:
        return self.env_root / ".provision.lock"

    @property
    def env_logs_dir(self) -> Path:
        return self.env_root / "logs"

    @property
    def toolchain_stamp(self) -> Path:
        return self.env_root / TOOLCHAIN_STAMP_NAME

    @property
    def activation_script(self) -> Path:
        return self.env_root / ACTIVATION_SCRIPT_NAME

    def vendor_dir(self, component: Component) -> Path:
        return self.env_root / "vendor" / component.name


__all__ = [
    "ACTIVATION_SCRIPT_NAME",
    "ACTIVE_CONFIG_DIR",
    "FIRMWARE_IMAGE_NAME",
    "KERNEL_IMAGE_NAME",
    "STAGED_CONFIG_DIR",
    "STATE_DIR_NAME",
    "TOOLCHAIN_STAMP_NAME",
    "Component",
    "ProjectLayout",
]
