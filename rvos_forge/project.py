"""Project description schema and loading.

A project file (``rvforge.yaml`` at the checkout root) describes the
toolchain pins, the component directories, the user programs to build, the
disk image contents and the launch topology. Every field has a default that
matches the stock OS checkout, so a missing file is a valid project.
"""

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rvos_forge.types import (
    DEFAULT_COMPILER_CHANNEL,
    DEFAULT_EMULATOR_VERSION,
    DEFAULT_EXTRA_COMPONENTS,
    DEFAULT_TARGET_TRIPLE,
    NetdevSpec,
    ToolchainSpec,
    VendorMode,
)

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")
VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+(-rc\d+)?$")

DEFAULT_FORMAT_TOOL = ["mkfs.vfat", "-F", "32", "-C", "{image}", "{size_kib}"]
DEFAULT_COPY_TOOL = ["mcopy", "-o", "-i", "{image}@@{offset}", "{source}", "::{dest}"]
DEFAULT_MKDIR_TOOL = ["mmd", "-i", "{image}@@{offset}", "::{dir}"]
DEFAULT_LIST_TOOL = ["mdir", "-/", "-b", "-i", "{image}@@{offset}", "::"]


class ToolchainSchema(BaseModel):
    """Schema for toolchain pins."""

    model_config = ConfigDict(extra="forbid")

    emulator_version: str = Field(default=DEFAULT_EMULATOR_VERSION)
    compiler_channel: str = Field(default=DEFAULT_COMPILER_CHANNEL)
    target_triple: str = Field(default=DEFAULT_TARGET_TRIPLE)
    extra_components: list[str] = Field(
        default_factory=lambda: sorted(DEFAULT_EXTRA_COMPONENTS)
    )

    @field_validator("emulator_version")
    @classmethod
    def validate_emulator_version(cls, v: str) -> str:
        """Validate the emulator version is a release number."""
        if not VERSION_PATTERN.match(v):
            raise ValueError(f"emulator_version must look like '7.0.0', got '{v}'")
        return v

    def to_spec(self) -> ToolchainSpec:
        return ToolchainSpec(
            emulator_version=self.emulator_version,
            compiler_channel=self.compiler_channel,
            target_triple=self.target_triple,
            extra_components=frozenset(self.extra_components),
        )


class ComponentSchema(BaseModel):
    """Schema for a cargo component directory.

    Attributes:
        name: Component name, also the vendored cache name.
        directory: Directory relative to the project root.
        binary: Binary produced by the component (kernel only).
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    directory: str
    binary: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not NAME_PATTERN.match(v):
            raise ValueError(f"component name must match {NAME_PATTERN.pattern}")
        return v


class BuildSchema(BaseModel):
    """Schema for what the build stage compiles."""

    model_config = ConfigDict(extra="forbid")

    kernel: ComponentSchema = Field(
        default_factory=lambda: ComponentSchema(name="os", directory="os", binary="os")
    )
    user: ComponentSchema = Field(
        default_factory=lambda: ComponentSchema(name="user", directory="user")
    )
    user_programs: list[str] = Field(
        default_factory=list,
        description="User binaries to build and place; empty means every binary",
    )
    kernel_embeds_user: bool = False
    vendor_mode: VendorMode | None = None
    firmware: str = Field(
        default="bootloader/rustsbi-qemu.bin",
        description="Prebuilt firmware, relative to the project root",
    )

    @field_validator("user_programs")
    @classmethod
    def validate_user_programs(cls, v: list[str]) -> list[str]:
        for name in v:
            if not NAME_PATTERN.match(name):
                raise ValueError(f"invalid user program name: '{name}'")
        return v


class FileSpecSchema(BaseModel):
    """Schema for an extra file placed into the image."""

    model_config = ConfigDict(extra="forbid")

    source: str = Field(description="Path to source file on host")
    destination: str = Field(
        description="Destination path in image (must start with /)"
    )

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        """Validate destination starts with /."""
        if not v.startswith("/"):
            raise ValueError("destination must start with '/'")
        return v


class ImageToolsSchema(BaseModel):
    """Command templates for the external image tools.

    Placeholders: ``{image}``, ``{size}``, ``{size_kib}``, ``{offset}``,
    ``{source}``, ``{dest}``, ``{dir}``.
    """

    model_config = ConfigDict(extra="forbid")

    format_image: list[str] = Field(default_factory=lambda: list(DEFAULT_FORMAT_TOOL))
    copy_file: list[str] = Field(default_factory=lambda: list(DEFAULT_COPY_TOOL))
    make_dir: list[str] = Field(default_factory=lambda: list(DEFAULT_MKDIR_TOOL))
    list_files: list[str] = Field(default_factory=lambda: list(DEFAULT_LIST_TOOL))


class ImageSchema(BaseModel):
    """Schema for the disk image."""

    model_config = ConfigDict(extra="forbid")

    path: str = "sdcard-riscv.img"
    format: str = "raw"
    size_bytes: int | None = Field(default=None, gt=0)
    offset: int = Field(default=0, ge=0)
    include_user_programs: bool = True
    files: list[FileSpecSchema] = Field(default_factory=list)
    tools: ImageToolsSchema = Field(default_factory=ImageToolsSchema)


class NetdevSchema(BaseModel):
    """Schema for a user-mode network device."""

    model_config = ConfigDict(extra="forbid")

    host_forwards: list[str] = Field(default_factory=list)

    def to_spec(self) -> NetdevSpec:
        return NetdevSpec(host_forwards=tuple(self.host_forwards))


class LaunchSchema(BaseModel):
    """Schema for the virtual machine topology."""

    model_config = ConfigDict(extra="forbid")

    memory_mb: int | None = Field(default=None, ge=16)
    smp: int | None = Field(default=None, ge=1, le=64)
    display: str = "none"
    attach_image: bool = True
    netdevs: list[NetdevSchema] = Field(default_factory=lambda: [NetdevSchema()])


class ProjectSchema(BaseModel):
    """Complete project description."""

    model_config = ConfigDict(extra="forbid")

    toolchain: ToolchainSchema = Field(default_factory=ToolchainSchema)
    build: BuildSchema = Field(default_factory=BuildSchema)
    image: ImageSchema = Field(default_factory=ImageSchema)
    launch: LaunchSchema = Field(default_factory=LaunchSchema)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_project(path: Path) -> ProjectSchema:
    """Load and validate a project file, or return defaults if it is absent.

    Raises:
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If data does not match schema.
    """
    if not path.exists():
        return ProjectSchema()
    return ProjectSchema.model_validate(load_yaml(path))


def project_to_yaml_string(project: ProjectSchema) -> str:
    """Render a project as YAML (used by ``rvforge status --show-project``)."""
    data = project.model_dump(mode="json")
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


__all__ = [
    "DEFAULT_COPY_TOOL",
    "DEFAULT_FORMAT_TOOL",
    "DEFAULT_LIST_TOOL",
    "DEFAULT_MKDIR_TOOL",
    "BuildSchema",
    "ComponentSchema",
    "FileSpecSchema",
    "ImageSchema",
    "ImageToolsSchema",
    "LaunchSchema",
    "NetdevSchema",
    "ProjectSchema",
    "ToolchainSchema",
    "load_project",
    "load_yaml",
    "project_to_yaml_string",
]
