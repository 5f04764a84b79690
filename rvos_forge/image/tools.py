"""External image tool invocations.

Image tools are described as argv templates so projects can swap the
formatter or the copy tool. Placeholders are filled with ``str.format``:
``{image}``, ``{size}``, ``{size_kib}``, ``{offset}``, ``{source}``,
``{dest}``, ``{dir}``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from rvos_forge.errors import AssemblyError
from rvos_forge.project import (
    DEFAULT_COPY_TOOL,
    DEFAULT_FORMAT_TOOL,
    DEFAULT_LIST_TOOL,
    DEFAULT_MKDIR_TOOL,
    ImageToolsSchema,
)


@dataclass(frozen=True)
class ImageTool:
    """An argv template for one external tool."""

    argv: tuple[str, ...]

    @classmethod
    def of(cls, argv: Sequence[str]) -> ImageTool:
        if not argv:
            raise ValueError("tool argv must not be empty")
        return cls(tuple(argv))

    @property
    def name(self) -> str:
        return self.argv[0]

    def render(self, **params: object) -> list[str]:
        """Fill in the template.

        Raises:
            AssemblyError: If the template references an unknown placeholder.
        """
        try:
            return [arg.format(**params) for arg in self.argv]
        except (KeyError, IndexError) as e:
            raise AssemblyError(
                f"Invalid placeholder {e} in {self.name} template",
                code="invalid_tool_template",
            ) from e


@dataclass(frozen=True)
class ImageToolset:
    """The tools used to build and inspect one image."""

    format_image: ImageTool
    copy_file: ImageTool
    make_dir: ImageTool
    list_files: ImageTool

    @classmethod
    def from_schema(cls, schema: ImageToolsSchema) -> ImageToolset:
        return cls(
            format_image=ImageTool.of(schema.format_image),
            copy_file=ImageTool.of(schema.copy_file),
            make_dir=ImageTool.of(schema.make_dir),
            list_files=ImageTool.of(schema.list_files),
        )

    @classmethod
    def default(cls) -> ImageToolset:
        return cls(
            format_image=ImageTool.of(DEFAULT_FORMAT_TOOL),
            copy_file=ImageTool.of(DEFAULT_COPY_TOOL),
            make_dir=ImageTool.of(DEFAULT_MKDIR_TOOL),
            list_files=ImageTool.of(DEFAULT_LIST_TOOL),
        )


__all__ = ["ImageTool", "ImageToolset"]
