"""Disk image assembly module.

This module handles:
- Formatting a fresh filesystem image with an external formatter
- Placing build artifacts and data files into the image
- Listing the image contents for verification
"""

from rvos_forge.image.assembler import (
    assemble,
    collect_placements,
    list_image,
    resolve_placements,
)
from rvos_forge.image.tools import ImageTool, ImageToolset

__all__ = [
    "ImageTool",
    "ImageToolset",
    "assemble",
    "collect_placements",
    "list_image",
    "resolve_placements",
]
