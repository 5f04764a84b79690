"""Disk image assembly.

This module handles:
- Resolving placements (later placements win for the same image path)
- Pre-flight checks: source files, image paths and total size
- Formatting a fresh image and copying files into it with external tools
- Listing the files of an assembled image

The image is built under a temporary name next to the output and renamed
into place only after every tool succeeded, so a failed run never leaves an
image at the output path.
"""

from __future__ import annotations

import logging
import posixpath
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path

from rvos_forge.errors import AssemblyError
from rvos_forge.image.tools import ImageTool
from rvos_forge.process import ToolExecutionError, run_logged
from rvos_forge.types import DiskImage, Placement

logger = logging.getLogger(__name__)

# Lowercase fragments of tool output that mean the image ran out of space
SPACE_EXHAUSTED_MARKERS = (
    "disk full",
    "no space",
    "not enough space",
    "insufficient space",
    "too small",
)


def normalize_image_path(image_path: str) -> str:
    """Normalize an image-internal path to an absolute POSIX path.

    Raises:
        AssemblyError: If the path is relative, empty or contains ``..``.
    """
    if not image_path.startswith("/"):
        raise AssemblyError(
            f"Image path must be absolute: '{image_path}'",
            code="invalid_path",
        )
    if ".." in image_path.split("/"):
        raise AssemblyError(
            f"Image path must not contain '..': '{image_path}'",
            code="invalid_path",
        )
    normalized = posixpath.normpath(image_path)
    if normalized == "/":
        raise AssemblyError(
            f"Image path must name a file: '{image_path}'",
            code="invalid_path",
        )
    return normalized


def resolve_placements(placements: Iterable[Placement]) -> list[Placement]:
    """Apply last-write-wins to placements targeting the same image path.

    The surviving placement keeps the position of its final occurrence, so
    the copy order matches the order in which writes would have landed.
    """
    latest: dict[str, int] = {}
    ordered: list[Placement] = []
    for placement in placements:
        image_path = normalize_image_path(placement.image_path)
        if image_path in latest:
            logger.warning(
                "Image path %s placed more than once, later placement wins", image_path
            )
        latest[image_path] = len(ordered)
        ordered.append(Placement(host_path=placement.host_path, image_path=image_path))
    return [p for i, p in enumerate(ordered) if latest[p.image_path] == i]


def check_placements(placements: list[Placement], image_size_bytes: int) -> int:
    """Validate sources and capacity.

    Returns:
        Total content size in bytes.

    Raises:
        AssemblyError: If a source is missing or not a regular file, or the
            content does not fit the image.
    """
    total = 0
    for placement in placements:
        source = placement.host_path
        if not source.exists():
            raise AssemblyError(
                f"Source file not found: {source}",
                code="unsupported_file",
            )
        if not source.is_file():
            raise AssemblyError(
                f"Source is not a regular file: {source}",
                code="unsupported_file",
            )
        total += source.stat().st_size

    if total > image_size_bytes:
        raise AssemblyError(
            f"Content ({total} bytes) exceeds image size ({image_size_bytes} bytes)",
            code="insufficient_space",
        )
    return total


def parent_directories(placements: list[Placement]) -> list[str]:
    """Directories to create, parents before children, each once."""
    dirs: list[str] = []
    for placement in placements:
        parent = posixpath.dirname(placement.image_path)
        chain: list[str] = []
        while parent not in ("/", ""):
            chain.append(parent)
            parent = posixpath.dirname(parent)
        for directory in reversed(chain):
            if directory not in dirs:
                dirs.append(directory)
    return dirs


def _classify_failure(output: str) -> str:
    lowered = output.lower()
    if any(marker in lowered for marker in SPACE_EXHAUSTED_MARKERS):
        return "insufficient_space"
    return "tool_failed"


def _run_tool(
    cmd: list[str],
    what: str,
    log_path: Path | None,
    env: Mapping[str, str] | None,
    timeout: int | None,
) -> str:
    try:
        result = run_logged(cmd, log_path=log_path, env=env, timeout=timeout)
    except ToolExecutionError as e:
        raise AssemblyError(
            f"{what}: {e}",
            code=e.code,
            diagnostics=e.output,
            log_path=log_path,
        ) from e
    if not result.success:
        raise AssemblyError(
            f"{what}: {cmd[0]} exited with status {result.exit_code}",
            code=_classify_failure(result.output),
            diagnostics=result.output,
            log_path=log_path,
        )
    return result.output


def assemble(
    placements: Iterable[Placement],
    image_size_bytes: int,
    filesystem_tool: ImageTool,
    image_modify_tool: ImageTool,
    output_path: Path,
    mkdir_tool: ImageTool | None = None,
    offset: int = 0,
    image_format: str = "raw",
    log_dir: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: int | None = None,
) -> DiskImage:
    """Format a new image and place files into it.

    Args:
        placements: (host file, image path) pairs, in order.
        image_size_bytes: Size of the image to create.
        filesystem_tool: Formatter template (receives image/size/size_kib).
        image_modify_tool: Copy template (receives image/offset/source/dest).
        output_path: Where the finished image is written.
        mkdir_tool: Directory template for nested image paths.
        offset: Byte offset of the filesystem inside the image.
        image_format: Container format reported to the emulator.
        log_dir: Directory for tool logs (None = no log files).
        env: Environment for tool processes.
        timeout: Per-tool timeout in seconds.

    Returns:
        DiskImage describing the produced file.

    Raises:
        AssemblyError: On invalid input, insufficient space, or tool failure.
    """
    if image_size_bytes <= 0 or image_size_bytes % 1024:
        raise AssemblyError(
            f"Image size must be a positive multiple of 1024 bytes, got {image_size_bytes}",
            code="invalid_size",
        )
    resolved = resolve_placements(placements)
    total = check_placements(resolved, image_size_bytes)
    tmp_path = output_path.with_name(f".{output_path.name}.{uuid.uuid4().hex}.partial")

    directories = parent_directories(resolved)
    mkdir_commands: list[list[str]] = []
    if directories:
        if mkdir_tool is None:
            raise AssemblyError(
                f"Nested image paths need a directory tool: {directories}",
                code="invalid_path",
            )
        mkdir_commands = [
            mkdir_tool.render(image=tmp_path, offset=offset, dir=d) for d in directories
        ]

    output_path.parent.mkdir(parents=True, exist_ok=True)
    # An image left by an earlier run is invalid once a new assembly starts
    output_path.unlink(missing_ok=True)

    def log(name: str) -> Path | None:
        return log_dir / f"image-{name}.log" if log_dir is not None else None

    logger.info(
        "Assembling %s (%d bytes, %d file(s), %d bytes of content)",
        output_path,
        image_size_bytes,
        len(resolved),
        total,
    )

    try:
        _run_tool(
            filesystem_tool.render(
                image=tmp_path,
                size=image_size_bytes,
                size_kib=image_size_bytes // 1024,
                offset=offset,
            ),
            "format image",
            log("format"),
            env,
            timeout,
        )

        for directory, cmd in zip(directories, mkdir_commands):
            _run_tool(
                cmd,
                f"create {directory}",
                log("mkdir"),
                env,
                timeout,
            )

        for placement in resolved:
            _run_tool(
                image_modify_tool.render(
                    image=tmp_path,
                    offset=offset,
                    size=image_size_bytes,
                    source=placement.host_path,
                    dest=placement.image_path,
                ),
                f"place {placement.host_path} at {placement.image_path}",
                log("copy"),
                env,
                timeout,
            )
            logger.debug("Placed %s -> %s", placement.host_path, placement.image_path)

        tmp_path.replace(output_path)

    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.info("Assembled %s", output_path)
    return DiskImage(
        host_path=output_path,
        format=image_format,
        size_bytes=image_size_bytes,
        contained_files=tuple((p.image_path, p.host_path) for p in resolved),
    )


def list_image(
    image_path: Path,
    list_tool: ImageTool,
    offset: int = 0,
    env: Mapping[str, str] | None = None,
    timeout: int | None = None,
) -> list[str]:
    """List the files inside an image.

    Returns:
        Sorted absolute image paths.

    Raises:
        AssemblyError: If the image is missing or the tool fails.
    """
    if not image_path.is_file():
        raise AssemblyError(f"Image not found: {image_path}", code="image_missing")

    output = _run_tool(
        list_tool.render(image=image_path, offset=offset),
        f"list {image_path}",
        None,
        env,
        timeout,
    )
    paths: set[str] = set()
    for line in output.splitlines():
        entry = line.strip()
        if not entry:
            continue
        if entry.startswith("::"):
            entry = entry[2:]
        entry = entry.rstrip("/")
        if entry:
            paths.add(entry if entry.startswith("/") else f"/{entry}")
    return sorted(paths)


def collect_placements(directory: Path, prefix: str = "/") -> list[Placement]:
    """Place every file under ``directory`` at the same relative path in the image.

    Raises:
        AssemblyError: If the directory does not exist.
    """
    if not directory.is_dir():
        raise AssemblyError(f"Not a directory: {directory}", code="unsupported_file")
    placements = []
    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(directory).as_posix()
        placements.append(Placement(host_path=path, image_path=posixpath.join(prefix, rel)))
    return placements


__all__ = [
    "SPACE_EXHAUSTED_MARKERS",
    "assemble",
    "check_placements",
    "collect_placements",
    "list_image",
    "normalize_image_path",
    "parent_directories",
    "resolve_placements",
]
