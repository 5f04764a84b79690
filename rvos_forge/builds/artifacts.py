"""Build artifacts, publishing and the build manifest.

This module handles:
- Computing artifact checksums
- Publishing the kernel and firmware to their fixed boot paths
- Generating a JSON record of a build

The manifest is informational; later stages locate artifacts by their
conventional paths, not through it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rvos_forge.errors import BuildError
from rvos_forge.types import ArtifactKind, BuildArtifact

if TYPE_CHECKING:
    from rvos_forge.layout import ProjectLayout

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file."""
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def make_artifact(
    kind: ArtifactKind,
    name: str,
    host_path: Path,
    target_triple: str,
) -> BuildArtifact:
    """Create an artifact value for a file that exists on disk."""
    return BuildArtifact(
        kind=kind,
        name=name,
        host_path=host_path,
        target_triple=target_triple,
        sha256=compute_file_hash(host_path),
    )


def _copy_atomic(source: Path, dest: Path) -> None:
    tmp = dest.with_name(dest.name + ".tmp")
    shutil.copyfile(source, tmp)
    tmp.replace(dest)


def publish_boot_artifacts(
    kernel: BuildArtifact,
    layout: ProjectLayout,
) -> tuple[BuildArtifact, BuildArtifact]:
    """Copy the kernel and the firmware to their fixed boot paths.

    Args:
        kernel: Freshly built kernel artifact.
        layout: Project layout.

    Returns:
        (published kernel, published firmware) artifacts.

    Raises:
        BuildError: If the firmware is missing or a copy fails.
    """
    if not layout.firmware_source.is_file():
        raise BuildError(
            "firmware",
            f"Firmware not found: {layout.firmware_source}",
            code="firmware_missing",
        )

    try:
        _copy_atomic(kernel.host_path, layout.kernel_image)
        _copy_atomic(layout.firmware_source, layout.firmware_image)
    except OSError as e:
        raise BuildError("publish", f"Failed to publish boot artifacts: {e}") from e

    logger.info(
        "Published kernel to %s and firmware to %s",
        layout.kernel_image,
        layout.firmware_image,
    )
    published_kernel = make_artifact(
        ArtifactKind.KERNEL, kernel.name, layout.kernel_image, kernel.target_triple
    )
    firmware = make_artifact(
        ArtifactKind.BOOTLOADER,
        layout.firmware_source.name,
        layout.firmware_image,
        kernel.target_triple,
    )
    return published_kernel, firmware


def _artifact_to_dict(artifact: BuildArtifact) -> dict[str, Any]:
    data = asdict(artifact)
    data["kind"] = artifact.kind.value
    data["host_path"] = str(artifact.host_path)
    return data


def generate_manifest(
    artifacts: list[BuildArtifact],
    profile: str,
    toolchain: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest dictionary."""
    now = datetime.now(timezone.utc)
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "profile": profile,
        "artifacts": [_artifact_to_dict(a) for a in artifacts],
    }
    if toolchain:
        manifest["toolchain"] = toolchain
    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "kinds": sorted({a.kind.value for a in artifacts}),
    }
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
    logger.info("Wrote manifest to %s", output_path)
    return output_path


def read_manifest(manifest_path: Path) -> dict[str, Any] | None:
    """Read a build manifest; None if missing or unreadable."""
    try:
        with manifest_path.open(encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable manifest %s: %s", manifest_path, e)
        return None
    return data if isinstance(data, dict) else None


__all__ = [
    "HASH_CHUNK_SIZE",
    "compute_file_hash",
    "generate_manifest",
    "make_artifact",
    "publish_boot_artifacts",
    "read_manifest",
    "write_manifest",
]
