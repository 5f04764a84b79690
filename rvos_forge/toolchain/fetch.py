"""Source and installer downloads for provisioning.

This module handles:
- URL construction for pinned QEMU source releases
- Streaming downloads with optional SHA-256 verification
- Safe extraction of source tarballs
- Fetching the rustup installer
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

QEMU_DOWNLOAD_BASE = "https://download.qemu.org"

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


class DownloadError(Exception):
    """Raised when a download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        super().__init__(message)
        self.code = code


class VerificationError(Exception):
    """Raised when checksum verification fails."""

    def __init__(self, message: str, code: str = "verification_error") -> None:
        super().__init__(message)
        self.code = code


class ExtractionError(Exception):
    """Raised when archive extraction fails."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class DownloadResult:
    """Result of a download."""

    path: Path
    checksum: str
    size_bytes: int


def build_emulator_url(version: str, base_url: str = QEMU_DOWNLOAD_BASE) -> str:
    """Build the source tarball URL for a QEMU release.

    Args:
        version: QEMU version (e.g., '7.0.0').
        base_url: Mirror base URL.

    Returns:
        URL of ``qemu-<version>.tar.xz``.
    """
    return f"{base_url.rstrip('/')}/qemu-{version}.tar.xz"


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    The file is streamed to a temporary name next to ``dest_path`` and
    renamed only once complete and verified.

    Raises:
        DownloadError: If download fails.
        VerificationError: If checksum verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        dir=dest_path.parent, suffix=".part", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            with tmp_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

        computed_checksum = sha256.hexdigest()
        if expected_checksum and computed_checksum != expected_checksum.lower():
            raise VerificationError(
                f"Checksum mismatch for {url}: "
                f"expected {expected_checksum}, got {computed_checksum}"
            )

        tmp_path.replace(dest_path)
        logger.info(
            "Downloaded %s (%d bytes, checksum: %s)",
            dest_path.name,
            total_bytes,
            computed_checksum[:16] + "...",
        )
        return DownloadResult(
            path=dest_path, checksum=computed_checksum, size_bytes=total_bytes
        )

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    finally:
        tmp_path.unlink(missing_ok=True)


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a ``.tar.xz`` source archive.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Destination directory for extraction.

    Returns:
        The single top-level directory the archive contained.

    Raises:
        ExtractionError: If extraction fails or the archive is unsafe.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:xz") as tar:
            members = tar.getmembers()
            if not members:
                raise ExtractionError(
                    f"Archive {archive_path} is empty",
                    code="empty_archive",
                )

            top_level: set[str] = set()
            for member in members:
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ExtractionError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
                top_level.add(member_path.parts[0])

            tar.extractall(dest_dir, filter="data")

    except tarfile.TarError as e:
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}",
            code="tar_error",
        ) from e
    except OSError as e:
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e

    if len(top_level) != 1:
        raise ExtractionError(
            f"Expected one top-level directory in {archive_path.name}, "
            f"found {sorted(top_level)}",
            code="unexpected_layout",
        )

    root_dir = dest_dir / top_level.pop()
    logger.info("Extracted sources to %s", root_dir)
    return root_dir


def fetch_emulator_source(
    client: httpx.Client,
    version: str,
    sources_dir: Path,
    base_url: str = QEMU_DOWNLOAD_BASE,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """Download and unpack a QEMU source release.

    A previously unpacked tree for the same version is discarded first so a
    half-extracted directory from an interrupted run is never reused.

    Returns:
        Path to the unpacked ``qemu-<version>`` source tree.
    """
    url = build_emulator_url(version, base_url)
    archive_path = sources_dir / url.rsplit("/", 1)[-1]
    source_dir = sources_dir / f"qemu-{version}"

    if source_dir.exists():
        logger.debug("Removing stale source tree %s", source_dir)
        shutil.rmtree(source_dir)

    download_file(
        client,
        url,
        archive_path,
        expected_checksum=expected_checksum,
        timeout=timeout,
    )
    try:
        return extract_archive(archive_path, sources_dir)
    finally:
        archive_path.unlink(missing_ok=True)


def fetch_rustup_init(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """Download the rustup installer and mark it executable."""
    download_file(client, url, dest_path, timeout=timeout)
    dest_path.chmod(0o755)
    return dest_path


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "QEMU_DOWNLOAD_BASE",
    "DownloadError",
    "DownloadResult",
    "ExtractionError",
    "VerificationError",
    "build_emulator_url",
    "download_file",
    "extract_archive",
    "fetch_emulator_source",
    "fetch_rustup_init",
]
