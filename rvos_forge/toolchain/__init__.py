"""Toolchain provisioning module.

This module handles:
- Checking and installing host build prerequisites
- Building the pinned RISC-V QEMU from source
- Installing the pinned Rust toolchain, target and components
- Copying vendored crate caches for offline builds
"""

from rvos_forge.toolchain.fetch import (
    DownloadError,
    ExtractionError,
    VerificationError,
    build_emulator_url,
)
from rvos_forge.toolchain.service import (
    PROVISION_STEPS,
    is_provisioned,
    load_context,
    make_context,
    provision,
)

__all__ = [
    "PROVISION_STEPS",
    "DownloadError",
    "ExtractionError",
    "VerificationError",
    "build_emulator_url",
    "is_provisioned",
    "load_context",
    "make_context",
    "provision",
]
