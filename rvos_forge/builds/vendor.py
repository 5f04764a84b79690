"""Vendored dependency override for offline builds.

Two ways of pointing cargo at the local crate cache:

- config-arg: ``--config`` arguments on each cargo invocation; the working
  tree is not touched.
- swap: each component ships its override config in ``cargo/``; it is
  activated by renaming it to ``.cargo/`` and deactivated by renaming it
  back. ``revert_override`` works from any partially applied state.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import stat
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path

from rvos_forge.errors import BuildError
from rvos_forge.layout import Component

logger = logging.getLogger(__name__)

VENDORED_SOURCE_NAME = "vendored-sources"


class OverrideState(str, Enum):
    """Observed state of a component's config directories."""

    INACTIVE = "inactive"  # only cargo/ exists
    ACTIVE = "active"  # only .cargo/ exists
    ABSENT = "absent"  # neither exists
    AMBIGUOUS = "ambiguous"  # both exist


def vendor_config_args(vendor_dir: Path) -> list[str]:
    """Cargo arguments that resolve crates-io from ``vendor_dir`` offline."""
    return [
        "--config",
        f'source.crates-io.replace-with="{VENDORED_SOURCE_NAME}"',
        "--config",
        f'source.{VENDORED_SOURCE_NAME}.directory="{vendor_dir}"',
        "--offline",
    ]


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash covers sorted relative paths, file contents and permission
    bits, so two trees hash equal only if a rename between them would be
    unobservable.
    """
    hasher = hashlib.sha256()

    if not directory.exists():
        return hasher.hexdigest()

    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        rel_path = path.relative_to(directory).as_posix()
        mode = stat.S_IMODE(path.stat().st_mode)
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(path.read_bytes())
        hasher.update(b"\0")

    return hasher.hexdigest()


def override_state(component: Component) -> OverrideState:
    staged = component.staged_config_dir.is_dir()
    active = component.active_config_dir.is_dir()
    if staged and active:
        return OverrideState.AMBIGUOUS
    if active:
        return OverrideState.ACTIVE
    if staged:
        return OverrideState.INACTIVE
    return OverrideState.ABSENT


def _resolve_ambiguous(component: Component) -> None:
    """Drop the active copy when both copies are identical."""
    staged_hash = compute_tree_hash(component.staged_config_dir)
    active_hash = compute_tree_hash(component.active_config_dir)
    if staged_hash != active_hash:
        raise BuildError(
            component.name,
            f"Both {component.staged_config_dir.name}/ and "
            f"{component.active_config_dir.name}/ exist with different content in "
            f"{component.directory}; resolve manually",
            code="override_ambiguous",
        )
    logger.warning(
        "Removing duplicate %s in %s", component.active_config_dir.name, component.directory
    )
    shutil.rmtree(component.active_config_dir)


def apply_override(component: Component) -> None:
    """Activate a component's vendored-source override.

    Raises:
        BuildError: If the component has no override config or its state
            is ambiguous.
    """
    state = override_state(component)
    if state is OverrideState.AMBIGUOUS:
        _resolve_ambiguous(component)
        state = OverrideState.INACTIVE

    if state is OverrideState.ACTIVE:
        logger.warning(
            "Override already active in %s (interrupted build?)", component.directory
        )
        return
    if state is OverrideState.ABSENT:
        raise BuildError(
            component.name,
            f"No cargo override config in {component.directory}",
            code="override_missing",
        )

    component.staged_config_dir.rename(component.active_config_dir)
    logger.info("Activated vendored-source override for %s", component.name)


def revert_override(component: Component) -> bool:
    """Deactivate a component's override, whatever state it is in.

    Returns:
        True if something was changed.

    Raises:
        BuildError: If both directories exist with different content.
    """
    state = override_state(component)
    if state is OverrideState.AMBIGUOUS:
        _resolve_ambiguous(component)
        return True
    if state is OverrideState.ACTIVE:
        component.active_config_dir.rename(component.staged_config_dir)
        logger.info("Reverted vendored-source override for %s", component.name)
        return True
    return False


@contextmanager
def vendor_override(components: Iterable[Component]) -> Iterator[None]:
    """Keep the override active for the duration of the block.

    Components are reverted in reverse order even when the block raises or
    is interrupted.
    """
    applied: list[Component] = []
    try:
        for component in components:
            apply_override(component)
            applied.append(component)
        yield
    finally:
        for component in reversed(applied):
            revert_override(component)


__all__ = [
    "VENDORED_SOURCE_NAME",
    "OverrideState",
    "apply_override",
    "compute_tree_hash",
    "override_state",
    "revert_override",
    "vendor_config_args",
    "vendor_override",
]
