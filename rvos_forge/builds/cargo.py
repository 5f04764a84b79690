"""Cargo compile runner.

This module handles:
- Describing compile targets (kernel crate, user program binaries)
- Composing ``cargo build`` commands for the bare-metal target
- Running a compile and turning its output into BuildArtifacts
- Discovering the binaries a compile left in its output directory
"""

from __future__ import annotations

import logging
import stat
from dataclasses import dataclass
from pathlib import Path

from rvos_forge.builds.artifacts import make_artifact
from rvos_forge.errors import BuildError
from rvos_forge.layout import Component
from rvos_forge.process import ToolExecutionError, run_logged
from rvos_forge.types import ArtifactKind, BuildArtifact, BuildContext, BuildProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompileTarget:
    """One cargo compile.

    Attributes:
        component: Component directory the compile runs in.
        kind: Kind of artifact produced.
        binary: Binary name in the target output directory; None builds
            every binary of the component.
        select_bin: Pass ``--bin <binary>`` (user programs share one crate).
    """

    component: Component
    kind: ArtifactKind
    binary: str | None
    select_bin: bool = False

    @property
    def target_id(self) -> str:
        """Identity reported in diagnostics, e.g. ``user:shell``."""
        return f"{self.component.name}:{self.binary or '*'}"

    @property
    def log_name(self) -> str:
        return f"build-{self.component.name}-{self.binary or 'all'}.log"


def kernel_target(component: Component) -> CompileTarget:
    return CompileTarget(
        component=component,
        kind=ArtifactKind.KERNEL,
        binary=component.binary or component.name,
    )


def user_target(component: Component, program: str) -> CompileTarget:
    return CompileTarget(
        component=component,
        kind=ArtifactKind.USER_PROGRAM,
        binary=program,
        select_bin=True,
    )


def all_user_target(component: Component) -> CompileTarget:
    """Every binary in the user crate, as a plain ``cargo build`` does."""
    return CompileTarget(component=component, kind=ArtifactKind.USER_PROGRAM, binary=None)


def compose_cargo_build_command(
    target: CompileTarget,
    triple: str,
    profile: BuildProfile = BuildProfile.RELEASE,
    vendor_args: list[str] | None = None,
) -> list[str]:
    """Compose the ``cargo build`` command for a compile target.

    Args:
        target: What to compile.
        triple: Target triple.
        profile: Release or debug.
        vendor_args: Dependency-resolution arguments (config-arg mode).

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["cargo", "build", "--target", triple]
    if profile is BuildProfile.RELEASE:
        cmd.append("--release")
    if target.select_bin and target.binary:
        cmd.extend(["--bin", target.binary])
    if vendor_args:
        cmd.extend(vendor_args)
    return cmd


def discover_binaries(output_dir: Path) -> list[Path]:
    """Executables directly under a cargo output directory, sorted by name.

    Cargo also leaves dep-info files, libraries and the ``build``/``deps``
    directories there; only extensionless executable files are binaries.
    """
    if not output_dir.is_dir():
        return []
    return [
        path
        for path in sorted(output_dir.iterdir())
        if path.is_file()
        and not path.suffix
        and stat.S_IMODE(path.stat().st_mode) & 0o111
    ]


def run_compile(
    target: CompileTarget,
    context: BuildContext,
    log_dir: Path,
    profile: BuildProfile = BuildProfile.RELEASE,
    vendor_args: list[str] | None = None,
    timeout: int | None = None,
) -> list[BuildArtifact]:
    """Compile one target.

    Returns:
        The artifacts at their conventional output paths: one for a named
        binary, every binary found for a whole-crate compile.

    Raises:
        BuildError: If cargo fails or the expected output is missing.
    """
    triple = context.toolchain.target_triple
    cmd = compose_cargo_build_command(target, triple, profile, vendor_args)
    log_path = log_dir / target.log_name

    try:
        result = run_logged(
            cmd,
            cwd=target.component.directory,
            log_path=log_path,
            env=context.environ(),
            timeout=timeout,
        )
    except ToolExecutionError as e:
        raise BuildError(
            target.target_id,
            str(e),
            code=e.code,
            diagnostics=e.output,
            log_path=log_path,
        ) from e

    if not result.success:
        raise BuildError(
            target.target_id,
            f"cargo exited with status {result.exit_code}",
            diagnostics=result.output,
            log_path=log_path,
        )

    if target.binary is None:
        outputs = discover_binaries(target.component.output_dir(triple, profile))
        missing = f"no binaries in {target.component.output_dir(triple, profile)}"
    else:
        output = target.component.output_path(triple, profile, target.binary)
        outputs = [output] if output.is_file() else []
        missing = f"{output} was not produced"
    if not outputs:
        raise BuildError(
            target.target_id,
            f"cargo succeeded but {missing}",
            code="artifact_missing",
            diagnostics=result.output,
            log_path=log_path,
        )

    for output in outputs:
        logger.info("Built %s -> %s", target.target_id, output)
    return [make_artifact(target.kind, p.name, p, triple) for p in outputs]


__all__ = [
    "CompileTarget",
    "all_user_target",
    "compose_cargo_build_command",
    "discover_binaries",
    "kernel_target",
    "run_compile",
    "user_target",
]
