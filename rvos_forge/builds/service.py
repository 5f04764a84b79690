"""Build service module.

This module provides the high-level build API:
- build(): compile the kernel and user programs, fail-fast, and publish the
  boot artifacts only when every target succeeded
- clean(): revert any vendored-source override and delete build outputs

Kernel and user programs compile in parallel unless the kernel embeds the
user binaries, in which case the user programs form a first wave and the
kernel links last.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
from collections.abc import Iterator
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from rvos_forge.builds.artifacts import (
    generate_manifest,
    make_artifact,
    publish_boot_artifacts,
    read_manifest,
    write_manifest,
)
from rvos_forge.builds.cargo import (
    CompileTarget,
    all_user_target,
    discover_binaries,
    kernel_target,
    run_compile,
    user_target,
)
from rvos_forge.builds.vendor import revert_override, vendor_config_args, vendor_override
from rvos_forge.config import get_settings
from rvos_forge.errors import BuildError
from rvos_forge.layout import Component
from rvos_forge.process import ToolExecutionError, run_logged
from rvos_forge.types import (
    ArtifactKind,
    BuildArtifact,
    BuildContext,
    BuildProfile,
    VendorMode,
)

if TYPE_CHECKING:
    from rvos_forge.config import Settings
    from rvos_forge.layout import ProjectLayout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildTargets:
    """What to compile.

    Attributes:
        kernel: Compile (and publish) the kernel.
        user: User program names, compiled from the user crate.
        all_user: Compile every binary of the user crate; ``user`` is
            ignored.
        kernel_embeds_user: The kernel links the user binaries, so it must
            be compiled after all of them.
    """

    kernel: bool = True
    user: tuple[str, ...] = ()
    all_user: bool = False
    kernel_embeds_user: bool = False

    @property
    def builds_user(self) -> bool:
        return self.all_user or bool(self.user)

    @classmethod
    def for_programs(
        cls,
        programs: list[str] | tuple[str, ...],
        kernel: bool = True,
        kernel_embeds_user: bool = False,
    ) -> BuildTargets:
        """Targets for the named programs, or for every program when none are named."""
        return cls(
            kernel=kernel,
            user=tuple(programs),
            all_user=not programs,
            kernel_embeds_user=kernel_embeds_user,
        )


@dataclass
class BuildOutcome:
    """Artifacts of a successful build."""

    artifacts: list[BuildArtifact] = field(default_factory=list)
    manifest_path: Path | None = None

    def of_kind(self, kind: ArtifactKind) -> list[BuildArtifact]:
        return [a for a in self.artifacts if a.kind is kind]

    @property
    def kernel(self) -> BuildArtifact | None:
        kernels = self.of_kind(ArtifactKind.KERNEL)
        return kernels[-1] if kernels else None

    @property
    def firmware(self) -> BuildArtifact | None:
        firmware = self.of_kind(ArtifactKind.BOOTLOADER)
        return firmware[0] if firmware else None

    @property
    def user_programs(self) -> list[BuildArtifact]:
        return self.of_kind(ArtifactKind.USER_PROGRAM)


def plan_waves(targets: BuildTargets, layout: ProjectLayout) -> list[list[CompileTarget]]:
    """Group compile targets into waves; a wave starts after the previous ends."""
    if targets.all_user:
        users = [all_user_target(layout.user)]
    else:
        users = [user_target(layout.user, name) for name in targets.user]
    kernel = [kernel_target(layout.kernel)] if targets.kernel else []

    if targets.kernel_embeds_user and users and kernel:
        return [users, kernel]
    wave = kernel + users
    return [wave] if wave else []


def _components(waves: list[list[CompileTarget]]) -> list[Component]:
    seen: list[Component] = []
    for wave in waves:
        for target in wave:
            if target.component not in seen:
                seen.append(target.component)
    return seen


def _vendor_args(
    component: Component,
    layout: ProjectLayout,
    mode: VendorMode,
) -> list[str] | None:
    if mode is not VendorMode.CONFIG_ARG:
        return None
    vendor_dir = layout.vendor_dir(component)
    if not vendor_dir.is_dir():
        raise BuildError(
            component.name,
            f"Vendored crate cache missing: {vendor_dir} (run provisioning first)",
            code="vendor_missing",
        )
    return vendor_config_args(vendor_dir)


def _run_wave(
    wave: list[CompileTarget],
    context: BuildContext,
    layout: ProjectLayout,
    settings: Settings,
    profile: BuildProfile,
    vendor_args: dict[str, list[str] | None],
) -> list[BuildArtifact]:
    """Compile one wave in parallel, stopping at the first failure.

    Pending compiles are cancelled on failure; compiles already running are
    allowed to finish and their outputs discarded. When several compiles
    fail, the error of the earliest submitted one is raised.
    """
    workers = max(1, min(len(wave), settings.max_parallel_builds))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="compile") as pool:
        futures: dict[Future[list[BuildArtifact]], CompileTarget] = {
            pool.submit(
                run_compile,
                target,
                context,
                layout.logs_dir,
                profile,
                vendor_args[target.component.name],
                settings.compile_timeout,
            ): target
            for target in wave
        }
        _, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in pending:
            future.cancel()
        ran = [f for f in futures if not f.cancelled()]
        wait(ran)
        # Dicts keep submission order
        failed = [f for f in ran if f.exception() is not None]
        if failed:
            first = failed[0]
            logger.error("Compile failed for %s, aborting build", futures[first].target_id)
            raise first.exception()  # type: ignore[misc]

    return [artifact for f in futures for artifact in f.result()]


@contextlib.contextmanager
def _override_scope(components: list[Component], mode: VendorMode) -> Iterator[None]:
    if mode is VendorMode.SWAP:
        with vendor_override(components):
            yield
    else:
        yield


def _invalidate_outputs(layout: ProjectLayout) -> None:
    """Remove outputs of a previous build so a failed run leaves none."""
    for path in (
        layout.kernel_image,
        layout.firmware_image,
        layout.disk_image,
        layout.build_manifest,
    ):
        path.unlink(missing_ok=True)


def build(
    targets: BuildTargets,
    context: BuildContext,
    layout: ProjectLayout,
    settings: Settings | None = None,
    profile: BuildProfile = BuildProfile.RELEASE,
    vendor_mode: VendorMode | None = None,
) -> BuildOutcome:
    """Compile the requested targets.

    Args:
        targets: Kernel and user programs to compile.
        context: Provisioned build context.
        layout: Project layout.
        settings: Application settings (uses defaults if not provided).
        profile: Release or debug.
        vendor_mode: Override mode (defaults to settings.vendor_mode).

    Returns:
        BuildOutcome listing user programs, and the published kernel and
        firmware when the kernel was built.

    Raises:
        BuildError: On the first failing target; any override swap has been
            reverted by the time it propagates.
    """
    if settings is None:
        settings = get_settings()
    mode = vendor_mode or settings.vendor_mode

    waves = plan_waves(targets, layout)
    if not waves:
        raise BuildError("build", "Nothing to build", code="no_targets")

    components = _components(waves)
    vendor_args = {c.name: _vendor_args(c, layout, mode) for c in components}

    if targets.kernel:
        _invalidate_outputs(layout)
    layout.logs_dir.mkdir(parents=True, exist_ok=True)

    artifacts: list[BuildArtifact] = []
    with _override_scope(components, mode):
        for wave in waves:
            artifacts.extend(
                _run_wave(wave, context, layout, settings, profile, vendor_args)
            )

    outcome = BuildOutcome(artifacts=artifacts)
    if targets.kernel:
        kernel = next(a for a in artifacts if a.kind is ArtifactKind.KERNEL)
        published_kernel, firmware = publish_boot_artifacts(kernel, layout)
        outcome.artifacts.extend([published_kernel, firmware])

    manifest = generate_manifest(
        outcome.artifacts,
        profile=profile.value,
        toolchain=context.toolchain.to_dict(),
    )
    outcome.manifest_path = write_manifest(manifest, layout.build_manifest)

    logger.info("Build finished: %d artifact(s)", len(outcome.artifacts))
    return outcome


def built_profile(layout: ProjectLayout) -> BuildProfile:
    """Profile of the last recorded build, release when there is none."""
    manifest = read_manifest(layout.build_manifest) or {}
    try:
        return BuildProfile(manifest.get("profile", BuildProfile.RELEASE.value))
    except ValueError:
        return BuildProfile.RELEASE


def collect_user_artifacts(
    names: list[str] | None,
    layout: ProjectLayout,
    triple: str,
    profile: BuildProfile = BuildProfile.RELEASE,
) -> list[BuildArtifact]:
    """Locate previously built user programs at their conventional paths.

    Args:
        names: Programs to collect; None collects every binary found in
            the user crate's output directory.
        layout: Project layout.
        triple: Target triple.
        profile: Profile the programs were built with.

    Raises:
        BuildError: If a named program has not been built.
    """
    if names is None:
        return [
            make_artifact(ArtifactKind.USER_PROGRAM, path.name, path, triple)
            for path in discover_binaries(layout.user.output_dir(triple, profile))
        ]

    artifacts = []
    for name in names:
        path = layout.user.output_path(triple, profile, name)
        if not path.is_file():
            raise BuildError(
                f"{layout.user.name}:{name}",
                f"User program not built: {path}",
                code="artifact_missing",
            )
        artifacts.append(make_artifact(ArtifactKind.USER_PROGRAM, name, path, triple))
    return artifacts


def _clean_component(
    component: Component,
    context: BuildContext | None,
    log_dir: Path,
    timeout: int,
) -> bool:
    if not component.target_dir.exists():
        return False
    if context is not None and context.which("cargo") is not None:
        try:
            result = run_logged(
                ["cargo", "clean"],
                cwd=component.directory,
                log_path=log_dir / f"clean-{component.name}.log",
                env=context.environ(),
                timeout=timeout,
            )
        except ToolExecutionError as e:
            raise BuildError(component.name, str(e), code=e.code, diagnostics=e.output) from e
        if not result.success:
            raise BuildError(
                component.name,
                f"cargo clean exited with status {result.exit_code}",
                diagnostics=result.output,
            )
    if component.target_dir.exists():
        shutil.rmtree(component.target_dir)
    return True


def clean(
    layout: ProjectLayout,
    targets: BuildTargets | None = None,
    context: BuildContext | None = None,
    settings: Settings | None = None,
) -> list[Path]:
    """Revert the override swap and delete build outputs.

    Safe to call repeatedly and after an interrupted build: the override is
    reverted from whatever state it was left in, and missing outputs are
    skipped.

    Args:
        layout: Project layout.
        targets: Which components to clean (None = all).
        context: Build context; when given, ``cargo clean`` is used.
        settings: Application settings (uses defaults if not provided).

    Returns:
        Paths that were removed or reverted.
    """
    if settings is None:
        settings = get_settings()

    removed: list[Path] = []
    for component in layout.components:
        if revert_override(component):
            removed.append(component.active_config_dir)

    if targets is None:
        components = list(layout.components)
    else:
        components = []
        if targets.kernel:
            components.append(layout.kernel)
        if targets.builds_user:
            components.append(layout.user)

    for component in components:
        if _clean_component(component, context, layout.logs_dir, settings.tool_timeout):
            removed.append(component.target_dir)

    for path in (
        layout.kernel_image,
        layout.firmware_image,
        layout.disk_image,
        layout.build_manifest,
    ):
        if path.exists():
            path.unlink()
            removed.append(path)

    logger.info("Clean removed %d path(s)", len(removed))
    return removed


__all__ = [
    "BuildOutcome",
    "BuildTargets",
    "build",
    "built_profile",
    "clean",
    "collect_user_artifacts",
    "plan_waves",
]
