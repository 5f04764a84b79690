"""Pipeline state machine.

Drives the stages in order: provision, build, assemble, launch. Each stage
method returns its typed result and advances the state; a stage may only run
once the previous one has completed, and a failed stage leaves the pipeline
where the failure left the on-disk state.

    INIT -> PROVISIONED -> BUILT -> ASSEMBLED -> RUNNING -> STOPPED
    (any state but INIT) -> CLEANED

CLEANED is equivalent to INIT for the purpose of provisioning again.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

import httpx

from rvos_forge.builds.service import (
    BuildOutcome,
    BuildTargets,
    build,
    built_profile,
    clean,
    collect_user_artifacts,
)
from rvos_forge.config import Settings, get_settings
from rvos_forge.errors import PipelineError, PipelineStateError
from rvos_forge.image.assembler import assemble
from rvos_forge.image.tools import ImageToolset
from rvos_forge.launch.service import (
    DEFAULT_GRACE_PERIOD,
    EmulatorProcess,
    build_launch_config,
    launch,
)
from rvos_forge.layout import ProjectLayout
from rvos_forge.project import ProjectSchema
from rvos_forge.toolchain.service import is_provisioned, load_context, provision
from rvos_forge.types import (
    BuildArtifact,
    BuildContext,
    BuildProfile,
    DiskImage,
    PipelineState,
    Placement,
    ToolchainSpec,
)

logger = logging.getLogger(__name__)

# Progress rank of each state; a stage needs at least the rank of its predecessor
_RANK = {
    PipelineState.INIT: 0,
    PipelineState.CLEANED: 0,
    PipelineState.PROVISIONED: 1,
    PipelineState.BUILT: 2,
    PipelineState.ASSEMBLED: 3,
    PipelineState.STOPPED: 3,
    PipelineState.RUNNING: 4,
}


def detect_state(layout: ProjectLayout, spec: ToolchainSpec | None = None) -> PipelineState:
    """Derive the pipeline state from the conventional on-disk paths.

    A state is only reported when every earlier stage's output is present too.
    A running emulator is not detectable from disk.
    """
    if not is_provisioned(layout, spec):
        return PipelineState.INIT
    built = (
        layout.kernel_image.is_file()
        and layout.firmware_image.is_file()
        and layout.build_manifest.is_file()
    )
    if not built:
        return PipelineState.PROVISIONED
    if not layout.disk_image.is_file():
        return PipelineState.BUILT
    return PipelineState.ASSEMBLED


def image_placements(
    project: ProjectSchema,
    layout: ProjectLayout,
    user_programs: Iterable[BuildArtifact] = (),
    extra: Iterable[Placement] = (),
) -> list[Placement]:
    """Placements for the disk image, in write order.

    User programs go to the image root under their names, then the project's
    files, then ``extra``; a later placement wins for the same image path.
    """
    placements: list[Placement] = []
    if project.image.include_user_programs:
        placements.extend(
            Placement(host_path=a.host_path, image_path=f"/{a.name}") for a in user_programs
        )
    placements.extend(
        Placement(host_path=layout.project_root / f.source, image_path=f.destination)
        for f in project.image.files
    )
    placements.extend(extra)
    return placements


class Pipeline:
    """One pass through provision, build, assemble and launch for a checkout.

    Attributes:
        state: Current pipeline state.
        context: BuildContext once provisioned.
        outcome: BuildOutcome once built.
        image: DiskImage once assembled.
        process: EmulatorProcess while running.
    """

    def __init__(
        self,
        layout: ProjectLayout,
        project: ProjectSchema,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
        state: PipelineState | None = None,
    ) -> None:
        self.layout = layout
        self.project = project
        self.settings = settings if settings is not None else get_settings()
        self.client = client
        self.spec = project.toolchain.to_spec()
        self.state = state if state is not None else detect_state(layout, self.spec)
        self.context: BuildContext | None = None
        self.outcome: BuildOutcome | None = None
        self.image: DiskImage | None = None
        self.process: EmulatorProcess | None = None

    def _require(self, action: str, rank: int) -> None:
        if self.state is PipelineState.RUNNING or _RANK[self.state] < rank:
            raise PipelineStateError(self.state.value, action)

    def _build_context(self) -> BuildContext:
        if self.context is None:
            self.context = load_context(self.layout, self.spec)
        return self.context

    @property
    def build_targets(self) -> BuildTargets:
        return BuildTargets.for_programs(
            self.project.build.user_programs,
            kernel_embeds_user=self.project.build.kernel_embeds_user,
        )

    def provision(self) -> BuildContext:
        """Provision the toolchain environment. Allowed from any idle state."""
        self._require("provision", 0)
        try:
            self.context = provision(self.spec, self.layout, self.settings, self.client)
        except PipelineError:
            self.state = PipelineState.INIT
            raise
        self.state = PipelineState.PROVISIONED
        return self.context

    def build(
        self,
        targets: BuildTargets | None = None,
        profile: BuildProfile = BuildProfile.RELEASE,
    ) -> BuildOutcome:
        """Compile the kernel and user programs."""
        self._require("build", 1)
        if targets is None:
            targets = self.build_targets
        context = self._build_context()
        try:
            self.outcome = build(
                targets,
                context,
                self.layout,
                self.settings,
                profile=profile,
                vendor_mode=self.project.build.vendor_mode,
            )
        except PipelineError:
            self.outcome = None
            if targets.kernel:
                # Published outputs were invalidated before compiling
                self.state = PipelineState.PROVISIONED
            raise
        if targets.kernel:
            self.state = PipelineState.BUILT
        return self.outcome

    def _user_programs(self, profile: BuildProfile | None) -> list[BuildArtifact]:
        """User programs of this build, or of the build recorded on disk.

        With no programs listed in the project, every binary in the user
        output directory is taken, as the build compiles them all.
        """
        if not self.project.image.include_user_programs:
            return []
        if self.outcome is not None:
            return self.outcome.user_programs
        return collect_user_artifacts(
            list(self.project.build.user_programs) or None,
            self.layout,
            self.spec.target_triple,
            profile or built_profile(self.layout),
        )

    def assemble(
        self,
        extra: Iterable[Placement] = (),
        image_size_bytes: int | None = None,
        profile: BuildProfile | None = None,
    ) -> DiskImage:
        """Assemble the disk image from the built user programs and files."""
        self._require("assemble", 2)
        placements = image_placements(
            self.project, self.layout, self._user_programs(profile), extra
        )
        size = (
            image_size_bytes
            or self.project.image.size_bytes
            or self.settings.image_size_bytes
        )
        tools = ImageToolset.from_schema(self.project.image.tools)
        try:
            self.image = assemble(
                placements,
                size,
                tools.format_image,
                tools.copy_file,
                self.layout.disk_image,
                mkdir_tool=tools.make_dir,
                offset=self.project.image.offset,
                image_format=self.project.image.format,
                log_dir=self.layout.logs_dir,
                timeout=self.settings.tool_timeout,
            )
        except PipelineError:
            self.image = None
            self.state = PipelineState.BUILT
            raise
        self.state = PipelineState.ASSEMBLED
        return self.image

    def launch(self, image: Path | None = None) -> EmulatorProcess:
        """Start the emulator; the pipeline is RUNNING until ``wait`` returns."""
        self._require("launch", 3)
        config = build_launch_config(self.layout, self.project, self.settings, image)
        context = self._build_context()
        self.process = launch(config, context)
        self.state = PipelineState.RUNNING
        return self.process

    def wait(self) -> int:
        """Wait for the running emulator to exit."""
        if self.process is None or self.state is not PipelineState.RUNNING:
            raise PipelineStateError(self.state.value, "wait")
        try:
            return self.process.wait()
        finally:
            self.state = PipelineState.STOPPED

    def stop(self, grace: float = DEFAULT_GRACE_PERIOD) -> int:
        """Terminate the running emulator."""
        if self.process is None or self.state is not PipelineState.RUNNING:
            raise PipelineStateError(self.state.value, "stop")
        try:
            return self.process.terminate(grace)
        finally:
            self.state = PipelineState.STOPPED

    def clean(self) -> list[Path]:
        """Revert the override swap and delete build outputs and the image."""
        if self.state is PipelineState.INIT:
            raise PipelineStateError(self.state.value, "clean")
        if self.state is PipelineState.RUNNING:
            self.stop()
        removed = clean(self.layout, context=self.context, settings=self.settings)
        self.outcome = None
        self.image = None
        self.process = None
        self.state = PipelineState.CLEANED
        return removed

    def run(self, extra: Iterable[Placement] = ()) -> int:
        """Provision if needed, then build, assemble, launch and wait."""
        if _RANK[self.state] < 1:
            self.provision()
        self.build()
        self.assemble(extra)
        self.launch()
        return self.wait()


__all__ = ["Pipeline", "detect_state", "image_placements"]
