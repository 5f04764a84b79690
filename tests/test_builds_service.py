"""Tests for the build service (build and clean).

A fake cargo writes the expected outputs, or fails for selected binaries.
"""

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import make_result
from rvos_forge.builds.artifacts import generate_manifest, write_manifest
from rvos_forge.builds.service import (
    BuildTargets,
    build,
    built_profile,
    clean,
    collect_user_artifacts,
    plan_waves,
)
from rvos_forge.builds.vendor import OverrideState, override_state
from rvos_forge.config import Settings
from rvos_forge.errors import BuildError
from rvos_forge.layout import ProjectLayout
from rvos_forge.types import ArtifactKind, BuildContext, BuildProfile, VendorMode


class FakeCargo:
    """Writes target/<triple>/<profile>/<binary> for each cargo build."""

    def __init__(
        self,
        fail: set[str] | None = None,
        user_bins: tuple[str, ...] = ("shell", "init"),
    ) -> None:
        self.fail = fail or set()
        self.user_bins = user_bins
        self.commands: list[list[str]] = []
        self.active_configs: list[bool] = []
        self._lock = threading.Lock()

    def __call__(self, cmd, cwd=None, log_path=None, env=None, timeout=None):
        cmd = [str(c) for c in cmd]
        with self._lock:
            self.commands.append(cmd)
            self.active_configs.append((Path(cwd) / ".cargo").is_dir())
        triple = cmd[cmd.index("--target") + 1]
        profile = "release" if "--release" in cmd else "debug"
        if "--bin" in cmd:
            binaries = [cmd[cmd.index("--bin") + 1]]
        elif Path(cwd).name == "user":
            binaries = list(self.user_bins)
        else:
            binaries = [Path(cwd).name]
        for binary in binaries:
            if binary in self.fail:
                return make_result(
                    cmd, 101, f"error: could not compile `{binary}`\n", log_path
                )
        for binary in binaries:
            output = Path(cwd) / "target" / triple / profile / binary
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(f"ELF {binary}".encode())
            output.chmod(0o755)
        return make_result(cmd, 0, "Finished\n", log_path)


@pytest.fixture
def vendored(layout: ProjectLayout) -> ProjectLayout:
    """Environment with vendored crate caches in place."""
    for component in layout.components:
        layout.vendor_dir(component).mkdir(parents=True)
    return layout


def _targets() -> BuildTargets:
    return BuildTargets(kernel=True, user=("shell", "init"))


class TestPlanWaves:
    def test_parallel_when_independent(self, layout: ProjectLayout):
        waves = plan_waves(_targets(), layout)
        assert len(waves) == 1
        assert [t.target_id for t in waves[0]] == ["os:os", "user:shell", "user:init"]

    def test_kernel_last_when_embedding(self, layout: ProjectLayout):
        targets = BuildTargets(kernel=True, user=("shell",), kernel_embeds_user=True)
        waves = plan_waves(targets, layout)
        assert [[t.target_id for t in w] for w in waves] == [["user:shell"], ["os:os"]]

    def test_nothing(self, layout: ProjectLayout):
        assert plan_waves(BuildTargets(kernel=False), layout) == []

    def test_every_user_program(self, layout: ProjectLayout):
        waves = plan_waves(BuildTargets.for_programs([]), layout)
        assert [t.target_id for t in waves[0]] == ["os:os", "user:*"]


class TestBuildTargets:
    def test_named_programs(self):
        targets = BuildTargets.for_programs(["shell"], kernel=False)
        assert targets == BuildTargets(kernel=False, user=("shell",))
        assert targets.builds_user

    def test_no_names_means_every_program(self):
        targets = BuildTargets.for_programs([])
        assert targets.all_user
        assert targets.builds_user

    def test_kernel_only(self):
        assert not BuildTargets(kernel=True).builds_user


class TestBuild:
    """Tests for build()."""

    def test_publishes_boot_artifacts(
        self,
        vendored: ProjectLayout,
        context: BuildContext,
        settings: Settings,
    ):
        fake = FakeCargo()
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=fake):
            outcome = build(_targets(), context, vendored, settings)

        layout = vendored
        assert layout.kernel_image.read_bytes() == b"ELF os"
        assert layout.firmware_image.read_bytes() == layout.firmware_source.read_bytes()
        assert outcome.kernel is not None
        assert outcome.kernel.host_path == layout.kernel_image
        assert outcome.firmware is not None
        assert outcome.firmware.kind is ArtifactKind.BOOTLOADER
        assert sorted(a.name for a in outcome.user_programs) == ["init", "shell"]
        assert outcome.manifest_path == layout.build_manifest
        assert layout.build_manifest.exists()

    def test_config_arg_mode_leaves_tree_untouched(
        self, vendored: ProjectLayout, context: BuildContext, settings: Settings
    ):
        fake = FakeCargo()
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=fake):
            build(_targets(), context, vendored, settings, vendor_mode=VendorMode.CONFIG_ARG)

        assert all("--offline" in c for c in fake.commands)
        assert not any(fake.active_configs)
        assert all(override_state(c) is OverrideState.INACTIVE for c in vendored.components)

    def test_swap_mode_active_during_compile(
        self, layout: ProjectLayout, context: BuildContext, settings: Settings
    ):
        fake = FakeCargo()
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=fake):
            build(_targets(), context, layout, settings, vendor_mode=VendorMode.SWAP)

        assert all(fake.active_configs)
        assert not any("--offline" in c for c in fake.commands)
        assert all(override_state(c) is OverrideState.INACTIVE for c in layout.components)

    def test_user_failure_publishes_no_kernel(
        self, vendored: ProjectLayout, context: BuildContext, settings: Settings
    ):
        """Any failing user program means no kernel is published."""
        fake = FakeCargo(fail={"init"})
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=fake):
            with pytest.raises(BuildError) as exc_info:
                build(_targets(), context, vendored, settings)

        assert exc_info.value.target == "user:init"
        assert "could not compile" in (exc_info.value.diagnostics or "")
        assert not vendored.kernel_image.exists()
        assert not vendored.firmware_image.exists()

    def test_failure_invalidates_previous_outputs(
        self, vendored: ProjectLayout, context: BuildContext, settings: Settings
    ):
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=FakeCargo()):
            build(_targets(), context, vendored, settings)
        vendored.disk_image.write_bytes(b"old image")

        with patch("rvos_forge.builds.cargo.run_logged", side_effect=FakeCargo({"shell"})):
            with pytest.raises(BuildError):
                build(_targets(), context, vendored, settings)

        assert not vendored.kernel_image.exists()
        assert not vendored.disk_image.exists()
        assert not vendored.build_manifest.exists()

    def test_swap_reverted_on_failure(
        self, layout: ProjectLayout, context: BuildContext, settings: Settings
    ):
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=FakeCargo({"os"})):
            with pytest.raises(BuildError):
                build(_targets(), context, layout, settings, vendor_mode=VendorMode.SWAP)

        assert all(override_state(c) is OverrideState.INACTIVE for c in layout.components)

    def test_kernel_embeds_user_waits_for_users(
        self, vendored: ProjectLayout, context: BuildContext, settings: Settings
    ):
        fake = FakeCargo()
        targets = BuildTargets(kernel=True, user=("shell", "init"), kernel_embeds_user=True)
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=fake):
            build(targets, context, vendored, settings)

        kernel_index = next(i for i, c in enumerate(fake.commands) if "--bin" not in c)
        assert kernel_index == len(fake.commands) - 1

    def test_kernel_not_built_after_user_failure_when_embedding(
        self, vendored: ProjectLayout, context: BuildContext, settings: Settings
    ):
        fake = FakeCargo(fail={"shell"})
        targets = BuildTargets(kernel=True, user=("shell",), kernel_embeds_user=True)
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=fake):
            with pytest.raises(BuildError):
                build(targets, context, vendored, settings)

        assert all("--bin" in c for c in fake.commands)

    def test_every_user_program_when_none_named(
        self, vendored: ProjectLayout, context: BuildContext, settings: Settings
    ):
        fake = FakeCargo(user_bins=("shell", "init", "hello"))
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=fake):
            outcome = build(BuildTargets.for_programs([]), context, vendored, settings)

        # One kernel compile and one whole-crate user compile
        assert [a.name for a in outcome.user_programs] == ["hello", "init", "shell"]
        assert len(fake.commands) == 2
        assert not any("--bin" in c for c in fake.commands)

    def test_earliest_failure_reported(
        self, vendored: ProjectLayout, context: BuildContext, settings: Settings
    ):
        fake = FakeCargo(fail={"shell", "init"})
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=fake):
            with pytest.raises(BuildError) as exc_info:
                build(_targets(), context, vendored, settings)

        assert exc_info.value.target == "user:shell"

    def test_vendor_cache_required(
        self, layout: ProjectLayout, context: BuildContext, settings: Settings
    ):
        with pytest.raises(BuildError) as exc_info:
            build(_targets(), context, layout, settings, vendor_mode=VendorMode.CONFIG_ARG)
        assert exc_info.value.code == "vendor_missing"

    def test_no_targets(self, vendored: ProjectLayout, context: BuildContext, settings: Settings):
        with pytest.raises(BuildError) as exc_info:
            build(BuildTargets(kernel=False), context, vendored, settings)
        assert exc_info.value.code == "no_targets"

    def test_missing_firmware(
        self, vendored: ProjectLayout, context: BuildContext, settings: Settings
    ):
        vendored.firmware_source.unlink()
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=FakeCargo()):
            with pytest.raises(BuildError) as exc_info:
                build(_targets(), context, vendored, settings)
        assert exc_info.value.code == "firmware_missing"
        assert not vendored.kernel_image.exists()


class TestClean:
    """Tests for clean()."""

    def test_build_then_clean_round_trip(
        self, layout: ProjectLayout, context: BuildContext, settings: Settings
    ):
        """Clean restores configuration and removes every artifact."""
        configs = {
            c.name: (c.staged_config_dir / "config.toml").read_text() for c in layout.components
        }
        with patch("rvos_forge.builds.cargo.run_logged", side_effect=FakeCargo()):
            build(_targets(), context, layout, settings, vendor_mode=VendorMode.SWAP)

        removed = clean(layout, settings=settings)

        for component in layout.components:
            assert override_state(component) is OverrideState.INACTIVE
            assert (component.staged_config_dir / "config.toml").read_text() == configs[
                component.name
            ]
            assert not component.target_dir.exists()
        assert not layout.kernel_image.exists()
        assert not layout.firmware_image.exists()
        assert not layout.build_manifest.exists()
        assert layout.kernel_image in removed

    def test_reverts_interrupted_swap(self, layout: ProjectLayout, settings: Settings):
        layout.kernel.staged_config_dir.rename(layout.kernel.active_config_dir)

        removed = clean(layout, settings=settings)

        assert override_state(layout.kernel) is OverrideState.INACTIVE
        assert layout.kernel.active_config_dir in removed

    def test_idempotent(self, layout: ProjectLayout, settings: Settings):
        assert clean(layout, settings=settings) == []
        assert clean(layout, settings=settings) == []

    def test_removes_disk_image(self, layout: ProjectLayout, settings: Settings):
        layout.disk_image.write_bytes(b"img")
        assert layout.disk_image in clean(layout, settings=settings)
        assert not layout.disk_image.exists()

    def test_selected_components(self, layout: ProjectLayout, settings: Settings):
        for component in layout.components:
            component.target_dir.mkdir()

        clean(layout, BuildTargets(kernel=False, user=("shell",)), settings=settings)

        assert layout.kernel.target_dir.exists()
        assert not layout.user.target_dir.exists()


class TestCollectUserArtifacts:
    def test_found(self, layout: ProjectLayout):
        triple = "riscv64gc-unknown-none-elf"
        path = layout.user.output_path(triple, BuildProfile.RELEASE, "shell")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"ELF")

        artifacts = collect_user_artifacts(["shell"], layout, triple)

        assert artifacts[0].host_path == path
        assert artifacts[0].kind is ArtifactKind.USER_PROGRAM

    def test_missing(self, layout: ProjectLayout):
        with pytest.raises(BuildError) as exc_info:
            collect_user_artifacts(["shell"], layout, "riscv64gc-unknown-none-elf")
        assert exc_info.value.code == "artifact_missing"

    def test_discovers_every_binary(self, layout: ProjectLayout):
        triple = "riscv64gc-unknown-none-elf"
        output_dir = layout.user.output_dir(triple, BuildProfile.DEBUG)
        (output_dir / "deps").mkdir(parents=True)
        for name in ("shell", "init"):
            (output_dir / name).write_bytes(b"ELF")
            (output_dir / name).chmod(0o755)
        (output_dir / "shell.d").write_text("dep-info")
        (output_dir / "README").write_text("not a binary")

        artifacts = collect_user_artifacts(None, layout, triple, BuildProfile.DEBUG)

        assert [a.name for a in artifacts] == ["init", "shell"]

    def test_nothing_built(self, layout: ProjectLayout):
        assert collect_user_artifacts(None, layout, "riscv64gc-unknown-none-elf") == []


class TestBuiltProfile:
    def test_from_manifest(self, layout: ProjectLayout):
        write_manifest(generate_manifest([], profile="debug"), layout.build_manifest)
        assert built_profile(layout) is BuildProfile.DEBUG

    def test_defaults_to_release(self, layout: ProjectLayout):
        assert built_profile(layout) is BuildProfile.RELEASE

    def test_unreadable_manifest(self, layout: ProjectLayout):
        layout.build_manifest.parent.mkdir(parents=True, exist_ok=True)
        layout.build_manifest.write_text("{not json")
        assert built_profile(layout) is BuildProfile.RELEASE
