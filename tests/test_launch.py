"""Tests for emulator command composition and process handling."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rvos_forge.config import Settings
from rvos_forge.errors import LaunchError
from rvos_forge.launch import (
    EmulatorProcess,
    build_launch_config,
    compose_qemu_command,
    launch,
    preflight,
    run_emulator,
)
from rvos_forge.layout import ProjectLayout
from rvos_forge.project import LaunchSchema, NetdevSchema, ProjectSchema
from rvos_forge.types import DriveSpec, LaunchConfig, NetdevSpec


@pytest.fixture
def boot_files(tmp_path: Path) -> tuple[Path, Path]:
    firmware = tmp_path / "sbi-qemu"
    kernel = tmp_path / "kernel-qemu"
    firmware.write_bytes(b"sbi")
    kernel.write_bytes(b"kernel")
    return firmware, kernel


def _config(boot_files: tuple[Path, Path], **kwargs) -> LaunchConfig:
    firmware, kernel = boot_files
    return LaunchConfig(
        memory_mb=kwargs.pop("memory_mb", 128),
        core_count=kwargs.pop("core_count", 2),
        firmware_path=firmware,
        kernel_path=kernel,
        **kwargs,
    )


class TestComposeQemuCommand:
    """Tests for compose_qemu_command."""

    def test_stock_topology(self, boot_files: tuple[Path, Path], tmp_path: Path):
        image = tmp_path / "sdcard-riscv.img"
        config = _config(
            boot_files,
            drives=(DriveSpec(path=image),),
            netdevs=(NetdevSpec(),),
        )

        cmd = compose_qemu_command(config)

        assert cmd == [
            "qemu-system-riscv64",
            "-machine",
            "virt",
            "-m",
            "128M",
            "-nographic",
            "-smp",
            "2",
            "-bios",
            str(boot_files[0]),
            "-kernel",
            str(boot_files[1]),
            "-drive",
            f"file={image},if=none,format=raw,id=x0",
            "-device",
            "virtio-blk-device,drive=x0,bus=virtio-mmio-bus.0",
            "-netdev",
            "user,id=net0",
            "-device",
            "virtio-net-device,netdev=net0",
        ]

    def test_display_mode(self, boot_files: tuple[Path, Path]):
        cmd = compose_qemu_command(_config(boot_files, display_mode="gtk"))
        assert "-nographic" not in cmd
        assert cmd[cmd.index("-display") + 1] == "gtk"

    def test_host_forwards(self, boot_files: tuple[Path, Path]):
        netdev = NetdevSpec(host_forwards=("tcp::5555-:5555", "udp::6200-:6200"))
        cmd = compose_qemu_command(_config(boot_files, netdevs=(netdev,)))
        assert "user,id=net0,hostfwd=tcp::5555-:5555,hostfwd=udp::6200-:6200" in cmd

    def test_second_drive_uses_next_bus(self, boot_files: tuple[Path, Path], tmp_path: Path):
        drives = (DriveSpec(path=tmp_path / "a.img"), DriveSpec(path=tmp_path / "b.img"))
        cmd = compose_qemu_command(_config(boot_files, drives=drives))
        assert "virtio-blk-device,drive=x1,bus=virtio-mmio-bus.1" in cmd

    def test_unsupported_bus(self, boot_files: tuple[Path, Path], tmp_path: Path):
        config = _config(boot_files, drives=(DriveSpec(path=tmp_path, bus="ide"),))
        with pytest.raises(LaunchError) as exc_info:
            compose_qemu_command(config)
        assert exc_info.value.code == "unsupported_device"

    def test_unsupported_netdev(self, boot_files: tuple[Path, Path]):
        config = _config(boot_files, netdevs=(NetdevSpec(kind="tap"),))
        with pytest.raises(LaunchError) as exc_info:
            compose_qemu_command(config)
        assert exc_info.value.code == "unsupported_device"


class TestPreflight:
    def test_ok(self, boot_files: tuple[Path, Path]):
        preflight(_config(boot_files))

    def test_missing_kernel(self, boot_files: tuple[Path, Path]):
        boot_files[1].unlink()
        with pytest.raises(LaunchError) as exc_info:
            preflight(_config(boot_files))
        assert exc_info.value.code == "missing_file"
        assert exc_info.value.exit_code == 5

    def test_invalid_core_count(self, boot_files: tuple[Path, Path]):
        with pytest.raises(LaunchError) as exc_info:
            preflight(_config(boot_files, core_count=0))
        assert exc_info.value.code == "invalid_config"


class TestLaunch:
    """Tests for launch() with a mocked Popen."""

    def test_starts_without_drives(self, boot_files: tuple[Path, Path]):
        with (
            patch("rvos_forge.launch.service.shutil.which", return_value="/usr/bin/qemu"),
            patch("rvos_forge.launch.service.subprocess.Popen") as mock_popen,
        ):
            process = launch(_config(boot_files))

        cmd = mock_popen.call_args.args[0]
        assert cmd[0] == "/usr/bin/qemu"
        assert "-drive" not in cmd
        assert process.command == cmd

    def test_missing_image_fails_before_spawn(self, boot_files: tuple[Path, Path], tmp_path: Path):
        config = _config(boot_files, drives=(DriveSpec(path=tmp_path / "absent.img"),))
        with patch("rvos_forge.launch.service.subprocess.Popen") as mock_popen:
            with pytest.raises(LaunchError) as exc_info:
                launch(config)

        assert exc_info.value.code == "missing_file"
        mock_popen.assert_not_called()

    def test_emulator_missing(self, boot_files: tuple[Path, Path]):
        with patch("rvos_forge.launch.service.shutil.which", return_value=None):
            with pytest.raises(LaunchError) as exc_info:
                launch(_config(boot_files))
        assert exc_info.value.code == "emulator_missing"

    def test_spawn_failure(self, boot_files: tuple[Path, Path]):
        with (
            patch("rvos_forge.launch.service.shutil.which", return_value="/usr/bin/qemu"),
            patch(
                "rvos_forge.launch.service.subprocess.Popen",
                side_effect=PermissionError("denied"),
            ),
        ):
            with pytest.raises(LaunchError) as exc_info:
                launch(_config(boot_files))
        assert exc_info.value.code == "spawn_failed"

    def test_context_environment(self, boot_files: tuple[Path, Path], context):
        with (
            patch.object(type(context), "which", return_value="/env/bin/qemu"),
            patch("rvos_forge.launch.service.subprocess.Popen") as mock_popen,
        ):
            launch(_config(boot_files), context)

        env = mock_popen.call_args.kwargs["env"]
        assert env["PATH"].startswith(str(context.path_entries[0]))


class TestEmulatorProcess:
    """Tests for EmulatorProcess."""

    def test_wait_success(self):
        popen = MagicMock(returncode=0)
        popen.wait.return_value = 0
        assert EmulatorProcess(popen, ["qemu"]).wait() == 0

    def test_wait_nonzero(self):
        popen = MagicMock()
        popen.wait.return_value = 1
        with pytest.raises(LaunchError) as exc_info:
            EmulatorProcess(popen, ["qemu"]).wait()
        assert exc_info.value.exit_status == 1
        assert exc_info.value.code == "emulator_failed"

    def test_terminate_graceful(self):
        popen = MagicMock()
        popen.poll.return_value = None
        popen.wait.return_value = -15

        assert EmulatorProcess(popen, ["qemu"]).terminate(grace=1) == -15
        popen.terminate.assert_called_once()
        popen.kill.assert_not_called()

    def test_terminate_escalates_to_kill(self):
        popen = MagicMock()
        popen.poll.return_value = None
        popen.wait.side_effect = [subprocess.TimeoutExpired("qemu", 1), -9]

        assert EmulatorProcess(popen, ["qemu"]).terminate(grace=1) == -9
        popen.kill.assert_called_once()

    def test_terminate_already_exited(self):
        popen = MagicMock(returncode=0)
        popen.poll.return_value = 0
        assert EmulatorProcess(popen, ["qemu"]).terminate() == 0
        popen.terminate.assert_not_called()


class TestRunEmulator:
    def test_interrupt_stops_emulator(self, boot_files: tuple[Path, Path]):
        process = MagicMock()
        process.wait.side_effect = KeyboardInterrupt
        with patch("rvos_forge.launch.service.launch", return_value=process):
            with pytest.raises(KeyboardInterrupt):
                run_emulator(_config(boot_files), grace=0.5)
        process.terminate.assert_called_once_with(0.5)


class TestBuildLaunchConfig:
    """Tests for build_launch_config."""

    def test_defaults(self, layout: ProjectLayout, settings: Settings):
        config = build_launch_config(layout, ProjectSchema(), settings)

        assert config.memory_mb == settings.memory_mb
        assert config.core_count == settings.smp
        assert config.kernel_path == layout.kernel_image
        assert config.firmware_path == layout.firmware_image
        assert config.drives == (DriveSpec(path=layout.disk_image),)
        assert config.netdevs == (NetdevSpec(),)
        assert config.display_mode == "none"

    def test_project_overrides(self, layout: ProjectLayout, settings: Settings, tmp_path: Path):
        project = ProjectSchema(
            launch=LaunchSchema(
                memory_mb=256,
                smp=4,
                attach_image=False,
                netdevs=[NetdevSchema(host_forwards=["tcp::2222-:22"])],
            )
        )
        config = build_launch_config(layout, project, settings)

        assert config.memory_mb == 256
        assert config.core_count == 4
        assert config.drives == ()
        assert config.netdevs[0].host_forwards == ("tcp::2222-:22",)

        explicit = build_launch_config(layout, project, settings, image=tmp_path / "x.img")
        assert explicit.drives[0].path == tmp_path / "x.img"
