"""Tests for emulator and compiler command helpers."""

import subprocess
from pathlib import Path
from unittest.mock import patch

from rvos_forge.toolchain.compiler import (
    cargo_tool_installed,
    compose_cargo_install_command,
    compose_component_add_command,
    compose_rustup_init_command,
    compose_target_add_command,
    compose_toolchain_install_command,
    component_installed,
    installed_toolchain_dir,
    rustup_installed,
    split_components,
    target_installed,
)
from rvos_forge.toolchain.emulator import (
    compose_compile_command,
    compose_configure_command,
    compose_install_command,
    installed_emulator_version,
    parse_emulator_version,
)
from rvos_forge.types import DEFAULT_EXTRA_COMPONENTS


class TestEmulatorCommands:
    """Tests for QEMU build command composition."""

    def test_configure(self, tmp_path: Path):
        cmd = compose_configure_command(tmp_path)
        assert cmd == [
            "./configure",
            f"--prefix={tmp_path}",
            "--target-list=riscv64-softmmu,riscv64-linux-user",
        ]

    def test_compile_jobs(self):
        assert compose_compile_command(8) == ["make", "-j8"]
        assert compose_compile_command(0) == ["make", "-j1"]

    def test_install(self):
        assert compose_install_command() == ["make", "install"]


class TestParseEmulatorVersion:
    def test_system_emulator_banner(self):
        output = "QEMU emulator version 7.0.0\nCopyright (c) 2003-2022 Fabrice Bellard\n"
        assert parse_emulator_version(output) == "7.0.0"

    def test_user_emulator_banner(self):
        output = "qemu-riscv64 version 7.0.0 (Debian 1:7.0+dfsg-7)\n"
        assert parse_emulator_version(output) == "7.0.0"

    def test_unrecognized(self):
        assert parse_emulator_version("garbage") is None


class TestInstalledEmulatorVersion:
    """Tests for installed_emulator_version (mocked subprocess)."""

    def test_missing_binary(self, tmp_path: Path):
        assert installed_emulator_version(tmp_path) is None

    def test_reports_version(self, tmp_path: Path):
        (tmp_path / "qemu-system-riscv64").write_text("")
        completed = subprocess.CompletedProcess(
            args=[], returncode=0, stdout="QEMU emulator version 7.0.0\n"
        )
        with patch("subprocess.run", return_value=completed) as mock_run:
            version = installed_emulator_version(tmp_path)

        assert version == "7.0.0"
        assert mock_run.call_args.args[0] == [str(tmp_path / "qemu-system-riscv64"), "--version"]

    def test_broken_binary(self, tmp_path: Path):
        (tmp_path / "qemu-system-riscv64").write_text("")
        with patch("subprocess.run", side_effect=OSError("exec format error")):
            assert installed_emulator_version(tmp_path) is None


class TestCompilerCommands:
    """Tests for rustup/cargo command composition."""

    def test_split_default_components(self):
        rustup_components, cargo_tools = split_components(DEFAULT_EXTRA_COMPONENTS)
        assert rustup_components == ["clippy", "llvm-tools-preview", "rust-src", "rustfmt"]
        assert cargo_tools == ["cargo-binutils"]

    def test_rustup_init(self, tmp_path: Path):
        cmd = compose_rustup_init_command(tmp_path / "rustup-init", "nightly")
        assert cmd[0] == str(tmp_path / "rustup-init")
        assert "-y" in cmd
        assert "--no-modify-path" in cmd
        assert cmd[-2:] == ["--default-toolchain", "nightly"]

    def test_toolchain_target_components(self):
        assert compose_toolchain_install_command("nightly")[:4] == [
            "rustup",
            "toolchain",
            "install",
            "nightly",
        ]
        assert compose_target_add_command("nightly", "riscv64gc-unknown-none-elf") == [
            "rustup",
            "target",
            "add",
            "--toolchain",
            "nightly",
            "riscv64gc-unknown-none-elf",
        ]
        assert compose_component_add_command("nightly", ["rust-src", "clippy"])[-2:] == [
            "rust-src",
            "clippy",
        ]
        assert compose_cargo_install_command("cargo-binutils") == [
            "cargo",
            "install",
            "cargo-binutils",
        ]

    def test_installed_markers(self, tmp_path: Path):
        assert not rustup_installed(tmp_path)
        assert not cargo_tool_installed(tmp_path, "cargo-binutils")

        (tmp_path / "bin").mkdir()
        (tmp_path / "bin" / "rustup").write_text("")
        (tmp_path / "bin" / "cargo-objcopy").write_text("")

        assert rustup_installed(tmp_path)
        assert cargo_tool_installed(tmp_path, "cargo-binutils")


class TestInstalledToolchain:
    """Tests for detecting what rustup already installed."""

    HOST = "x86_64-unknown-linux-gnu"

    def test_no_toolchains(self, tmp_path: Path):
        assert installed_toolchain_dir(tmp_path, "nightly") is None

    def test_floating_channel(self, tmp_path: Path):
        toolchain = tmp_path / "toolchains" / f"nightly-{self.HOST}"
        toolchain.mkdir(parents=True)
        assert installed_toolchain_dir(tmp_path, "nightly") == toolchain

    def test_dated_toolchain_is_not_floating_channel(self, tmp_path: Path):
        dated = tmp_path / "toolchains" / f"nightly-2022-08-01-{self.HOST}"
        dated.mkdir(parents=True)

        assert installed_toolchain_dir(tmp_path, "nightly") is None
        assert installed_toolchain_dir(tmp_path, "nightly-2022-08-01") == dated

    def test_target(self, tmp_path: Path):
        assert not target_installed(tmp_path, "riscv64gc-unknown-none-elf")
        (tmp_path / "lib" / "rustlib" / "riscv64gc-unknown-none-elf").mkdir(parents=True)
        assert target_installed(tmp_path, "riscv64gc-unknown-none-elf")

    def test_components(self, tmp_path: Path):
        assert not component_installed(tmp_path, "rust-src")
        components = tmp_path / "lib" / "rustlib" / "components"
        components.parent.mkdir(parents=True)
        components.write_text(
            f"cargo-{self.HOST}\nrust-src\nllvm-tools-{self.HOST}\nclippy-preview-{self.HOST}\n"
        )

        assert component_installed(tmp_path, "rust-src")
        assert component_installed(tmp_path, "llvm-tools-preview")
        assert component_installed(tmp_path, "clippy")
        assert not component_installed(tmp_path, "rustfmt")
