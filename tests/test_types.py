"""Tests for shared value types."""

import os
from pathlib import Path

from rvos_forge.types import (
    DEFAULT_TARGET_TRIPLE,
    BuildContext,
    DiskImage,
    DriveSpec,
    LaunchConfig,
    PipelineState,
    ToolchainSpec,
)


def _context(tmp_path: Path) -> BuildContext:
    return BuildContext(
        env_root=tmp_path,
        rustup_home=tmp_path / "rustup",
        cargo_home=tmp_path / "cargo",
        path_entries=(tmp_path / "bin", tmp_path / "cargo" / "bin"),
        toolchain=ToolchainSpec(),
    )


class TestToolchainSpec:
    """Tests for ToolchainSpec."""

    def test_defaults(self):
        spec = ToolchainSpec()
        assert spec.emulator_version == "7.0.0"
        assert spec.compiler_channel == "nightly"
        assert spec.target_triple == DEFAULT_TARGET_TRIPLE == "riscv64gc-unknown-none-elf"
        assert "rust-src" in spec.extra_components
        assert "cargo-binutils" in spec.extra_components

    def test_to_dict_sorted_components(self):
        spec = ToolchainSpec(extra_components=frozenset({"rustfmt", "clippy", "rust-src"}))
        assert spec.to_dict()["extra_components"] == ["clippy", "rust-src", "rustfmt"]

    def test_equality_ignores_component_order(self):
        a = ToolchainSpec(extra_components=frozenset({"a", "b"}))
        b = ToolchainSpec(extra_components=frozenset({"b", "a"}))
        assert a == b


class TestBuildContext:
    """Tests for BuildContext environment handling."""

    def test_environ_prepends_path(self, tmp_path: Path):
        env = _context(tmp_path).environ({"PATH": "/usr/bin", "HOME": "/home/x"})
        parts = env["PATH"].split(os.pathsep)
        assert parts == [str(tmp_path / "bin"), str(tmp_path / "cargo" / "bin"), "/usr/bin"]
        assert env["RUSTUP_HOME"] == str(tmp_path / "rustup")
        assert env["CARGO_HOME"] == str(tmp_path / "cargo")
        assert env["HOME"] == "/home/x"

    def test_environ_does_not_mutate_process_env(self, tmp_path: Path):
        before = dict(os.environ)
        _context(tmp_path).environ()
        assert dict(os.environ) == before

    def test_which_finds_env_tool(self, tmp_path: Path):
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        tool = bin_dir / "qemu-system-riscv64"
        tool.write_text("#!/bin/sh\n")
        tool.chmod(0o755)

        assert _context(tmp_path).which("qemu-system-riscv64") == str(tool)

    def test_vendor_root(self, tmp_path: Path):
        assert _context(tmp_path).vendor_root == tmp_path / "vendor"


class TestLaunchConfig:
    """Tests for LaunchConfig."""

    def test_referenced_files(self, tmp_path: Path):
        config = LaunchConfig(
            memory_mb=128,
            core_count=2,
            firmware_path=tmp_path / "sbi-qemu",
            kernel_path=tmp_path / "kernel-qemu",
            drives=(DriveSpec(path=tmp_path / "sdcard-riscv.img"),),
        )
        assert config.referenced_files() == [
            tmp_path / "sbi-qemu",
            tmp_path / "kernel-qemu",
            tmp_path / "sdcard-riscv.img",
        ]

    def test_defaults(self, tmp_path: Path):
        config = LaunchConfig(
            memory_mb=128,
            core_count=2,
            firmware_path=tmp_path / "f",
            kernel_path=tmp_path / "k",
        )
        assert config.drives == ()
        assert config.netdevs == ()
        assert config.display_mode == "none"
        assert config.machine == "virt"


class TestDiskImage:
    def test_image_paths(self, tmp_path: Path):
        image = DiskImage(
            host_path=tmp_path / "img",
            format="raw",
            size_bytes=1024,
            contained_files=(("/shell", tmp_path / "shell"), ("/a.txt", tmp_path / "a")),
        )
        assert image.image_paths == ["/shell", "/a.txt"]


class TestPipelineState:
    def test_values(self):
        assert [s.value for s in PipelineState] == [
            "init",
            "provisioned",
            "built",
            "assembled",
            "running",
            "stopped",
            "cleaned",
        ]
