"""Shared fixtures: a minimal OS checkout and environment under tmp_path."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from rvos_forge.config import Settings
from rvos_forge.layout import ProjectLayout
from rvos_forge.process import ProcessResult
from rvos_forge.project import BuildSchema, ProjectSchema
from rvos_forge.toolchain.service import make_context
from rvos_forge.types import BuildContext, ToolchainSpec


def make_result(
    cmd: list[str],
    exit_code: int = 0,
    output: str = "",
    log_path: Path | None = None,
) -> ProcessResult:
    """Build a ProcessResult the way run_logged would."""
    now = datetime.now(timezone.utc)
    return ProcessResult(
        exit_code=exit_code,
        output=output,
        command=" ".join(str(c) for c in cmd),
        log_path=log_path,
        started_at=now,
        finished_at=now,
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in tmp_path, ignoring any .env file."""
    return Settings(
        _env_file=None,
        project_root=tmp_path / "checkout",
        env_root=tmp_path / "env",
        max_parallel_builds=2,
    )


@pytest.fixture
def project() -> ProjectSchema:
    """Project building the shell and init user programs."""
    return ProjectSchema(build=BuildSchema(user_programs=["shell", "init"]))


@pytest.fixture
def checkout(settings: Settings) -> Path:
    """Create os/, user/ and bootloader/ with staged cargo configs and vendored crates."""
    root = settings.project_root
    for component in ("os", "user"):
        config_dir = root / component / "cargo"
        config_dir.mkdir(parents=True)
        (config_dir / "config.toml").write_text(
            '[source.crates-io]\nreplace-with = "vendored-sources"\n'
        )
        vendor = root / component / "vendor" / "riscv"
        vendor.mkdir(parents=True)
        (vendor / "lib.rs").write_text("// vendored\n")
    (root / "bootloader").mkdir()
    (root / "bootloader" / "rustsbi-qemu.bin").write_bytes(b"\x73\x00\x50\x10" * 16)
    return root


@pytest.fixture
def layout(settings: Settings, project: ProjectSchema, checkout: Path) -> ProjectLayout:
    return ProjectLayout.from_project(settings, project)


@pytest.fixture
def context(layout: ProjectLayout) -> BuildContext:
    return make_context(ToolchainSpec(), layout)
