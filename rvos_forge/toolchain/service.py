"""Toolchain provisioning service.

This module provides the high-level provisioning API:
- provision(): install prerequisites, the pinned emulator, the pinned
  compiler toolchain and the vendored crate caches, in that order
- load_context(): rebuild the BuildContext of an already provisioned
  environment
- is_provisioned(): check the environment stamp

Each step has a stable name that is reported in ProvisionError.step.
Provisioning is idempotent: tools already at the pinned version are
detected and skipped, the rest are overwritten with identical content.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from rvos_forge.config import get_settings
from rvos_forge.errors import ProvisionError
from rvos_forge.locking import environment_lock
from rvos_forge.process import ToolExecutionError, run_logged
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
    EMULATOR_BINARIES,
    compose_compile_command,
    compose_configure_command,
    compose_install_command,
    installed_emulator_version,
)
from rvos_forge.toolchain.fetch import (
    DownloadError,
    ExtractionError,
    VerificationError,
    fetch_emulator_source,
    fetch_rustup_init,
)
from rvos_forge.types import BuildContext, ToolchainSpec

if TYPE_CHECKING:
    from rvos_forge.config import Settings
    from rvos_forge.layout import ProjectLayout

logger = logging.getLogger(__name__)

PROVISION_STEPS = (
    "prerequisites",
    "emulator-fetch",
    "emulator-configure",
    "emulator-compile",
    "emulator-install",
    "compiler-bootstrap",
    "compiler-target",
    "compiler-components",
    "vendor",
)

# Host tools needed to build the emulator and cargo-installed tools
REQUIRED_HOST_TOOLS = ("make", "ninja", "pkg-config", "cc", "tar")


def make_context(spec: ToolchainSpec, layout: ProjectLayout) -> BuildContext:
    """Build the context value for an environment root."""
    return BuildContext(
        env_root=layout.env_root,
        rustup_home=layout.rustup_home,
        cargo_home=layout.cargo_home,
        path_entries=(layout.env_bin, layout.cargo_home / "bin"),
        toolchain=spec,
    )


def read_stamp(layout: ProjectLayout) -> ToolchainSpec | None:
    """Read the spec an environment was provisioned for, if any."""
    try:
        data = json.loads(layout.toolchain_stamp.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("Unreadable toolchain stamp %s: %s", layout.toolchain_stamp, e)
        return None
    return ToolchainSpec(
        emulator_version=data["emulator_version"],
        compiler_channel=data["compiler_channel"],
        target_triple=data["target_triple"],
        extra_components=frozenset(data["extra_components"]),
    )


def is_provisioned(layout: ProjectLayout, spec: ToolchainSpec | None = None) -> bool:
    """Check whether the environment was provisioned (for ``spec``, if given)."""
    stamped = read_stamp(layout)
    if stamped is None:
        return False
    return spec is None or stamped == spec


def load_context(layout: ProjectLayout, spec: ToolchainSpec | None = None) -> BuildContext:
    """Return the BuildContext of a provisioned environment.

    Raises:
        ProvisionError: If the environment is missing or was provisioned
            for a different spec.
    """
    stamped = read_stamp(layout)
    if stamped is None:
        raise ProvisionError(
            "environment",
            f"Environment at {layout.env_root} is not provisioned",
            code="not_provisioned",
        )
    if spec is not None and stamped != spec:
        raise ProvisionError(
            "environment",
            f"Environment at {layout.env_root} was provisioned for {stamped.to_dict()}, "
            f"not {spec.to_dict()}",
            code="spec_mismatch",
        )
    return make_context(stamped, layout)


def _run_step(
    step: str,
    cmd: list[str],
    log_dir: Path,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: int | None = None,
) -> str:
    """Run one provisioning command, mapping failures to ProvisionError."""
    log_path = log_dir / f"{step}.log"
    try:
        result = run_logged(cmd, cwd=cwd, log_path=log_path, env=env, timeout=timeout)
    except ToolExecutionError as e:
        raise ProvisionError(
            step, str(e), code=e.code, diagnostics=e.output, log_path=log_path
        ) from e
    if not result.success:
        raise ProvisionError(
            step,
            f"{result.command} exited with status {result.exit_code}",
            diagnostics=result.output,
            log_path=log_path,
        )
    return result.output


def missing_host_tools(env: Mapping[str, str]) -> list[str]:
    """Return required host tools not found on the environment's PATH."""
    path = env.get("PATH", "")
    return [tool for tool in REQUIRED_HOST_TOOLS if shutil.which(tool, path=path) is None]


def ensure_prerequisites(settings: Settings, env: Mapping[str, str], log_dir: Path) -> None:
    """Make sure host build tools are present, installing them if allowed."""
    missing = missing_host_tools(env)
    if not missing:
        logger.info("Host build prerequisites present")
        return

    if not settings.install_prerequisites:
        raise ProvisionError(
            "prerequisites",
            f"Missing host tools: {', '.join(missing)} "
            "(set RVFORGE_INSTALL_PREREQUISITES=true to install them)",
            code="missing_prerequisites",
        )

    cmd = [*settings.prerequisite_install_command, *settings.prerequisite_packages]
    logger.info("Installing prerequisites: %s", shlex.join(cmd))
    _run_step("prerequisites", cmd, log_dir, env=env, timeout=settings.compile_timeout)

    still_missing = missing_host_tools(env)
    if still_missing:
        raise ProvisionError(
            "prerequisites",
            f"Host tools still missing after install: {', '.join(still_missing)}",
            code="missing_prerequisites",
        )


def _require_online(settings: Settings, step: str) -> None:
    if settings.offline:
        raise ProvisionError(
            step,
            "Download required but offline mode is enabled",
            code="offline_mode",
        )


def install_emulator(
    spec: ToolchainSpec,
    layout: ProjectLayout,
    settings: Settings,
    client: httpx.Client,
    env: Mapping[str, str],
    log_dir: Path,
) -> None:
    """Fetch, configure, compile and install the pinned emulator."""
    _require_online(settings, "emulator-fetch")
    try:
        source_dir = fetch_emulator_source(
            client,
            spec.emulator_version,
            layout.sources_dir,
            base_url=settings.qemu_download_base,
            expected_checksum=settings.qemu_sha256,
            timeout=settings.download_timeout,
        )
    except (DownloadError, VerificationError, ExtractionError) as e:
        raise ProvisionError("emulator-fetch", str(e), code=e.code) from e

    _run_step(
        "emulator-configure",
        compose_configure_command(layout.env_root),
        log_dir,
        cwd=source_dir,
        env=env,
        timeout=settings.compile_timeout,
    )
    _run_step(
        "emulator-compile",
        compose_compile_command(settings.max_parallel_builds),
        log_dir,
        cwd=source_dir,
        env=env,
        timeout=settings.compile_timeout,
    )
    _run_step(
        "emulator-install",
        compose_install_command(),
        log_dir,
        cwd=source_dir,
        env=env,
        timeout=settings.compile_timeout,
    )

    for binary in EMULATOR_BINARIES:
        version = installed_emulator_version(
            layout.env_bin, binary, env=env, timeout=settings.tool_timeout
        )
        if version != spec.emulator_version:
            raise ProvisionError(
                "emulator-install",
                f"{binary} reports version {version}, expected {spec.emulator_version}",
                code="version_mismatch",
            )

    shutil.rmtree(source_dir, ignore_errors=True)
    logger.info("Installed emulator %s into %s", spec.emulator_version, layout.env_root)


def install_compiler(
    spec: ToolchainSpec,
    layout: ProjectLayout,
    settings: Settings,
    client: httpx.Client,
    env: Mapping[str, str],
    log_dir: Path,
) -> None:
    """Install the pinned compiler toolchain, target and components.

    Pieces already present are skipped: re-running ``rustup toolchain
    install`` on a floating channel would update it to a newer release.
    Every step that would download refuses in offline mode.
    """
    channel = spec.compiler_channel

    if installed_toolchain_dir(layout.rustup_home, channel) is not None:
        logger.info("Toolchain %s already installed, skipping", channel)
    elif rustup_installed(layout.cargo_home):
        _require_online(settings, "compiler-bootstrap")
        logger.info("rustup present, installing toolchain %s", channel)
        _run_step(
            "compiler-bootstrap",
            compose_toolchain_install_command(channel),
            log_dir,
            env=env,
            timeout=settings.compile_timeout,
        )
    else:
        _require_online(settings, "compiler-bootstrap")
        rustup_init = layout.sources_dir / "rustup-init"
        try:
            fetch_rustup_init(
                client,
                settings.rustup_init_url,
                rustup_init,
                timeout=settings.download_timeout,
            )
        except (DownloadError, VerificationError) as e:
            raise ProvisionError("compiler-bootstrap", str(e), code=e.code) from e
        try:
            _run_step(
                "compiler-bootstrap",
                compose_rustup_init_command(rustup_init, channel),
                log_dir,
                env=env,
                timeout=settings.compile_timeout,
            )
        finally:
            rustup_init.unlink(missing_ok=True)

    toolchain_dir = installed_toolchain_dir(layout.rustup_home, channel)

    if toolchain_dir is not None and target_installed(toolchain_dir, spec.target_triple):
        logger.info("Target %s already installed, skipping", spec.target_triple)
    else:
        _require_online(settings, "compiler-target")
        _run_step(
            "compiler-target",
            compose_target_add_command(channel, spec.target_triple),
            log_dir,
            env=env,
            timeout=settings.compile_timeout,
        )

    rustup_components, cargo_tools = split_components(spec.extra_components)
    if toolchain_dir is not None:
        rustup_components = [
            c for c in rustup_components if not component_installed(toolchain_dir, c)
        ]
    if rustup_components:
        _require_online(settings, "compiler-components")
        _run_step(
            "compiler-components",
            compose_component_add_command(channel, rustup_components),
            log_dir,
            env=env,
            timeout=settings.compile_timeout,
        )
    for tool in cargo_tools:
        if cargo_tool_installed(layout.cargo_home, tool):
            logger.info("Cargo tool %s already installed, skipping", tool)
            continue
        _require_online(settings, "compiler-components")
        _run_step(
            "compiler-components",
            compose_cargo_install_command(tool),
            log_dir,
            env=env,
            timeout=settings.compile_timeout,
        )


def copy_vendor_caches(layout: ProjectLayout) -> list[Path]:
    """Copy each component's vendored crates into the environment.

    The destination is replaced as a whole, so re-running with the same
    sources yields the same tree.

    Returns:
        Destination directories, in component order.

    Raises:
        ProvisionError: If a component has no vendored cache.
    """
    copied: list[Path] = []
    for component in layout.components:
        source = component.vendor_source
        if not source.is_dir():
            raise ProvisionError(
                "vendor",
                f"Vendored crate cache not found for {component.name}: {source}",
                code="vendor_missing",
            )
        dest = layout.vendor_dir(component)
        staging = dest.with_name(dest.name + ".tmp")
        try:
            if staging.exists():
                shutil.rmtree(staging)
            shutil.copytree(source, staging, symlinks=True)
            if dest.exists():
                shutil.rmtree(dest)
            staging.rename(dest)
        except OSError as e:
            raise ProvisionError(
                "vendor",
                f"Failed to copy {source} -> {dest}: {e}",
                code="vendor_copy_error",
            ) from e
        logger.info("Vendored crates for %s copied to %s", component.name, dest)
        copied.append(dest)
    return copied


def write_stamp(spec: ToolchainSpec, layout: ProjectLayout) -> None:
    """Record the provisioned spec and write the shell activation script."""
    layout.toolchain_stamp.write_text(
        json.dumps(spec.to_dict(), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    context = make_context(spec, layout)
    path_prefix = os.pathsep.join(str(p) for p in context.path_entries)
    layout.activation_script.write_text(
        "# Source this file to use the provisioned toolchain\n"
        f"export RUSTUP_HOME={shlex.quote(str(context.rustup_home))}\n"
        f"export CARGO_HOME={shlex.quote(str(context.cargo_home))}\n"
        f'export PATH={shlex.quote(path_prefix)}:"$PATH"\n',
        encoding="utf-8",
    )


def provision(
    spec: ToolchainSpec,
    layout: ProjectLayout,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
) -> BuildContext:
    """Provision the build environment for ``spec``.

    Installs, in order: host prerequisites, the emulator built from source,
    the compiler toolchain with the target and extra components, and the
    vendored crate caches.

    Args:
        spec: Toolchain pins.
        layout: Project layout (gives the environment root).
        settings: Application settings (uses defaults if not provided).
        client: HTTPX client (creates one if not provided).

    Returns:
        BuildContext for later stages.

    Raises:
        ProvisionError: On any fetch, configure, compile or install failure.
    """
    if settings is None:
        settings = get_settings()

    layout.env_root.mkdir(parents=True, exist_ok=True)
    log_dir = layout.env_logs_dir
    context = make_context(spec, layout)
    env = context.environ()

    with environment_lock(layout):
        # Rewritten only once every step has succeeded
        layout.toolchain_stamp.unlink(missing_ok=True)

        emulator_version = installed_emulator_version(
            layout.env_bin, env=env, timeout=settings.tool_timeout
        )
        needs_emulator = emulator_version != spec.emulator_version
        _, cargo_tools = split_components(spec.extra_components)
        needs_cargo_tools = any(
            not cargo_tool_installed(layout.cargo_home, t) for t in cargo_tools
        )

        if needs_emulator or needs_cargo_tools:
            ensure_prerequisites(settings, env, log_dir)

        manage_client = client is None
        http_client = httpx.Client(follow_redirects=True) if client is None else client
        try:
            if needs_emulator:
                install_emulator(spec, layout, settings, http_client, env, log_dir)
            else:
                logger.info(
                    "Emulator %s already installed, skipping", spec.emulator_version
                )
            install_compiler(spec, layout, settings, http_client, env, log_dir)
        finally:
            if manage_client:
                http_client.close()

        copy_vendor_caches(layout)
        write_stamp(spec, layout)

    logger.info("Environment provisioned at %s", layout.env_root)
    return context


__all__ = [
    "PROVISION_STEPS",
    "REQUIRED_HOST_TOOLS",
    "copy_vendor_caches",
    "ensure_prerequisites",
    "install_compiler",
    "install_emulator",
    "is_provisioned",
    "load_context",
    "make_context",
    "missing_host_tools",
    "provision",
    "read_stamp",
    "write_stamp",
]
