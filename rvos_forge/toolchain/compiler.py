"""Rust toolchain install helpers.

The compiler is installed with rustup into the environment root. Extra
components are either rustup components (``rust-src``, ``clippy``...) or
cargo-installed tools (``cargo-binutils``).
"""

from __future__ import annotations

from pathlib import Path

# Cargo-installed tools and a binary whose presence marks them installed
CARGO_TOOLS = {
    "cargo-binutils": "cargo-objcopy",
}


def split_components(components: frozenset[str]) -> tuple[list[str], list[str]]:
    """Split extra components into (rustup components, cargo tools).

    Both lists are sorted so repeated runs issue identical commands.
    """
    rustup_components = sorted(c for c in components if c not in CARGO_TOOLS)
    cargo_tools = sorted(c for c in components if c in CARGO_TOOLS)
    return rustup_components, cargo_tools


def rustup_installed(cargo_home: Path) -> bool:
    return (cargo_home / "bin" / "rustup").exists()


def cargo_tool_installed(cargo_home: Path, tool: str) -> bool:
    return (cargo_home / "bin" / CARGO_TOOLS.get(tool, tool)).exists()


def installed_toolchain_dir(rustup_home: Path, channel: str) -> Path | None:
    """Directory of an installed toolchain for ``channel``, if any.

    rustup names toolchain directories ``<channel>-<host triple>``. A dated
    toolchain such as ``nightly-2022-08-01-<host>`` does not count as an
    install of the floating ``nightly`` channel.
    """
    toolchains = rustup_home / "toolchains"
    if not toolchains.is_dir():
        return None
    for path in sorted(toolchains.glob(f"{channel}-*")):
        host = path.name[len(channel) + 1 :]
        if path.is_dir() and host and not host[0].isdigit():
            return path
    return None


def target_installed(toolchain_dir: Path, triple: str) -> bool:
    return (toolchain_dir / "lib" / "rustlib" / triple).is_dir()


def component_installed(toolchain_dir: Path, component: str) -> bool:
    """Check rustup's component list; entries may carry a host suffix."""
    components_file = toolchain_dir / "lib" / "rustlib" / "components"
    if not components_file.is_file():
        return False
    names = {component, component.removesuffix("-preview")}
    for line in components_file.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if any(entry == name or entry.startswith(f"{name}-") for name in names):
            return True
    return False


def compose_rustup_init_command(rustup_init: Path, channel: str) -> list[str]:
    """Compose the non-interactive rustup bootstrap command."""
    return [
        str(rustup_init),
        "-y",
        "--no-modify-path",
        "--profile",
        "minimal",
        "--default-toolchain",
        channel,
    ]


def compose_toolchain_install_command(channel: str) -> list[str]:
    return ["rustup", "toolchain", "install", channel, "--profile", "minimal"]


def compose_target_add_command(channel: str, triple: str) -> list[str]:
    return ["rustup", "target", "add", "--toolchain", channel, triple]


def compose_component_add_command(channel: str, components: list[str]) -> list[str]:
    return ["rustup", "component", "add", "--toolchain", channel, *components]


def compose_cargo_install_command(tool: str) -> list[str]:
    return ["cargo", "install", tool]


__all__ = [
    "CARGO_TOOLS",
    "cargo_tool_installed",
    "compose_cargo_install_command",
    "compose_component_add_command",
    "compose_rustup_init_command",
    "compose_target_add_command",
    "compose_toolchain_install_command",
    "component_installed",
    "installed_toolchain_dir",
    "rustup_installed",
    "split_components",
    "target_installed",
]
