"""Thin CLI wrapper for rvos_forge.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from rvos_forge import __version__
from rvos_forge.config import Settings, get_settings, print_settings_json
from rvos_forge.errors import PipelineError

if TYPE_CHECKING:
    from rvos_forge.layout import ProjectLayout
    from rvos_forge.pipeline import Pipeline
    from rvos_forge.project import ProjectSchema
    from rvos_forge.types import Placement

app = typer.Typer(
    name="rvforge",
    help="RISC-V OS forge - provision, build, assemble and boot a teaching OS",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

INTERRUPTED_EXIT_CODE = 130


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rvos-forge version {__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output"),
    ] = False,
) -> None:
    """RISC-V OS forge - provision, build, assemble and boot a teaching OS."""
    _configure_logging("DEBUG" if verbose else get_settings().log_level)


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _load_checkout(
    settings: Settings | None = None,
) -> tuple[Settings, "ProjectSchema", "ProjectLayout"]:
    """Load settings, the project description and the derived layout."""
    import yaml
    from pydantic import ValidationError

    from rvos_forge.layout import ProjectLayout
    from rvos_forge.project import load_project

    if settings is None:
        settings = get_settings()
    project_path = settings.project_root / settings.project_file
    try:
        project = load_project(project_path)
    except (ValidationError, yaml.YAMLError, ValueError) as e:
        err_console.print(f"[red]Invalid project file {project_path}:[/red]")
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1) from None
    return settings, project, ProjectLayout.from_project(settings, project)


@contextmanager
def _checkout_lock(layout: "ProjectLayout") -> Iterator[None]:
    from rvos_forge.locking import checkout_lock

    with checkout_lock(layout):
        yield


def _fail(error: PipelineError, json_output: bool) -> typer.Exit:
    """Report a pipeline error and return the Exit to raise."""
    if json_output:
        _print_json(
            {
                "success": False,
                "stage": error.stage,
                "code": error.code,
                "message": error.message,
                "log_path": str(error.log_path) if error.log_path else None,
                "diagnostics": error.diagnostics,
            }
        )
    else:
        err_console.print(f"[red]✗ {error.stage} failed: {escape(error.message)}[/red]")
        err_console.print(f"  Code: {error.code}")
        if error.log_path:
            err_console.print(f"  Log: {error.log_path}")
        if error.diagnostics:
            err_console.print("[bold]Tool output:[/bold]")
            typer.echo(error.diagnostics, err=True)
    return typer.Exit(code=error.exit_code)


def _parse_file_option(value: str) -> "Placement":
    """Parse HOST[:IMAGE_PATH]; the image path defaults to /<host name>."""
    from rvos_forge.types import Placement

    host, sep, image_path = value.partition(":")
    if not sep or not image_path:
        image_path = f"/{Path(host).name}"
    return Placement(host_path=Path(host).resolve(), image_path=image_path)


def _extra_placements(
    files: list[str] | None, directory: Path | None
) -> list["Placement"]:
    from rvos_forge.image.assembler import collect_placements

    extra: list["Placement"] = []
    if directory is not None:
        extra.extend(collect_placements(directory))
    extra.extend(_parse_file_option(f) for f in files or [])
    return extra


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        checksum_display = settings.qemu_sha256 or "(not pinned)"
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Project root:        {settings.project_root}")
        console.print(f"  Project file:        {settings.project_file}")
        console.print(f"  Environment root:    {settings.env_root}")
        console.print()
        console.print("[bold]Sources:[/bold]")
        console.print(f"  QEMU mirror:         {settings.qemu_download_base}")
        console.print(f"  QEMU checksum:       {checksum_display}")
        console.print(f"  rustup-init URL:     {settings.rustup_init_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Install prereqs:     {settings.install_prerequisites}")
        console.print(f"  Vendor mode:         {settings.vendor_mode.value}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Max parallel builds: {settings.max_parallel_builds}")
        console.print()
        console.print("[bold]Defaults:[/bold]")
        console.print(f"  Guest memory:        {settings.memory_mb} MiB")
        console.print(f"  Guest cores:         {settings.smp}")
        console.print(f"  Image size:          {settings.image_size_bytes} bytes")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Compile timeout:     {settings.compile_timeout}")
        console.print(f"  Tool timeout:        {settings.tool_timeout}")


@app.command()
def provision(
    offline: Annotated[
        bool,
        typer.Option("--offline", help="Never download; fail if anything is missing"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Install the pinned emulator and compiler toolchain.

    Safe to re-run: installed pieces are detected and skipped.
    """
    from rvos_forge.pipeline import Pipeline

    settings = get_settings()
    if offline:
        settings = settings.model_copy(update={"offline": True})
    settings, project, layout = _load_checkout(settings)

    if not json_output:
        console.print(f"[blue]Provisioning environment at {layout.env_root}...[/blue]")

    with _checkout_lock(layout):
        pipeline = Pipeline(layout, project, settings)
        try:
            context = pipeline.provision()
        except PipelineError as e:
            raise _fail(e, json_output) from None

    if json_output:
        _print_json(
            {
                "success": True,
                "env_root": str(context.env_root),
                "toolchain": context.toolchain.to_dict(),
                "path": [str(p) for p in context.path_entries],
                "activation_script": str(layout.activation_script),
            }
        )
    else:
        console.print("[green]✓ Environment provisioned[/green]")
        spec = context.toolchain
        console.print(f"  Emulator:  qemu {spec.emulator_version}")
        console.print(f"  Compiler:  rust {spec.compiler_channel} ({spec.target_triple})")
        console.print(f"  Activate:  source {layout.activation_script}")


@app.command()
def build(
    users: Annotated[
        list[str] | None,
        typer.Option("--user", "-u", help="User program to build (can be repeated)"),
    ] = None,
    no_kernel: Annotated[
        bool,
        typer.Option("--no-kernel", help="Only build user programs"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Use the debug profile"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Compile the kernel and user programs.

    User programs default to the project's list, or to every binary of the
    user crate when the project lists none. The kernel and firmware are
    published at kernel-qemu and sbi-qemu only when every target succeeds.
    """
    from rvos_forge.builds.service import BuildTargets
    from rvos_forge.pipeline import Pipeline
    from rvos_forge.types import BuildProfile

    settings, project, layout = _load_checkout()
    targets = BuildTargets.for_programs(
        users or project.build.user_programs,
        kernel=not no_kernel,
        kernel_embeds_user=project.build.kernel_embeds_user,
    )
    profile = BuildProfile.DEBUG if debug else BuildProfile.RELEASE

    with _checkout_lock(layout):
        pipeline = Pipeline(layout, project, settings)
        try:
            outcome = pipeline.build(targets, profile)
        except PipelineError as e:
            raise _fail(e, json_output) from None

    if json_output:
        _print_json(
            {
                "success": True,
                "profile": profile.value,
                "manifest": str(outcome.manifest_path),
                "artifacts": [
                    {
                        "kind": a.kind.value,
                        "name": a.name,
                        "path": str(a.host_path),
                        "sha256": a.sha256,
                    }
                    for a in outcome.artifacts
                ],
            }
        )
    else:
        console.print(f"[green]✓ Build succeeded ({profile.value})[/green]")
        for a in outcome.artifacts:
            console.print(f"  {a.kind.value:<13} {a.name:<16} {a.host_path}")


@app.command()
def clean(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Revert the vendored-source override and delete build outputs.

    Works from any state, including after an interrupted build.
    """
    from rvos_forge.builds.service import clean as clean_outputs
    from rvos_forge.errors import ProvisionError
    from rvos_forge.toolchain.service import load_context

    settings, project, layout = _load_checkout()

    with _checkout_lock(layout):
        try:
            context = load_context(layout)
        except ProvisionError:
            context = None
        try:
            removed = clean_outputs(layout, context=context, settings=settings)
        except PipelineError as e:
            raise _fail(e, json_output) from None

    if json_output:
        _print_json({"success": True, "removed": [str(p) for p in removed]})
    elif removed:
        console.print(f"[green]✓ Removed {len(removed)} path(s)[/green]")
        for path in removed:
            console.print(f"  {path}")
    else:
        console.print("[yellow]Nothing to clean[/yellow]")


@app.command()
def assemble(
    size: Annotated[
        int | None,
        typer.Option("--size", help="Image size in bytes"),
    ] = None,
    files: Annotated[
        list[str] | None,
        typer.Option(
            "--file",
            "-f",
            help="Extra file as HOST[:IMAGE_PATH] (can be repeated)",
        ),
    ] = None,
    directory: Annotated[
        Path | None,
        typer.Option("--dir", "-d", help="Copy every file under DIR into the image"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Assemble the disk image from built user programs and extra files.

    When the same image path is given more than once, the last one wins.
    """
    from rvos_forge.pipeline import Pipeline

    settings, project, layout = _load_checkout()

    with _checkout_lock(layout):
        pipeline = Pipeline(layout, project, settings)
        try:
            extra = _extra_placements(files, directory)
            image = pipeline.assemble(extra, image_size_bytes=size)
        except PipelineError as e:
            raise _fail(e, json_output) from None

    if json_output:
        _print_json(
            {
                "success": True,
                "image": str(image.host_path),
                "format": image.format,
                "size_bytes": image.size_bytes,
                "files": [
                    {"image_path": image_path, "source": str(source)}
                    for image_path, source in image.contained_files
                ],
            }
        )
    else:
        console.print(f"[green]✓ Image assembled: {image.host_path}[/green]")
        console.print(f"  Size: {image.size_bytes} bytes ({image.format})")
        for image_path, source in image.contained_files:
            console.print(f"  {image_path:<24} <- {source}")


image_app = typer.Typer(help="Inspect the disk image")
app.add_typer(image_app, name="image")


@image_app.command("ls")
def image_ls(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List the files inside the assembled disk image."""
    from rvos_forge.image.assembler import list_image
    from rvos_forge.image.tools import ImageToolset

    settings, project, layout = _load_checkout()
    tools = ImageToolset.from_schema(project.image.tools)
    try:
        paths = list_image(
            layout.disk_image,
            tools.list_files,
            offset=project.image.offset,
            timeout=settings.tool_timeout,
        )
    except PipelineError as e:
        raise _fail(e, json_output) from None

    if json_output:
        _print_json(paths)
    elif not paths:
        console.print("[yellow]Image is empty[/yellow]")
    else:
        for path in paths:
            console.print(path)


def _wait_foreground(pipeline: "Pipeline", json_output: bool) -> None:
    """Wait for the emulator, stopping it on Ctrl-C."""
    try:
        pipeline.wait()
    except KeyboardInterrupt:
        pipeline.stop()
        err_console.print("[yellow]Interrupted, emulator stopped[/yellow]")
        raise typer.Exit(code=INTERRUPTED_EXIT_CODE) from None
    except PipelineError as e:
        raise _fail(e, json_output) from None


@app.command()
def launch(
    image: Annotated[
        Path | None,
        typer.Option("--image", help="Disk image to attach (default: assembled image)"),
    ] = None,
) -> None:
    """Boot the published kernel in the emulator.

    The guest console is attached to this terminal; the exit status of the
    command reflects the emulator's.
    """
    from rvos_forge.pipeline import Pipeline

    settings, project, layout = _load_checkout()

    with _checkout_lock(layout):
        pipeline = Pipeline(layout, project, settings)
        try:
            pipeline.launch(image)
        except PipelineError as e:
            raise _fail(e, False) from None
        _wait_foreground(pipeline, False)


@app.command()
def run(
    files: Annotated[
        list[str] | None,
        typer.Option(
            "--file",
            "-f",
            help="Extra file as HOST[:IMAGE_PATH] (can be repeated)",
        ),
    ] = None,
    directory: Annotated[
        Path | None,
        typer.Option("--dir", "-d", help="Copy every file under DIR into the image"),
    ] = None,
) -> None:
    """Run the whole pipeline: provision if needed, build, assemble, boot."""
    from rvos_forge.pipeline import Pipeline
    from rvos_forge.types import PipelineState

    settings, project, layout = _load_checkout()

    with _checkout_lock(layout):
        pipeline = Pipeline(layout, project, settings)
        try:
            extra = _extra_placements(files, directory)
            if pipeline.state in (PipelineState.INIT, PipelineState.CLEANED):
                pipeline.provision()
            pipeline.build()
            pipeline.assemble(extra)
            pipeline.launch()
        except PipelineError as e:
            raise _fail(e, False) from None
        _wait_foreground(pipeline, False)


@app.command()
def status(
    show_project: Annotated[
        bool,
        typer.Option("--show-project", help="Also print the effective project file"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the pipeline state derived from the checkout and environment."""
    from rvos_forge.builds.vendor import override_state
    from rvos_forge.pipeline import detect_state
    from rvos_forge.project import project_to_yaml_string
    from rvos_forge.toolchain.service import read_stamp

    settings, project, layout = _load_checkout()
    spec = project.toolchain.to_spec()
    state = detect_state(layout, spec)
    stamped = read_stamp(layout)
    outputs = {
        "kernel": layout.kernel_image,
        "firmware": layout.firmware_image,
        "image": layout.disk_image,
    }
    overrides = {c.name: override_state(c).value for c in layout.components}

    if json_output:
        data: dict[str, Any] = {
            "state": state.value,
            "project_root": str(layout.project_root),
            "env_root": str(layout.env_root),
            "toolchain": spec.to_dict(),
            "provisioned_toolchain": stamped.to_dict() if stamped else None,
            "outputs": {
                name: {"path": str(path), "exists": path.is_file()}
                for name, path in outputs.items()
            },
            "overrides": overrides,
        }
        if show_project:
            data["project"] = project.model_dump(mode="json")
        _print_json(data)
        return

    console.print(f"[bold]State:[/bold] {state.value}")
    console.print(f"  Project root:      {layout.project_root}")
    console.print(f"  Environment root:  {layout.env_root}")
    if stamped is None:
        console.print("  Toolchain:         [yellow]not provisioned[/yellow]")
    elif stamped != spec:
        console.print("  Toolchain:         [red]provisioned for a different spec[/red]")
    else:
        console.print(
            f"  Toolchain:         qemu {spec.emulator_version}, "
            f"rust {spec.compiler_channel} ({spec.target_triple})"
        )
    console.print()
    console.print("[bold]Outputs:[/bold]")
    for name, path in outputs.items():
        marker = "[green]✓[/green]" if path.is_file() else "[dim]-[/dim]"
        console.print(f"  {marker} {name:<9} {path}")
    console.print()
    console.print("[bold]Vendored-source override:[/bold]")
    for name, value in overrides.items():
        console.print(f"  {name:<9} {value}")
    if show_project:
        console.print()
        console.print("[bold]Project:[/bold]")
        typer.echo(project_to_yaml_string(project))


if __name__ == "__main__":
    app()
