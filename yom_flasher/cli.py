"""Thin CLI wrapper for yom_flasher.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from yom_flasher import __version__
from yom_flasher.config import Settings, get_settings, print_settings_json
from yom_flasher.errors import IPC_CONNECTION_LOST, FlasherError
from yom_flasher.flash.device import is_block_device
from yom_flasher.flash.service import PipelineEvent, PipelineIncompleteError
from yom_flasher.types import OperationResult

app = typer.Typer(
    name="yom-flasher",
    help="YOM Flasher - flash raw images, extend partitions and safely eject",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"yom-flasher version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
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
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """YOM Flasher - flash raw images, extend partitions and safely eject."""
    configure_logging((log_level or get_settings().log_level).upper())


def _settings(socket: Path | None = None) -> Settings:
    settings = get_settings()
    if socket is not None:
        settings = settings.model_copy(update={"helper_socket_path": socket})
    return settings


def _print_result(result: OperationResult, json_output: bool) -> None:
    """Render a result and exit non-zero on failure."""
    if json_output:
        console.print(
            json.dumps(result.to_dict(), indent=2), soft_wrap=True, markup=False
        )
    elif result.success:
        console.print(f"[green]✓ {result.message}[/green]")
    else:
        console.print(f"[red]✗ {result.message}[/red]")
        if result.code:
            console.print(f"  Error code: {result.code}")
    if not result.success:
        raise typer.Exit(code=1)


def _confirm_destructive(action: str, device: str, force: bool) -> None:
    if force:
        return
    console.print(f"[bold red]WARNING:[/bold red] This will {action} {device}")
    confirm = typer.confirm("Are you sure you want to continue?", default=False)
    if not confirm:
        console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit(code=0)


def _require_block_device(device: str) -> None:
    if not is_block_device(device):
        console.print(f"[red]Not a block device: {device}[/red]")
        raise typer.Exit(code=1)


async def _consume_events(
    events: AsyncIterator[PipelineEvent], *, show_progress: bool
) -> OperationResult:
    """Drive a pipeline event stream, drawing a progress bar for the flash step."""
    result: OperationResult | None = None
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.fields[speed]}"),
        console=console,
        disable=not show_progress,
    ) as progress:
        task = progress.add_task("Flashing", total=100, speed="")
        async for event in events:
            if event.progress is not None:
                progress.update(
                    task, completed=event.progress.percent, speed=event.progress.speed
                )
            elif event.result is not None:
                result = event.result
            elif show_progress:
                progress.console.print(f"[blue]{event.message}[/blue]")
    if result is None:
        error = PipelineIncompleteError()
        return OperationResult(
            success=False, message=error.message, code=error.error_code
        )
    return result


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
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
    else:
        extra_dirs = ", ".join(str(d) for d in settings.extra_command_dirs) or "(none)"
        partition = settings.default_partition_number or "last"
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Helper:[/bold]")
        console.print(f"  Socket path:         {settings.helper_socket_path}")
        console.print(f"  Socket mode:         {settings.helper_socket_mode:o}")
        console.print(f"  IPC timeout:         {settings.ipc_timeout}s")
        console.print(f"  Reconnect interval:  {settings.reconnect_interval}s")
        console.print()
        console.print("[bold]Device operations:[/bold]")
        console.print(f"  dd block size:       {settings.flash_block_size}")
        console.print(f"  Partition to extend: {partition}")
        console.print(f"  Command timeout:     {settings.command_timeout}s")
        console.print(f"  Extra command dirs:  {extra_dirs}")
        console.print()
        console.print(f"[bold]Log level:[/bold] {settings.log_level}")


@app.command()
def check(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check that the required system tools are installed."""
    from yom_flasher.flash.service import check_prerequisites
    from yom_flasher.system.context import create_context

    result = check_prerequisites(create_context(get_settings()))
    if not json_output:
        commands: dict[str, str] = result.details.get("commands", {})  # type: ignore[assignment]
        for name in sorted(commands):
            console.print(f"  [green]✓[/green] {name}: {commands[name]}")
        for name in result.details.get("missing", []):  # type: ignore[union-attr]
            console.print(f"  [red]✗[/red] {name}")
    _print_result(result, json_output)


@app.command()
def devices(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
    via_helper: Annotated[
        bool,
        typer.Option("--via-helper", help="Ask the running privileged helper"),
    ] = False,
    socket: Annotated[
        Path | None,
        typer.Option("--socket", help="Helper socket path (with --via-helper)"),
    ] = None,
) -> None:
    """List disk-level block devices, marking the OS device."""
    if via_helper:
        result = asyncio.run(_devices_via_helper(_settings(socket)))
    else:
        from yom_flasher.flash.service import describe_devices
        from yom_flasher.system.context import create_context

        result = asyncio.run(describe_devices(create_context(get_settings())))

    if json_output or not result.success:
        _print_result(result, json_output)
        return

    table = Table(title="Block devices")
    table.add_column("Path")
    table.add_column("Model")
    table.add_column("Size", justify="right")
    table.add_column("Removable")
    table.add_column("Note")
    for device in result.details.get("devices", []):  # type: ignore[union-attr]
        note = "[red]OS device[/red]" if device["isOS"] else ""
        table.add_row(
            device["path"],
            device["model"],
            f"{device['size'] / 1e9:.1f} GB",
            "yes" if device["isRemovable"] else "no",
            note,
        )
    console.print(table)
    detection = result.details.get("osDetection")
    if detection in ("unresolved", "no-root-mount"):
        console.print(
            "[yellow]The OS device could not be identified; "
            "double-check the target before flashing.[/yellow]"
        )


async def _devices_via_helper(settings: Settings) -> OperationResult:
    from yom_flasher.helper.client import HelperBridge

    bridge = HelperBridge.from_settings(settings)
    try:
        await bridge.connect()
    except OSError as e:
        return OperationResult(
            success=False,
            message=f"Not connected to root helper service at "
            f"{settings.helper_socket_path}: {e}",
            code=IPC_CONNECTION_LOST,
        )
    try:
        found = await bridge.list_devices()
    except FlasherError as e:
        return OperationResult(success=False, message=e.message, code=e.error_code)
    finally:
        await bridge.close()
    return OperationResult(
        success=True,
        message=f"Found {len(found)} device(s).",
        details={"devices": [device.to_dict() for device in found]},
    )


@app.command()
def flash(
    image_path: Annotated[Path, typer.Argument(help="Path to raw image file")],
    device: Annotated[str, typer.Argument(help="Device path (e.g., /dev/sdX)")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
    allow_unverified: Annotated[
        bool,
        typer.Option(
            "--allow-unverified",
            help="Accept a non-removable target when the OS device is unknown",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Write a raw image to a whole device.

    Requires explicit device path (e.g., /dev/sdb, /dev/mmcblk0).
    Never operates on partitions or on the device hosting the OS.
    """
    from yom_flasher.flash.service import run_pipeline_events
    from yom_flasher.system.context import create_context

    _confirm_destructive("OVERWRITE", device, force)
    context = create_context(get_settings())
    events = run_pipeline_events(
        context,
        image_path,
        device,
        extend=False,
        eject=False,
        allow_unverified=allow_unverified,
    )
    result = asyncio.run(_consume_events(events, show_progress=not json_output))
    _print_result(result, json_output)


@app.command()
def extend(
    device: Annotated[str, typer.Argument(help="Disk (or partition) to extend")],
    partition: Annotated[
        int | None,
        typer.Option("--partition", "-p", min=1, help="Partition number to grow"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Grow a partition and its ext filesystem to fill the device."""
    from yom_flasher.flash.service import extend_device
    from yom_flasher.system.context import create_context

    _require_block_device(device)
    _confirm_destructive("RESIZE a partition on", device, force)
    context = create_context(get_settings())
    result = asyncio.run(extend_device(context, device, partition))
    if not json_output:
        extension = result.details.get("extension") or {}
        states = extension.get("states", [])  # type: ignore[union-attr]
        if states:
            console.print(f"  Steps: {' -> '.join(states)}")
    _print_result(result, json_output)


@app.command()
def eject(
    device: Annotated[str, typer.Argument(help="Device to unmount and power off")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Unmount every partition of a device and power it off."""
    from yom_flasher.flash.service import eject_device
    from yom_flasher.system.context import create_context

    _require_block_device(device)
    context = create_context(get_settings())
    result = asyncio.run(eject_device(context, device))
    _print_result(result, json_output)


@app.command()
def run(
    image_path: Annotated[Path, typer.Argument(help="Path to raw image file")],
    device: Annotated[str, typer.Argument(help="Device path (e.g., /dev/sdX)")],
    partition: Annotated[
        int | None,
        typer.Option("--partition", "-p", min=1, help="Partition number to grow"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
    no_eject: Annotated[
        bool,
        typer.Option("--no-eject", help="Leave the device attached afterwards"),
    ] = False,
    allow_unverified: Annotated[
        bool,
        typer.Option(
            "--allow-unverified",
            help="Accept a non-removable target when the OS device is unknown",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Flash an image, extend its partition and eject the device."""
    from yom_flasher.flash.service import run_pipeline_events
    from yom_flasher.system.context import create_context

    _confirm_destructive("OVERWRITE", device, force)
    context = create_context(get_settings())
    events = run_pipeline_events(
        context,
        image_path,
        device,
        partition_number=partition,
        eject=not no_eject,
        allow_unverified=allow_unverified,
    )
    result = asyncio.run(_consume_events(events, show_progress=not json_output))
    _print_result(result, json_output)


helper_app = typer.Typer(help="Privileged helper daemon")
app.add_typer(helper_app, name="helper")


@helper_app.command("serve")
def helper_serve(
    socket: Annotated[
        Path | None,
        typer.Option("--socket", help="Socket path to listen on"),
    ] = None,
) -> None:
    """Run the privileged helper until interrupted (run as root)."""
    from yom_flasher.helper.server import serve

    settings = _settings(socket)
    console.print(f"Starting helper on {settings.helper_socket_path}")
    try:
        asyncio.run(serve(settings))
    except FlasherError as e:
        console.print(f"[red]Helper failed: {e.message}[/red]")
        raise typer.Exit(code=1) from None


if __name__ == "__main__":
    app()
