"""Thin CLI wrapper for diskimager.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn

from diskimager import __version__
from diskimager.config import Settings, get_settings, print_settings_json

if TYPE_CHECKING:
    from diskimager.imaging.catalog import DeviceCatalog, DeviceDescriptor
    from diskimager.imaging.service import ImagingJob, ImagingOrchestrator, JobResult

app = typer.Typer(
    name="diskimager",
    help="Disk Imager - write ISO images to USB devices and capture USB devices",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"diskimager version {__version__}")
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
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Disk Imager - write ISO images to USB devices and capture USB devices."""
    settings = get_settings()
    _configure_logging("DEBUG" if verbose else settings.log_level)


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
        console.print(print_settings_json(settings), soft_wrap=True)
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Tools:[/bold]")
        console.print(f"  Disk tool:           {settings.diskutil_path}")
        console.print(f"  dd:                  {settings.dd_path}")
        console.print(f"  Raw device prefix:   {settings.raw_device_prefix}")
        console.print()
        console.print("[bold]Copy:[/bold]")
        console.print(f"  Backend:             {settings.copy_backend}")
        console.print(f"  Block size:          {settings.block_size}")
        console.print(f"  Progress interval:   {settings.progress_interval}")
        console.print()
        console.print("[bold]Devices:[/bold]")
        console.print(f"  Last-disk fallback:  {settings.allow_last_disk_fallback}")
        console.print(f"  Disk tool timeout:   {settings.disk_tool_timeout}")
        console.print(f"  Privilege probe:     {settings.privilege_probe_device}")
        console.print()
        console.print("[bold]General:[/bold]")
        console.print(f"  Min image bytes:     {settings.min_image_bytes}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Log level:           {settings.log_level}")


def _print_json(data: Any) -> None:
    # Long paths must not be wrapped inside JSON strings
    console.print(json.dumps(data, indent=2), soft_wrap=True, markup=False)


def _device_to_dict(device: "DeviceDescriptor") -> dict[str, Any]:
    return {
        "identifier": device.identifier,
        "name": device.name,
        "size": device.size,
        "mount_path": device.mount_path,
        "is_removable": device.is_removable,
    }


def _result_to_dict(result: "JobResult") -> dict[str, Any]:
    return {
        "job_id": result.job_id,
        "success": result.success,
        "status": result.status.value,
        "direction": result.direction.value,
        "source_path": result.source_path,
        "target_path": result.target_path,
        "raw_device_path": result.raw_device_path,
        "bytes_copied": result.bytes_copied,
        "error_code": result.error_code,
        "error_message": result.error_message,
        "error_stage": result.error_stage.value if result.error_stage else None,
    }


def _find_device(catalog: "DeviceCatalog", identifier: str) -> "DeviceDescriptor":
    catalog.refresh()
    device = catalog.find(identifier)
    if device is None:
        console.print(f"[red]Device not found: {identifier}[/red]")
        console.print("Run 'diskimager devices list' to see available devices")
        raise typer.Exit(code=1)
    return device


def _build_orchestrator(settings: Settings) -> "ImagingOrchestrator":
    from diskimager.db import init_db
    from diskimager.imaging.service import ImagingOrchestrator

    return ImagingOrchestrator(
        settings=settings, session_factory=init_db(settings.db_url)
    )


def _wait_for_job(job: "ImagingJob") -> "JobResult":
    """Wait for a job, cancelling it on Ctrl-C."""
    try:
        while True:
            result = job.wait(timeout=0.2)
            if result is not None:
                return result
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling...[/yellow]")
        job.cancel()
        return job.wait()  # type: ignore[return-value]


def _run_with_progress(
    description: str,
    start: Any,
    json_output: bool,
) -> "JobResult":
    if json_output:
        return _wait_for_job(start(None))

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(description, total=1.0)
        job = start(lambda value: progress.update(task, completed=value))
        return _wait_for_job(job)


def _print_result(result: "JobResult", json_output: bool, success_label: str) -> None:
    if json_output:
        _print_json(_result_to_dict(result))
    elif result.success:
        console.print(f"[green]✓ {success_label}[/green]")
        console.print(f"  Bytes copied: {result.bytes_copied}")
        console.print(f"  Source: {result.source_path}")
        console.print(f"  Target: {result.target_path}")
    elif result.error_code == "CANCELLED":
        console.print("[yellow]Cancelled[/yellow]")
    else:
        stage = result.error_stage.value if result.error_stage else "unknown"
        console.print(f"[red]✗ Failed during {stage}[/red]")
        if result.error_message:
            console.print(f"  Error: {result.error_message}")
        if result.error_code == "PERMISSION_DENIED":
            console.print("  Re-run with administrator privileges (e.g. sudo).")

    if not result.success:
        raise typer.Exit(code=1)


devices_app = typer.Typer(help="Discover removable devices")
app.add_typer(devices_app, name="devices")


@devices_app.command("list")
def devices_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List mounted removable devices."""
    from diskimager.imaging.catalog import DeviceCatalog

    devices = DeviceCatalog(get_settings()).refresh()

    if json_output:
        _print_json([_device_to_dict(d) for d in devices])
        return

    if not devices:
        console.print("[yellow]No removable devices found[/yellow]")
        return

    console.print(f"[bold]Found {len(devices)} device(s):[/bold]")
    console.print()
    for d in devices:
        console.print(f"  [cyan]{d.identifier}[/cyan]")
        console.print(f"    Name: {d.name}")
        console.print(f"    Size: {d.size}")
        console.print(f"    Mounted at: {d.mount_path}")
        console.print(f"    Removable: {d.is_removable}")
        console.print()


@devices_app.command("usage")
def devices_usage(
    identifier: Annotated[str, typer.Argument(help="Device identifier")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show total and free space of a device."""
    from diskimager.imaging.catalog import DeviceCatalog, get_device_usage

    device = _find_device(DeviceCatalog(get_settings()), identifier)
    usage = get_device_usage(device)
    if usage is None:
        console.print(f"[red]Could not read usage for {device.mount_path}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        output = {
            "identifier": device.identifier,
            "total_bytes": usage.total_bytes,
            "free_bytes": usage.free_bytes,
        }
        _print_json(output)
    else:
        console.print(f"[bold]{device.name}[/bold] ({device.mount_path})")
        console.print(f"  Total: {usage.total_bytes} bytes")
        console.print(f"  Free:  {usage.free_bytes} bytes")


@app.command("write")
def write_cmd(
    image_path: Annotated[str, typer.Argument(help="Path to ISO image")],
    identifier: Annotated[str, typer.Argument(help="Target device identifier")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
    skip_validation: Annotated[
        bool,
        typer.Option("--skip-validation", help="Write images that fail ISO checks"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Write an ISO image onto a removable device.

    The device is unmounted and its whole raw disk overwritten.
    """
    from diskimager.imaging.catalog import DeviceCatalog
    from diskimager.imaging.image import get_file_size, validate_iso

    settings = get_settings()

    if not skip_validation and not validate_iso(image_path, settings.min_image_bytes):
        console.print(f"[red]Invalid ISO file: {image_path}[/red]")
        console.print("Use --skip-validation to write it anyway")
        raise typer.Exit(code=1)

    device = _find_device(DeviceCatalog(settings), identifier)

    # Confirmation prompt unless force
    if not force:
        console.print(
            f"[bold red]WARNING:[/bold red] This will OVERWRITE {device.name} "
            f"({device.size})"
        )
        console.print(f"  Image: {image_path} ({get_file_size(image_path) or '?'})")
        confirm = typer.confirm("Are you sure you want to continue?", default=False)
        if not confirm:
            console.print("[yellow]Aborted[/yellow]")
            raise typer.Exit(code=0)

    orchestrator = _build_orchestrator(settings)
    result = _run_with_progress(
        f"Writing {device.name}",
        lambda on_progress: orchestrator.begin_write_image_to_device(
            image_path, device, on_progress
        ),
        json_output,
    )
    _print_result(result, json_output, "Write succeeded")


@app.command("read")
def read_cmd(
    identifier: Annotated[str, typer.Argument(help="Source device identifier")],
    output_path: Annotated[str, typer.Argument(help="Path of the image to create")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Capture the raw contents of a removable device into an image file."""
    from diskimager.imaging.catalog import DeviceCatalog

    settings = get_settings()
    device = _find_device(DeviceCatalog(settings), identifier)

    orchestrator = _build_orchestrator(settings)
    result = _run_with_progress(
        f"Reading {device.name}",
        lambda on_progress: orchestrator.begin_read_device_to_image(
            device, output_path, on_progress
        ),
        json_output,
    )
    _print_result(result, json_output, "Image created")


@app.command("unmount")
def unmount_cmd(
    identifier: Annotated[str, typer.Argument(help="Device identifier")],
) -> None:
    """Unmount a removable device."""
    from diskimager.imaging.catalog import DeviceCatalog
    from diskimager.imaging.mount import MountController

    settings = get_settings()
    device = _find_device(DeviceCatalog(settings), identifier)
    if not MountController(settings).unmount(device):
        console.print(f"[red]✗ Failed to unmount {device.mount_path}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Unmounted {device.mount_path}[/green]")


@app.command("mount")
def mount_cmd(
    identifier: Annotated[str, typer.Argument(help="Device identifier")],
) -> None:
    """Mount a removable device."""
    from diskimager.imaging.catalog import DeviceCatalog
    from diskimager.imaging.mount import MountController

    settings = get_settings()
    device = _find_device(DeviceCatalog(settings), identifier)
    if not MountController(settings).mount(device):
        console.print(f"[red]✗ Failed to mount {device.mount_path}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Mounted {device.mount_path}[/green]")


@app.command("privileges")
def privileges_cmd(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check whether raw disk devices are accessible."""
    from diskimager.imaging.privileges import has_admin_privileges

    settings = get_settings()
    has_access = has_admin_privileges(settings)

    if json_output:
        output = {
            "has_raw_access": has_access,
            "probe_device": settings.privilege_probe_device,
        }
        _print_json(output)
    elif has_access:
        console.print("[green]✓ Raw disk access available[/green]")
    else:
        console.print("[yellow]No raw disk access[/yellow]")
        console.print("  Writing to USB devices requires administrator privileges.")
        console.print("  Re-run with sudo.")


jobs_app = typer.Typer(help="Imaging job history")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("list")
def jobs_list(
    status: Annotated[
        str | None,
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (pending/running/succeeded/failed/cancelled)",
        ),
    ] = None,
    device: Annotated[
        str | None,
        typer.Option("--device", "-d", help="Filter by device identifier"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List imaging job records."""
    from diskimager.db import init_db
    from diskimager.imaging.service import get_job_records
    from diskimager.types import JobStatus

    status_filter: JobStatus | None = None
    if status:
        try:
            status_filter = JobStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed, cancelled")
            raise typer.Exit(code=1) from None

    factory = init_db(get_settings().db_url)

    with factory() as session:
        records = get_job_records(
            session,
            status=status_filter,
            device_identifier=device,
            limit=limit,
        )

        if not records:
            if json_output:
                _print_json([])
            else:
                console.print("[yellow]No imaging jobs found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": r.id,
                    "job_id": r.job_id,
                    "direction": r.direction,
                    "source_path": r.source_path,
                    "target_path": r.target_path,
                    "device_identifier": r.device_identifier,
                    "device_name": r.device_name,
                    "raw_device_path": r.raw_device_path,
                    "status": r.status,
                    "progress": r.progress,
                    "bytes_copied": r.bytes_copied,
                    "requested_at": r.requested_at.isoformat()
                    if r.requested_at
                    else None,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                    "error_type": r.error_type,
                    "error_stage": r.error_stage,
                    "error_message": r.error_message,
                }
                for r in records
            ]
            _print_json(output)
        else:
            console.print(f"[bold]Found {len(records)} imaging job(s):[/bold]")
            console.print()
            for r in records:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "cancelled": "yellow",
                    "running": "blue",
                    "pending": "yellow",
                }.get(r.status, "white")
                console.print(f"  [{status_color}]Job #{r.id}[/{status_color}]")
                console.print(f"    Direction: {r.direction}")
                console.print(f"    Device: {r.device_name} ({r.device_identifier})")
                console.print(f"    Source: {r.source_path}")
                console.print(f"    Target: {r.target_path}")
                console.print(f"    Status: {r.status}")
                console.print(f"    Bytes copied: {r.bytes_copied}")
                console.print(
                    f"    Requested: {r.requested_at.isoformat() if r.requested_at else 'N/A'}"
                )
                if r.error_message:
                    console.print(f"    Error ({r.error_stage}): {r.error_message}")
                console.print()


if __name__ == "__main__":
    app()
