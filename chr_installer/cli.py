"""Thin CLI wrapper for chr_installer.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import time
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from chr_installer import __version__
from chr_installer.config import Settings, get_settings, print_settings_json
from chr_installer.errors import InstallerError, ValidationError
from chr_installer.logging_setup import configure_logging
from chr_installer.types import InstallMode, ProgressCallback

app = typer.Typer(
    name="chr-install",
    help="MikroTik RouterOS CHR installer - replace this host's OS with RouterOS",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

STAGE_LABELS = {
    "download": "Downloading image",
    "serialize": "Compressing image",
    "write": "Writing disk",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"chr-installer version {__version__}")
        raise typer.Exit()


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
) -> None:
    """MikroTik RouterOS CHR installer."""


class StageProgress:
    """Rich progress bars, one per pipeline stage, started on first update."""

    def __init__(self, console: Console, enabled: bool = True) -> None:
        self.enabled = enabled
        self.progress = Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console,
        )
        self._tasks: dict[str, int] = {}
        self._started = False

    def callback(self, stage: str) -> ProgressCallback | None:
        if not self.enabled:
            return None

        def update(done: int, total: int) -> None:
            if not self._started:
                self.progress.start()
                self._started = True
            if stage not in self._tasks:
                self._tasks[stage] = self.progress.add_task(
                    STAGE_LABELS.get(stage, stage), total=total or None
                )
            self.progress.update(
                self._tasks[stage], completed=done, total=total or None
            )

        return update

    def stop(self) -> None:
        if self._started:
            self.progress.stop()
            self._started = False


def _print_json(data: object) -> None:
    console.print(
        json.dumps(data, indent=2), soft_wrap=True, markup=False, emoji=False
    )


def _print_error(e: InstallerError) -> None:
    err_console.print(f"[red]Error ({e.error_code}): {escape(e.message)}[/red]")


def _print_plan(plan: dict) -> None:
    table = Table(title="Installation plan", show_header=False)
    table.add_column("Item", style="bold")
    table.add_column("Value")
    target = plan["target"]
    network = plan["network"]
    table.add_row("RouterOS version", plan["version"])
    table.add_row("Image", "cached" if plan["cached"] else plan["source_url"])
    table.add_row("Mode", plan["mode"])
    table.add_row(
        "Target disk",
        f"{target['device']} ({target['size_bytes'] // (1024 * 1024)} MiB)"
        + (" (running system)" if target["is_root_disk"] else ""),
    )
    if network["dhcp"]:
        table.add_row("Router address", "DHCP")
    else:
        table.add_row(
            "Router address", f"{network['address']} via {network['gateway']}"
        )
    table.add_row("DNS", ", ".join(network["dns"]) or "(none)")
    console.print(table)
    for warning in plan["warnings"]:
        console.print(f"[yellow]Warning: {escape(warning)}[/yellow]")


@app.command()
def install(
    password: Annotated[str, typer.Argument(help="Admin password for RouterOS")],
    mode: Annotated[
        InstallMode | None,
        typer.Option(
            "--mode",
            "-m",
            case_sensitive=False,
            help="standard: write a secondary disk; "
            "forced: overwrite the running system",
        ),
    ] = None,
    disk: Annotated[
        str | None,
        typer.Option("--disk", "-d", help="Target disk (auto-detected if omitted)"),
    ] = None,
    dhcp: Annotated[
        bool,
        typer.Option("--dhcp", help="Configure the router with a DHCP client"),
    ] = False,
    address: Annotated[
        str | None,
        typer.Option("--address", help="Router address in CIDR notation"),
    ] = None,
    gateway: Annotated[
        str | None,
        typer.Option("--gateway", help="Router default gateway"),
    ] = None,
    dns: Annotated[
        list[str] | None,
        typer.Option("--dns", help="DNS server (can be repeated)"),
    ] = None,
    routeros_version: Annotated[
        str | None,
        typer.Option("--version", "-v", help="RouterOS version to install"),
    ] = None,
    profile: Annotated[
        Path | None,
        typer.Option("--profile", "-p", help="Install profile (YAML or JSON)"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Validate and show the plan only"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the confirmation prompt (dangerous)"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Install RouterOS CHR onto a disk of this host and reboot into it.

    The whole target disk is overwritten. Use --dry-run to validate the
    host, disk and network without touching anything.
    """
    from chr_installer.profile import load_install_profile
    from chr_installer.session import InstallationSession, InstallRequest

    settings = get_settings()
    log_path = configure_logging(
        settings.log_file, settings.log_level, console=err_console
    )

    request = InstallRequest(
        password=password,
        mode=mode,
        disk=disk,
        dhcp=dhcp,
        address=address,
        gateway=gateway,
        dns_servers=dns or None,
        version=routeros_version,
        dry_run=dry_run,
        assume_yes=yes,
    )
    try:
        if json_output and not (yes or dry_run):
            raise ValidationError(
                "--json needs --yes or --dry-run", error_code="conflicting_options"
            )
        if profile is not None:
            request = request.with_profile(load_install_profile(profile))
    except InstallerError as e:
        _print_error(e)
        raise typer.Exit(code=e.exit_code) from None

    progress = StageProgress(err_console, enabled=not json_output)

    def confirm(plan) -> bool:
        _print_plan(plan.describe())
        target = plan.target.device_path
        console.print(
            f"[bold red]WARNING:[/bold red] This will completely erase {target}. "
            "All data on it will be permanently lost."
        )
        answer = typer.prompt(
            "Type 'yes' to continue", default="", show_default=False
        )
        return answer.strip().lower() == "yes"

    def countdown(seconds: int) -> None:
        progress.stop()
        for remaining in range(seconds, 0, -1):
            err_console.print(f"Rebooting in {remaining}...")
            time.sleep(1)

    session = InstallationSession(
        settings,
        request,
        confirm=confirm,
        progress=progress.callback,
        countdown=countdown,
    )
    try:
        code = session.run()
    finally:
        progress.stop()

    plan = session.plan.describe() if session.plan else None
    if json_output:
        output = {
            "exit_code": code,
            "dry_run": dry_run,
            "plan": plan,
            "bytes_written": session.bytes_written,
            "warnings": session.warnings,
            "log_file": str(log_path),
        }
        _print_json(output)
    elif dry_run and plan and code == 0:
        _print_plan(plan)
        console.print("[blue]Dry run: no changes made[/blue]")
    elif code != 0:
        err_console.print(f"See {log_path} for details")

    raise typer.Exit(code=code)


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
        _print_json(json.loads(print_settings_json(settings)))
        return

    image_size = (
        str(settings.image_size_bytes) if settings.image_size_bytes else "(target disk)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Log file:            {settings.log_file}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Image:[/bold]")
    console.print(f"  RouterOS version:    {settings.routeros_version}")
    console.print(f"  Download base URL:   {settings.download_base_url}")
    console.print(f"  Image size:          {image_size}")
    console.print(f"  Data partition:      {settings.data_partition}")
    console.print()
    console.print("[bold]Download:[/bold]")
    console.print(f"  Timeout (seconds):   {settings.download_timeout}")
    console.print(f"  Attempts:            {settings.download_attempts}")
    console.print(f"  Retry delay:         {settings.download_retry_delay}")
    console.print()
    console.print("[bold]Devices:[/bold]")
    console.print(f"  NBD device:          {settings.nbd_device}")
    console.print(f"  Min disk size:       {settings.min_disk_bytes}")
    console.print(f"  Direct I/O:          {settings.direct_io}")
    console.print(f"  Forced pre-sync:     {settings.forced_presync}")
    console.print(f"  Reboot delay:        {settings.reboot_delay}")
    console.print()
    console.print("[bold]Router:[/bold]")
    console.print(f"  Interface:           {settings.router_interface}")
    console.print(f"  DNS servers:         {', '.join(settings.dns_servers)}")


def _detect(settings: Settings) -> dict:
    from chr_installer.disk.target import (
        detect_target_disk,
        get_device_size,
        get_mount_points,
        get_root_device,
    )
    from chr_installer.network import detect_network

    result: dict = {"network": None, "target": None, "errors": []}
    try:
        network = detect_network(dns_servers=settings.dns_servers)
        result["network"] = {
            "interface": network.interface_name,
            "address": network.cidr_address,
            "gateway": network.gateway,
        }
    except InstallerError as e:
        result["errors"].append(e.message)

    try:
        device = detect_target_disk()
        result["target"] = {
            "device": device,
            "size_bytes": get_device_size(device),
            "is_root_disk": get_root_device() == device,
            "mounted": get_mount_points(device),
        }
    except InstallerError as e:
        result["errors"].append(e.message)
    return result


@app.command()
def detect(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the detected host network and target disk (read-only)."""
    result = _detect(get_settings())

    if json_output:
        _print_json(result)
    else:
        network = result["network"]
        target = result["target"]
        console.print("[bold]Network:[/bold]")
        if network:
            console.print(f"  Interface: {network['interface']}")
            console.print(f"  Address:   {network['address']}")
            console.print(f"  Gateway:   {network['gateway']}")
        else:
            console.print("  [yellow]not detected[/yellow]")
        console.print("[bold]Target disk:[/bold]")
        if target:
            size = target["size_bytes"]
            console.print(f"  Device:    {target['device']}")
            console.print(
                f"  Size:      {size // (1024 * 1024) if size else '?'} MiB"
            )
            console.print(f"  Root disk: {target['is_root_disk']}")
            mounted = escape(', '.join(target['mounted']) or '(none)')
            console.print(f"  Mounted:   {mounted}")
        else:
            console.print("  [yellow]not detected[/yellow]")
        for error in result["errors"]:
            console.print(f"[red]{escape(error)}[/red]")

    if result["errors"]:
        raise typer.Exit(code=1)


@app.command("prune-cache")
def prune_cache_cmd(
    keep: Annotated[
        str | None,
        typer.Option("--keep", "-k", help="Version to keep"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Delete cached CHR images."""
    from chr_installer.image.fetch import prune_cache

    settings = get_settings()
    try:
        removed = prune_cache(settings.cache_dir, keep_version=keep)
    except OSError as e:
        console.print(f"[red]Failed to prune cache: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json({"removed": removed})
    elif not removed:
        console.print("[yellow]No cached images to prune[/yellow]")
    else:
        console.print(f"[bold]Pruned {len(removed)} cached image(s):[/bold]")
        for version in removed:
            console.print(f"  - {version}")


if __name__ == "__main__":
    app()
