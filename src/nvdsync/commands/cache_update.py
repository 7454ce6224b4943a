import typer
from rich.console import Console
from typing_extensions import Annotated

from nvdsync.commands.options import ConfigOption, CacheDirOption, VerboseOption, prepare


def cache_update_cmd(
    force: Annotated[bool, typer.Option("--force", help="Update even if the cache is still valid")] = False,
    config: ConfigOption = None,
    cache_dir: CacheDirOption = None,
    verbose: VerboseOption = False,
):
    """Bring the local NVD database up to date, recovering from corruption if needed."""
    console = Console()
    settings = prepare(console, config, cache_dir, verbose)
    console.print("Checking NVD cache...")

    from nvdsync.utils.errors import ConfigurationError
    from nvdsync.utils.update_coordinator import build_coordinator

    coordinator = build_coordinator(settings)
    try:
        outcome = coordinator.run(force=force)
    except ConfigurationError as e:
        console.print(f"[red]Cannot update NVD cache: {e}[/red]")
        raise typer.Exit(1)
    finally:
        coordinator.shutdown()

    if outcome.cache_hit:
        console.print("[bold green]Cache is up to date, no download needed[/bold green]")
        return

    if outcome.download is not None:
        console.print(f"[dim]{outcome.download}[/dim]")

    if outcome.success:
        console.print(f"\n[bold green]NVD Database Update Complete[/bold green]")
        if outcome.validation and outcome.validation.valid:
            console.print(f"Database Size: [green]{outcome.validation.database_size_bytes / 1024 / 1024:.1f} MB[/green]")
            console.print(f"Checksum: [cyan]{outcome.validation.checksum}[/cyan]")
        console.print(f"Attempts: [yellow]{outcome.attempts}[/yellow]")
        return

    console.print(f"[red]NVD update failed: {outcome.error}[/red]")
    console.print("[yellow]Scans will run offline against existing local data[/yellow]")
    raise typer.Exit(1)
