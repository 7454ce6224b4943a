import typer
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from nvdsync.commands.options import ConfigOption, CacheDirOption, VerboseOption, prepare


def cache_status_cmd(
    config: ConfigOption = None,
    cache_dir: CacheDirOption = None,
    remote: Annotated[bool, typer.Option("--remote", help="Also check the NVD API for changes")] = False,
    verbose: VerboseOption = False,
):
    """Show cache metadata, database validity and whether an update is due."""
    console = Console()
    settings = prepare(console, config, cache_dir, verbose, remote_validation=True if remote else None)

    try:
        from nvdsync.utils.cache_metadata import MetadataStore
        from nvdsync.utils.cache_oracle import CacheValidityOracle
        from nvdsync.utils.freshness_probe import RemoteFreshnessProbe
        from nvdsync.utils.http_client import RequestsHttpClient
        from nvdsync.utils.integrity import IntegrityVerifier

        store = MetadataStore(settings.metadata_path, settings.update_threshold_percent)
        probe = None
        if settings.remote_validation:
            client = RequestsHttpClient(settings.connect_timeout, settings.read_timeout)
            probe = RemoteFreshnessProbe(client, settings.api_url, settings.probe_url)
        oracle = CacheValidityOracle(settings, store, probe)
        metadata = store.load()
        report = IntegrityVerifier(settings).verify()
        cache_valid = oracle.is_valid(settings.has_api_key)

        console.print(f"\n[bold green]NVD Cache Status[/bold green]")
        console.print(f"Cache directory: [cyan]{settings.cache_dir}[/cyan]")

        table = Table(title="Cache Metadata")
        table.add_column("Field", style="bold")
        table.add_column("Value", style="cyan")
        if metadata is None:
            table.add_row("metadata", "[yellow]none (first run)[/yellow]")
        else:
            table.add_row("Cache version", metadata.cache_version)
            table.add_row("Last check", metadata.last_check_timestamp.strftime("%Y-%m-%d %H:%M:%S UTC"))
            table.add_row("Remote modified",
                          metadata.last_remote_modified.strftime("%Y-%m-%d %H:%M:%S UTC")
                          if metadata.last_remote_modified else "unknown")
            table.add_row("Record count",
                          f"{metadata.last_record_count:,}" if metadata.last_record_count is not None else "unknown")
            table.add_row("Update threshold", f"{metadata.update_threshold_percent}%")
        console.print(table)

        db_status = "[green]valid[/green]" if report.valid else f"[red]invalid[/red] ({report.reason})"
        console.print(f"Database: {report.path} {db_status}")
        if report.valid:
            console.print(f"Database Size: [green]{report.size_bytes / 1024 / 1024:.1f} MB[/green]")

        if cache_valid:
            console.print("Cache: [bold green]up to date[/bold green]")
        else:
            console.print("Cache: [bold yellow]update required[/bold yellow]")

    except OSError as e:
        console.print(f"[red]Error reading cache status: {e}[/red]")
        raise typer.Exit(1)
