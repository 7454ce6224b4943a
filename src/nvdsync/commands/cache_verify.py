import typer
from rich.console import Console
from typing_extensions import Annotated

from nvdsync.commands.options import ConfigOption, CacheDirOption, VerboseOption, prepare


def cache_verify_cmd(
    record: Annotated[bool, typer.Option("--record", help="Store a fresh checksum when the database is valid")] = False,
    config: ConfigOption = None,
    cache_dir: CacheDirOption = None,
    verbose: VerboseOption = False,
):
    """Verify the local database: size, header, lock file and checksum."""
    console = Console()
    settings = prepare(console, config, cache_dir, verbose)

    from nvdsync.utils.integrity import IntegrityVerifier

    verifier = IntegrityVerifier(settings)
    try:
        report = verifier.verify()
        if not report.valid:
            console.print(f"[red]Database invalid: {report.reason}[/red]")
            console.print(f"[dim]Path: {report.path}[/dim]")
            raise typer.Exit(1)

        console.print(f"[bold green]Database valid[/bold green] ({report.size_bytes / 1024 / 1024:.1f} MB)")
        if record:
            stored = verifier.store_checksum(settings.database_path)
            console.print(f"Checksum recorded: [cyan]{stored.checksum}[/cyan]")
        else:
            existing = verifier.load_checksum()
            if existing:
                console.print(f"Checksum: [cyan]{existing.checksum}[/cyan]")
    except OSError as e:
        console.print(f"[red]Error verifying database: {e}[/red]")
        raise typer.Exit(1)
