import typer
from rich.console import Console

from nvdsync.commands.options import ConfigOption, CacheDirOption, VerboseOption, prepare


def cache_recover_cmd(
    config: ConfigOption = None,
    cache_dir: CacheDirOption = None,
    verbose: VerboseOption = False,
):
    """Back up a corrupt database and clear metadata, checksum and stale lock files."""
    console = Console()
    settings = prepare(console, config, cache_dir, verbose)

    from nvdsync.utils.cache_metadata import MetadataStore
    from nvdsync.utils.integrity import IntegrityVerifier
    from nvdsync.utils.recovery import RecoveryManager

    verifier = IntegrityVerifier(settings)
    store = MetadataStore(settings.metadata_path, settings.update_threshold_percent)
    if RecoveryManager(settings, verifier, store).attempt_recovery():
        console.print("[bold green]Recovery completed[/bold green]")
        if settings.backup_dir.exists():
            console.print(f"Backups: [cyan]{settings.backup_dir}[/cyan]")
        console.print("Run [cyan]nvdsync update[/cyan] to download a fresh database")
    else:
        console.print("Nothing to recover")
