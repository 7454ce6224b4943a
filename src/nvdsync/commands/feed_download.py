from pathlib import Path

import typer
from rich.console import Console
from rich.progress import Progress, BarColumn, DownloadColumn, TransferSpeedColumn, TextColumn
from typing_extensions import Annotated

from nvdsync.commands.options import ConfigOption, VerboseOption, prepare


def feed_download_cmd(
    url: Annotated[str, typer.Argument(help="URL of the file to download")],
    destination: Annotated[Path, typer.Argument(help="Where to write the file")],
    no_preprocess: Annotated[bool, typer.Option("--no-preprocess", help="Do not rewrite CVSS v4.0 enum values")] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """Download a single file with chunked parallel transfer."""
    console = Console()
    settings = prepare(console, config, None, verbose, recent_file_window_seconds=0.0)

    from nvdsync.utils.chunked_downloader import ChunkedDownloader, DownloadConfig
    from nvdsync.utils.http_client import RequestsHttpClient, FeedPreprocessingClient

    client = RequestsHttpClient(settings.connect_timeout, settings.read_timeout)
    if not no_preprocess:
        client = FeedPreprocessingClient(client, feed_domains=settings.feed_domains)

    with Progress(TextColumn("[bold blue]{task.description}"), BarColumn(), DownloadColumn(),
                  TransferSpeedColumn(), console=console) as progress:
        task = progress.add_task(destination.name, total=None)

        def on_progress(name, done, total):
            progress.update(task, completed=done, total=total)

        with ChunkedDownloader(client, DownloadConfig.from_settings(settings), on_progress) as downloader:
            outcome = downloader.download_url(url, destination, settings.api_key).result()

    client.close()
    if not outcome.success:
        console.print(f"[red]{outcome}[/red]")
        raise typer.Exit(1)
    console.print(f"[bold green]{outcome}[/bold green]")
