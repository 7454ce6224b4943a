from pathlib import Path

import typer
from rich.console import Console
from typing_extensions import Annotated

from nvdsync.commands.options import VerboseOption, prepare


def preprocess_cmd(
    source: Annotated[Path, typer.Argument(help="NVD JSON file to preprocess")],
    output: Annotated[Path, typer.Option("--output", "-o", help="Write here instead of in place")] = None,
    verbose: VerboseOption = False,
):
    """Rewrite CVSS v4.0 enum values that older consumers cannot parse."""
    console = Console()
    prepare(console, None, None, verbose)

    from nvdsync.utils.json_preprocessor import JsonPreprocessor

    try:
        original = source.read_bytes()
    except OSError as e:
        console.print(f"[red]Cannot read {source}: {e}[/red]")
        raise typer.Exit(1)

    preprocessor = JsonPreprocessor()
    result = preprocessor.preprocess(original)
    stats = preprocessor.get_stats()
    target = output or source

    if result is original and target == source:
        console.print("No changes needed")
        return

    target.write_bytes(result)
    console.print(f"[bold green]Wrote {target}[/bold green]")
    console.print(f"Replacements: [cyan]{stats['replacements']}[/cyan]")
