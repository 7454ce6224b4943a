#!/usr/bin/env python3
"""
nvdsync CLI entrypoint. Registers commands implemented in src/nvdsync/commands.
"""

import typer
from rich.console import Console
from typing import List, Tuple

# --- Shared constants -----------------------------------------------------
CLI_HELP = (
    "nvdsync - local NVD vulnerability database cache\n"
    "Keeps the NVD database fresh with cheap remote checks, parallel chunked\n"
    "downloads, integrity verification and self-healing recovery.\n"
    "Quick Examples:\n"
    "  nvdsync status                     # Show cache state\n"
    "  nvdsync update                     # Update if the cache is stale\n"
    "  nvdsync update --force             # Always download\n"
    "  nvdsync verify                     # Check database integrity\n"
    "  nvdsync recover                    # Back up and reset a broken cache"
)

FEATURES = [
    "Smart cache validity (time window, last-modified and record-count checks)",
    "Parallel chunked downloads with all-or-nothing merge",
    "Database integrity verification (size, header, lock file, SHA-256)",
    "Self-healing recovery with timestamped backups",
    "CVSS v4.0 enum compatibility preprocessing for NVD JSON feeds",
]

AVAILABLE_COMMANDS: List[Tuple[str, str]] = [
    ("status", "Show cache metadata and whether an update is due"),
    ("update", "Update the local NVD database"),
    ("verify", "Verify the local database file"),
    ("recover", "Back up a corrupt database and reset cache state"),
    ("download", "Download one file with chunked parallel transfer"),
    ("preprocess", "Rewrite CVSS v4.0 enum values in an NVD JSON file"),
    ("welcome", "Show this welcome message"),
]

# --- Import commands (each command lives in its own module) ---------------
from nvdsync.commands.cache_status import cache_status_cmd
from nvdsync.commands.cache_update import cache_update_cmd
from nvdsync.commands.cache_verify import cache_verify_cmd
from nvdsync.commands.cache_recover import cache_recover_cmd
from nvdsync.commands.feed_download import feed_download_cmd
from nvdsync.commands.preprocess import preprocess_cmd


def create_app(help_text: str = CLI_HELP) -> typer.Typer:
    app = typer.Typer(help=help_text, add_completion=False)

    # Register commands
    app.command("status")(cache_status_cmd)
    app.command("update")(cache_update_cmd)
    app.command("verify")(cache_verify_cmd)
    app.command("recover")(cache_recover_cmd)
    app.command("download")(feed_download_cmd)
    app.command("preprocess")(preprocess_cmd)

    return app


def print_welcome(console: Console) -> None:
    console.print("\n[bold green]nvdsync - NVD Vulnerability Database Cache[/bold green]")
    console.print("[dim]Fresh vulnerability data without re-downloading on every scan[/dim]\n")

    console.print("[bold yellow]Features:[/bold yellow]")
    for feature in FEATURES:
        console.print(f"  {feature}")

    console.print(f"\n[bold blue]Available Commands:[/bold blue]")
    for cmd, desc in AVAILABLE_COMMANDS:
        console.print(f"  [cyan]{cmd:<12}[/cyan] {desc}")

    console.print(f"\n[dim]Use 'nvdsync <command> --help' for detailed command information[/dim]\n")


# Create the app instance used by entry points
app = create_app()


@app.command("welcome")
def welcome() -> None:
    console = Console()
    print_welcome(console)


if __name__ == "__main__":
    app()
