"""
Shared CLI options and settings bootstrap for nvdsync commands.
"""

from typing import Optional

import typer
from rich.console import Console
from typing_extensions import Annotated

from nvdsync.utils.config import Settings, load_settings
from nvdsync.utils.errors import ConfigurationError
from nvdsync.utils.logging_config import setup_logging

ConfigOption = Annotated[Optional[str], typer.Option("--config", "-c", help="Path to a YAML config file")]
CacheDirOption = Annotated[Optional[str], typer.Option("--cache-dir", help="Override the cache directory")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")]


def prepare(console: Console, config: Optional[str] = None, cache_dir: Optional[str] = None,
            verbose: bool = False, **overrides) -> Settings:
    """Load settings and configure logging, exiting with status 1 on bad configuration."""
    try:
        settings = load_settings(config, cache_dir=cache_dir, **overrides)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)

    setup_logging("DEBUG" if verbose else settings.log_level)
    return settings
