"""Main CLI application."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog
import typer
from rich.console import Console

from dirsync.cli.formatters import ConfigFormatter, PlanFormatter, ResourceFormatter
from dirsync.clients.exceptions import DirSyncError
from dirsync.config.loader import ConfigLoader, find_config_file
from dirsync.config.models import SyncClientConfig
from dirsync.core.orchestrator import SyncOrchestrator

console = Console()
logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="dirsync",
    help="Enumerate and reconcile identities against directory backends.",
    rich_markup_mode="rich",
)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to configuration file")


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Setup structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_configuration(config_file: Optional[Path] = None) -> SyncClientConfig:
    """Load and validate configuration.

    Raises:
        typer.Exit: If no configuration is found or it is invalid
    """
    if config_file is None:
        config_file = find_config_file()
        if config_file is None:
            console.print("[red]Error: No configuration file found[/red]")
            console.print("Please create a dirsync.yaml file or specify --config")
            raise typer.Exit(1)

    try:
        config = ConfigLoader().load_config(config_file)
    except DirSyncError as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(1)

    setup_logging(config.logging.level, config.logging.format)
    return config


def create_orchestrator(config: SyncClientConfig) -> SyncOrchestrator:
    return SyncOrchestrator(config)


@app.command()
def validate(config_file: Optional[Path] = ConfigOption) -> None:
    """Validate configuration file."""
    if config_file is None:
        config_file = find_config_file()
    if config_file is not None:
        missing = ConfigLoader().get_missing_env_vars(config_file)
        if missing:
            console.print("[red]✗ Missing environment variables:[/red]")
            for var_name in missing:
                console.print(f"  - {var_name}")
            raise typer.Exit(1)

    config = load_configuration(config_file)
    ConfigFormatter(console).format_config_summary(config)
    console.print("[green]✓ Configuration is valid[/green]")


@app.command("enumerate")
def enumerate_resources(
    tenant: str = typer.Argument(..., help="Tenant key from the configuration"),
    resource_type: str = typer.Argument(..., help="Resource type, e.g. users or groups"),
    start_index: Optional[int] = typer.Option(None, "--start-index", help="1-based start index"),
    count: Optional[int] = typer.Option(None, "--count", help="Page size"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Enumerate one page (or all) of a resource type."""
    config = load_configuration(config_file)

    async def run() -> None:
        async with create_orchestrator(config) as orchestrator:
            page = await orchestrator.enumerate(tenant, resource_type, start_index, count)
        ResourceFormatter(console).format_page(resource_type, page)

    _run(run)


@app.command()
def plans(
    tenant: str = typer.Argument(..., help="Tenant key from the configuration"),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """List the plans a tenant is subscribed to, as skuPartNumber::planName references."""
    config = load_configuration(config_file)

    async def run() -> None:
        async with create_orchestrator(config) as orchestrator:
            catalog = await orchestrator.get_plan_catalog(tenant)
        PlanFormatter(console).format_catalog(catalog)

    _run(run)


def _run(coro_fn) -> None:
    try:
        asyncio.run(coro_fn())
    except DirSyncError as e:
        status = SyncOrchestrator.error_status(e)
        logger.error("Command failed", error=str(e), kind=e.kind, status=status)
        console.print(f"[red]Error ({e.kind}, {status}): {e}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
