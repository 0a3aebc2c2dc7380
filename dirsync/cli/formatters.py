"""Rich output formatters for the CLI."""

import json
from typing import Any, Dict, List

from rich.console import Console
from rich.table import Table

from dirsync.config.models import SyncClientConfig
from dirsync.core.entitlements import PlanCatalog


class ConfigFormatter:
    """Formats configuration information for display."""

    def __init__(self, console: Console):
        self.console = console

    def format_config_summary(self, config: SyncClientConfig) -> None:
        """Display one row per tenant."""
        table = Table(title="Configuration Summary")
        table.add_column("Tenant", style="cyan")
        table.add_column("Endpoints", style="green")
        table.add_column("Auth")
        table.add_column("Resources")
        table.add_column("Directory")

        for name, tenant in config.tenants.items():
            table.add_row(
                name,
                "\n".join(tenant.connection.base_urls),
                "client credentials" if tenant.auth else "none",
                ", ".join(sorted(tenant.resources)),
                tenant.directory.base_dn if tenant.directory else "-",
            )

        self.console.print(table)
        self.console.print(f"Log level: {config.logging.level} ({config.logging.format})")


class ResourceFormatter:
    """Formats an enumerated page."""

    def __init__(self, console: Console):
        self.console = console

    def format_page(self, resource_type: str, page: Dict[str, Any]) -> None:
        resources: List[Dict[str, Any]] = page["resources"]
        table = Table(title=f"{resource_type} ({len(resources)} of totalResults {page['totalResults']})")
        table.add_column("id", style="cyan")
        table.add_column("Attributes")
        for resource in resources:
            attributes = {k: v for k, v in resource.items() if k != "id"}
            table.add_row(str(resource.get("id", "")), json.dumps(attributes, default=str))
        self.console.print(table)


class PlanFormatter:
    """Formats a tenant's plan catalog."""

    def __init__(self, console: Console):
        self.console = console

    def format_catalog(self, catalog: PlanCatalog) -> None:
        table = Table(title="Subscribed Plans")
        table.add_column("Reference", style="cyan")
        table.add_column("Sku Id")
        table.add_column("Plan Id")
        table.add_column("Status")
        for entry in sorted(catalog.entries, key=lambda e: (e.sku_part_number, e.plan_name)):
            status_style = "green" if entry.is_active else "yellow"
            table.add_row(
                str(entry.reference),
                entry.sku_id,
                entry.plan_id,
                f"[{status_style}]{entry.status}[/{status_style}]",
            )
        self.console.print(table)
