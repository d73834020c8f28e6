"""CLI entry point for the agentmarket runtime."""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from agentmarket import __version__
from agentmarket.config import Settings, load_settings
from agentmarket.errors import MarketplaceError
from agentmarket.log import configure_logging

if TYPE_CHECKING:
    from agentmarket.discovery.models import ServiceDescriptor
    from agentmarket.discovery.registry import CapabilityRegistry
    from agentmarket.engine.orchestrator import OrchestrationResult

console = Console()
err_console = Console(stderr=True)


class DecimalParam(click.ParamType):
    """Click parameter accepting ``0.02`` or ``$0.02``."""

    name = "amount"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> Decimal:
        if isinstance(value, Decimal):
            return value
        try:
            amount = Decimal(str(value).strip().lstrip("$"))
        except InvalidOperation:
            self.fail(f"{value!r} is not a valid amount", param, ctx)
        if not amount.is_finite():
            self.fail(f"{value!r} is not a finite amount", param, ctx)
        return amount


AMOUNT = DecimalParam()


@click.group()
@click.version_option(version=__version__, prog_name="agentmarket")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Data directory (default: ~/.agentmarket)",
)
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None, log_level: str | None) -> None:
    """agentmarket — discover, pay for and orchestrate agent services."""
    settings = load_settings(data_dir=data_dir, log_level=log_level)
    configure_logging(
        settings.log_level,
        handler=RichHandler(console=err_console, show_path=False, show_time=False),
        format_string="%(message)s",
    )
    ctx.obj = settings


def _registry(settings: Settings) -> CapabilityRegistry:
    from agentmarket.discovery.registry import CapabilityRegistry

    return CapabilityRegistry(settings.data_dir)


def _fail(error: Exception) -> None:
    err_console.print(f"[red]Error:[/red] {getattr(error, 'message', error)}")
    raise SystemExit(1)


@main.command()
@click.pass_obj
def init(settings: Settings) -> None:
    """Initialize agentmarket: create the data directory and databases."""
    from agentmarket.storage.database import Database

    db = Database(settings.data_dir)
    db.ensure_tables()
    console.print(f"[green]agentmarket initialized at {db.data_dir}[/green]")
    console.print(f"  Database: {db.db_path}")
    console.print(f"  Config:   {settings.config_path}")


@main.command()
@click.option("--id", "service_id", default="", help="Service id (default: generated)")
@click.option("--name", default="", help="Display name")
@click.option("--endpoint", help="Business endpoint (http/https URL)")
@click.option("--capability", "-c", "capabilities", multiple=True, help="Capability tag (repeatable)")
@click.option("--price", type=AMOUNT, help="Price per call, e.g. 0.02")
@click.option("--currency", default="USDC")
@click.option("--network", default=None)
@click.option("--description", default="")
@click.option("--provider", default="")
@click.option("--health-url", default=None, help="Liveness URL (default: <endpoint>/health)")
@click.option("--rating", type=float, default=0.0, help="Seed rating 0-5")
@click.option("--reviews", type=int, default=0, help="Seed review count")
@click.option(
    "--from-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON descriptor (object or list of objects)",
)
@click.pass_obj
def register(
    settings: Settings,
    service_id: str,
    name: str,
    endpoint: str | None,
    capabilities: tuple[str, ...],
    price: Decimal | None,
    currency: str,
    network: str | None,
    description: str,
    provider: str,
    health_url: str | None,
    rating: float,
    reviews: int,
    from_file: Path | None,
) -> None:
    """Publish a service descriptor to the registry."""
    from agentmarket.discovery.models import ServiceDescriptor

    if from_file is not None:
        data = json.loads(from_file.read_text())
        documents = data if isinstance(data, list) else [data]
    else:
        if not endpoint or price is None or not capabilities:
            raise click.UsageError("--endpoint, --price and --capability are required without --from-file")
        documents = [
            {
                "id": service_id,
                "name": name,
                "endpoint": endpoint,
                "capabilities": [c for tag in capabilities for c in tag.split(",")],
                "price": price,
                "currency": currency,
                "network": network,
                "description": description,
                "provider": provider,
                "health_check_url": health_url,
                "reputation": {"rating": rating, "review_count": reviews},
            }
        ]

    registry = _registry(settings)
    for document in documents:
        try:
            service = registry.register(ServiceDescriptor.from_dict(document))
        except (MarketplaceError, ValueError) as e:
            _fail(e)
        console.print(
            f"[green]Registered[/green] {service.id} "
            f"({', '.join(sorted(service.capabilities))}) at ${service.price} {service.currency}"
        )


@main.command()
@click.option("--capability", "-c", "capabilities", multiple=True, help="Required capability (repeatable)")
@click.option("--text", "-t", default=None, help="Substring of name, description or capability")
@click.option("--min-rating", type=float, default=None)
@click.option("--max-price", type=AMOUNT, default=None)
@click.option("--limit", default=20, help="Number of results to show")
@click.option("--offset", default=0)
@click.option("--include-retired", is_flag=True, help="Include retired services")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_obj
def search(
    settings: Settings,
    capabilities: tuple[str, ...],
    text: str | None,
    min_rating: float | None,
    max_price: Decimal | None,
    limit: int,
    offset: int,
    include_retired: bool,
    as_json: bool,
) -> None:
    """Search registered services."""
    from agentmarket.discovery.models import ServiceQuery

    try:
        query = ServiceQuery(
            text=text,
            capabilities=list(capabilities),
            min_rating=min_rating,
            max_price=max_price,
            limit=limit,
            offset=offset,
            include_retired=include_retired,
        )
    except ValueError as e:
        _fail(e)
    services = _registry(settings).search(query)

    if as_json:
        click.echo(json.dumps([s.to_dict() for s in services], indent=2))
        return

    if not services:
        console.print("[dim]No services match.[/dim]")
        return
    _print_services(services)


@main.command()
@click.argument("service_id")
@click.pass_obj
def show(settings: Settings, service_id: str) -> None:
    """Show one service with its reputation and reviews."""
    registry = _registry(settings)
    try:
        service = registry.get(service_id)
        reviews = registry.list_reviews(service_id)
    except MarketplaceError as e:
        _fail(e)

    rep = service.reputation
    state = "[red]retired[/red]" if service.retired else "[green]active[/green]"
    console.print(f"[bold cyan]{service.name}[/bold cyan] ({service.id}) {state}")
    console.print(f"  Endpoint:     {service.endpoint}")
    console.print(f"  Health:       {service.health_url}")
    console.print(f"  Capabilities: {', '.join(sorted(service.capabilities))}")
    console.print(f"  Price:        ${service.price} {service.currency}")
    console.print(
        f"  Reputation:   {rep.rating:.2f}/5 over {rep.review_count} reviews | "
        f"{rep.total_jobs} jobs, {rep.success_rate:.0%} success, {rep.avg_response_time:.0f}ms avg"
    )
    if service.description:
        console.print(f"  {service.description}")
    for review in reviews[-5:]:
        console.print(f"  [yellow]{'*' * review['score']}[/yellow] {review['review'] or ''}")


@main.command()
@click.argument("service_id")
@click.argument("score", type=click.IntRange(1, 5))
@click.option("--review", default=None, help="Free-text review")
@click.pass_obj
def rate(settings: Settings, service_id: str, score: int, review: str | None) -> None:
    """Rate a service from 1 to 5."""
    try:
        reputation = _registry(settings).rate(service_id, score, review)
    except MarketplaceError as e:
        _fail(e)
    console.print(
        f"[green]Rated[/green] {service_id}: now {reputation.rating:.2f}/5 "
        f"over {reputation.review_count} reviews"
    )


@main.command()
@click.argument("service_id")
@click.pass_obj
def retire(settings: Settings, service_id: str) -> None:
    """Soft-retire a service; it leaves search results but stays resolvable."""
    try:
        _registry(settings).retire(service_id)
    except MarketplaceError as e:
        _fail(e)
    console.print(f"[yellow]Retired[/yellow] {service_id}")


@main.command()
@click.argument("service_ids", nargs=-1)
@click.option("--capability", "-c", "capabilities", multiple=True, help="Probe services with this capability")
@click.option("--timeout", type=float, default=None, help="Per-probe timeout in seconds")
@click.option("--sequential", is_flag=True, help="Probe one service at a time")
@click.pass_obj
def probe(
    settings: Settings,
    service_ids: tuple[str, ...],
    capabilities: tuple[str, ...],
    timeout: float | None,
    sequential: bool,
) -> None:
    """Check liveness of registered services."""
    from agentmarket.discovery.health import HealthProber, health_for
    from agentmarket.discovery.models import ServiceQuery

    registry = _registry(settings)
    try:
        if service_ids:
            services = [registry.get(sid) for sid in service_ids]
        else:
            services = registry.search(ServiceQuery(capabilities=list(capabilities), limit=1000))
    except MarketplaceError as e:
        _fail(e)

    if not services:
        console.print("[dim]No services to probe.[/dim]")
        return

    async def _probe() -> dict[str, Any]:
        async with HealthProber(timeout=settings.probe_timeout) as prober:
            return await prober.probe_many(
                services,
                parallel=not sequential,
                max_concurrent=settings.max_concurrent,
                timeout=timeout,
            )

    results = asyncio.run(_probe())

    table = Table(title="Service Health")
    table.add_column("Service", style="cyan")
    table.add_column("Status")
    table.add_column("Latency")
    table.add_column("Detail", max_width=50)
    colors = {"healthy": "green", "unhealthy": "red", "unknown": "yellow"}
    for service in services:
        result = health_for(results, service.id)
        color = colors[result.status.value]
        table.add_row(
            service.id,
            f"[{color}]{result.status.value}[/{color}]",
            f"{result.response_time_ms:.0f}ms" if result.response_time_ms is not None else "-",
            result.error or "",
        )
    console.print(table)


@main.command()
@click.argument("goal")
@click.option("--budget", type=AMOUNT, required=True, help="Budget ceiling, e.g. 1.00")
@click.option("--max-concurrent", type=int, default=None, help="Workers and probes in flight")
@click.option("--timeout", type=float, default=None, help="Stop dispatching after N seconds")
@click.option("--events", "show_events", is_flag=True, help="Print events as they happen")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
@click.pass_obj
def orchestrate(
    settings: Settings,
    goal: str,
    budget: Decimal,
    max_concurrent: int | None,
    timeout: float | None,
    show_events: bool,
    as_json: bool,
) -> None:
    """Decompose GOAL and hire services for it under a budget."""
    from agentmarket.engine.events import OrchestrationEvent
    from agentmarket.marketplace import Marketplace

    def _echo_event(event: OrchestrationEvent) -> None:
        err_console.print(f"[dim]#{event.sequence}[/dim] [bold]{event.type}[/bold] {_summarize(event.data)}")

    async def _run() -> OrchestrationResult:
        async with Marketplace(settings) as market:
            if show_events:
                market.event_bus.add_listener(_echo_event)
            return await market.orchestrate(goal, budget, max_concurrent, timeout)

    if not as_json:
        console.print(f"[bold cyan]Orchestrate:[/bold cyan] {goal} (budget ${budget})")
    result = asyncio.run(_run())

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return
    _print_result(result)


@main.command()
@click.argument("orchestration_id", required=False)
@click.option("--limit", default=20, help="Number of entries to show")
@click.pass_obj
def history(settings: Settings, orchestration_id: str | None, limit: int) -> None:
    """Show archived orchestrations, or one ledger in detail."""
    from agentmarket.storage.ledger_store import LedgerStore

    async def _load() -> Any:
        async with LedgerStore(settings.data_dir / "data" / "ledgers.db") as store:
            if orchestration_id:
                return await store.get(orchestration_id)
            return await store.list_recent(limit)

    data = asyncio.run(_load())

    if orchestration_id:
        if data is None:
            _fail(MarketplaceError(f"orchestration {orchestration_id} not found"))
        click.echo(json.dumps(data, indent=2))
        return

    if not data:
        console.print("[dim]No orchestration history yet. Run an orchestration first.[/dim]")
        return

    table = Table(title="Orchestration History")
    table.add_column("Orchestration", style="cyan")
    table.add_column("Goal", max_width=40)
    table.add_column("Status", style="green")
    table.add_column("Spent")
    table.add_column("Budget")
    table.add_column("Subtasks")
    table.add_column("Closed")
    for row in data:
        table.add_row(
            row["orchestration_id"],
            row["goal"][:40],
            row["status"],
            f"${row['total_cost']}",
            f"${row['budget_ceiling']}",
            str(row["entry_count"]),
            str(row["closed_at"])[:16],
        )
    console.print(table)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_obj
def spending(settings: Settings, as_json: bool) -> None:
    """Show spend today and this month against the configured limits."""
    from agentmarket.payment.limits import SpendingLimits
    from agentmarket.storage.ledger_store import LedgerStore

    async def _load() -> dict[str, Any]:
        async with LedgerStore(settings.data_dir / "data" / "ledgers.db") as store:
            limits = SpendingLimits(settings.daily_limit, settings.monthly_limit, store)
            stats = await limits.stats()
            return stats.to_dict()

    data = asyncio.run(_load())

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    table = Table(title="Spending")
    table.add_column("Period", style="cyan")
    table.add_column("Spent", style="green")
    table.add_column("Limit")
    table.add_row("Today", f"${data['spent_today']}", _limit(data["daily_limit"]))
    table.add_row("This month", f"${data['spent_this_month']}", _limit(data["monthly_limit"]))
    console.print(table)
    if data["remaining"] is not None:
        console.print(f"Remaining: ${data['remaining']}")


def _limit(value: str | None) -> str:
    return f"${value}" if value is not None else "unlimited"


def _print_services(services: list[ServiceDescriptor]) -> None:
    table = Table(title="Services")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Capabilities", max_width=40)
    table.add_column("Price", style="green")
    table.add_column("Rating")
    table.add_column("Jobs")
    for service in services:
        rep = service.reputation
        table.add_row(
            service.id,
            service.name,
            ", ".join(sorted(service.capabilities)),
            f"${service.price}",
            f"{rep.rating:.2f} ({rep.review_count})",
            str(rep.total_jobs),
        )
    console.print(table)


def _summarize(data: dict[str, Any]) -> str:
    parts = []
    for key, value in data.items():
        if key in ("deliverable", "subtasks"):
            continue
        parts.append(f"{key}={value}")
    return " ".join(parts)


def _print_result(result: OrchestrationResult) -> None:
    """Print orchestration result summary."""
    status_color = {"completed": "green", "partially_completed": "yellow", "aborted": "red"}.get(
        result.status.value, "dim"
    )

    console.print(f"\n[{status_color}]Status: {result.status.value}[/{status_color}]")
    console.print(f"Orchestration: {result.orchestration_id}")
    console.print(f"Cost: ${result.ledger.total_cost} of ${result.ledger.budget_ceiling}")

    if result.error:
        console.print(f"[red]Error:[/red] {result.error}")
        return

    deliverable = result.deliverable or {}
    for section in deliverable.get("sections", []):
        console.print(f"  [green]✓[/green] {section['subtaskId']} via {section['serviceId']}")
    for failure in deliverable.get("failures", []):
        console.print(f"  [red]✗[/red] {failure['subtaskId']}: {failure['reason']}")
