"""
Main CLI interface for CloudBridge.

Provides command-line access to account listing, cost summaries and trends,
credential validation and cache maintenance across AWS and Alibaba Cloud.
"""

import asyncio
import json
import logging
import sys

import click

from .config.settings import CACHE_BACKENDS, get_config
from .providers.base import CloudProviderError, ConfigurationError
from .services.cost_service import CloudCostService

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, level: str = "WARNING"):
    """Configure logging based on verbosity settings."""
    logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Default is quiet: only show results
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(getattr(logging, level.upper(), logging.ERROR))

    # HTTP client loggers are noisy at debug level
    for logger_name in ["httpx", "httpcore"]:
        logging.getLogger(logger_name).setLevel(logging.INFO if verbose else logging.ERROR)


def _create_service(ctx) -> CloudCostService:
    factory = ctx.obj.get("service_factory") or CloudCostService.from_config
    return factory(ctx.obj["config"])


def _run(ctx, coro_fn):
    """Run one command against a started service, mapping provider errors to exit code 1."""

    async def _main():
        async with _create_service(ctx) as service:
            return await coro_fn(service)

    try:
        return asyncio.run(_main())
    except CloudProviderError as e:
        click.echo(f"❌ {CloudCostService.describe_error(e)}", err=True)
        if ctx.obj.get("verbose"):
            click.echo(f"   {type(e).__name__}: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging and debug output")
@click.option("--cache-ttl", type=float, help="Hours before cached cost data is refetched")
@click.option("--cache-backend", type=click.Choice(CACHE_BACKENDS), help="Where cached data is kept")
@click.option("--timeout", type=float, help="HTTP timeout in seconds")
@click.pass_context
def cli(ctx, verbose, cache_ttl, cache_backend, timeout):
    """CloudBridge - cloud cost summaries for AWS and Alibaba Cloud accounts."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    try:
        config = ctx.obj.get("config") or get_config()
        config.override_from_cli(
            {"cache_ttl": cache_ttl, "cache_backend": cache_backend, "timeout": timeout}
        )
    except ConfigurationError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)

    ctx.obj["config"] = config
    setup_logging(verbose, config.log_level)


@cli.command()
@click.pass_context
def accounts(ctx):
    """List configured accounts."""

    async def _accounts(service: CloudCostService):
        return service.list_accounts()

    registered = _run(ctx, _accounts)
    if not registered:
        click.echo("No accounts configured")
        return

    for account in registered:
        state = "" if account.enabled else " (disabled)"
        click.echo(f"  {account.id}: {account.name} [{account.provider.short_name}]{state}")


def _display_summary_table(rollup):
    click.echo("\nCost Summary (month to date vs last month)")
    click.echo("=" * 50)

    for summary in rollup.summaries:
        click.echo(
            f"  {summary.account_name} [{summary.provider.short_name}]: "
            f"{summary.current_month_cost:.2f} {summary.currency} "
            f"(last month {summary.last_month_cost:.2f}, {summary.month_over_month_change:+.1f}%)"
        )
        for item in summary.current_month_details[:5]:
            click.echo(f"      {item.service}: {item.amount:.2f}")

    if rollup.totals:
        click.echo("\nTotals:")
        for currency, total in sorted(rollup.totals.items()):
            click.echo(
                f"  {currency}: {total.current_month_cost:.2f} "
                f"(last month {total.last_month_cost:.2f}, "
                f"{total.month_over_month_change:+.1f}%, {total.account_count} accounts)"
            )

    for account_id, message in rollup.failures.items():
        click.echo(f"  ⚠️  {account_id}: {message}")


@cli.command()
@click.option("--account", "account_id", help="Only show this account")
@click.option("--refresh", is_flag=True, help="Ignore cached data and fetch from the provider")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def summary(ctx, account_id, refresh, output_format):
    """Show month-to-date costs compared with last month."""

    async def _summary(service: CloudCostService):
        if account_id:
            from .utils.data_normalizer import rollup_summaries

            result = await service.get_cost_summary(account_id, force_refresh=refresh)
            return rollup_summaries([result])
        return await service.get_dashboard_summary(force_refresh=refresh)

    rollup = _run(ctx, _summary)

    if output_format == "json":
        click.echo(json.dumps(rollup.model_dump(mode="json"), indent=2))
    elif not rollup.summaries and not rollup.failures:
        click.echo("No cost data available", err=True)
    else:
        _display_summary_table(rollup)


@cli.command()
@click.argument("account_id")
@click.option("--refresh", is_flag=True, help="Ignore cached data and fetch from the provider")
@click.pass_context
def trend(ctx, account_id, refresh):
    """Show the daily cost trend for one account."""

    async def _trend(service: CloudCostService):
        return await service.get_cost_trend(account_id, force_refresh=refresh)

    result = _run(ctx, _trend)

    click.echo(f"\nDaily costs for {account_id} ({result.start_date} to {result.end_date})")
    click.echo("=" * 50)
    peak = max((day.amount for day in result.daily_costs), default=0.0)
    for day in result.daily_costs:
        bar = "#" * int(round(day.amount / peak * 30)) if peak > 0 else ""
        click.echo(f"  {day.date}  {day.amount:10.2f} {result.currency}  {bar}")
    click.echo(f"\nTotal: {result.total_cost:.2f} {result.currency}")


@cli.command()
@click.argument("account_id")
@click.pass_context
def validate(ctx, account_id):
    """Check that an account's credentials are accepted by its provider."""

    async def _validate(service: CloudCostService):
        return await service.validate(account_id)

    if _run(ctx, _validate):
        click.echo(f"✅ {account_id}: credentials valid")
    else:
        click.echo(f"❌ {account_id}: credentials rejected", err=True)
        sys.exit(1)


@cli.command("cache-info")
@click.pass_context
def cache_info(ctx):
    """Display cache statistics."""

    async def _cache_info(service: CloudCostService):
        return service.cache_info()

    stats = _run(ctx, _cache_info)
    click.echo("Cache")
    click.echo("=" * 40)
    for key, value in stats.items():
        click.echo(f"  {key}: {value}")


@cli.command("cache-clear")
@click.option("--account", "account_id", help="Only clear this account's entries")
@click.pass_context
def cache_clear(ctx, account_id):
    """Remove cached cost data."""

    async def _cache_clear(service: CloudCostService):
        return service.clear_cache(account_id)

    removed = _run(ctx, _cache_clear)
    scope = f" for {account_id}" if account_id else ""
    click.echo(f"✅ Removed {removed} cache entries{scope}")


@cli.command("config-info")
@click.pass_context
def config_info(ctx):
    """Display current configuration information."""
    config = ctx.obj["config"]

    click.echo("CloudBridge Configuration")
    click.echo("=" * 40)
    click.echo(f"Home: {config.home}")

    click.echo(f"\nCache: {config.cache_backend}")
    click.echo(f"  TTL: {config.cache_ttl.total_seconds() / 3600:g} hours")
    if config.cache_backend == "duckdb":
        click.echo(f"  Database: {config.cache_database}")
    elif config.cache_backend == "disk":
        click.echo(f"  Directory: {config.cache_directory}")

    policy = config.retry_policy
    click.echo(f"\nHTTP timeout: {config.http_timeout:g}s")
    click.echo(
        f"Retry: {policy.max_attempts} attempts, "
        f"backoff {policy.base_delay:g}s up to {policy.max_delay:g}s"
    )
    click.echo(f"Trend window: {config.trend_days} days")

    configured = config.accounts
    click.echo(f"\nAccounts: {len(configured)}")
    for account in configured:
        click.echo(f"  {account.id} [{account.provider.short_name}]")


@cli.command()
def version():
    """Display version information."""
    from . import __version__

    click.echo(f"CloudBridge v{__version__}")
    click.echo("Cloud cost summaries for AWS and Alibaba Cloud")


if __name__ == "__main__":
    cli()
