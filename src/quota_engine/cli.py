"""
Quota Engine CLI
Operator commands that act directly on the configured stores.
"""

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console
from rich.table import Table

from quota_engine.clock import ensure_utc, utc_now
from quota_engine.config import get_settings
from quota_engine.engine import QuotaEngine
from quota_engine.errors import QuotaEngineError, QuotaServiceUnavailable
from quota_engine.main import SweeperDaemon, configure_logging
from quota_engine.policy import EnforcementPolicy, load_policy
from quota_engine.quota.models import QuotaStatus, Tier
from quota_engine.scheduler.reset import compute_next_reset

console = Console()

T = TypeVar("T")


def run_with_engine(ctx: click.Context, action: Callable[[QuotaEngine], Awaitable[T]]) -> T:
    """Build an engine, run ``action`` against it without the background sweeper, then stop it."""

    async def runner() -> T:
        engine = QuotaEngine.from_settings(ctx.obj["settings"], ctx.obj["policy"])
        await engine.start(run_sweeper=False)
        try:
            return await action(engine)
        finally:
            await engine.stop()

    return asyncio.run(runner())


def print_status(status: QuotaStatus) -> None:
    title = f"Quota for {status.subject_id} ({status.tier.value})"
    if status.stale:
        title += " [yellow]stale[/yellow]"
    table = Table(title=title)
    table.add_column("Feature", style="cyan")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Reached", justify="center")

    for feature, usage in status.features.items():
        table.add_row(
            feature,
            str(usage.used),
            str(usage.limit),
            "[red]yes[/red]" if usage.reached else "[green]no[/green]",
        )

    console.print(table)
    console.print(f"Resets at {status.reset_at.isoformat()}")


def print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option("--policy", "-p", "policy_path", type=click.Path(dir_okay=False), help="Policy JSON file")
@click.option("--log-level", default=None, help="Override QUOTA_ENGINE_LOG_LEVEL")
@click.pass_context
def cli(ctx: click.Context, policy_path: Optional[str], log_level: Optional[str]) -> None:
    """Quota Engine CLI - rate limits and tiered daily quotas."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level)

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    try:
        ctx.obj["policy"] = load_policy(policy_path or settings.policy_path)
    except QuotaEngineError as e:
        console.print(f"❌ [red]{e}[/red]")
        sys.exit(2)


@cli.command("check-config")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def check_config(ctx: click.Context, as_json: bool) -> None:
    """Validate the enforcement policy and show it."""
    policy: EnforcementPolicy = ctx.obj["policy"]

    if as_json:
        print_json(policy.model_dump(mode="json"))
        return

    console.print(f"✅ [green]Policy v{policy.version} is valid[/green]")

    tiers = Table(title="Daily limits")
    tiers.add_column("Tier", style="cyan")
    for feature in policy.features:
        tiers.add_column(feature, justify="right")
    for tier in Tier:
        limits = policy.limits_for(tier)
        tiers.add_row(tier.value, *(str(limits[f]) for f in policy.features))
    console.print(tiers)

    limiters = Table(title="Rate limiters")
    limiters.add_column("Name", style="cyan")
    limiters.add_column("Window", justify="right")
    limiters.add_column("Max", justify="right")
    limiters.add_column("Key")
    limiters.add_column("Skip failed", justify="center")
    for name, limiter in policy.limiters.items():
        limiters.add_row(
            name,
            f"{limiter.window_seconds}s",
            str(limiter.max),
            limiter.key_strategy.value,
            "yes" if limiter.skip_failed_requests else "no",
        )
    console.print(limiters)

    reset = policy.reset
    console.print(
        f"Daily reset at {reset.reset_hour:02d}:00 (UTC offset {reset.utc_offset_minutes:+d} min), "
        f"swept every {reset.sweep_interval_seconds}s"
    )


@cli.command("next-reset")
@click.option("--at", "reference", default=None, help="ISO-8601 reference time (default: now)")
@click.pass_context
def next_reset(ctx: click.Context, reference: Optional[str]) -> None:
    """Show the next daily reset instant."""
    reset = ctx.obj["policy"].reset
    try:
        at = ensure_utc(datetime.fromisoformat(reference)) if reference else None
    except ValueError:
        raise click.BadParameter(f"not an ISO-8601 time: {reference}", param_hint="--at") from None

    click.echo(compute_next_reset(at or utc_now(), reset.reset_hour, reset.utc_offset_minutes).isoformat())


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def sweep(ctx: click.Context, as_json: bool) -> None:
    """Reset every quota record that is due, once."""
    try:
        result = run_with_engine(ctx, lambda engine: engine.resets.sweep_all())
    except QuotaEngineError as e:
        console.print(f"❌ [red]Sweep failed: {e}[/red]")
        sys.exit(1)

    if as_json:
        print_json(result.to_dict())
        return
    console.print(
        f"✅ Reset {result.reset_count} quota records, "
        f"next reset at {result.next_reset_at.isoformat()}"
    )


@cli.command()
@click.argument("subject_id")
@click.option("--tier", type=click.Choice([t.value for t in Tier]), default=None, help="Current tier")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, subject_id: str, tier: Optional[str], as_json: bool) -> None:
    """Show a subject's quota usage."""
    try:
        result = run_with_engine(
            ctx,
            lambda engine: engine.quotas.get_status(subject_id, Tier(tier) if tier else None),
        )
    except QuotaServiceUnavailable as e:
        console.print(f"❌ [red]{e}[/red]")
        sys.exit(1)

    if as_json:
        print_json(result.to_dict())
        return
    print_status(result)


@cli.command("set-tier")
@click.argument("subject_id")
@click.argument("tier", type=click.Choice([t.value for t in Tier]))
@click.option("--reset-usage", is_flag=True, help="Zero counters and start a new window")
@click.pass_context
def set_tier(ctx: click.Context, subject_id: str, tier: str, reset_usage: bool) -> None:
    """Record a subject's new tier."""
    try:
        result = run_with_engine(
            ctx,
            lambda engine: engine.quotas.change_tier(subject_id, Tier(tier), reset_usage=reset_usage),
        )
    except QuotaServiceUnavailable as e:
        console.print(f"❌ [red]{e}[/red]")
        sys.exit(1)
    print_status(result)


@cli.command()
@click.option("--host", default=None, help="Bind address (default: QUOTA_ENGINE_API_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: QUOTA_ENGINE_API_PORT)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API."""
    import uvicorn

    from quota_engine.api.app import create_app

    settings = ctx.obj["settings"]
    engine = QuotaEngine.from_settings(settings, ctx.obj["policy"])
    app = create_app(engine=engine, settings=settings)
    uvicorn.run(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.pass_context
def sweeper(ctx: click.Context) -> None:
    """Run the reset sweeper daemon."""
    daemon = SweeperDaemon(ctx.obj["settings"], ctx.obj["policy"])
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
