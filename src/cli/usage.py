"""CLI commands for usage reports.

Usage:
    speech-gateway-admin usage stats --days 7
    speech-gateway-admin usage prune --older-than-days 30
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import typer

from src.cli.keys import open_gateway
from src.errors import GatewayError
from src.usage.models import UsageStats

usage_app = typer.Typer(help="Usage statistics commands")


async def _stats(since: datetime | None) -> UsageStats:
    async with open_gateway() as gateway:
        return await gateway.recorder.get_stats(since)


async def _prune(days: int | None) -> int:
    async with open_gateway() as gateway:
        return await gateway.prune_usage(days)


@usage_app.command("stats")
def usage_stats(
    days: int | None = typer.Option(None, "--days", help="Only the last N days"),
) -> None:
    """Show usage totals grouped by engine and key."""
    since = datetime.now(UTC) - timedelta(days=days) if days else None
    try:
        stats = asyncio.run(_stats(since))
    except GatewayError as e:
        typer.echo(typer.style(f"Failed to fetch usage: {e.message}", fg=typer.colors.RED))
        raise typer.Exit(code=1) from None

    typer.echo(f"Requests:    {stats.total_requests}")
    typer.echo(f"Succeeded:   {stats.success_count}")
    typer.echo(f"Failed:      {stats.error_count}")
    typer.echo(f"Characters:  {stats.total_characters}")
    typer.echo(f"Duration:    {stats.total_duration_ms} ms")

    for title, groups in (("By engine", stats.by_engine), ("By key", stats.by_key)):
        if not groups:
            continue
        typer.echo("")
        typer.echo(typer.style(f"[{title}]", fg=typer.colors.CYAN, bold=True))
        for name, group in sorted(groups.items(), key=lambda item: -item[1].requests):
            typer.echo(f"  {name:<34} {group.requests:>7} req {group.characters:>10} chars")


@usage_app.command("prune")
def usage_prune(
    older_than_days: int | None = typer.Option(None, "--older-than-days", help="Default: USAGE_RETENTION_DAYS"),
) -> None:
    """Delete usage records older than the retention window."""
    try:
        removed = asyncio.run(_prune(older_than_days))
    except GatewayError as e:
        typer.echo(typer.style(f"Failed to prune usage: {e.message}", fg=typer.colors.RED))
        raise typer.Exit(code=1) from None
    typer.echo(f"Removed {removed} usage record(s).")
