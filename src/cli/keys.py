"""CLI commands for API key management.

Usage:
    speech-gateway-admin keys create --name "kitchen speaker" --rate-limit 60
    speech-gateway-admin keys list
    speech-gateway-admin keys revoke <key_id>
    speech-gateway-admin keys delete <key_id>
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import typer

from src.config import get_settings
from src.errors import GatewayError
from src.gateway import Gateway
from src.keys.models import DEFAULT_RATE_LIMIT, ApiKey, EngineKeyConfig

keys_app = typer.Typer(help="API key management commands")


@contextlib.asynccontextmanager
async def open_gateway() -> AsyncIterator[Gateway]:
    """Gateway for one CLI command; no background tasks are started."""
    settings = get_settings()
    if settings.key_store.backend == "memory":
        typer.echo(
            typer.style(
                "Warning: KEY_STORE_BACKEND=memory, changes are not visible to a running server",
                fg=typer.colors.YELLOW,
            )
        )
    gateway = Gateway(settings)
    try:
        yield gateway
    finally:
        await gateway.close()


async def _create(
    name: str, is_admin: bool, rate_limit: int, expires_in_days: int | None, engines: list[str]
) -> tuple[ApiKey, str]:
    expires_at = datetime.now(UTC) + timedelta(days=expires_in_days) if expires_in_days else None
    engine_config = {engine: EngineKeyConfig(enabled=True) for engine in engines} or None
    key, plaintext = ApiKey.create(
        name, is_admin=is_admin, rate_limit=rate_limit, expires_at=expires_at, engine_config=engine_config
    )
    async with open_gateway() as gateway:
        await gateway.keys.save(key)
    return key, plaintext


async def _list() -> list[ApiKey]:
    async with open_gateway() as gateway:
        return await gateway.keys.find_all()


async def _revoke(key_id: str) -> bool:
    async with open_gateway() as gateway:
        key = await gateway.keys.find_by_id(key_id)
        if key is None:
            return False
        key.active = False
        await gateway.keys.save(key)
        return True


async def _delete(key_id: str) -> bool:
    async with open_gateway() as gateway:
        return await gateway.keys.delete(key_id)


@keys_app.command("create")
def keys_create(
    name: str = typer.Option(..., "--name", help="Human-readable key name"),
    admin: bool = typer.Option(False, "--admin", help="Grant administrative access"),
    rate_limit: int = typer.Option(DEFAULT_RATE_LIMIT, "--rate-limit", help="Requests per window"),
    expires_in_days: int | None = typer.Option(None, "--expires-in-days", help="Expire after N days"),
    engine: list[str] = typer.Option([], "--engine", help="Restrict to these engines (repeatable)"),
) -> None:
    """Create an API key. The plaintext key is shown once."""
    try:
        key, plaintext = asyncio.run(_create(name, admin, rate_limit, expires_in_days, engine))
    except GatewayError as e:
        typer.echo(typer.style(f"Failed to create key: {e.message}", fg=typer.colors.RED))
        raise typer.Exit(code=1) from None

    typer.echo(f"ID:         {key.id}")
    typer.echo(f"Name:       {key.name}")
    typer.echo(f"Admin:      {key.is_admin}")
    typer.echo(f"Rate limit: {key.rate_limit}")
    if key.expires_at is not None:
        typer.echo(f"Expires:    {key.expires_at.isoformat()}")
    typer.echo(typer.style(f"Key:        {plaintext}", fg=typer.colors.GREEN, bold=True))
    typer.echo("Store this key now; it cannot be shown again.")


@keys_app.command("list")
def keys_list() -> None:
    """List API keys (no secrets)."""
    try:
        keys = asyncio.run(_list())
    except GatewayError as e:
        typer.echo(typer.style(f"Failed to list keys: {e.message}", fg=typer.colors.RED))
        raise typer.Exit(code=1) from None

    if not keys:
        typer.echo("No API keys.")
        return

    typer.echo(f"{'ID':<34} {'Name':<24} {'Suffix':<12} {'Admin':<6} {'Active':<7} {'Limit':>6} {'Requests':>9}")
    for key in sorted(keys, key=lambda k: k.created_at):
        status = "yes" if key.is_usable() else "no"
        typer.echo(
            f"{key.id:<34} {key.name[:24]:<24} {'...' + key.key_suffix:<12} "
            f"{'yes' if key.is_admin else 'no':<6} {status:<7} {key.rate_limit:>6} {key.request_count:>9}"
        )


@keys_app.command("revoke")
def keys_revoke(key_id: str = typer.Argument(..., help="Key ID")) -> None:
    """Deactivate a key without deleting it."""
    if not asyncio.run(_revoke(key_id)):
        typer.echo(typer.style(f"Key not found: {key_id}", fg=typer.colors.RED))
        raise typer.Exit(code=1)
    typer.echo(f"Key {key_id} revoked.")


@keys_app.command("delete")
def keys_delete(
    key_id: str = typer.Argument(..., help="Key ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a key permanently."""
    if not yes:
        typer.confirm(f"Delete key {key_id}?", abort=True)
    if not asyncio.run(_delete(key_id)):
        typer.echo(typer.style(f"Key not found: {key_id}", fg=typer.colors.RED))
        raise typer.Exit(code=1)
    typer.echo(f"Key {key_id} deleted.")
