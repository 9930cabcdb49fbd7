"""Speech Gateway admin CLI: main entry point.

Usage:
    speech-gateway-admin version
    speech-gateway-admin config check
    speech-gateway-admin config show
    speech-gateway-admin keys ...
    speech-gateway-admin usage ...
"""

from __future__ import annotations

import re

import typer
from pydantic import BaseModel

from src.cli.keys import keys_app
from src.cli.usage import usage_app
from src.config import Settings, get_settings

app = typer.Typer(
    name="speech-gateway-admin",
    help="Speech Gateway administration CLI",
    no_args_is_help=True,
)

config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")
app.add_typer(keys_app, name="keys")
app.add_typer(usage_app, name="usage")

_VERSION = "0.1.0"

# Pattern for masking secrets: keep first 6 chars, mask the rest
_SECRET_FIELDS = {
    "admin_api_key",
    "azure_speech_key",
    "elevenlabs_api_key",
    "openai_api_key",
    "google_api_key",
    "google_application_credentials_json",
}
_URL_PASSWORD = re.compile(r"(://[^:/@]+:)[^@]+@")


def _mask_secret(value: str, visible_chars: int = 6) -> str:
    """Mask a secret value, keeping first few characters visible."""
    if len(value) <= visible_chars:
        return "***"
    return value[:visible_chars] + "***"


def _collect_config_display(settings: Settings) -> list[tuple[str, str, str]]:
    """Collect (section, key, display_value) tuples from settings."""
    rows: list[tuple[str, str, str]] = []

    for section, field_value in settings:
        if not isinstance(field_value, BaseModel):
            rows.append(("root", section, str(field_value)))
            continue

        for sub_name, sub_value in field_value:
            display = str(sub_value)
            if sub_name in _SECRET_FIELDS and display:
                display = _mask_secret(display)
            elif sub_name == "url":
                display = _URL_PASSWORD.sub(r"\1***@", display)
            rows.append((section, sub_name, display))

    return rows


@app.command()
def version() -> None:
    """Show application version."""
    typer.echo(f"Speech Gateway v{_VERSION}")


@config_app.command("check")
def config_check() -> None:
    """Validate configuration and show status of each parameter."""
    settings = get_settings()
    result = settings.validate_required()

    if result.ok:
        typer.echo(typer.style("✅ All configuration checks passed", fg=typer.colors.GREEN))
    else:
        for err in result.errors:
            hint = f"  Hint: {err.hint}" if err.hint else ""
            typer.echo(
                typer.style(f"❌ {err.field}: {err.message}.{hint}", fg=typer.colors.RED)
            )
        typer.echo(f"\n{len(result.errors)} error(s) found.")
        raise typer.Exit(code=1)


@config_app.command("show")
def config_show() -> None:
    """Show current configuration (secrets are masked)."""
    settings = get_settings()
    rows = _collect_config_display(settings)

    current_section = ""
    for section, key, value in rows:
        if section != current_section:
            if current_section:
                typer.echo("")
            typer.echo(typer.style(f"[{section}]", fg=typer.colors.CYAN, bold=True))
            current_section = section
        typer.echo(f"  {key} = {value}")


if __name__ == "__main__":
    app()
