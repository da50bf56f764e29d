"""Telegra.ph account commands for linkctl."""

import click
from rich.console import Console

from backend.app.config import load_settings
from backend.app.services.telegraph_service import TelegraphApiError, TelegraphService

console = Console()


@click.group()
def telegraph():
    """Manage the Telegra.ph account used for archives."""


@telegraph.command()
def account():
    """Create a Telegra.ph account and print its access token."""
    settings = load_settings(validate_secrets=False)
    service = TelegraphService(
        access_token=None,
        base_url=settings.telegraph_base_url,
        short_name=settings.telegraph_short_name,
        author_name=settings.telegraph_author_name,
        http_timeout_seconds=settings.http_timeout_seconds,
    )
    try:
        token = service.create_account()
    except TelegraphApiError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(f"Set LINK_SAVER_TELEGRAPH_ACCESS_TOKEN={token}")
