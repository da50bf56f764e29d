"""Telegram bot commands for linkctl."""

import click
from rich.console import Console

from backend.app.config import load_settings
from backend.app.services.telegram_service import TelegramApiError, TelegramBotClient

console = Console()


@click.group()
def telegram():
    """Configure the Telegram bot."""


@telegram.command(name="set-webhook")
@click.argument("url")
def set_webhook(url: str):
    """Point the bot webhook at URL (the service's /webhook/telegram)."""
    settings = load_settings(validate_secrets=False)
    if settings.telegram_bot_token is None:
        raise click.ClickException("LINK_SAVER_TELEGRAM_BOT_TOKEN is not set.")
    client = TelegramBotClient(
        bot_token=settings.telegram_bot_token,
        base_url=settings.telegram_base_url,
        http_timeout_seconds=settings.http_timeout_seconds,
    )
    try:
        accepted = client.set_webhook(url=url, secret_token=settings.telegram_webhook_secret)
    except TelegramApiError as exc:
        raise click.ClickException(str(exc)) from exc

    if not accepted:
        raise click.ClickException("Telegram did not accept the webhook.")
    secret_note = "with secret token" if settings.telegram_webhook_secret else "without secret token"
    console.print(f"[green]Webhook set[/green] to {url} ({secret_note}).")
