"""Notion database setup commands for linkctl."""

import click
from rich.console import Console

from backend.app.config import load_settings
from backend.app.repositories.link_repository import LinkStoreError
from backend.app.repositories.notion_link_repository import (
    DEFAULT_DATABASE_TITLE,
    NotionLinkRepository,
)

console = Console()


def _repository(database_id: str | None = None) -> NotionLinkRepository:
    settings = load_settings(validate_secrets=False)
    if settings.notion_api_key is None:
        raise click.ClickException("LINK_SAVER_NOTION_API_KEY is not set.")
    return NotionLinkRepository(
        api_key=settings.notion_api_key,
        database_id=database_id or settings.notion_database_id,
        base_url=settings.notion_base_url,
        notion_version=settings.notion_version,
        http_timeout_seconds=settings.http_timeout_seconds,
    )


@click.group()
def notion():
    """Create or repair the Notion links database."""


@notion.command()
@click.argument("parent_page_id")
@click.option("--title", default=DEFAULT_DATABASE_TITLE, show_default=True)
def init(parent_page_id: str, title: str):
    """Create the links database under PARENT_PAGE_ID."""
    repository = _repository()
    console.print(f"Creating database under page [cyan]{parent_page_id}[/cyan]...")
    try:
        database_id = repository.create_database(parent_page_id, title)
    except LinkStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print("[green]Database created.[/green]")
    console.print(f"Set LINK_SAVER_NOTION_DATABASE_ID={database_id}")


@notion.command()
@click.option("--database-id", default=None, help="Defaults to LINK_SAVER_NOTION_DATABASE_ID.")
def setup(database_id: str | None):
    """Add missing link properties to an existing database."""
    repository = _repository(database_id)
    try:
        repository.ensure_schema()
    except LinkStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print("[green]Database schema is up to date.[/green]")
