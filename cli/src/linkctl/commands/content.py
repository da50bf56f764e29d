"""Markdown conversion commands for linkctl."""

import json

import click
from rich.console import Console

from backend.app.config import load_settings
from backend.app.services.content_fetcher import ContentFetchError, JinaReaderClient
from backend.app.services.rich_nodes import (
    drop_duplicate_title_heading,
    markdown_to_nodes,
    nodes_to_json,
)

console = Console(stderr=True)


def _dump(nodes, pretty: bool) -> str:
    if pretty:
        return json.dumps(nodes_to_json(nodes), ensure_ascii=False, indent=2)
    return json.dumps(nodes_to_json(nodes), ensure_ascii=False)


@click.command()
@click.argument("source", type=click.File("r", encoding="utf-8"))
@click.option("--title", default=None, help="Page title; a leading heading repeating it is dropped.")
@click.option("--pretty", is_flag=True, help="Indent the JSON output.")
def convert(source, title: str | None, pretty: bool):
    """Convert a Markdown file (or - for stdin) to Telegra.ph node JSON."""
    nodes = markdown_to_nodes(source.read())
    if title:
        nodes = drop_duplicate_title_heading(title, nodes)
    click.echo(_dump(nodes, pretty))


@click.command()
@click.argument("url")
@click.option("--pretty", is_flag=True, help="Indent the JSON output.")
def fetch(url: str, pretty: bool):
    """Fetch a page through Jina Reader and print its converted nodes."""
    settings = load_settings(validate_secrets=False)
    client = JinaReaderClient(
        base_url=settings.jina_base_url,
        api_key=settings.jina_api_key,
        http_timeout_seconds=settings.http_timeout_seconds,
    )
    try:
        content = client.fetch(url)
    except ContentFetchError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(f"[bold]{content.title}[/bold] [dim]({len(content.markdown)} chars)[/dim]")
    nodes = drop_duplicate_title_heading(content.title, markdown_to_nodes(content.markdown))
    click.echo(_dump(nodes, pretty))
