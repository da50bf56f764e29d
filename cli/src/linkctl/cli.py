"""Main CLI entry point for Link Saver administration."""

import click

from backend.app.logging_config import configure_cli_logging

from .commands import content, notion, telegram, telegraph


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr.")
def main(verbose: bool):
    """linkctl - Link Saver conversion and setup commands."""
    configure_cli_logging(level="INFO" if verbose else "WARNING")


# Content commands
main.add_command(content.convert)
main.add_command(content.fetch)

# Service setup commands
main.add_command(notion.notion)
main.add_command(telegraph.telegraph)
main.add_command(telegram.telegram)


if __name__ == "__main__":
    main()
