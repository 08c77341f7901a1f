"""CLI entry point for the mailpilot assistant."""

import logging

import click
from dotenv import load_dotenv

from mailpilot.config import Settings

logger = logging.getLogger(__name__)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log at INFO level.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """AI email assistant: chat with your mailbox, rank important mail, run tools."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    ctx.obj = Settings.from_env()


# Import and register commands after cli is defined to avoid circular imports.
from mailpilot.cli.commands import add_account, chat, important, models, serve_mcp, tool  # noqa: E402

cli.add_command(add_account)
cli.add_command(chat)
cli.add_command(important)
cli.add_command(models)
cli.add_command(serve_mcp)
cli.add_command(tool)
