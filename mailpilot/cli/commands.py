"""CLI command implementations; all mailbox work goes through the Assistant."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from mailpilot.app import Assistant
from mailpilot.config import Settings
from mailpilot.errors import MailPilotError
from mailpilot.llm.registry import ModelRegistry
from mailpilot.providers.types import Account, Credential, ProviderType
from mailpilot.storage.db import AssistantDatabase

logger = logging.getLogger(__name__)
console = Console(width=200)

T = TypeVar("T")

_EXIT_WORDS = {"exit", "quit", "bye"}


def _run(settings: Settings, work: Callable[[Assistant], Awaitable[T]]) -> T:
    """Open an Assistant, run one coroutine against it, and report errors in red."""

    async def _main() -> T:
        async with Assistant.open(settings) as assistant:
            return await work(assistant)

    try:
        return asyncio.run(_main())
    except MailPilotError as exc:
        console.print(f"[red]{exc.kind}: {exc.message}[/red]")
        raise click.exceptions.Exit(1) from exc


# ── mailpilot chat ─────────────────────────────────────────────────────────────


@click.command()
@click.argument("user_id")
@click.option("-m", "--message", help="Send one message and exit instead of starting a session.")
@click.option("--model", "model_id", help="Primary model id (defaults to the registry default).")
@click.pass_obj
def chat(settings: Settings, user_id: str, message: str | None, model_id: str | None) -> None:
    """Talk to the assistant about USER_ID's mailbox."""

    async def _session(assistant: Assistant) -> None:
        orchestrator = assistant.orchestrator
        if message is not None:
            reply = await orchestrator.chat(user_id, message, model_id=model_id)
            _print_reply(reply.text, reply.model_used, reply.used_fallback)
            return

        console.print("[dim]Type 'exit' to leave.[/dim]")
        with console.status("Looking through your mailbox..."):
            summary = await orchestrator.mailbox_summary(user_id)
        console.print(
            f"[bold]{summary.total}[/bold] emails this week, "
            f"[bold]{summary.unread}[/bold] unread, "
            f"[bold]{summary.important_count}[/bold] important."
        )
        while True:
            text = (await asyncio.to_thread(click.prompt, "you", prompt_suffix="> ")).strip()
            if text.lower() in _EXIT_WORDS:
                return
            if not text:
                continue
            reply = await orchestrator.chat(user_id, text, mailbox_summary=summary, model_id=model_id)
            _print_reply(reply.text, reply.model_used, reply.used_fallback)

    _run(settings, _session)


def _print_reply(text: str, model_used: str | None, used_fallback: bool) -> None:
    console.print(Markdown(text))
    if model_used:
        style = "yellow" if used_fallback else "dim"
        console.print(f"[{style}]({model_used})[/{style}]")


# ── mailpilot important ────────────────────────────────────────────────────────


@click.command()
@click.argument("user_id")
@click.option("-k", "--keyword", "keywords", multiple=True, help="Extra importance keyword (repeatable).")
@click.option(
    "--range",
    "time_range",
    type=click.Choice(["daily", "weekly", "monthly"]),
    default="weekly",
    show_default=True,
)
@click.pass_obj
def important(settings: Settings, user_id: str, keywords: tuple[str, ...], time_range: str) -> None:
    """List USER_ID's important emails, highest score first."""
    result = _run(
        settings,
        lambda assistant: assistant.orchestrator.fetch_important(user_id, list(keywords), time_range),
    )
    if not result.messages:
        console.print("[yellow]No important emails in that window.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim", width=3)
    table.add_column("Score", width=6)
    table.add_column("From", max_width=30)
    table.add_column("Subject", max_width=50)
    table.add_column("Date", width=12)
    table.add_column("Model", style="dim")

    for i, scored in enumerate(result.messages, start=1):
        m = scored.message
        style = "red" if scored.score >= 80 else "yellow"
        table.add_row(
            str(i),
            f"[{style}]{scored.score}[/{style}]",
            m.sender,
            m.subject,
            m.date.strftime("%Y-%m-%d") if m.date else "",
            scored.model_used or "",
        )
    console.print(table)


# ── mailpilot tool ─────────────────────────────────────────────────────────────


def _parse_params(pairs: tuple[str, ...]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--param")
        params[key] = value
    return params


@click.command()
@click.argument("user_id")
@click.argument("name")
@click.option("-p", "--param", "pairs", multiple=True, help="Tool parameter as key=value (repeatable).")
@click.option("--json", "as_json", is_flag=True, help="Print the structured result instead of text.")
@click.pass_obj
def tool(settings: Settings, user_id: str, name: str, pairs: tuple[str, ...], as_json: bool) -> None:
    """Run the mailbox tool NAME directly for USER_ID."""
    params = _parse_params(pairs)
    result = _run(settings, lambda assistant: assistant.orchestrator.call_tool(user_id, name, params))
    if as_json:
        console.print_json(json.dumps(result.data, default=str))
    else:
        console.print(Markdown(result.text))


# ── mailpilot models ───────────────────────────────────────────────────────────


@click.command()
@click.pass_obj
def models(settings: Settings) -> None:
    """List the models the assistant can use."""
    registry = ModelRegistry.load(settings.models_file)
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Backend", width=10)
    table.add_column("Context", justify="right")
    table.add_column("Default", width=7)
    for model in registry.list():
        table.add_row(
            model.id,
            model.name,
            model.backend.value,
            f"{model.context_window:,}",
            "[green]yes[/green]" if model.is_default else "",
        )
    console.print(table)


# ── mailpilot add-account ──────────────────────────────────────────────────────


@click.command("add-account")
@click.argument("user_id")
@click.option("--email", required=True)
@click.option("--provider", type=click.Choice([p.value for p in ProviderType]), required=True)
@click.option("--refresh-token", required=True, help="OAuth refresh token from the consent flow.")
@click.option("--access-token", default=None, help="Current access token, if you have one.")
@click.option("--name", default="", help="Display name used in replies.")
@click.option("-k", "--keyword", "keywords", multiple=True, help="Standing importance keyword (repeatable).")
@click.pass_obj
def add_account(
    settings: Settings,
    user_id: str,
    email: str,
    provider: str,
    refresh_token: str,
    access_token: str | None,
    name: str,
    keywords: tuple[str, ...],
) -> None:
    """Register or replace USER_ID's connected mailbox."""
    db = AssistantDatabase(settings.db_path)
    try:
        db.upsert_account(
            Account(
                user_id=user_id,
                email=email,
                provider=ProviderType(provider),
                credential=Credential(access_token=access_token, refresh_token=refresh_token),
                name=name,
                important_keywords=keywords,
            )
        )
    finally:
        db.close()
    console.print(f"[green]Saved[/green] {provider} account [bold]{email}[/bold] for {user_id}.")


# ── mailpilot serve-mcp ────────────────────────────────────────────────────────


@click.command("serve-mcp")
@click.pass_obj
def serve_mcp(settings: Settings) -> None:
    """Expose the assistant as an MCP server over stdio."""
    from mailpilot.mcp.server import build_server

    async def _serve(assistant: Assistant) -> None:
        await build_server(assistant).run_stdio_async()

    _run(settings, _serve)
