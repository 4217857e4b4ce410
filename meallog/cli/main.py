"""meallog CLI: console runner for the meal logging agent.

Usage:
    meallog chat --chat-id me      Chat with the agent in the terminal
    meallog aliases --user me      List a user's stored food aliases
    meallog config-show            Print the effective configuration

In the chat REPL a line beginning with ``!photo `` is handed to the
agent as the text extracted from a meal photo.
"""

import asyncio
import logging
import re
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from meallog.cli.config import MeallogConfig, load_config
from meallog.db.connection import create_db_engine, init_db, make_session_factory
from meallog.orchestrator.nl_engine import MealInterpreter
from meallog.orchestrator.state_machine import ConversationStateMachine
from meallog.services.catalog_client import CatalogClient
from meallog.services.memory_service import (
    NullMemoryService,
    SqlUserMemoryService,
    UserMemoryService,
)
from meallog.services.session_log_service import SessionLogService
from meallog.services.session_registry import SessionRegistry

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="meallog",
    help="Conversational meal logging against a nutrition catalog",
    no_args_is_help=True,
)

console = Console()

PHOTO_PREFIX = "!photo "
_TAGS = re.compile(r"</?(b|i|pre)>")

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to meallog.yaml config file"
    ),
):
    """meallog: log meals by chatting."""
    global _config_path
    _config_path = config


def _load() -> MeallogConfig:
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    logging.basicConfig(
        level=cfg.logging.level,
        format="%(levelname)s:%(name)s:%(message)s",
    )
    return cfg


def _build_memory(cfg: MeallogConfig) -> tuple[UserMemoryService, SessionLogService]:
    """Open the database and build the memory store and session log."""
    engine = create_db_engine(cfg.memory.database_url)
    init_db(engine)
    factory = make_session_factory(engine)
    memory: UserMemoryService = (
        SqlUserMemoryService(factory) if cfg.memory.enabled else NullMemoryService()
    )
    return memory, SessionLogService(factory)


def _render(reply: str) -> str:
    """Strip the chat markup the console cannot show."""
    return _TAGS.sub("", reply)


async def _run_chat(cfg: MeallogConfig, chat_id: str) -> None:
    memory, session_log = _build_memory(cfg)
    interpreter = MealInterpreter(
        model=cfg.interpreter.model, max_tokens=cfg.interpreter.max_tokens
    )
    async with CatalogClient(
        base_url=cfg.catalog.base_url, timeout=cfg.catalog.timeout_seconds
    ) as catalog:
        machine = ConversationStateMachine(
            SessionRegistry(),
            catalog,
            interpreter,
            memory=memory,
            session_log=session_log,
            settings=cfg.resolution,
            inactivity_window=timedelta(minutes=cfg.session.inactivity_minutes),
        )
        restored = machine.restore_sessions()

        console.print()
        console.print("[bold]meallog[/bold] interactive mode")
        if restored:
            console.print(f"[dim]Restored {restored} saved login(s).[/dim]")
        console.print("Start with /login <email> <password>, then /start. Ctrl+D to exit.")
        console.print()

        while True:
            try:
                user_input = console.input("[bold green]> [/bold green]")
            except EOFError:
                break
            if not user_input.strip():
                continue

            try:
                if user_input.startswith(PHOTO_PREFIX):
                    replies = await machine.handle_photo_text(
                        chat_id, user_input[len(PHOTO_PREFIX):]
                    )
                else:
                    replies = await machine.handle_message(chat_id, user_input)
            except KeyboardInterrupt:
                console.print("\n[yellow]Interrupted[/yellow]")
                continue

            for reply in replies:
                console.print(_render(reply), markup=False)
                console.print()

    console.print("\n[dim]Session ended.[/dim]")


@app.command()
def chat(
    chat_id: str = typer.Option("console", "--chat-id", help="Chat identity"),
):
    """Chat with the meal logging agent."""
    cfg = _load()
    asyncio.run(_run_chat(cfg, chat_id))


@app.command()
def aliases(
    user: str = typer.Option(..., "--user", help="User (chat) identity"),
):
    """List stored food aliases for a user."""
    cfg = _load()
    if not cfg.memory.enabled:
        console.print("[yellow]Memory is disabled in configuration.[/yellow]")
        raise typer.Exit(1)
    memory, _ = _build_memory(cfg)
    records = memory.list_aliases(user)
    if not records:
        console.print(f"[dim]No aliases stored for {user}.[/dim]")
        return

    table = Table(title=f"Aliases for {user}")
    table.add_column("Term", style="bold")
    table.add_column("Food")
    table.add_column("Food ID", justify="right")
    table.add_column("Source")
    table.add_column("Uses", justify="right")
    table.add_column("Manual")
    for record in records:
        table.add_row(
            record.input_term,
            record.resolved_food_name,
            str(record.resolved_food_id),
            record.source_tab or "-",
            str(record.use_count),
            "yes" if record.is_manual else "no",
        )
    console.print(table)


@app.command("config-show")
def config_show():
    """Display the effective configuration."""
    cfg = _load()

    console.print("[bold]Catalog:[/bold]")
    console.print(f"  base_url: {cfg.catalog.base_url}")
    console.print(f"  timeout_seconds: {cfg.catalog.timeout_seconds}")

    console.print("\n[bold]Resolution:[/bold]")
    for tab, priority in cfg.resolution.partition_priorities.items():
        console.print(f"  {tab}: {priority}")
    console.print(f"  top_n_per_partition: {cfg.resolution.top_n_per_partition}")
    console.print(f"  acceptance_threshold: {cfg.resolution.acceptance_threshold}")

    console.print("\n[bold]Session:[/bold]")
    console.print(f"  inactivity_minutes: {cfg.session.inactivity_minutes}")

    console.print("\n[bold]Memory:[/bold]")
    console.print(f"  enabled: {cfg.memory.enabled}")
    console.print(f"  database_url: {cfg.memory.database_url or '(environment default)'}")

    console.print("\n[bold]Interpreter:[/bold]")
    console.print(f"  model: {cfg.interpreter.model or '(ANTHROPIC_MODEL or default)'}")
    console.print(f"  max_tokens: {cfg.interpreter.max_tokens}")

    console.print(f"\n[bold]Logging:[/bold] {cfg.logging.level}")


if __name__ == "__main__":
    app()
