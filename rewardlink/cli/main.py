"""RewardLink CLI: run the bot and operate its state.

Usage:
    rewardlink run                     Start the Discord bot and webhook API
    rewardlink db init                 Create database tables
    rewardlink connections list        List interactive posts
    rewardlink reconcile once          Run one reconciler sweep
    rewardlink community link G C      Link guild G to community C
    rewardlink config show             Show resolved config (secrets masked)
"""

import asyncio
import logging
from typing import Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console

from rewardlink.cli.config import RewardLinkConfig, load_config
from rewardlink.cli.logging_setup import configure_logging
from rewardlink.cli.output import format_connection_table, format_sweep_report
from rewardlink.cli.runtime import build_runtime, build_storage
from rewardlink.db.models import ConnectionState
from rewardlink.utils.redaction import redact_for_logging

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="rewardlink",
    help="Interactive task and allowlist posts for Discord",
    no_args_is_help=True,
)
db_app = typer.Typer(help="Database management")
connections_app = typer.Typer(help="Inspect interactive posts")
reconcile_app = typer.Typer(help="Reconciler operations")
community_app = typer.Typer(help="Guild to community links")
config_app = typer.Typer(help="Configuration management")

app.add_typer(db_app, name="db")
app.add_typer(connections_app, name="connections")
app.add_typer(reconcile_app, name="reconcile")
app.add_typer(community_app, name="community")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to rewardlink.yaml config file"
    ),
):
    """RewardLink: Discord bot for reward tasks and allowlists."""
    global _config_path
    _config_path = config


def _load() -> RewardLinkConfig:
    """Load config or exit with a readable error."""
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except ValidationError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    configure_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)
    return cfg


@app.command()
def version():
    """Show RewardLink version."""
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as pkg_version

    try:
        v = pkg_version("rewardlink")
    except PackageNotFoundError:
        v = "unknown"
    console.print(f"[bold]RewardLink[/bold] v{v}")


# --- Run ---


@app.command()
def run():
    """Start the Discord bot, background tasks and the webhook API."""
    import uvicorn

    cfg = _load()
    if not cfg.bot.token:
        console.print("[red]bot.token is not configured (REWARDLINK_BOT_TOKEN).[/red]")
        raise typer.Exit(1)

    async def _run():
        runtime = build_runtime(cfg)
        await runtime.storage.init()
        server: uvicorn.Server | None = None
        server_task: asyncio.Task | None = None
        if cfg.api.enabled:
            server = uvicorn.Server(
                uvicorn.Config(
                    runtime.app,
                    host=cfg.api.host,
                    port=cfg.api.port,
                    log_level=cfg.logging.level.lower(),
                    lifespan="off",
                )
            )
            server_task = asyncio.create_task(server.serve())
            _log.info("Webhook API listening on %s:%d", cfg.api.host, cfg.api.port)
        try:
            async with runtime.bot:
                await runtime.bot.start(cfg.bot.token)
        finally:
            if server is not None and server_task is not None:
                server.should_exit = True
                await server_task
            await runtime.aclose()

    console.print("[bold]Starting RewardLink[/bold]")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("Stopped.")


# --- Database ---


@db_app.command("init")
def db_init():
    """Create all tables (safe to re-run)."""
    cfg = _load()

    async def _run():
        storage = build_storage(cfg)
        try:
            await storage.init()
        finally:
            await storage.aclose()

    asyncio.run(_run())
    console.print("[green]Database ready.[/green]")


# --- Connections ---


@connections_app.command("list")
def connections_list(
    state: Optional[str] = typer.Option(
        None, "--state", "-s", help="Filter by state (active, ended, archived)"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List interactive posts."""
    cfg = _load()
    try:
        states = [ConnectionState(state)] if state else list(ConnectionState)
    except ValueError:
        console.print(f"[red]Unknown state:[/red] {state}")
        raise typer.Exit(1)

    async def _run():
        storage = build_storage(cfg)
        try:
            await storage.init()
            rows = await storage.connections.list_by_state(*states)
        finally:
            await storage.aclose()
        console.print(format_connection_table(rows, as_json=json_output))

    asyncio.run(_run())


# --- Reconciler ---


@reconcile_app.command("once")
def reconcile_once():
    """Run one reconciler sweep over every due connection and exit."""
    cfg = _load()
    if not cfg.bot.token:
        console.print("[red]bot.token is required to edit messages.[/red]")
        raise typer.Exit(1)

    async def _run():
        runtime = build_runtime(cfg)
        try:
            await runtime.bot.login(cfg.bot.token)
            report = await runtime.reconciler.sweep()
            await runtime.reconciler.drain()
        finally:
            await runtime.bot.close()
            await runtime.aclose()
        console.print(format_sweep_report(report))

    asyncio.run(_run())


# --- Community links ---


@community_app.command("link")
def community_link(
    guild_id: str = typer.Argument(help="Discord guild id"),
    community_id: str = typer.Argument(help="Backend community id"),
    linked_by: str = typer.Option("cli", "--by", help="Operator recorded on the link"),
):
    """Link a Discord guild to a backend community."""
    cfg = _load()

    async def _run():
        storage = build_storage(cfg)
        try:
            await storage.init()
            await storage.community_links.upsert(guild_id, community_id, linked_by)
        finally:
            await storage.aclose()

    asyncio.run(_run())
    console.print(f"[green]Guild {guild_id} linked to community {community_id}.[/green]")


# --- Config ---


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    cfg = _load()
    dumped = redact_for_logging(cfg.model_dump(mode="json"))
    console.print(yaml.safe_dump(dumped, sort_keys=False), markup=False, highlight=False)


if __name__ == "__main__":
    app()
