"""Command-line interface for the chatsync client."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

import click

from chatsync.cache.messages import MessageCache
from chatsync.cache.participants import ParticipantCache
from chatsync.cache.persistence import JsonFilePersistence
from chatsync.config.loader import apply_env_overrides, load_config, merge_configs
from chatsync.config.schema import ChatSyncConfig
from chatsync.entities.message import Message, MessageStatus
from chatsync.runtime import build_runtime

logger = logging.getLogger(__name__)


@click.group()
@click.option("--log-level", default="INFO", help="Logging level.")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to client config YAML.",
)
@click.option("--api-base", default=None, help="Override the chat API base URL.")
@click.option("--verbose", is_flag=True, help="Enable verbose output.")
@click.pass_context
def cli(
    ctx: click.Context,
    log_level: str,
    config_path: str | None,
    api_base: str | None,
    verbose: bool,
) -> None:
    """chatsync -- keep a local copy of a chat in sync with its server."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if verbose:
        logging.getLogger("chatsync").setLevel(logging.DEBUG)

    config = apply_env_overrides(load_config(config_path))
    if api_base is not None:
        config = merge_configs(config, {"server": {"api_base": api_base}})
    ctx.obj = config


# ------------------------------------------------------------------
# chatsync sync
# ------------------------------------------------------------------


@cli.command()
@click.option("--once", is_flag=True, help="Run a single sync and exit.")
@click.option(
    "--duration",
    type=float,
    default=None,
    help="Seconds to keep polling (default: until interrupted).",
)
@click.pass_obj
def sync(config: ChatSyncConfig, once: bool, duration: float | None) -> None:
    """Load the chat and keep it in sync by polling."""
    click.echo(click.style("=== chatsync: Sync ===", fg="cyan", bold=True))
    click.echo(f"  Server: {config.server.api_base}")
    click.echo(f"  Interval: {config.polling.poll_interval:.1f}s")
    click.echo()

    async def _run() -> dict[str, Any]:
        runtime = build_runtime(config)
        try:
            await runtime.start(poll=not once)
            if not once:
                if duration is None:
                    await asyncio.Event().wait()
                else:
                    await asyncio.sleep(duration)
            return runtime.controller.status()
        finally:
            await runtime.close()

    try:
        status = asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Interrupted.")
        return

    _echo_status(status)


# ------------------------------------------------------------------
# chatsync send
# ------------------------------------------------------------------


@cli.command()
@click.argument("text")
@click.pass_obj
def send(config: ChatSyncConfig, text: str) -> None:
    """Send TEXT as the local user."""

    async def _run() -> tuple[Message | None, str | None]:
        runtime = build_runtime(config)
        try:
            await runtime.start(poll=False)
            message = await runtime.controller.send_message(text)
            return message, runtime.controller.last_error
        finally:
            await runtime.close()

    message, error = asyncio.run(_run())
    if message is None:
        raise click.ClickException("Message text is required.")
    if message.status is MessageStatus.FAILED:
        raise click.ClickException(error or "Failed to send message.")
    click.echo(f"Sent {click.style(message.id, fg='yellow')}")


# ------------------------------------------------------------------
# chatsync react
# ------------------------------------------------------------------


@cli.command()
@click.argument("message_id")
@click.argument("emoji")
@click.pass_obj
def react(config: ChatSyncConfig, message_id: str, emoji: str) -> None:
    """Toggle the local user's EMOJI reaction on MESSAGE_ID."""

    async def _run() -> Message | None:
        runtime = build_runtime(config)
        try:
            await runtime.start(poll=False)
            if not await runtime.controller.toggle_reaction(message_id, emoji):
                return None
            return runtime.messages.get(message_id)
        finally:
            await runtime.close()

    message = asyncio.run(_run())
    if message is None:
        raise click.ClickException(f"Unknown message {message_id}")
    click.echo(_format_reactions(message) or "(no reactions)")


# ------------------------------------------------------------------
# chatsync show
# ------------------------------------------------------------------


@cli.command()
@click.option("--limit", type=int, default=20, help="Number of messages to show.")
@click.pass_obj
def show(config: ChatSyncConfig, limit: int) -> None:
    """Print the locally cached conversation without touching the network."""
    if not config.persistence.enabled:
        raise click.ClickException("Persistence is disabled; nothing is cached.")
    storage = JsonFilePersistence(config.persistence.directory)
    namespace = config.persistence.namespace
    messages = MessageCache(persistence=storage, namespace=namespace)
    participants = ParticipantCache(persistence=storage, namespace=namespace)
    participants.load()
    messages.load()
    _print_messages(messages, participants, limit)


# ------------------------------------------------------------------
# chatsync info
# ------------------------------------------------------------------


@cli.command()
@click.pass_obj
def info(config: ChatSyncConfig) -> None:
    """Print the server's session info."""
    from chatsync.errors import ChatSyncError
    from chatsync.sync.client import ChatApiClient

    async def _run() -> dict[str, Any]:
        client = ChatApiClient(config.server)
        try:
            return await client.get_info()
        finally:
            await client.close()

    try:
        data = asyncio.run(_run())
    except ChatSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(data, indent=2))


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _echo_status(status: dict[str, Any]) -> None:
    click.echo(click.style("=== Status ===", fg="green", bold=True))
    connection = status["connection"]
    colour = "green" if connection == "connected" else "red"
    click.echo(f"  Connection: {click.style(connection, fg=colour)}")
    click.echo(f"  Messages: {status['messages']}")
    click.echo(f"  Participants: {status['participants']}")
    click.echo(f"  Cursor: {_format_time(status['last_sync_cursor'])}")
    if status["last_error"]:
        click.echo(f"  Error: {click.style(status['last_error'], fg='red')}")


def _print_messages(cache: MessageCache, participants: ParticipantCache, limit: int) -> None:
    messages = cache.messages[:limit]
    if not messages:
        click.echo("No cached messages.")
        return
    # Cache order is newest first; print oldest first like a transcript.
    for message in reversed(messages):
        author = participants.get_display_name(message.author_id)
        marker = ""
        if message.status is MessageStatus.FAILED:
            marker = click.style(" [failed]", fg="red")
        elif message.is_edited:
            marker = " (edited)"
        click.echo(
            f"{_format_time(message.created_at)} "
            f"{click.style(author, fg='cyan')}: {message.text}{marker}"
        )
        reactions = _format_reactions(message)
        if reactions:
            click.echo(f"    {reactions}")


def _format_reactions(message: Message) -> str:
    return "  ".join(f"{emoji} {tally.count}" for emoji, tally in message.tally.items())


def _format_time(epoch_ms: int | None) -> str:
    if not epoch_ms:
        return "-"
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
