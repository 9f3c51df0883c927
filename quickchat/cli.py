"""
QuickChat CLI — drive the streaming assembler from a terminal.

Registered as `quickchat` console script via pyproject.toml.
"""

import asyncio
import contextlib
import dataclasses
import logging
import signal
from pathlib import Path

import click

from .composer import Composer, Feature
from .config import AssemblerSettings
from .coordinator import CoordinatorState, RequestCoordinator
from .exceptions import AppleFMSetupError, ChunkFormatError
from .models import BlockType, MessageBlock, MessageRole
from .render import render_transcript
from .sources import AppleFMChunkSource, ScriptedChunkSource
from .store import InMemoryStore

_SENDABLE_FEATURES = [Feature.CHAT.value, Feature.SUMMARY.value, Feature.EXPLANATION.value]

_STATE_COLORS = {
    CoordinatorState.SETTLED_SUCCESS: "green",
    CoordinatorState.SETTLED_PAUSED: "yellow",
    CoordinatorState.SETTLED_ERROR: "red",
}


def _resolve_log_level(level: str) -> int:
    if level.isdigit():
        return int(level)
    resolved = logging.getLevelName(level.upper())
    if isinstance(resolved, int):
        return resolved
    click.secho(f"Unsupported log level '{level}'; falling back to WARNING.", fg="yellow", err=True)
    return logging.WARNING


class _EchoingStore(InMemoryStore):
    """In-memory store that prints answer text as writes land."""

    def __init__(self) -> None:
        super().__init__()
        self._shown: dict[str, str] = {}

    def upsert_block(self, block: MessageBlock) -> None:
        super().upsert_block(block)
        self._echo(block.id)

    def update_block(self, block_id, changes) -> None:
        super().update_block(block_id, changes)
        self._echo(block_id)

    def _echo(self, block_id: str) -> None:
        block = self.get_block(block_id)
        if block is None or block.type is not BlockType.TEXT or not block.content:
            return
        shown = self._shown.get(block_id)
        if shown is None:
            if not self._is_assistant(block):
                return
            shown = ""
        if block.content.startswith(shown):
            click.echo(block.content[len(shown) :], nl=False)
        else:
            click.echo(f"\n{block.content}", nl=False)
        self._shown[block_id] = block.content

    def _is_assistant(self, block: MessageBlock) -> bool:
        for messages in self._messages.values():
            for message in messages:
                if message.id == block.message_id:
                    return message.role is MessageRole.ASSISTANT
        return False


def _pause_after(source, count: int, coordinator: RequestCoordinator):
    """Wrap *source* so the coordinator pauses once *count* chunks were consumed."""

    def wrapped(request, token):
        async def iterate():
            seen = 0
            async for chunk in source(request, token):
                yield chunk
                seen += 1
                if seen == count:
                    coordinator.pause()

        return iterate()

    return wrapped


def _report(coordinator: RequestCoordinator) -> None:
    state = coordinator.state
    click.secho(f"state: {state.value}", fg=_STATE_COLORS.get(state), err=True)
    if coordinator.error:
        click.secho(f"error: {coordinator.error}", fg="red", err=True)


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="quickchat")
@click.option(
    "--log-level",
    default="warning",
    show_default=True,
    help="Logging level name or number (debug, info, warning, error).",
)
def cli(log_level: str) -> None:
    """QuickChat — streaming response assembler for the quick assistant."""
    logging.basicConfig(
        level=_resolve_log_level(log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Replay ────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--text", default="Hello", show_default=True, help="Typed user input.")
@click.option("--reference", default="", help="Reference (clipboard) text for the first turn.")
@click.option(
    "--feature",
    type=click.Choice(_SENDABLE_FEATURES),
    default=Feature.CHAT.value,
    show_default=True,
    help="Feature route; summary and explanation add their prompt prefix.",
)
@click.option("--delay", type=float, default=0.0, show_default=True, help="Seconds between chunks.")
@click.option("--pause-after", type=int, default=None, help="Pause after N chunks were consumed.")
@click.option("--throttle-ms", type=float, default=None, help="Override the store write throttle.")
def replay(
    script: Path,
    text: str,
    reference: str,
    feature: str,
    delay: float,
    pause_after: int | None,
    throttle_ms: float | None,
) -> None:
    """Replay a JSON Lines chunk script through the assembler and print the transcript.

    \b
    Each line is one chunk, e.g.:
        {"type": "text.start"}
        {"type": "text.delta", "text": "Hi"}
        {"type": "text.complete", "text": "Hi"}
        {"type": "block.complete"}
    """
    settings = AssemblerSettings.from_env()
    if throttle_ms is not None:
        settings = dataclasses.replace(settings, throttle_interval=throttle_ms / 1000.0)

    source = ScriptedChunkSource.from_jsonl(script, delay=delay)
    store = InMemoryStore()
    coordinator = RequestCoordinator(
        store, source, composer=Composer(clipboard_text=reference), settings=settings
    )
    if pause_after is not None:
        coordinator.source = _pause_after(source, pause_after, coordinator)

    asyncio.run(coordinator.ask(Feature(feature), text=text))

    topic = coordinator.topic
    if topic is not None:
        click.echo(render_transcript(store, topic.id))
    _report(coordinator)


# ── Ask (Apple Foundation Models) ─────────────────────────────────────────────


@cli.command()
@click.argument("text")
@click.option("--reference", default="", help="Reference (clipboard) text for the first turn.")
@click.option(
    "--feature",
    type=click.Choice(_SENDABLE_FEATURES),
    default=Feature.CHAT.value,
    show_default=True,
)
def ask(text: str, reference: str, feature: str) -> None:
    """Ask the on-device Apple Foundation Model, streaming the answer. Ctrl-C pauses."""
    settings = AssemblerSettings.from_env()
    source = AppleFMChunkSource(settings=settings)
    source.ensure_ready()

    store = _EchoingStore()
    coordinator = RequestCoordinator(
        store, source, composer=Composer(clipboard_text=reference), settings=settings
    )

    async def run() -> None:
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, coordinator.pause)
        try:
            await coordinator.ask(Feature(feature), text=text)
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)

    asyncio.run(run())
    click.echo()
    _report(coordinator)
    if coordinator.state is CoordinatorState.SETTLED_ERROR:
        raise SystemExit(1)


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except AppleFMSetupError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc
    except ChunkFormatError as exc:
        click.secho(f"Invalid chunk script: {exc}", fg="red", err=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    cli_entry()
