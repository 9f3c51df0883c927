"""
Chunk sources — producers of the chunk stream for one completion request.

Each source implements the ``ChunkSource`` protocol: called with a
``CompletionRequest`` and a per-request ``CancellationToken`` it returns a lazy,
single-consumer async iterator of ``Chunk`` objects that ends with
``block.complete`` or ``error``. Cancellation is cooperative: a source observes
its token and finishes with ``error(is_cancellation=True)`` instead of stopping
silently.

Includes a scripted source (fixed chunk lists, JSON Lines scripts) and an adapter
for Apple Foundation Models streaming sessions.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol, Union, runtime_checkable

from .chunks import Chunk
from .config import AssemblerSettings
from .exceptions import (
    AskInFlightError,
    ChunkFormatError,
    ensure_model_available,
    require_apple_fm,
)
from .models import Assistant, BlockType, Message, MessageBlock, MessageRole

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

logger = logging.getLogger("quickchat")

_WORKER_JOIN_TIMEOUT_SECONDS = 0.4


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """One-shot cancellation signal handed to a chunk source at request start.

    Backed by a ``threading.Event`` so sources that stream on a worker thread can
    observe it without touching the event loop.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Request aborted") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.warning("[QuickChat Source] cancellation callback failed.", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* once on cancellation, or right away if already cancelled."""
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


class AbortRegistry:
    """Maps ask ids to the cancellation token of their in-flight request.

    Callers keep only the ask id; the token itself belongs to the chunk source.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def register(self, ask_id: str) -> CancellationToken:
        if ask_id in self._tokens:
            raise AskInFlightError(ask_id)
        token = CancellationToken()
        self._tokens[ask_id] = token
        return token

    def abort(self, ask_id: str, reason: str = "Request aborted") -> bool:
        token = self._tokens.get(ask_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def release(self, ask_id: str) -> None:
        self._tokens.pop(ask_id, None)

    def is_active(self, ask_id: str) -> bool:
        return ask_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompletionRequest:
    """Everything a source needs for one ask: context window and assistant."""

    ask_id: str
    messages: list[Message]
    assistant: Assistant
    blocks: dict[str, MessageBlock] = field(default_factory=dict)

    def message_text(self, message: Message) -> str:
        parts = [
            self.blocks[block_id].content
            for block_id in message.blocks
            if block_id in self.blocks and self.blocks[block_id].type is BlockType.TEXT
        ]
        return "\n\n".join(part for part in parts if part)


@runtime_checkable
class ChunkSource(Protocol):
    """Common protocol for every chunk producer."""

    def __call__(
        self, request: CompletionRequest, token: CancellationToken
    ) -> AsyncIterator[Chunk]: ...


# ---------------------------------------------------------------------------
# ScriptedChunkSource
# ---------------------------------------------------------------------------


class ScriptedChunkSource:
    """Replays a fixed list of chunks, honouring cancellation between chunks.

    Useful for tests, demos and replaying captured streams.
    """

    def __init__(self, chunks: Iterable[Chunk], delay: float = 0.0) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.chunks = list(chunks)
        self.delay = delay
        self.requests: list[CompletionRequest] = []

    @classmethod
    def from_jsonl(cls, path: Union[str, Path], delay: float = 0.0) -> ScriptedChunkSource:
        """Load a chunk script with one JSON object per line; blank lines are skipped."""
        chunks: list[Chunk] = []
        with open(path, encoding="utf-8") as fh:
            for line_no, raw in enumerate(fh, start=1):
                stripped = raw.strip()
                if not stripped:
                    continue
                try:
                    data = json.loads(stripped)
                except json.JSONDecodeError as exc:
                    raise ChunkFormatError(f"{path}:{line_no}: invalid JSON ({exc.msg})") from exc
                try:
                    chunks.append(Chunk.from_dict(data))
                except ChunkFormatError as exc:
                    raise ChunkFormatError(f"{path}:{line_no}: {exc}") from exc
        return cls(chunks, delay=delay)

    def __call__(
        self, request: CompletionRequest, token: CancellationToken
    ) -> AsyncIterator[Chunk]:
        self.requests.append(request)
        return self._iterate(token)

    async def _iterate(self, token: CancellationToken) -> AsyncIterator[Chunk]:
        for chunk in self.chunks:
            if token.cancelled:
                yield Chunk.failure(token.reason, is_cancellation=True)
                return
            yield chunk
            if chunk.is_terminal:
                return
            await asyncio.sleep(self.delay)
        if token.cancelled:
            yield Chunk.failure(token.reason, is_cancellation=True)

    def __repr__(self) -> str:
        return f"ScriptedChunkSource(chunks={len(self.chunks)}, delay={self.delay})"


# ---------------------------------------------------------------------------
# AppleFMChunkSource
# ---------------------------------------------------------------------------


def build_prompt(request: CompletionRequest) -> str:
    """Flatten the context window into a single prompt for snapshot-only models."""
    if not request.messages:
        return ""
    *history, latest = request.messages
    lines: list[str] = []
    if history:
        lines.append("Conversation so far:")
        for message in history:
            role = "User" if message.role is MessageRole.USER else "Assistant"
            text = request.message_text(message)
            if text:
                lines.append(f"{role}: {text}")
        lines.append("")
        lines.append("User request:")
    lines.append(request.message_text(latest))
    return "\n".join(lines).strip()


class AppleFMChunkSource:
    """Streams an answer from the on-device Apple Foundation Model.

    ``LanguageModelSession.stream_response`` yields cumulative snapshots, so every
    snapshot becomes a ``text.delta`` with ``cumulative=True``. The SDK runs on a
    worker thread with its own event loop and forwards snapshots to the caller's
    loop through a queue.
    """

    def __init__(
        self,
        model: Any = None,
        *,
        settings: AssemblerSettings | None = None,
        session_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self.model = model
        self.settings = settings or AssemblerSettings()
        self._session_factory = session_factory

    def ensure_ready(self) -> None:
        """Fail fast with ``AppleFMSetupError`` when the SDK or model is unusable."""
        if self._session_factory is not None:
            return
        fm = require_apple_fm()
        if self.model is None:
            self.model = fm.SystemLanguageModel()
        ensure_model_available(self.model, context="quickchat")

    def _open_session(self, instructions: str) -> Any:
        if self._session_factory is not None:
            return self._session_factory(instructions)
        fm = require_apple_fm()
        if self.model is None:
            self.model = fm.SystemLanguageModel()
        return fm.LanguageModelSession(model=self.model, instructions=instructions)

    def _instructions(self, assistant: Assistant) -> str:
        if assistant.prompt:
            return f"{self.settings.system_instructions}\n\n{assistant.prompt}"
        return self.settings.system_instructions

    def __call__(
        self, request: CompletionRequest, token: CancellationToken
    ) -> AsyncIterator[Chunk]:
        return self._stream(request, token)

    async def _stream(
        self, request: CompletionRequest, token: CancellationToken
    ) -> AsyncIterator[Chunk]:
        prompt = build_prompt(request)
        instructions = self._instructions(request.assistant)
        loop = asyncio.get_running_loop()
        event_queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        stop_event = threading.Event()
        worker_done = threading.Event()

        def post(kind: str, payload: Any) -> None:
            # The consumer may have finished and its loop closed.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(event_queue.put_nowait, (kind, payload))

        def producer_sync() -> None:
            async def producer() -> None:
                session = self._open_session(instructions)
                async for snapshot in session.stream_response(prompt):
                    if stop_event.is_set() or token.cancelled:
                        return
                    post("chunk", str(snapshot))
                post("done", None)

            try:
                asyncio.run(producer())
            except Exception as exc:
                post("error", exc)
            finally:
                worker_done.set()

        token.add_callback(lambda: post("cancel", None))
        worker = threading.Thread(target=producer_sync, name="quickchat-fm-stream", daemon=True)
        worker.start()

        first_chunk_seen = False
        snapshot = ""
        try:
            while True:
                timeout = (
                    self.settings.idle_timeout
                    if first_chunk_seen
                    else self.settings.first_chunk_timeout
                )
                try:
                    kind, payload = await asyncio.wait_for(event_queue.get(), timeout=timeout)
                except TimeoutError:
                    label = "response stream" if first_chunk_seen else "first response chunk"
                    logger.warning("[QuickChat Source] Timed out waiting for %s.", label)
                    yield Chunk.failure(
                        TimeoutError(f"Timed out waiting for {label} after {timeout:.0f}s.")
                    )
                    return
                if kind == "cancel":
                    yield Chunk.failure(token.reason, is_cancellation=True)
                    return
                if kind == "error":
                    logger.debug("[QuickChat Source] Apple FM stream failed: %s", payload)
                    yield Chunk.failure(payload)
                    return
                if kind == "done":
                    break
                if not first_chunk_seen:
                    first_chunk_seen = True
                    yield Chunk.text_start()
                snapshot = str(payload)
                yield Chunk.text_delta(snapshot, cumulative=True)

            yield Chunk.text_complete(snapshot)
            yield Chunk.block_complete()
        finally:
            stop_event.set()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(worker_done.wait, _WORKER_JOIN_TIMEOUT_SECONDS)

    def __repr__(self) -> str:
        return f"AppleFMChunkSource(model={self.model!r})"
