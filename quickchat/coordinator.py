"""
Request coordinator — one conversation's send / pause / reset session.

The coordinator owns the ask identity of the outstanding request, drives the
chunk source, folds every chunk through the block builder and routes the
resulting mutations to the store (content deltas through the update scheduler,
terminal states synchronously). It exposes ``is_loading``, ``is_outputted`` and
``error`` for the UI and notifies subscribers when any of them change.

State machine::

    idle -> awaiting-first-output -> streaming -> settled-(success|paused|error)
                    \\_______________________________/^

A coordinator is created when a conversation view mounts and discarded when it
unmounts; nothing here is module-level state.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from .builder import (
    PAUSED_REASON,
    AssemblyState,
    CreateBlock,
    Mutation,
    SettleBlock,
    SettleMessage,
    UpdateBlock,
    apply_chunk,
    finish_assembly,
    pause_assembly,
)
from .chunks import Chunk, ChunkType
from .composer import FEATURE_PROMPTS, Composer, Feature
from .config import AssemblerSettings
from .exceptions import GenerationError
from .models import (
    Assistant,
    Message,
    MessageBlock,
    MessageStatus,
    Topic,
    create_assistant_message,
    create_user_message,
    default_topic,
    messages_for_context,
)
from .scheduler import UpdateScheduler
from .sources import AbortRegistry, ChunkSource, CompletionRequest

if TYPE_CHECKING:
    from .store import ConversationStore

logger = logging.getLogger("quickchat")


class CoordinatorState(str, Enum):
    IDLE = "idle"
    AWAITING_FIRST_OUTPUT = "awaiting-first-output"
    STREAMING = "streaming"
    SETTLED_SUCCESS = "settled-success"
    SETTLED_PAUSED = "settled-paused"
    SETTLED_ERROR = "settled-error"


_SETTLED_STATES = {
    MessageStatus.SUCCESS: CoordinatorState.SETTLED_SUCCESS,
    MessageStatus.PAUSED: CoordinatorState.SETTLED_PAUSED,
    MessageStatus.ERROR: CoordinatorState.SETTLED_ERROR,
}


@dataclass
class _InFlight:
    ask_id: str
    topic_id: str
    assembly: AssemblyState
    scheduler: UpdateScheduler
    settled: bool = False


class RequestCoordinator:
    """Sends user turns for one topic and assembles the streamed answers."""

    def __init__(
        self,
        store: ConversationStore,
        source: ChunkSource,
        assistant: Assistant | None = None,
        *,
        topic: Topic | None = None,
        composer: Composer | None = None,
        aborts: AbortRegistry | None = None,
        settings: AssemblerSettings | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.assistant = assistant or Assistant()
        self.composer = composer or Composer()
        self.settings = settings or AssemblerSettings()
        self._aborts = aborts if aborts is not None else AbortRegistry()
        self._topic: Topic | None = topic or default_topic(self.assistant.id)

        self._ask_id = ""
        self._state = CoordinatorState.IDLE
        self._is_loading = False
        self._is_outputted = False
        self._error = ""
        self._failure: GenerationError | None = None
        self._active: _InFlight | None = None
        self._listeners: list[Callable[[RequestCoordinator], None]] = []

    # -- observables --------------------------------------------------------

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def is_outputted(self) -> bool:
        return self._is_outputted

    @property
    def error(self) -> str:
        return self._error

    @property
    def failure(self) -> GenerationError | None:
        """The last surfaced generation failure, with its original cause."""
        return self._failure

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def ask_id(self) -> str:
        return self._ask_id

    @property
    def topic(self) -> Topic | None:
        return self._topic

    @property
    def messages(self) -> list[Message]:
        if self._topic is None:
            return []
        return self.store.messages_for_topic(self._topic.id)

    def bind_topic(self, topic: Topic | None) -> None:
        self._topic = topic

    def subscribe(self, callback: Callable[[RequestCoordinator], None]) -> Callable[[], None]:
        """Call *callback* after every observable change; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _update(self, **changes: Any) -> None:
        changed = False
        for name, value in changes.items():
            attr = f"_{name}"
            if getattr(self, attr) != value:
                setattr(self, attr, value)
                changed = True
        if not changed:
            return
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.warning("[QuickChat Stream] Subscriber callback failed.", exc_info=True)

    # -- operations ---------------------------------------------------------

    async def send_message(self, text: str | None = None, prompt: str | None = None) -> None:
        """Send the composed user content and assemble the streamed answer.

        Args:
            text: Replaces the staged typed input when given.
            prompt: Optional prefix (e.g. a feature instruction) joined ahead of the
                user content by a blank line.
        """
        if text is not None:
            self.composer.user_input_text = text
        user_content = self.composer.user_content
        topic = self._topic
        if not user_content or topic is None:
            logger.debug("[QuickChat Stream] Nothing to send (empty content or no topic bound).")
            return

        if self._ask_id:
            logger.warning(
                "[QuickChat Stream] New message while ask %s is outstanding; pausing it first.",
                self._ask_id,
            )
            self.pause()

        content = "\n\n".join(part for part in (prompt, user_content) if part)
        user_message, user_blocks = create_user_message(content, self.assistant, topic)
        self.store.add_message(topic.id, user_message)
        self.store.upsert_blocks(user_blocks)

        assistant_message = create_assistant_message(self.assistant, topic, ask_id=user_message.id)
        self.store.add_message(topic.id, assistant_message)

        context = messages_for_context(self.store.messages_for_topic(topic.id), user_message.id)
        request = CompletionRequest(
            ask_id=user_message.id,
            messages=context,
            assistant=self.assistant,
            blocks=self._blocks_for(context),
        )

        ask_id = user_message.id
        token = self._aborts.register(ask_id)
        active = _InFlight(
            ask_id=ask_id,
            topic_id=topic.id,
            assembly=AssemblyState(message_id=assistant_message.id),
            scheduler=UpdateScheduler(self.store.update_block, self.settings.throttle_interval),
        )
        self._active = active
        self._failure = None
        self.composer.is_first_message = False
        self.composer.user_input_text = ""
        self._update(
            ask_id=ask_id,
            state=CoordinatorState.AWAITING_FIRST_OUTPUT,
            is_loading=True,
            is_outputted=False,
            error="",
        )
        logger.debug(
            "[QuickChat Stream] Ask %s started with %d context message(s).", ask_id, len(context)
        )

        try:
            async with contextlib.aclosing(self.source(request, token)) as chunks:
                async for chunk in chunks:
                    if active.settled or self._ask_id != ask_id:
                        logger.debug(
                            "[QuickChat Stream] Dropping stale %s chunk for ask %s.",
                            chunk.type.value,
                            ask_id,
                        )
                        continue
                    self._process(active, chunk)

            if not active.settled:
                logger.warning(
                    "[QuickChat Stream] Stream for ask %s ended without a terminal chunk; "
                    "settling it as complete.",
                    ask_id,
                )
                self._advance(active, *finish_assembly(active.assembly))
        except Exception as exc:
            logger.error(
                "[QuickChat Stream] Failed to assemble response for ask %s.", ask_id, exc_info=True
            )
            token.cancel(str(exc) or type(exc).__name__)
            if not active.settled:
                self._fail(active, exc)
        finally:
            if not active.settled:
                # The consuming task itself was cancelled.
                token.cancel(PAUSED_REASON)
                self._advance(active, *pause_assembly(active.assembly), guard=True)
            self._aborts.release(ask_id)
            if self._active is active:
                self._active = None

    async def ask(self, feature: Feature = Feature.CHAT, text: str | None = None) -> None:
        """Feature-menu entry point: route the composer and send with the feature prompt."""
        if text is not None:
            self.composer.user_input_text = text
        if not self.composer.user_content:
            return
        self.composer.route = feature
        if feature in (Feature.HOME, Feature.TRANSLATE):
            return
        await self.send_message(prompt=FEATURE_PROMPTS.get(feature))

    def pause(self) -> None:
        """Cancel the outstanding ask and settle what has streamed so far as paused."""
        ask_id = self._ask_id
        if not ask_id:
            return
        self._aborts.abort(ask_id, PAUSED_REASON)
        active = self._active
        if active is not None and active.ask_id == ask_id and not active.settled:
            try:
                self._advance(active, *pause_assembly(active.assembly))
            except Exception as exc:
                logger.error(
                    "[QuickChat Stream] Failed to record pause for ask %s.", ask_id, exc_info=True
                )
                self._fail(active, exc)
            return
        self._update(ask_id="", is_loading=False, is_outputted=True)

    def reset(self) -> None:
        """Clear the topic, bind a fresh one, and return the composer to a first turn."""
        if self._ask_id:
            logger.info(
                "[QuickChat Stream] Reset while ask %s is outstanding; pausing.", self._ask_id
            )
            self.pause()
        if self._topic is not None:
            self.store.clear_topic_messages(self._topic.id)
        self._topic = default_topic(self.assistant.id)
        self._failure = None
        self.composer.reset()
        self._update(error="", state=CoordinatorState.IDLE)

    # -- chunk handling -----------------------------------------------------

    def _process(self, active: _InFlight, chunk: Chunk) -> None:
        assembly, mutation = apply_chunk(active.assembly, chunk)
        cause = None
        if chunk.type is ChunkType.ERROR and not chunk.is_cancellation:
            cause = GenerationError(chunk.error if chunk.error is not None else "")
        self._advance(active, assembly, mutation, cause=cause)
        if (
            not active.settled
            and (chunk.bears_content or isinstance(mutation, CreateBlock))
            and mutation is not None
            and self._active is active
        ):
            self._update(state=CoordinatorState.STREAMING, is_outputted=True)

    def _advance(
        self,
        active: _InFlight,
        assembly: AssemblyState,
        mutation: Mutation | None,
        *,
        cause: GenerationError | None = None,
        guard: bool = False,
    ) -> None:
        # Unguarded mutations commit only after the store accepts them; a new block
        # may already be stored when its message update fails.
        if guard or isinstance(mutation, CreateBlock):
            active.assembly = assembly
        if mutation is not None:
            if guard:
                try:
                    self._dispatch(active, mutation)
                except Exception:
                    logger.error(
                        "[QuickChat Stream] Could not record final state for ask %s.",
                        active.ask_id,
                        exc_info=True,
                    )
            else:
                self._dispatch(active, mutation)
        active.assembly = assembly
        if assembly.settled:
            self._settle(active, cause)

    def _fail(self, active: _InFlight, exc: Exception) -> None:
        # Pending content writes go to the same store that just failed.
        active.scheduler.cancel_all()
        cause = exc if isinstance(exc, GenerationError) else GenerationError(exc)
        assembly, mutation = apply_chunk(active.assembly, Chunk.failure(exc))
        self._advance(active, assembly, mutation, cause=cause, guard=True)

    def _settle(self, active: _InFlight, cause: GenerationError | None = None) -> None:
        if active.settled:
            return
        active.settled = True
        try:
            active.scheduler.flush_all()
        finally:
            status = active.assembly.message_status
            changes: dict[str, Any] = {"state": _SETTLED_STATES[status]}
            if status is MessageStatus.ERROR:
                failure = cause or GenerationError(active.assembly.failure or "")
                self._failure = failure
                changes["error"] = str(failure)
                logger.error(
                    "[QuickChat Stream] Generation failed for ask %s: %s", active.ask_id, failure
                )
            else:
                logger.debug(
                    "[QuickChat Stream] Ask %s settled as %s.", active.ask_id, status.value
                )
            if self._ask_id == active.ask_id:
                changes["ask_id"] = ""
            if self._active is active:
                changes.update(is_loading=False, is_outputted=True)
                self._update(**changes)

    def _dispatch(self, active: _InFlight, mutation: Mutation) -> None:
        message_id = active.assembly.message_id
        if isinstance(mutation, CreateBlock):
            self.store.upsert_block(mutation.block)
            self.store.update_message(active.topic_id, message_id, mutation.message_changes)
        elif isinstance(mutation, UpdateBlock):
            if mutation.throttled:
                active.scheduler.schedule(mutation.block_id, mutation.changes)
            else:
                active.scheduler.flush(mutation.block_id)
                self.store.update_block(mutation.block_id, mutation.changes)
        elif isinstance(mutation, SettleBlock):
            self._write_terminal(active, mutation.block_id, mutation.changes)
        elif isinstance(mutation, SettleMessage):
            for block_id, changes in mutation.block_changes:
                self._write_terminal(active, block_id, changes)
            self.store.update_message(active.topic_id, message_id, {"status": mutation.status})

    def _write_terminal(self, active: _InFlight, block_id: str, changes: dict[str, Any]) -> None:
        if "content" in changes:
            # The terminal write carries the final content; a late throttled write
            # would only repeat or regress it.
            active.scheduler.cancel(block_id)
        else:
            active.scheduler.flush(block_id)
        self.store.update_block(block_id, changes)

    def _blocks_for(self, messages: list[Message]) -> dict[str, MessageBlock]:
        blocks: dict[str, MessageBlock] = {}
        for message in messages:
            for block_id in message.blocks:
                block = self.store.get_block(block_id)
                if block is not None:
                    blocks[block_id] = block
        return blocks

    def __repr__(self) -> str:
        topic_id = self._topic.id if self._topic else None
        return f"RequestCoordinator(topic={topic_id!r}, state={self._state.value!r})"
