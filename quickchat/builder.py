"""
Block builder — pure state transitions from chunks to store mutations.

``apply_chunk(state, chunk)`` never touches the store. It returns the next
``AssemblyState`` and at most one mutation instruction; the coordinator decides
how (and how often) each instruction reaches the store.

Rules:
  - ``*.start`` creates the block of that kind, or re-asserts ``streaming`` on an
    existing block that is still open.
  - ``*.delta`` appends (or, for cumulative snapshots, replaces) content and keeps
    the thinking timer monotonic. A delta without a prior start creates the block.
  - ``*.complete`` settles the block ``success`` with its content frozen.
  - ``error`` settles every open block and the message ``paused`` (cancellation)
    or ``error``, an open thinking block first.
  - ``block.complete`` settles any block left open and the message ``success``.
  - After ``error`` or ``block.complete`` every later chunk is ignored.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from .chunks import COMPLETE_TYPES, DELTA_TYPES, START_TYPES, Chunk, ChunkType
from .models import BlockStatus, BlockType, MessageBlock, MessageStatus, new_id

PAUSED_REASON = "Paused by user"


@dataclass(frozen=True)
class BlockState:
    id: str
    type: BlockType
    content: str = ""
    status: BlockStatus = BlockStatus.STREAMING
    thinking_millsec: int | None = None

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal


@dataclass(frozen=True)
class AssemblyState:
    """Everything the builder knows about one assistant message being streamed."""

    message_id: str
    thinking: BlockState | None = None
    text: BlockState | None = None
    block_ids: tuple[str, ...] = ()
    last_active: BlockType | None = None
    message_status: MessageStatus = MessageStatus.PENDING
    failure: str | None = None
    finished: bool = False

    def block(self, kind: BlockType) -> BlockState | None:
        return self.thinking if kind is BlockType.THINKING else self.text

    def open_blocks(self) -> list[BlockState]:
        """Open blocks, thinking first: it is the one an interruption lands on."""
        return [b for b in (self.thinking, self.text) if b is not None and b.is_open]

    @property
    def settled(self) -> bool:
        return self.message_status.is_terminal

    def _with_block(self, block: BlockState, **changes: Any) -> AssemblyState:
        key = "thinking" if block.type is BlockType.THINKING else "text"
        return dataclasses.replace(self, **{key: block}, **changes)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateBlock:
    """Upsert a new block and attach it to the message."""

    block: MessageBlock
    message_changes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateBlock:
    """Non-terminal block change; ``throttled`` ones may be coalesced."""

    block_id: str
    changes: dict[str, Any]
    throttled: bool = True


@dataclass(frozen=True)
class SettleBlock:
    """Terminal block change; always applied synchronously."""

    block_id: str
    changes: dict[str, Any]


@dataclass(frozen=True)
class SettleMessage:
    """Terminal message status plus terminal changes for blocks still open."""

    status: MessageStatus
    block_changes: tuple[tuple[str, dict[str, Any]], ...] = ()
    error: str | None = None


Mutation = Union[CreateBlock, UpdateBlock, SettleBlock, SettleMessage]


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _kind_of(chunk: Chunk) -> BlockType:
    return BlockType.THINKING if chunk.is_thinking else BlockType.TEXT


def _create(
    state: AssemblyState,
    kind: BlockType,
    id_factory: Callable[[], str],
    content: str = "",
    thinking_millsec: int | None = None,
    status: BlockStatus = BlockStatus.STREAMING,
) -> tuple[AssemblyState, Mutation]:
    if kind is BlockType.THINKING and thinking_millsec is None:
        thinking_millsec = 0
    block_state = BlockState(
        id=id_factory(),
        type=kind,
        content=content,
        status=status,
        thinking_millsec=thinking_millsec if kind is BlockType.THINKING else None,
    )
    block_ids = (*state.block_ids, block_state.id)
    next_state = state._with_block(
        block_state,
        block_ids=block_ids,
        last_active=kind,
        message_status=MessageStatus.STREAMING,
    )
    block = MessageBlock(
        id=block_state.id,
        message_id=state.message_id,
        type=kind,
        content=content,
        status=status,
        thinking_millsec=block_state.thinking_millsec,
    )
    return next_state, CreateBlock(
        block, {"blocks": list(block_ids), "status": MessageStatus.STREAMING}
    )


def _on_start(
    state: AssemblyState, kind: BlockType, id_factory: Callable[[], str]
) -> tuple[AssemblyState, Mutation | None]:
    existing = state.block(kind)
    if existing is None:
        return _create(state, kind, id_factory)
    if not existing.is_open:
        return state, None
    return (
        dataclasses.replace(state, last_active=kind),
        UpdateBlock(existing.id, {"status": BlockStatus.STREAMING}, throttled=False),
    )


def _on_delta(
    state: AssemblyState, kind: BlockType, chunk: Chunk, id_factory: Callable[[], str]
) -> tuple[AssemblyState, Mutation | None]:
    existing = state.block(kind)
    if existing is None:
        return _create(state, kind, id_factory, chunk.text, chunk.thinking_millsec)
    if not existing.is_open:
        return state, None

    content = chunk.text if chunk.cumulative else existing.content + chunk.text
    changes: dict[str, Any] = {"content": content}
    millsec = existing.thinking_millsec
    if kind is BlockType.THINKING:
        if chunk.thinking_millsec is not None:
            millsec = max(millsec or 0, chunk.thinking_millsec)
        changes["thinking_millsec"] = millsec

    updated = dataclasses.replace(existing, content=content, thinking_millsec=millsec)
    return state._with_block(updated, last_active=kind), UpdateBlock(existing.id, changes)


def _on_complete(
    state: AssemblyState, kind: BlockType, chunk: Chunk, id_factory: Callable[[], str]
) -> tuple[AssemblyState, Mutation | None]:
    existing = state.block(kind)
    if existing is None:
        # A text answer delivered only through its completion chunk.
        if kind is BlockType.TEXT and chunk.text:
            return _create(state, kind, id_factory, chunk.text, status=BlockStatus.SUCCESS)
        return state, None
    if not existing.is_open:
        return state, None

    changes: dict[str, Any] = {"status": BlockStatus.SUCCESS}
    if kind is BlockType.THINKING:
        millsec = existing.thinking_millsec or 0
        if chunk.thinking_millsec is not None:
            millsec = max(millsec, chunk.thinking_millsec)
        changes["thinking_millsec"] = millsec
        updated = dataclasses.replace(
            existing, status=BlockStatus.SUCCESS, thinking_millsec=millsec
        )
    else:
        content = chunk.text or existing.content
        changes["content"] = content
        updated = dataclasses.replace(existing, status=BlockStatus.SUCCESS, content=content)
    return state._with_block(updated, last_active=kind), SettleBlock(existing.id, changes)


def _settle(
    state: AssemblyState,
    block_status: BlockStatus,
    message_status: MessageStatus,
    failure: str | None = None,
) -> tuple[AssemblyState, Mutation]:
    block_changes: list[tuple[str, dict[str, Any]]] = []
    next_state = state
    for block in state.open_blocks():
        block_changes.append((block.id, {"status": block_status}))
        next_state = next_state._with_block(dataclasses.replace(block, status=block_status))
    next_state = dataclasses.replace(
        next_state, message_status=message_status, failure=failure, finished=True
    )
    return next_state, SettleMessage(message_status, tuple(block_changes), failure)


def apply_chunk(
    state: AssemblyState, chunk: Chunk, *, id_factory: Callable[[], str] = new_id
) -> tuple[AssemblyState, Mutation | None]:
    """Fold one chunk into *state*, returning the next state and its mutation."""
    if state.finished:
        return state, None

    if chunk.type is ChunkType.ERROR:
        if chunk.is_cancellation:
            return _settle(state, BlockStatus.PAUSED, MessageStatus.PAUSED)
        return _settle(state, BlockStatus.ERROR, MessageStatus.ERROR, chunk.error_message)

    if chunk.type is ChunkType.BLOCK_COMPLETE:
        return _settle(state, BlockStatus.SUCCESS, MessageStatus.SUCCESS)

    kind = _kind_of(chunk)
    if chunk.type in START_TYPES:
        return _on_start(state, kind, id_factory)
    if chunk.type in DELTA_TYPES:
        return _on_delta(state, kind, chunk, id_factory)
    if chunk.type in COMPLETE_TYPES:
        return _on_complete(state, kind, chunk, id_factory)
    return state, None


def pause_assembly(state: AssemblyState) -> tuple[AssemblyState, Mutation | None]:
    """Settle an in-flight assembly as paused, exactly as a cancellation chunk would."""
    return apply_chunk(state, Chunk.failure(PAUSED_REASON, is_cancellation=True))


def finish_assembly(state: AssemblyState) -> tuple[AssemblyState, Mutation | None]:
    """Settle a stream that ended without a terminal chunk."""
    return apply_chunk(state, Chunk.block_complete())
