"""
Conversation store contract and an in-memory implementation.

The assembler only needs fire-and-forget writes (append message, partial
updates, block upserts, topic clearing) plus two reads; any persistence layer
that satisfies ``ConversationStore`` can back a coordinator.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .models import Message, MessageBlock

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

logger = logging.getLogger("quickchat")


@runtime_checkable
class ConversationStore(Protocol):
    """Topics -> messages -> blocks repository used by the coordinator."""

    def add_message(self, topic_id: str, message: Message) -> None: ...

    def update_message(
        self, topic_id: str, message_id: str, changes: Mapping[str, Any]
    ) -> None: ...

    def upsert_block(self, block: MessageBlock) -> None: ...

    def upsert_blocks(self, blocks: Iterable[MessageBlock]) -> None: ...

    def update_block(self, block_id: str, changes: Mapping[str, Any]) -> None: ...

    def clear_topic_messages(self, topic_id: str) -> None: ...

    def messages_for_topic(self, topic_id: str) -> list[Message]: ...

    def get_block(self, block_id: str) -> MessageBlock | None: ...


def _apply_changes(target: Any, changes: Mapping[str, Any]) -> None:
    names = {f.name for f in dataclasses.fields(target)}
    unknown = set(changes) - names
    if unknown:
        raise KeyError(f"{type(target).__name__} has no field(s): {', '.join(sorted(unknown))}")
    for name, value in changes.items():
        setattr(target, name, list(value) if isinstance(value, (list, tuple)) else value)


class InMemoryStore:
    """Dict-backed store; messages keep insertion order per topic."""

    def __init__(self) -> None:
        self._messages: dict[str, list[Message]] = {}
        self._blocks: dict[str, MessageBlock] = {}

    # -- writes -------------------------------------------------------------

    def add_message(self, topic_id: str, message: Message) -> None:
        self._messages.setdefault(topic_id, []).append(message)

    def update_message(self, topic_id: str, message_id: str, changes: Mapping[str, Any]) -> None:
        message = self._find_message(topic_id, message_id)
        if message is None:
            logger.warning(
                "[QuickChat Store] update for unknown message %s in topic %s ignored.",
                message_id,
                topic_id,
            )
            return
        _apply_changes(message, changes)

    def upsert_block(self, block: MessageBlock) -> None:
        self._blocks[block.id] = block

    def upsert_blocks(self, blocks: Iterable[MessageBlock]) -> None:
        for block in blocks:
            self.upsert_block(block)

    def update_block(self, block_id: str, changes: Mapping[str, Any]) -> None:
        block = self._blocks.get(block_id)
        if block is None:
            logger.warning("[QuickChat Store] update for unknown block %s ignored.", block_id)
            return
        _apply_changes(block, changes)

    def clear_topic_messages(self, topic_id: str) -> None:
        """Drop every message of the topic together with the blocks they own."""
        for message in self._messages.pop(topic_id, []):
            for block_id in message.blocks:
                self._blocks.pop(block_id, None)

    # -- reads --------------------------------------------------------------

    def messages_for_topic(self, topic_id: str) -> list[Message]:
        return list(self._messages.get(topic_id, []))

    def get_block(self, block_id: str) -> MessageBlock | None:
        return self._blocks.get(block_id)

    def blocks_for_message(self, message: Message) -> list[MessageBlock]:
        return [self._blocks[b] for b in message.blocks if b in self._blocks]

    def _find_message(self, topic_id: str, message_id: str) -> Message | None:
        for message in self._messages.get(topic_id, []):
            if message.id == message_id:
                return message
        return None

    def __repr__(self) -> str:
        return f"InMemoryStore(topics={len(self._messages)}, blocks={len(self._blocks)})"
