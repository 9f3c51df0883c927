"""Conversation data model: topics, messages, and typed content blocks."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Iterable


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    SUCCESS = "success"
    PAUSED = "paused"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.SUCCESS, MessageStatus.PAUSED, MessageStatus.ERROR)


class BlockType(str, Enum):
    THINKING = "thinking"
    TEXT = "text"


class BlockStatus(str, Enum):
    STREAMING = "streaming"
    SUCCESS = "success"
    PAUSED = "paused"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not BlockStatus.STREAMING


def utc_now_iso() -> str:
    """Return a stable UTC timestamp string."""
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Topic:
    """An ordered conversation thread; its messages live in the store."""

    id: str
    assistant_id: str
    name: str = "Quick Assistant"
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class Assistant:
    """The assistant a conversation talks to; only what the assembler reads."""

    id: str = "quick-assistant"
    name: str = "Quick Assistant"
    prompt: str = ""


@dataclass
class Message:
    id: str
    role: MessageRole
    topic_id: str
    assistant_id: str
    status: MessageStatus
    ask_id: str = ""
    blocks: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class MessageBlock:
    id: str
    message_id: str
    type: BlockType
    content: str = ""
    status: BlockStatus = BlockStatus.STREAMING
    created_at: str = field(default_factory=utc_now_iso)
    # Elapsed reasoning time; only thinking blocks carry it.
    thinking_millsec: int | None = None


def default_topic(assistant_id: str) -> Topic:
    """Create a fresh, empty topic bound to the assistant."""
    return Topic(id=new_id(), assistant_id=assistant_id)


def create_text_block(
    message_id: str, content: str = "", status: BlockStatus = BlockStatus.STREAMING
) -> MessageBlock:
    return MessageBlock(
        id=new_id(), message_id=message_id, type=BlockType.TEXT, content=content, status=status
    )


def create_thinking_block(
    message_id: str,
    content: str = "",
    status: BlockStatus = BlockStatus.STREAMING,
    thinking_millsec: int = 0,
) -> MessageBlock:
    return MessageBlock(
        id=new_id(),
        message_id=message_id,
        type=BlockType.THINKING,
        content=content,
        status=status,
        thinking_millsec=thinking_millsec,
    )


def create_user_message(
    content: str, assistant: Assistant, topic: Topic
) -> tuple[Message, list[MessageBlock]]:
    """Build a user message with its single text block, both already settled."""
    message = Message(
        id=new_id(),
        role=MessageRole.USER,
        topic_id=topic.id,
        assistant_id=assistant.id,
        status=MessageStatus.SUCCESS,
    )
    block = create_text_block(message.id, content, status=BlockStatus.SUCCESS)
    message.blocks.append(block.id)
    return message, [block]


def create_assistant_message(assistant: Assistant, topic: Topic, ask_id: str) -> Message:
    """Build the pending placeholder that a streamed answer is assembled into."""
    return Message(
        id=new_id(),
        role=MessageRole.ASSISTANT,
        topic_id=topic.id,
        assistant_id=assistant.id,
        status=MessageStatus.PENDING,
        ask_id=ask_id,
    )


def messages_for_context(messages: Iterable[Message], user_message_id: str) -> list[Message]:
    """Messages up to and including the user message, without any still in flight.

    A status is "in flight" when its value contains ``"ing"`` (pending, streaming).
    """
    ordered = list(messages)
    cutoff = next((i for i, m in enumerate(ordered) if m.id == user_message_id), None)
    if cutoff is None:
        return []
    return [m for m in ordered[: cutoff + 1] if "ing" not in m.status.value]
