"""Plain-text transcript rendering for a topic."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import BlockType, Message, MessageRole, MessageStatus

if TYPE_CHECKING:
    from .store import ConversationStore

_STATUS_MARKERS = {
    MessageStatus.PAUSED: "[paused]",
    MessageStatus.ERROR: "[error]",
}


def main_text_content(store: ConversationStore, message: Message) -> str:
    """Concatenate a message's answer text, skipping thinking blocks."""
    parts: list[str] = []
    for block_id in message.blocks:
        block = store.get_block(block_id)
        if block is not None and block.type is BlockType.TEXT and block.content:
            parts.append(block.content)
    return "\n\n".join(parts)


def _message_lines(store: ConversationStore, message: Message) -> list[str]:
    role = "You" if message.role is MessageRole.USER else "Assistant"
    header = f"{role} | {message.created_at}"
    marker = _STATUS_MARKERS.get(message.status)
    if marker:
        header = f"{header} {marker}"
    lines = [header]
    for block_id in message.blocks:
        block = store.get_block(block_id)
        if block is None:
            continue
        if block.type is BlockType.THINKING:
            seconds = (block.thinking_millsec or 0) / 1000
            lines.append(f"[thinking {seconds:.1f}s]")
            lines.extend(f"> {line}" for line in block.content.splitlines())
        elif block.content:
            lines.append(block.content)
    lines.append("")
    return lines


def render_transcript(store: ConversationStore, topic_id: str) -> str:
    """Render every message of the topic, oldest first."""
    lines: list[str] = []
    for message in store.messages_for_topic(topic_id):
        lines.extend(_message_lines(store, message))
    return "\n".join(lines).strip()


def last_answer(store: ConversationStore, topic_id: str) -> str:
    """Answer text of the most recent message, as copied to the clipboard."""
    messages = store.messages_for_topic(topic_id)
    if not messages:
        return ""
    return main_text_content(store, messages[-1])
