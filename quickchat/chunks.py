"""
Chunk contract — the typed events a completion stream is made of.

A chunk source yields, per kind (thinking / text), ``start -> delta* -> complete``
and terminates the whole stream with either ``block.complete`` or ``error``.
Chunks serialize to plain dicts so scripted streams can be stored as JSON Lines.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .exceptions import ChunkFormatError, describe_error


class ChunkType(str, Enum):
    THINKING_START = "thinking.start"
    THINKING_DELTA = "thinking.delta"
    THINKING_COMPLETE = "thinking.complete"
    TEXT_START = "text.start"
    TEXT_DELTA = "text.delta"
    TEXT_COMPLETE = "text.complete"
    ERROR = "error"
    BLOCK_COMPLETE = "block.complete"


START_TYPES = frozenset({ChunkType.THINKING_START, ChunkType.TEXT_START})
DELTA_TYPES = frozenset({ChunkType.THINKING_DELTA, ChunkType.TEXT_DELTA})
COMPLETE_TYPES = frozenset({ChunkType.THINKING_COMPLETE, ChunkType.TEXT_COMPLETE})
THINKING_TYPES = frozenset(
    {ChunkType.THINKING_START, ChunkType.THINKING_DELTA, ChunkType.THINKING_COMPLETE}
)
TERMINAL_TYPES = frozenset({ChunkType.ERROR, ChunkType.BLOCK_COMPLETE})


@dataclass(frozen=True)
class Chunk:
    """One incremental event of a streaming generation."""

    type: ChunkType
    text: str = ""
    thinking_millsec: int | None = None
    error: BaseException | str | None = None
    is_cancellation: bool = False
    # True when a delta carries the full snapshot so far instead of an increment.
    cumulative: bool = False

    # -- constructors -------------------------------------------------------

    @classmethod
    def thinking_start(cls) -> Chunk:
        return cls(ChunkType.THINKING_START)

    @classmethod
    def thinking_delta(cls, text: str, thinking_millsec: int, *, cumulative: bool = False) -> Chunk:
        return cls(
            ChunkType.THINKING_DELTA,
            text=text,
            thinking_millsec=thinking_millsec,
            cumulative=cumulative,
        )

    @classmethod
    def thinking_complete(cls, thinking_millsec: int) -> Chunk:
        return cls(ChunkType.THINKING_COMPLETE, thinking_millsec=thinking_millsec)

    @classmethod
    def text_start(cls) -> Chunk:
        return cls(ChunkType.TEXT_START)

    @classmethod
    def text_delta(cls, text: str, *, cumulative: bool = False) -> Chunk:
        return cls(ChunkType.TEXT_DELTA, text=text, cumulative=cumulative)

    @classmethod
    def text_complete(cls, text: str = "") -> Chunk:
        return cls(ChunkType.TEXT_COMPLETE, text=text)

    @classmethod
    def failure(cls, error: BaseException | str, is_cancellation: bool = False) -> Chunk:
        return cls(ChunkType.ERROR, error=error, is_cancellation=is_cancellation)

    @classmethod
    def block_complete(cls) -> Chunk:
        return cls(ChunkType.BLOCK_COMPLETE)

    # -- classification -----------------------------------------------------

    @property
    def is_thinking(self) -> bool:
        return self.type in THINKING_TYPES

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    @property
    def bears_content(self) -> bool:
        """Start and delta chunks are the ones that put something on screen."""
        return self.type in START_TYPES or self.type in DELTA_TYPES

    @property
    def error_message(self) -> str:
        return describe_error(self.error)

    # -- serialization ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.text:
            data["text"] = self.text
        if self.thinking_millsec is not None:
            data["thinking_millsec"] = self.thinking_millsec
        if self.type is ChunkType.ERROR:
            data["error"] = self.error_message
            data["is_cancellation"] = self.is_cancellation
        if self.cumulative:
            data["cumulative"] = True
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Chunk:
        if not isinstance(data, dict):
            raise ChunkFormatError(f"Chunk must be a JSON object, got {type(data).__name__}")
        raw_type = data.get("type")
        try:
            chunk_type = ChunkType(raw_type)
        except ValueError:
            raise ChunkFormatError(f"Unknown chunk type: {raw_type!r}") from None

        millsec = data.get("thinking_millsec")
        if millsec is not None:
            if isinstance(millsec, bool) or not isinstance(millsec, (int, float)):
                raise ChunkFormatError(f"thinking_millsec must be a number, got {millsec!r}")
            millsec = int(millsec)

        text = data.get("text", "")
        if not isinstance(text, str):
            raise ChunkFormatError(f"text must be a string, got {type(text).__name__}")

        return cls(
            chunk_type,
            text=text,
            thinking_millsec=millsec,
            error=data.get("error") if chunk_type is ChunkType.ERROR else None,
            is_cancellation=bool(data.get("is_cancellation", False)),
            cumulative=bool(data.get("cumulative", False)),
        )
