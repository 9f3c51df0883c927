"""
QuickChat: the streaming response assembler of a desktop quick-assistant chat client.

Turns an asynchronous, cancellable stream of generation chunks into consistent,
incrementally rendered conversation state: typed blocks, throttled store writes,
pause and reset, and error recovery. The Apple Foundation Models SDK is optional
and only imported when the Apple FM chunk source is used.
"""

from .builder import AssemblyState, apply_chunk
from .chunks import Chunk, ChunkType
from .composer import Composer, Feature
from .config import AssemblerSettings
from .coordinator import CoordinatorState, RequestCoordinator
from .exceptions import (
    AppleFMSetupError,
    AskInFlightError,
    ChunkFormatError,
    GenerationError,
    QuickChatError,
)
from .models import Assistant, Message, MessageBlock, Topic
from .render import render_transcript
from .scheduler import UpdateScheduler
from .sources import (
    AbortRegistry,
    AppleFMChunkSource,
    CancellationToken,
    ChunkSource,
    CompletionRequest,
    ScriptedChunkSource,
)
from .store import ConversationStore, InMemoryStore

__version__ = "0.1.0"

__all__ = [
    "AbortRegistry",
    "AppleFMChunkSource",
    "AppleFMSetupError",
    "AskInFlightError",
    "AssemblerSettings",
    "AssemblyState",
    "Assistant",
    "CancellationToken",
    "Chunk",
    "ChunkFormatError",
    "ChunkSource",
    "ChunkType",
    "CompletionRequest",
    "Composer",
    "ConversationStore",
    "CoordinatorState",
    "Feature",
    "GenerationError",
    "InMemoryStore",
    "Message",
    "MessageBlock",
    "QuickChatError",
    "RequestCoordinator",
    "ScriptedChunkSource",
    "Topic",
    "UpdateScheduler",
    "apply_chunk",
    "render_transcript",
]
