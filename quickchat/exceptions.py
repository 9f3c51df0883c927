"""Exception types shared across QuickChat."""

from __future__ import annotations

import importlib
from typing import Any

_APPLE_FM_INSTALL_HINT = (
    "Install the Apple Foundation Models SDK (the `apple-fm` extra) on macOS 26+ "
    "with Apple Intelligence enabled."
)


class QuickChatError(Exception):
    """Base class for all QuickChat errors."""


class ChunkFormatError(QuickChatError, ValueError):
    """Raised when serialized chunk data cannot be decoded."""


class AskInFlightError(QuickChatError, RuntimeError):
    """Raised when an ask id is registered while a request for it is still active."""

    def __init__(self, ask_id: str) -> None:
        super().__init__(f"A request for ask '{ask_id}' is already in flight.")
        self.ask_id = ask_id


class GenerationError(QuickChatError):
    """A model or transport failure reported through an ``error`` chunk."""

    def __init__(self, cause: BaseException | str) -> None:
        super().__init__(describe_error(cause))
        self.cause = cause


def describe_error(cause: BaseException | str | None) -> str:
    """Best-effort user-facing message for an error cause."""
    if cause is None:
        return "An error occurred"
    if isinstance(cause, str):
        return cause or "An error occurred"
    return str(cause) or type(cause).__name__


class AppleFMSetupError(QuickChatError, RuntimeError):
    """The Apple Foundation Models SDK is missing or the model cannot be used."""


def require_apple_fm() -> Any:
    """Import ``apple_fm_sdk`` lazily, raising a setup error with guidance if absent."""
    try:
        return importlib.import_module("apple_fm_sdk")
    except ImportError as exc:
        raise AppleFMSetupError(
            f"[QuickChat] 'apple_fm_sdk' is not installed. {_APPLE_FM_INSTALL_HINT}"
        ) from exc


def ensure_model_available(model: Any, *, context: str) -> None:
    """Raise ``AppleFMSetupError`` when the on-device model reports it is unavailable."""
    is_available, reason = model.is_available()
    if not is_available:
        raise AppleFMSetupError(
            f"[QuickChat] Foundation Model is not available for {context}: {reason}"
        )
