"""Staged input for the quick assistant: typed text, reference text, and feature routes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Feature(str, Enum):
    HOME = "home"
    CHAT = "chat"
    TRANSLATE = "translate"
    SUMMARY = "summary"
    EXPLANATION = "explanation"


FEATURE_PROMPTS: dict[Feature, str] = {
    Feature.SUMMARY: "Summarize the following content concisely, keeping the key points.",
    Feature.EXPLANATION: "Explain the following content clearly, as if to a curious newcomer.",
}


def reference_text(user_input_text: str, clipboard_text: str) -> str:
    """Clipboard content wins over typed input as the reference payload."""
    return clipboard_text or user_input_text


def compose_user_content(is_first_message: bool, user_input_text: str, reference: str) -> str:
    """Effective user content for the next turn.

    On the first turn a differing reference is prepended, separated by a blank
    line; later turns send only the typed input.
    """
    if is_first_message:
        if reference == user_input_text:
            return user_input_text
        return f"{reference}\n\n{user_input_text}".strip()
    return user_input_text.strip()


@dataclass
class Composer:
    user_input_text: str = ""
    clipboard_text: str = ""
    is_first_message: bool = True
    route: Feature = Feature.HOME

    @property
    def reference_text(self) -> str:
        return reference_text(self.user_input_text, self.clipboard_text)

    @property
    def user_content(self) -> str:
        return compose_user_content(
            self.is_first_message, self.user_input_text, self.reference_text
        )

    def reset(self) -> None:
        """Back to a fresh first turn; clipboard content is left as captured."""
        self.user_input_text = ""
        self.is_first_message = True
        self.route = Feature.HOME
