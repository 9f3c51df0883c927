"""Central configuration for stream assembly.

Each constant can be overridden with an environment variable read at import time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger("quickchat")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[QuickChat] Ignoring non-numeric %s=%r; using %s.", name, raw, default)
        return default
    if value < 0:
        logger.warning("[QuickChat] Ignoring negative %s=%r; using %s.", name, raw, default)
        return default
    return value


# Minimum spacing between two store writes for the same streaming block.
THROTTLE_INTERVAL_SECONDS = _env_float("QUICKCHAT_THROTTLE_MS", 40.0) / 1000.0

# Apple FM source timeouts, mirroring the desktop chat defaults.
FIRST_CHUNK_TIMEOUT_SECONDS = _env_float("QUICKCHAT_FIRST_CHUNK_TIMEOUT", 25.0)
CHUNK_IDLE_TIMEOUT_SECONDS = _env_float("QUICKCHAT_IDLE_TIMEOUT", 12.0)

_DEFAULT_INSTRUCTIONS = (
    "You are a quick desktop assistant. Be accurate, concise, and explicit about uncertainty."
)
SYSTEM_INSTRUCTIONS = os.environ.get("QUICKCHAT_SYSTEM_INSTRUCTIONS", _DEFAULT_INSTRUCTIONS)


@dataclass(frozen=True)
class AssemblerSettings:
    """Runtime knobs handed to the coordinator and chunk sources."""

    throttle_interval: float = THROTTLE_INTERVAL_SECONDS
    first_chunk_timeout: float = FIRST_CHUNK_TIMEOUT_SECONDS
    idle_timeout: float = CHUNK_IDLE_TIMEOUT_SECONDS
    system_instructions: str = SYSTEM_INSTRUCTIONS

    @classmethod
    def from_env(cls) -> AssemblerSettings:
        """Re-read the environment, ignoring values captured at import time."""
        return cls(
            throttle_interval=_env_float("QUICKCHAT_THROTTLE_MS", 40.0) / 1000.0,
            first_chunk_timeout=_env_float("QUICKCHAT_FIRST_CHUNK_TIMEOUT", 25.0),
            idle_timeout=_env_float("QUICKCHAT_IDLE_TIMEOUT", 12.0),
            system_instructions=os.environ.get(
                "QUICKCHAT_SYSTEM_INSTRUCTIONS", _DEFAULT_INSTRUCTIONS
            ),
        )
