"""
Update scheduler — bounds how often streaming block content reaches the store.

Each block gets its own slot on first ``schedule``. A block that has not been
written within ``interval`` is written immediately; later calls inside the window
merge into one pending change set that a single timer applies at the end of the
window, carrying the latest values. ``flush`` and ``cancel`` dispose the slot.

Terminal block states never go through ``schedule``: callers flush (or cancel)
the slot and then write the terminal change themselves.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from . import config

logger = logging.getLogger("quickchat")


@dataclass
class _Slot:
    pending: dict[str, Any] = field(default_factory=dict)
    last_applied: float | None = None
    handle: asyncio.TimerHandle | None = None


class UpdateScheduler:
    """Per-block leading/trailing throttle for store writes."""

    def __init__(
        self,
        apply: Callable[[str, dict[str, Any]], None],
        interval: float = config.THROTTLE_INTERVAL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self._apply = apply
        self.interval = interval
        self._clock = clock
        self._slots: dict[str, _Slot] = {}

    def schedule(self, block_id: str, changes: dict[str, Any]) -> None:
        """Queue *changes* for *block_id*, writing now if the block's window is open."""
        slot = self._slots.setdefault(block_id, _Slot())
        slot.pending.update(changes)
        if slot.handle is not None:
            return

        now = self._clock()
        if slot.last_applied is None or now - slot.last_applied >= self.interval:
            self._write(block_id, slot)
            return

        remaining = self.interval - (now - slot.last_applied)
        loop = asyncio.get_running_loop()
        slot.handle = loop.call_later(remaining, self._fire, block_id)

    def flush(self, block_id: str) -> bool:
        """Apply any pending changes now. Returns False when nothing was pending."""
        slot = self._slots.pop(block_id, None)
        if slot is None:
            return False
        if slot.handle is not None:
            slot.handle.cancel()
        if not slot.pending:
            return False
        self._write(block_id, slot)
        return True

    def cancel(self, block_id: str) -> bool:
        """Drop pending changes without applying them."""
        slot = self._slots.pop(block_id, None)
        if slot is None:
            return False
        if slot.handle is not None:
            slot.handle.cancel()
        dropped = bool(slot.pending)
        slot.pending.clear()
        return dropped

    def flush_all(self) -> None:
        for block_id in list(self._slots):
            self.flush(block_id)

    def cancel_all(self) -> None:
        for block_id in list(self._slots):
            self.cancel(block_id)

    def has_pending(self, block_id: str) -> bool:
        slot = self._slots.get(block_id)
        return bool(slot and slot.pending)

    def __len__(self) -> int:
        return len(self._slots)

    def _write(self, block_id: str, slot: _Slot) -> None:
        changes, slot.pending = slot.pending, {}
        slot.last_applied = self._clock()
        self._apply(block_id, changes)

    def _fire(self, block_id: str) -> None:
        slot = self._slots.get(block_id)
        if slot is None:
            return
        slot.handle = None
        if not slot.pending:
            return
        try:
            self._write(block_id, slot)
        except Exception:
            logger.error(
                "[QuickChat Scheduler] Throttled write for block %s failed.",
                block_id,
                exc_info=True,
            )

    def __repr__(self) -> str:
        return f"UpdateScheduler(interval={self.interval}, slots={len(self._slots)})"
