"""Shared fixtures and fakes for the QuickChat test-suite."""

import asyncio
import itertools

import pytest

from quickchat.chunks import Chunk
from quickchat.composer import Composer
from quickchat.config import AssemblerSettings
from quickchat.coordinator import RequestCoordinator
from quickchat.sources import ScriptedChunkSource
from quickchat.store import InMemoryStore

# Settings with throttling disabled so every content change reaches the store.
IMMEDIATE = AssemblerSettings(throttle_interval=0.0, first_chunk_timeout=1.0, idle_timeout=1.0)


def answer_chunks(*deltas, final=None):
    """A plain text answer: start, deltas, complete, block complete."""
    text = "".join(deltas) if final is None else final
    return [
        Chunk.text_start(),
        *(Chunk.text_delta(d) for d in deltas),
        Chunk.text_complete(text),
        Chunk.block_complete(),
    ]


def sequential_ids(prefix="b"):
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


def make_coordinator(chunks=None, *, source=None, store=None, settings=IMMEDIATE, **kwargs):
    store = store or InMemoryStore()
    source = source or ScriptedChunkSource(chunks or answer_chunks("Hel", "lo"))
    return RequestCoordinator(store, source, settings=settings, **kwargs)


async def wait_until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


class InterruptingSource:
    """Wraps a source and runs *action* once *after* chunks have been consumed."""

    def __init__(self, inner, after, action=None):
        self.inner = inner
        self.after = after
        self.action = action

    def __call__(self, request, token):
        return self._iterate(request, token)

    async def _iterate(self, request, token):
        seen = 0
        async for chunk in self.inner(request, token):
            yield chunk
            seen += 1
            if seen == self.after and self.action is not None:
                self.action()


class GatedSource:
    """Yields *before*, waits for ``gate``, then yields *after* unless cancelled."""

    def __init__(self, before, after):
        self.before = list(before)
        self.after = list(after)
        self.gate = asyncio.Event()
        self.requests = []

    def __call__(self, request, token):
        self.requests.append(request)
        return self._iterate(token)

    async def _iterate(self, token):
        for chunk in self.before:
            yield chunk
        await self.gate.wait()
        if token.cancelled:
            yield Chunk.failure(token.reason, is_cancellation=True)
            return
        for chunk in self.after:
            yield chunk


class FakeSession:
    """Stands in for ``apple_fm_sdk.LanguageModelSession``."""

    def __init__(self, snapshots=(), error=None, delay=0.0, first_delay=0.0):
        self.snapshots = list(snapshots)
        self.error = error
        self.delay = delay
        self.first_delay = first_delay
        self.prompts = []

    async def stream_response(self, prompt):
        self.prompts.append(prompt)
        if self.first_delay:
            await asyncio.sleep(self.first_delay)
        for snapshot in self.snapshots:
            yield snapshot
            if self.delay:
                await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def composer():
    return Composer()
