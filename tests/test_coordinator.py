"""
Comprehensive tests for quickchat.coordinator (RequestCoordinator).

Covers:
  - Happy path: messages, blocks, observables and state transitions
  - Input validation no-ops (empty content, no topic)
  - First-turn reference merge and feature prompt prefixes
  - Pause: cancellation settles paused, late chunks are dropped
  - Generation failures and store failures surface as ``error``
  - Streams that end without a terminal chunk
  - Reset, including reset during an outstanding ask
  - Context window selection and concurrent sends
"""

import asyncio
import logging

from quickchat.chunks import Chunk
from quickchat.composer import FEATURE_PROMPTS, Composer, Feature
from quickchat.config import AssemblerSettings
from quickchat.coordinator import CoordinatorState
from quickchat.exceptions import GenerationError
from quickchat.models import BlockStatus, BlockType, MessageRole, MessageStatus
from quickchat.sources import AbortRegistry, ScriptedChunkSource
from quickchat.store import InMemoryStore

from .conftest import (
    GatedSource,
    InterruptingSource,
    answer_chunks,
    make_coordinator,
    wait_until,
)


def blocks_of(coordinator, message):
    return [coordinator.store.get_block(block_id) for block_id in message.blocks]


def user_text(coordinator, message):
    (block,) = blocks_of(coordinator, message)
    return block.content


class RecordingListener:
    def __init__(self):
        self.snapshots = []

    def __call__(self, coordinator):
        self.snapshots.append(
            (coordinator.state, coordinator.is_loading, coordinator.is_outputted)
        )

    @property
    def states(self):
        return [state for state, _, _ in self.snapshots]


# ========================================================================
# Happy path
# ========================================================================


class TestSendMessage:
    CHUNKS = [
        Chunk.thinking_start(),
        Chunk.thinking_delta("Considering", 120),
        Chunk.thinking_complete(300),
        Chunk.text_start(),
        Chunk.text_delta("Hel"),
        Chunk.text_delta("lo"),
        Chunk.text_complete("Hello"),
        Chunk.block_complete(),
    ]

    async def test_assembles_user_and_assistant_messages(self):
        coordinator = make_coordinator(self.CHUNKS)
        await coordinator.send_message("Hi")

        user, assistant = coordinator.messages
        assert user.role is MessageRole.USER
        assert user.status is MessageStatus.SUCCESS
        assert user_text(coordinator, user) == "Hi"

        assert assistant.role is MessageRole.ASSISTANT
        assert assistant.status is MessageStatus.SUCCESS
        assert assistant.ask_id == user.id
        thinking, text = blocks_of(coordinator, assistant)
        assert thinking.type is BlockType.THINKING
        assert thinking.content == "Considering"
        assert thinking.thinking_millsec == 300
        assert thinking.status is BlockStatus.SUCCESS
        assert text.content == "Hello"
        assert text.status is BlockStatus.SUCCESS

    async def test_observables_after_success(self):
        coordinator = make_coordinator(self.CHUNKS)
        await coordinator.send_message("Hi")
        assert coordinator.state is CoordinatorState.SETTLED_SUCCESS
        assert coordinator.is_loading is False
        assert coordinator.is_outputted is True
        assert coordinator.error == ""
        assert coordinator.ask_id == ""

    async def test_state_transitions_are_notified(self):
        coordinator = make_coordinator(self.CHUNKS)
        listener = RecordingListener()
        coordinator.subscribe(listener)
        await coordinator.send_message("Hi")
        assert listener.snapshots == [
            (CoordinatorState.AWAITING_FIRST_OUTPUT, True, False),
            (CoordinatorState.STREAMING, True, True),
            (CoordinatorState.SETTLED_SUCCESS, False, True),
        ]

    async def test_completion_only_answer_counts_as_output(self):
        coordinator = make_coordinator(
            [Chunk.text_complete("Whole answer"), Chunk.block_complete()]
        )
        listener = RecordingListener()
        coordinator.subscribe(listener)
        await coordinator.send_message("Hi")
        assert listener.snapshots == [
            (CoordinatorState.AWAITING_FIRST_OUTPUT, True, False),
            (CoordinatorState.STREAMING, True, True),
            (CoordinatorState.SETTLED_SUCCESS, False, True),
        ]
        (text,) = blocks_of(coordinator, coordinator.messages[-1])
        assert text.content == "Whole answer"

    async def test_unsubscribe_stops_notifications(self):
        coordinator = make_coordinator()
        listener = RecordingListener()
        unsubscribe = coordinator.subscribe(listener)
        unsubscribe()
        unsubscribe()
        await coordinator.send_message("Hi")
        assert listener.snapshots == []

    async def test_failing_listener_is_logged(self, caplog):
        coordinator = make_coordinator()

        def broken(_):
            raise RuntimeError("listener bug")

        coordinator.subscribe(broken)
        with caplog.at_level(logging.WARNING, logger="quickchat"):
            await coordinator.send_message("Hi")
        assert coordinator.state is CoordinatorState.SETTLED_SUCCESS
        assert "Subscriber callback failed" in caplog.text

    async def test_composer_is_cleared_after_send(self):
        coordinator = make_coordinator()
        await coordinator.send_message("Hi")
        assert coordinator.composer.user_input_text == ""
        assert coordinator.composer.is_first_message is False

    async def test_token_released_after_settlement(self):
        aborts = AbortRegistry()
        coordinator = make_coordinator(aborts=aborts)
        active = []
        coordinator.subscribe(lambda c: active.append(aborts.is_active(c.ask_id)))
        await coordinator.send_message("Hi")
        assert active[0] is True
        assert len(aborts) == 0

    async def test_throttled_writes_still_end_with_final_content(self):
        store = InMemoryStore()
        chunks = [Chunk.text_start(), *(Chunk.text_delta(c) for c in "streaming")]
        chunks += [Chunk.text_complete(), Chunk.block_complete()]
        coordinator = make_coordinator(
            chunks, store=store, settings=AssemblerSettings(throttle_interval=10.0)
        )
        await coordinator.send_message("Hi")
        (text,) = blocks_of(coordinator, coordinator.messages[-1])
        assert text.content == "streaming"
        assert text.status is BlockStatus.SUCCESS

    async def test_stream_without_terminal_chunk_settles_success(self, caplog):
        coordinator = make_coordinator([Chunk.text_start(), Chunk.text_delta("cut off")])
        with caplog.at_level(logging.WARNING, logger="quickchat"):
            await coordinator.send_message("Hi")
        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.SUCCESS
        (text,) = blocks_of(coordinator, assistant)
        assert text.content == "cut off"
        assert text.status is BlockStatus.SUCCESS
        assert "ended without a terminal chunk" in caplog.text


# ========================================================================
# Input validation
# ========================================================================


class TestNoOps:
    async def test_empty_content_is_ignored(self):
        source = ScriptedChunkSource(answer_chunks("x"))
        coordinator = make_coordinator(source=source)
        await coordinator.send_message("")
        assert coordinator.messages == []
        assert source.requests == []
        assert coordinator.state is CoordinatorState.IDLE
        assert coordinator.is_loading is False

    async def test_no_bound_topic_is_ignored(self):
        source = ScriptedChunkSource(answer_chunks("x"))
        coordinator = make_coordinator(source=source)
        coordinator.bind_topic(None)
        await coordinator.send_message("Hi")
        assert coordinator.messages == []
        assert source.requests == []

    async def test_pause_without_outstanding_ask(self):
        coordinator = make_coordinator()
        listener = RecordingListener()
        coordinator.subscribe(listener)
        coordinator.pause()
        assert listener.snapshots == []
        assert coordinator.state is CoordinatorState.IDLE


# ========================================================================
# Composition
# ========================================================================


class TestComposition:
    async def test_first_turn_merges_reference(self):
        coordinator = make_coordinator(composer=Composer(clipboard_text="Quoted paragraph"))
        await coordinator.send_message("Explain this")
        assert user_text(coordinator, coordinator.messages[0]) == (
            "Quoted paragraph\n\nExplain this"
        )

    async def test_later_turns_send_input_only(self):
        coordinator = make_coordinator(composer=Composer(clipboard_text="Quoted paragraph"))
        await coordinator.send_message("Explain this")
        await coordinator.send_message("  And more?  ")
        assert user_text(coordinator, coordinator.messages[2]) == "And more?"

    async def test_reference_alone_is_sent(self):
        coordinator = make_coordinator(composer=Composer(clipboard_text="Just this"))
        await coordinator.send_message()
        assert user_text(coordinator, coordinator.messages[0]) == "Just this"

    async def test_summary_feature_prefixes_prompt(self):
        coordinator = make_coordinator()
        await coordinator.ask(Feature.SUMMARY, text="Long article")
        assert coordinator.composer.route is Feature.SUMMARY
        assert user_text(coordinator, coordinator.messages[0]) == (
            f"{FEATURE_PROMPTS[Feature.SUMMARY]}\n\nLong article"
        )

    async def test_chat_feature_has_no_prefix(self):
        coordinator = make_coordinator()
        await coordinator.ask(Feature.CHAT, text="Hello")
        assert user_text(coordinator, coordinator.messages[0]) == "Hello"

    async def test_translate_only_routes(self):
        coordinator = make_coordinator()
        await coordinator.ask(Feature.TRANSLATE, text="Bonjour")
        assert coordinator.composer.route is Feature.TRANSLATE
        assert coordinator.messages == []

    async def test_ask_with_empty_content_keeps_route(self):
        coordinator = make_coordinator()
        await coordinator.ask(Feature.SUMMARY)
        assert coordinator.composer.route is Feature.HOME
        assert coordinator.messages == []


# ========================================================================
# Pause
# ========================================================================


class TestPause:
    async def test_pause_during_thinking_keeps_partial_state(self):
        coordinator = make_coordinator()
        inner = ScriptedChunkSource(
            [
                Chunk.thinking_start(),
                Chunk.thinking_delta("Let me", 500),
                Chunk.thinking_delta(" see", 600),
                Chunk.block_complete(),
            ]
        )
        coordinator.source = InterruptingSource(inner, after=2, action=coordinator.pause)
        await coordinator.send_message("Hi")

        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.PAUSED
        (thinking,) = blocks_of(coordinator, assistant)
        assert thinking.status is BlockStatus.PAUSED
        assert thinking.content == "Let me"
        assert thinking.thinking_millsec == 500
        assert coordinator.state is CoordinatorState.SETTLED_PAUSED
        assert coordinator.error == ""
        assert coordinator.is_loading is False
        assert coordinator.is_outputted is True

    async def test_pause_flushes_throttled_content(self):
        coordinator = make_coordinator(settings=AssemblerSettings(throttle_interval=10.0))
        inner = ScriptedChunkSource(answer_chunks("a", "b", "c"))
        coordinator.source = InterruptingSource(inner, after=4, action=coordinator.pause)
        await coordinator.send_message("Hi")
        (text,) = blocks_of(coordinator, coordinator.messages[-1])
        assert text.content == "abc"
        assert text.status is BlockStatus.PAUSED

    async def test_pause_from_listener_on_first_output(self):
        coordinator = make_coordinator(answer_chunks("never", "shown"))

        def pause_on_output(c):
            if c.is_outputted and c.is_loading:
                c.pause()

        coordinator.subscribe(pause_on_output)
        await coordinator.send_message("Hi")
        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.PAUSED
        (text,) = blocks_of(coordinator, assistant)
        assert text.content == ""
        assert text.status is BlockStatus.PAUSED
        assert coordinator.state is CoordinatorState.SETTLED_PAUSED

    async def test_late_chunks_after_pause_are_dropped(self):
        source = GatedSource(
            before=[Chunk.text_start(), Chunk.text_delta("Partial")],
            after=[Chunk.text_delta(" late"), Chunk.block_complete()],
        )
        coordinator = make_coordinator(source=source)
        task = asyncio.create_task(coordinator.send_message("Hi"))
        assert await wait_until(lambda: coordinator.is_outputted)

        coordinator.pause()
        assert coordinator.ask_id == ""
        assert coordinator.is_loading is False
        source.gate.set()
        await task

        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.PAUSED
        (text,) = blocks_of(coordinator, assistant)
        assert text.content == "Partial"
        assert coordinator.state is CoordinatorState.SETTLED_PAUSED

    async def test_source_that_ignores_cancellation(self):
        inner = ScriptedChunkSource(answer_chunks("a", "b"))

        class Deaf:
            def __call__(self, request, token):
                return inner(request, type(token)())

        coordinator = make_coordinator()
        coordinator.source = InterruptingSource(Deaf(), after=2, action=coordinator.pause)
        await coordinator.send_message("Hi")
        assert coordinator.messages[-1].status is MessageStatus.PAUSED
        (text,) = blocks_of(coordinator, coordinator.messages[-1])
        assert text.content == "a"

    async def test_task_cancellation_settles_paused(self):
        source = GatedSource(before=[Chunk.text_delta("Partial")], after=[])
        coordinator = make_coordinator(source=source)
        task = asyncio.create_task(coordinator.send_message("Hi"))
        assert await wait_until(lambda: coordinator.is_outputted)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert coordinator.messages[-1].status is MessageStatus.PAUSED
        assert coordinator.is_loading is False
        assert coordinator.ask_id == ""


# ========================================================================
# Failures
# ========================================================================


class TestFailures:
    async def test_generation_failure_sets_error(self, caplog):
        cause = RuntimeError("model overloaded")
        coordinator = make_coordinator(
            [Chunk.text_start(), Chunk.text_delta("Hal"), Chunk.failure(cause)]
        )
        with caplog.at_level(logging.ERROR, logger="quickchat"):
            await coordinator.send_message("Hi")

        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.ERROR
        (text,) = blocks_of(coordinator, assistant)
        assert text.status is BlockStatus.ERROR
        assert text.content == "Hal"
        assert coordinator.error == "model overloaded"
        assert isinstance(coordinator.failure, GenerationError)
        assert coordinator.failure.cause is cause
        assert coordinator.state is CoordinatorState.SETTLED_ERROR
        assert "Generation failed" in caplog.text

    async def test_failure_without_message_uses_fallback(self):
        coordinator = make_coordinator([Chunk.failure("")])
        await coordinator.send_message("Hi")
        assert coordinator.error == "An error occurred"

    async def test_store_failure_is_downgraded(self, caplog):
        class FlakyStore(InMemoryStore):
            def update_block(self, block_id, changes):
                raise OSError("disk full")

        coordinator = make_coordinator(store=FlakyStore())
        with caplog.at_level(logging.ERROR, logger="quickchat"):
            await coordinator.send_message("Hi")

        assert coordinator.error == "disk full"
        assert coordinator.state is CoordinatorState.SETTLED_ERROR
        assert coordinator.is_loading is False
        assert coordinator.ask_id == ""
        assert "Failed to assemble response" in caplog.text

    async def test_source_exception_is_downgraded(self):
        def exploding(request, token):
            async def iterate():
                yield Chunk.text_delta("Some")
                raise ConnectionError("socket closed")

            return iterate()

        coordinator = make_coordinator(source=exploding)
        await coordinator.send_message("Hi")
        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.ERROR
        (text,) = blocks_of(coordinator, assistant)
        assert text.content == "Some"
        assert coordinator.error == "socket closed"

    async def test_failed_terminal_message_write_settles_as_error(self):
        class FlakyStore(InMemoryStore):
            def update_message(self, topic_id, message_id, changes):
                if changes.get("status") is MessageStatus.SUCCESS:
                    raise OSError("message write failed")
                super().update_message(topic_id, message_id, changes)

        coordinator = make_coordinator(store=FlakyStore())
        await coordinator.send_message("Hi")

        assert coordinator.state is CoordinatorState.SETTLED_ERROR
        assert coordinator.error == "message write failed"
        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.ERROR
        (text,) = blocks_of(coordinator, assistant)
        assert text.status is BlockStatus.SUCCESS
        assert text.content == "Hello"

    async def test_failed_terminal_block_write_settles_block_as_error(self):
        class FlakyStore(InMemoryStore):
            def update_block(self, block_id, changes):
                if changes.get("status") is BlockStatus.SUCCESS:
                    raise OSError("block write failed")
                super().update_block(block_id, changes)

        coordinator = make_coordinator(store=FlakyStore())
        await coordinator.send_message("Hi")

        assert coordinator.state is CoordinatorState.SETTLED_ERROR
        assert coordinator.error == "block write failed"
        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.ERROR
        (text,) = blocks_of(coordinator, assistant)
        assert text.status is BlockStatus.ERROR

    async def test_failed_block_attach_settles_new_block(self):
        class FlakyStore(InMemoryStore):
            def __init__(self):
                super().__init__()
                self.created = []

            def upsert_block(self, block):
                super().upsert_block(block)
                self.created.append(block.id)

            def update_message(self, topic_id, message_id, changes):
                if "blocks" in changes:
                    raise OSError("attach failed")
                super().update_message(topic_id, message_id, changes)

        store = FlakyStore()
        coordinator = make_coordinator(store=store)
        await coordinator.send_message("Hi")

        assert coordinator.state is CoordinatorState.SETTLED_ERROR
        assert coordinator.messages[-1].status is MessageStatus.ERROR
        statuses = [store.get_block(block_id).status for block_id in store.created]
        assert BlockStatus.STREAMING not in statuses

    async def test_failure_closes_source_and_cancels_token(self):
        seen = {}

        def tracking(request, token):
            seen["token"] = token

            async def iterate():
                try:
                    for chunk in answer_chunks("Hel", "lo"):
                        yield chunk
                finally:
                    seen["closed"] = True

            return iterate()

        class FlakyStore(InMemoryStore):
            def update_block(self, block_id, changes):
                raise OSError("disk full")

        coordinator = make_coordinator(source=tracking, store=FlakyStore())
        await coordinator.send_message("Hi")

        assert seen.get("closed") is True
        assert seen["token"].cancelled
        assert seen["token"].reason == "disk full"

    async def test_failed_pause_write_settles_as_error(self):
        class FlakyStore(InMemoryStore):
            def update_message(self, topic_id, message_id, changes):
                if changes.get("status") is MessageStatus.PAUSED:
                    raise OSError("pause write failed")
                super().update_message(topic_id, message_id, changes)

        source = GatedSource(before=[Chunk.text_delta("Partial")], after=answer_chunks("x"))
        coordinator = make_coordinator(source=source, store=FlakyStore())
        task = asyncio.create_task(coordinator.send_message("Hi"))
        assert await wait_until(lambda: coordinator.is_outputted)

        coordinator.pause()
        assert coordinator.state is CoordinatorState.SETTLED_ERROR
        assert coordinator.error == "pause write failed"
        source.gate.set()
        await task

        assistant = coordinator.messages[-1]
        assert assistant.status is MessageStatus.ERROR
        (text,) = blocks_of(coordinator, assistant)
        assert text.status is BlockStatus.ERROR
        assert text.content == "Partial"

    async def test_new_send_clears_previous_error(self):
        coordinator = make_coordinator([Chunk.failure("boom")])
        await coordinator.send_message("Hi")
        coordinator.source = ScriptedChunkSource(answer_chunks("ok"))
        await coordinator.send_message("Again")
        assert coordinator.error == ""
        assert coordinator.failure is None
        assert coordinator.state is CoordinatorState.SETTLED_SUCCESS


# ========================================================================
# Reset
# ========================================================================


class TestReset:
    async def test_reset_clears_topic_and_composer(self):
        coordinator = make_coordinator(composer=Composer(clipboard_text="Ref"))
        await coordinator.ask(Feature.SUMMARY, text="Hi")
        old_topic = coordinator.topic
        coordinator.reset()

        assert coordinator.store.messages_for_topic(old_topic.id) == []
        assert coordinator.topic.id != old_topic.id
        assert coordinator.messages == []
        assert coordinator.composer.is_first_message is True
        assert coordinator.composer.route is Feature.HOME
        assert coordinator.composer.clipboard_text == "Ref"
        assert coordinator.state is CoordinatorState.IDLE

    async def test_reset_clears_error(self):
        coordinator = make_coordinator([Chunk.failure("boom")])
        await coordinator.send_message("Hi")
        coordinator.reset()
        assert coordinator.error == ""
        assert coordinator.failure is None

    async def test_reset_during_outstanding_ask(self):
        source = GatedSource(before=[Chunk.text_delta("Partial")], after=answer_chunks("x"))
        aborts = AbortRegistry()
        coordinator = make_coordinator(source=source, aborts=aborts)
        task = asyncio.create_task(coordinator.send_message("Hi"))
        assert await wait_until(lambda: coordinator.is_outputted)

        coordinator.reset()
        assert coordinator.ask_id == ""
        assert coordinator.is_loading is False
        source.gate.set()
        await task
        assert coordinator.messages == []
        assert len(aborts) == 0


# ========================================================================
# Context window and overlapping sends
# ========================================================================


class TestContext:
    async def test_context_contains_conversation_so_far(self):
        source = ScriptedChunkSource(answer_chunks("Answer"))
        coordinator = make_coordinator(source=source)
        await coordinator.send_message("First")
        await coordinator.send_message("Second")

        first_request, second_request = source.requests
        assert [m.role for m in first_request.messages] == [MessageRole.USER]
        assert [m.role for m in second_request.messages] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.USER,
        ]
        assert second_request.ask_id == second_request.messages[-1].id
        assert second_request.message_text(second_request.messages[1]) == "Answer"

    async def test_new_send_pauses_outstanding_ask(self):
        gated = GatedSource(before=[Chunk.text_delta("Half")], after=answer_chunks("late"))
        coordinator = make_coordinator(source=gated)
        first = asyncio.create_task(coordinator.send_message("First"))
        assert await wait_until(lambda: coordinator.is_outputted)

        follow_up = ScriptedChunkSource(answer_chunks("Second answer"))
        coordinator.source = follow_up
        await coordinator.send_message("Second")
        gated.gate.set()
        await first

        statuses = [m.status for m in coordinator.messages]
        assert statuses == [
            MessageStatus.SUCCESS,
            MessageStatus.PAUSED,
            MessageStatus.SUCCESS,
            MessageStatus.SUCCESS,
        ]
        assert coordinator.state is CoordinatorState.SETTLED_SUCCESS
        (context,) = [r.messages for r in follow_up.requests]
        assert [m.status for m in context] == [
            MessageStatus.SUCCESS,
            MessageStatus.PAUSED,
            MessageStatus.SUCCESS,
        ]

    async def test_coordinators_share_store_and_registry(self):
        store = InMemoryStore()
        aborts = AbortRegistry()
        left = make_coordinator(answer_chunks("left"), store=store, aborts=aborts)
        right = make_coordinator(answer_chunks("right"), store=store, aborts=aborts)
        await asyncio.gather(left.send_message("L"), right.send_message("R"))
        assert left.topic.id != right.topic.id
        assert len(left.messages) == len(right.messages) == 2
        assert len(aborts) == 0
