"""Tests for ChatService: conversation lookup and full turn persistence."""
import asyncio
import json
from datetime import timedelta, timezone

import pytest
from sqlmodel import select

from app.core.exceptions import RunFailedError, TooManyToolCyclesError, TransportError
from app.models.conversation import Conversation, Message, MessageRole, utcnow
from app.services.chat_service import ChatService
from tests.fakes import FakeAssistantClient, RecordingSink, completed_run, deltas, failed_run, message_done, tool_run


async def _messages(session, conversation_id):
    result = await session.exec(
        select(Message).where(Message.conversation_id == conversation_id).order_by(Message.id)
    )
    return list(result.all())


def _as_utc(value):
    # SQLite hands stored timestamps back without an offset
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class GatedAssistant(FakeAssistantClient):
    """Holds the first run open until `release` is set."""

    def __init__(self):
        super().__init__(runs=[completed_run(), completed_run()])
        self.first_run_started = asyncio.Event()
        self.release = asyncio.Event()

    async def create_run(self, thread_id):
        if not self.first_run_started.is_set():
            self.first_run_started.set()
            await self.release.wait()
        return await super().create_run(thread_id)


class TestConversationSession:
    @pytest.mark.asyncio
    async def test_creates_conversation_with_new_thread(self, session, assistant):
        service = ChatService(assistant)

        conversation = await service.get_or_create_conversation(session, "u1")

        assert conversation.id is not None
        assert conversation.user_id == "u1"
        assert conversation.thread_id == "thread_1"
        assert assistant.threads == ["thread_1"]

    @pytest.mark.asyncio
    async def test_second_call_reuses_conversation(self, session, assistant):
        service = ChatService(assistant)

        first = await service.get_or_create_conversation(session, "u1")
        second = await service.get_or_create_conversation(session, "u1")

        assert second.id == first.id
        assert second.thread_id == first.thread_id
        assert assistant.threads == ["thread_1"]

    @pytest.mark.asyncio
    async def test_users_get_separate_conversations(self, session, assistant):
        service = ChatService(assistant)

        a = await service.get_or_create_conversation(session, "u1")
        b = await service.get_or_create_conversation(session, "u2")

        assert a.id != b.id
        assert a.thread_id != b.thread_id

    @pytest.mark.asyncio
    async def test_thread_creation_failure_propagates(self, session, assistant):
        assistant.create_thread_error = TransportError("unreachable")
        service = ChatService(assistant)

        with pytest.raises(TransportError):
            await service.get_or_create_conversation(session, "u1")

        result = await session.exec(select(Conversation))
        assert result.all() == []

    @pytest.mark.asyncio
    async def test_lost_insert_race_reuses_existing_conversation(self, session, assistant):
        session.add(Conversation(user_id="u1", thread_id="thread_winner"))
        await session.commit()

        service = ChatService(assistant)
        real_find = service._find_conversation
        calls = []

        async def racing_find(session, user_id):
            calls.append(user_id)
            if len(calls) == 1:
                return None
            return await real_find(session, user_id)

        service._find_conversation = racing_find

        conversation = await service.get_or_create_conversation(session, "u1")

        assert conversation.thread_id == "thread_winner"
        result = await session.exec(select(Conversation).where(Conversation.user_id == "u1"))
        assert len(result.all()) == 1


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_first_message_creates_conversation_and_stores_turn(self, session, assistant):
        service = ChatService(assistant)

        result = await service.handle_message(session, "u1", "Hello")

        assert result.content == "Hi there!"
        assert result.role is MessageRole.ASSISTANT

        conversation, messages = await service.get_chat(session, "u1")
        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, "Hello"),
            (MessageRole.ASSISTANT, "Hi there!"),
        ]
        assert messages[1].id == result.message_id
        assert _as_utc(messages[1].created_at) >= _as_utc(messages[0].created_at)
        assert assistant.messages == [(conversation.thread_id, "user", "Hello")]

    @pytest.mark.asyncio
    async def test_updated_at_bumped_after_turn(self, session, assistant):
        service = ChatService(assistant)
        conversation = await service.get_or_create_conversation(session, "u1")
        before = conversation.updated_at

        await service.handle_message(session, "u1", "Hello")

        await session.refresh(conversation)
        assert _as_utc(conversation.updated_at) >= _as_utc(before)

    @pytest.mark.asyncio
    async def test_failed_run_keeps_user_message_only(self, session):
        assistant = FakeAssistantClient(runs=[failed_run()])
        service = ChatService(assistant)

        with pytest.raises(RunFailedError):
            await service.handle_message(session, "u1", "Hello")

        conversation = await service.get_or_create_conversation(session, "u1")
        messages = await _messages(session, conversation.id)
        assert [(m.role, m.content) for m in messages] == [(MessageRole.USER, "Hello")]

    @pytest.mark.asyncio
    async def test_resubmit_after_failure_uses_same_conversation(self, session):
        assistant = FakeAssistantClient(runs=[failed_run(), completed_run()])
        service = ChatService(assistant)

        with pytest.raises(RunFailedError):
            await service.handle_message(session, "u1", "Hello")
        result = await service.handle_message(session, "u1", "Hello")

        assert result.content == "Hi there!"
        assert assistant.threads == ["thread_1"]
        conversation = await service.get_or_create_conversation(session, "u1")
        messages = await _messages(session, conversation.id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.USER, MessageRole.ASSISTANT]

    @pytest.mark.asyncio
    async def test_turn_with_user_info_tool(self, session, alice):
        assistant = FakeAssistantClient(
            runs=[tool_run(("call_1", "get_user_info")), completed_run()],
            reply="You are Alice Example.",
        )
        service = ChatService(assistant)

        result = await service.handle_message(session, "u1", "Who am I?")

        assert result.content == "You are Alice Example."
        output = json.loads(assistant.submissions[0][2][0].output)
        assert output["fullname"] == "Alice Example"

    @pytest.mark.asyncio
    async def test_streaming_turn_final_matches_result(self, session):
        assistant = FakeAssistantClient(
            runs=[completed_run()],
            stream_events=deltas("Hi", "Hi there!") + [message_done("Hi there!")],
        )
        sink = RecordingSink()

        result = await ChatService(assistant).handle_message(session, "u1", "Hello", stream_sink=sink)

        finals = [text for text, finished in sink.calls if finished]
        assert finals == [result.content]
        assert sink.calls[-1] == (result.content, True)

    @pytest.mark.asyncio
    async def test_history_round_trip_preserves_content(self, session, assistant):
        service = ChatService(assistant)
        conversation = await service.get_or_create_conversation(session, "u1")
        contents = ["first", "ünïcødé ✓", "  spaced  ", "line\nbreak"]
        for content in contents:
            await service.store_message(session, conversation.id, MessageRole.USER, content)

        history = await service.get_conversation_history(session, conversation.id)

        assert [m.content for m in history] == contents

    @pytest.mark.asyncio
    async def test_stored_timestamps_are_utc(self, session, assistant):
        service = ChatService(assistant)
        started = utcnow()

        await service.handle_message(session, "u1", "Hello")

        conversation, messages = await service.get_chat(session, "u1")
        window = (started - timedelta(seconds=1), utcnow() + timedelta(seconds=1))
        for stamp in [conversation.created_at, conversation.updated_at] + [m.created_at for m in messages]:
            assert window[0] <= _as_utc(stamp) <= window[1]

    @pytest.mark.asyncio
    async def test_zero_tool_cycles_is_honoured(self, session):
        assistant = FakeAssistantClient(runs=[tool_run(("call_1", "get_user_info")), completed_run()])
        service = ChatService(assistant, max_tool_cycles=0)

        with pytest.raises(TooManyToolCyclesError):
            await service.handle_message(session, "u1", "Who am I?")

        assert assistant.submissions == []


class TestUserSerialization:
    @pytest.mark.asyncio
    async def test_concurrent_turns_for_one_user_run_in_order(self, session):
        assistant = GatedAssistant()
        service = ChatService(assistant)

        first = asyncio.create_task(service.handle_message(session, "u1", "one"))
        await assistant.first_run_started.wait()
        second = asyncio.create_task(service.handle_message(session, "u1", "two"))
        for _ in range(10):
            await asyncio.sleep(0)

        assert [content for _, _, content in assistant.messages] == ["one"]

        assistant.release.set()
        await asyncio.gather(first, second)

        assert [content for _, _, content in assistant.messages] == ["one", "two"]
        assert assistant.threads == ["thread_1"]
        result = await session.exec(select(Conversation).where(Conversation.user_id == "u1"))
        conversations = list(result.all())
        assert len(conversations) == 1
        messages = await _messages(session, conversations[0].id)
        assert [m.content for m in messages] == ["one", "Hi there!", "two", "Hi there!"]

    @pytest.mark.asyncio
    async def test_user_gates_released_after_turns(self, session):
        assistant = FakeAssistantClient(runs=[failed_run() for _ in range(50)])
        service = ChatService(assistant)

        for n in range(50):
            with pytest.raises(RunFailedError):
                await service.handle_message(session, f"user{n}", "Hello")

        assert service._user_locks == {}

    @pytest.mark.asyncio
    async def test_user_gate_kept_while_a_turn_waits(self, session):
        assistant = GatedAssistant()
        service = ChatService(assistant)

        first = asyncio.create_task(service.handle_message(session, "u1", "one"))
        await assistant.first_run_started.wait()
        second = asyncio.create_task(service.handle_message(session, "u1", "two"))
        for _ in range(10):
            await asyncio.sleep(0)

        assert service._user_locks["u1"].holders == 2

        assistant.release.set()
        await asyncio.gather(first, second)
        assert service._user_locks == {}
