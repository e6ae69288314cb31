"""Tests for SessionRegistry and ConversationHandle."""

import pytest

from conftest import FakeLLM
from threadchat.services.llm_service import ConversationHandle
from threadchat.services.session_registry import SessionRegistry


class TestSessionRegistry:
    """Test cases for SessionRegistry."""

    @pytest.fixture
    def llm(self):
        return FakeLLM()

    @pytest.fixture
    def registry(self, llm):
        return SessionRegistry(model="chat-model", llm_provider=lambda: llm)

    def test_get_or_create_reuses_handle(self, registry):
        first = registry.get_or_create("chat-1")
        second = registry.get_or_create("chat-1")

        assert first is second
        assert len(registry) == 1
        assert first.model == "chat-model"

    def test_reports_creation(self, registry):
        _, created = registry.get_or_create_with_status("chat-1")
        _, created_again = registry.get_or_create_with_status("chat-1")

        assert created is True
        assert created_again is False

    def test_handles_are_per_chat(self, registry):
        a = registry.get_or_create("chat-a")
        b = registry.get_or_create("chat-b")

        assert a is not b
        assert "chat-a" in registry and "chat-b" in registry

    def test_clear_is_idempotent(self, registry):
        registry.get_or_create("chat-1")

        registry.clear("chat-1")
        registry.clear("chat-1")
        registry.clear("never-seen")

        assert "chat-1" not in registry
        assert registry.get("chat-1") is None

    def test_clear_then_get_creates_new_handle(self, registry):
        old = registry.get_or_create("chat-1")
        registry.clear("chat-1")

        assert registry.get_or_create("chat-1") is not old

    def test_model_change_drops_every_handle(self, registry):
        for chat_id in ("chat-1", "chat-2", "chat-3"):
            registry.get_or_create(chat_id)

        dropped = registry.clear_all_on_model_change("other-model")

        assert dropped == 3
        assert len(registry) == 0
        assert registry.model == "other-model"
        assert registry.get_or_create("chat-1").model == "other-model"

    def test_same_model_keeps_handles(self, registry):
        handle = registry.get_or_create("chat-1")

        assert registry.clear_all_on_model_change("chat-model") == 0
        assert registry.get("chat-1") is handle


class TestConversationHandle:
    """Test cases for ConversationHandle."""

    @pytest.mark.asyncio
    async def test_send_accumulates_turns(self):
        llm = FakeLLM()
        handle = ConversationHandle("chat-model", lambda: llm)

        await handle.send("first")
        llm.reply = "Second answer."
        reply = await handle.send("second")

        assert reply == "Second answer."
        assert [t["role"] for t in handle.turns] == ["user", "assistant", "user", "assistant"]
        _, sent = llm.completions[-1]
        assert [t["content"] for t in sent] == ["first", "Noted.", "second"]

    @pytest.mark.asyncio
    async def test_streaming_records_reply_after_stream(self):
        llm = FakeLLM()
        handle = ConversationHandle("chat-model", lambda: llm)

        chunks = [chunk async for chunk in handle.send_streaming("hi")]

        assert chunks == ["Hel", "lo", "!"]
        assert handle.turns[-1] == {"role": "assistant", "content": "Hello!"}
        assert llm.streams[0][0] == "chat-model"

    @pytest.mark.asyncio
    async def test_broken_stream_leaves_no_dangling_turn(self):
        llm = FakeLLM()
        llm.stream_error = ConnectionError("stream reset")
        handle = ConversationHandle("chat-model", lambda: llm)
        handle.record_turn("earlier", "reply")

        with pytest.raises(ConnectionError):
            async for _ in handle.send_streaming("hi"):
                pass

        assert handle.turn_count == 2

    def test_record_turn_appends_pair(self):
        handle = ConversationHandle("chat-model", lambda: FakeLLM())

        handle.record_turn("look at this [Included 1 image]", "A cat.")

        assert handle.turns == [
            {"role": "user", "content": "look at this [Included 1 image]"},
            {"role": "assistant", "content": "A cat."},
        ]
