"""Shared fixtures and in-memory stand-ins for the external services."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from threadchat.config import get_settings
from threadchat.errors import PersistenceError
from threadchat.services.llm_service import ConversationHandle
from threadchat.services.storage_service import EphemeralBlobStore, StorageService

TEST_JWT_SECRET = "test-jwt-secret-for-threadchat"
BASE_TIME = datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    """Point every service at a fake Supabase project."""
    monkeypatch.setenv("SUPABASE_URL", "https://proj.supabase.test")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setenv("SUPABASE_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("LLM_MODEL", "chat-model")
    monkeypatch.setenv("VISION_MODEL", "vision-model")
    monkeypatch.setenv("TITLE_MODEL", "title-model")
    monkeypatch.setenv("SEED_TIMEOUT_SECONDS", "2")
    monkeypatch.chdir(tmp_path)  # keep a developer's .env out of the tests
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


def make_message(
    index: int,
    content: str,
    is_ai: bool = False,
    chat_id: str = "chat-1",
    attachments: list[dict] | None = None,
) -> dict:
    return {
        "id": f"msg-{index}",
        "chat_id": chat_id,
        "user_id": "ai" if is_ai else "user-1",
        "username": "Gemini" if is_ai else "alice",
        "content": content,
        "is_ai": is_ai,
        "attachments": attachments,
        "created_at": (BASE_TIME + timedelta(seconds=index)).isoformat(),
    }


class FakeLLM:
    """Records every request and answers from canned values."""

    def __init__(self):
        self.reply = "Noted."
        self.chunks = ["Hel", "lo", "!"]
        self.stream_error: Exception | None = None
        self.title = "Greeting The Assistant"
        self.vision_reply = "A cat on a sofa."
        self.completions: list[tuple[str | None, list[dict]]] = []
        self.streams: list[tuple[str | None, list[dict]]] = []
        self.generated: list[tuple[str, list[dict]]] = []
        self.titles: list[str] = []
        self.before_title = None

    def create_conversation(self, model: str) -> ConversationHandle:
        return ConversationHandle(model, lambda: self)

    async def chat_completion(self, messages, model=None, system_prompt=None, max_tokens=None):
        self.completions.append((model, messages))
        return self.reply

    async def chat_completion_stream(self, messages, model=None, system_prompt=None):
        self.streams.append((model, messages))
        for chunk in self.chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    async def generate(self, model, parts):
        self.generated.append((model, parts))
        return self.vision_reply

    async def generate_title(self, content):
        self.titles.append(content)
        if self.before_title is not None:
            self.before_title()
        return self.title


class FakeSupabase:
    """In-memory chats/messages tables with the SupabaseService call surface."""

    def __init__(self, messages: list[dict] | None = None, title: str = "New Chat"):
        self.chat = {
            "id": "chat-1",
            "user_id": "user-1",
            "title": title,
            "created_at": BASE_TIME.isoformat(),
        }
        self.messages = list(messages or [])
        self.reject_attachments = False
        self.fail_all_inserts = False
        self.drop_reply_inserts = False
        self.insert_calls: list[dict] = []

    async def get_messages(self, chat_id):
        return [dict(m) for m in self.messages if m["chat_id"] == chat_id]

    async def create_message(self, chat_id, user_id, username, content, is_ai, attachments=None):
        self.insert_calls.append({"content": content, "is_ai": is_ai, "attachments": attachments})
        if self.fail_all_inserts:
            raise PersistenceError(500, "connection reset")
        if is_ai and self.drop_reply_inserts:
            raise httpx.ConnectError("connection refused")
        if attachments and self.reject_attachments:
            raise PersistenceError(
                400, "Could not find the 'attachments' column of 'messages' in the schema cache"
            )
        row = make_message(len(self.messages) + 1, content, is_ai=is_ai, chat_id=chat_id)
        row["attachments"] = attachments
        self.messages.append(row)
        return dict(row)

    async def get_chat(self, chat_id, user_id):
        return dict(self.chat) if chat_id == self.chat["id"] else None

    async def update_chat_title_if(self, chat_id, user_id, title, expected_title):
        if self.chat["title"] != expected_title:
            return None
        self.chat["title"] = title
        return dict(self.chat)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def blob_store():
    return EphemeralBlobStore()


@pytest.fixture
def storage(blob_store):
    return StorageService(blob_store)
