"""Tests for the PostgREST client against a mocked transport."""

import json

import httpx
import pytest

from threadchat.errors import PersistenceError
from threadchat.services.supabase_service import SupabaseService


class RecordingTransport:
    """Answers every request with one canned response and keeps the requests."""

    def __init__(self, status_code: int = 200, body=None):
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.body = body if body is not None else []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def _service(recorder: RecordingTransport) -> SupabaseService:
    return SupabaseService(transport=recorder.transport())


class TestChats:
    """Test cases for chat rows."""

    @pytest.mark.asyncio
    async def test_create_chat_uses_placeholder_title(self):
        recorder = RecordingTransport(201, [{"id": "chat-1", "title": "New Chat"}])

        chat = await _service(recorder).create_chat("user-1")

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/chats"
        assert json.loads(request.content) == {"user_id": "user-1", "title": "New Chat"}
        assert request.headers["Prefer"] == "return=representation"
        assert request.headers["apikey"] == "service-key"
        assert chat == {"id": "chat-1", "title": "New Chat"}

    @pytest.mark.asyncio
    async def test_get_chats_newest_first(self):
        recorder = RecordingTransport(200, [{"id": "b"}, {"id": "a"}])

        chats = await _service(recorder).get_chats("user-1")

        params = recorder.requests[0].url.params
        assert params["user_id"] == "eq.user-1"
        assert params["order"] == "created_at.desc"
        assert [c["id"] for c in chats] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_get_chat_missing_returns_none(self):
        recorder = RecordingTransport(200, [])

        assert await _service(recorder).get_chat("chat-9", "user-1") is None

    @pytest.mark.asyncio
    async def test_conditional_title_filters_on_expected_title(self):
        recorder = RecordingTransport(200, [{"id": "chat-1", "title": "Rust Ownership"}])

        updated = await _service(recorder).update_chat_title_if(
            "chat-1", "user-1", "Rust Ownership", expected_title="New Chat"
        )

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["title"] == "eq.New Chat"
        assert request.url.params["id"] == "eq.chat-1"
        assert json.loads(request.content) == {"title": "Rust Ownership"}
        assert updated["title"] == "Rust Ownership"

    @pytest.mark.asyncio
    async def test_conditional_title_no_match(self):
        """A renamed chat matches no row; PostgREST answers with an empty list."""
        recorder = RecordingTransport(200, [])

        updated = await _service(recorder).update_chat_title_if(
            "chat-1", "user-1", "Rust Ownership", expected_title="New Chat"
        )

        assert updated is None

    @pytest.mark.asyncio
    async def test_delete_chat_removes_messages_first(self):
        recorder = RecordingTransport(204)

        await _service(recorder).delete_chat("chat-1", "user-1")

        assert [(r.method, r.url.path) for r in recorder.requests] == [
            ("DELETE", "/rest/v1/messages"),
            ("DELETE", "/rest/v1/chats"),
        ]
        assert recorder.requests[0].url.params["chat_id"] == "eq.chat-1"

    @pytest.mark.asyncio
    async def test_delete_user_data_calls_both_procedures(self):
        recorder = RecordingTransport(204)

        await _service(recorder).delete_user_data("user-1")

        assert [r.url.path for r in recorder.requests] == [
            "/rest/v1/rpc/delete_user_messages",
            "/rest/v1/rpc/delete_user_chats",
        ]
        assert json.loads(recorder.requests[1].content) == {"user_uuid": "user-1"}


class TestMessages:
    """Test cases for message rows."""

    @pytest.mark.asyncio
    async def test_attachments_omitted_when_empty(self):
        recorder = RecordingTransport(201, [{"id": "m1"}])

        await _service(recorder).create_message("chat-1", "user-1", "alice", "hi", False, attachments=[])

        body = json.loads(recorder.requests[0].content)
        assert "attachments" not in body
        assert body["is_ai"] is False

    @pytest.mark.asyncio
    async def test_attachments_sent_as_json(self):
        recorder = RecordingTransport(201, [{"id": "m1"}])
        attachment = {"id": "a", "name": "a.pdf", "size": 1, "type": "application/pdf", "url": "u", "path": "p"}

        await _service(recorder).create_message(
            "chat-1", "user-1", "alice", "hi", False, attachments=[attachment]
        )

        assert json.loads(recorder.requests[0].content)["attachments"] == [attachment]

    @pytest.mark.asyncio
    async def test_get_messages_oldest_first(self):
        recorder = RecordingTransport(200, [])

        await _service(recorder).get_messages("chat-1")

        params = recorder.requests[0].url.params
        assert params["chat_id"] == "eq.chat-1"
        assert params["order"] == "created_at.asc"


class TestErrors:
    """Test cases for rejected requests."""

    @pytest.mark.asyncio
    async def test_postgrest_error_becomes_persistence_error(self):
        recorder = RecordingTransport(
            400,
            {
                "code": "PGRST204",
                "message": "Could not find the 'attachments' column of 'messages' in the schema cache",
                "details": None,
                "hint": None,
            },
        )

        with pytest.raises(PersistenceError) as exc_info:
            await _service(recorder).create_message("chat-1", "user-1", "alice", "hi", False)

        assert exc_info.value.status_code == 400
        assert exc_info.value.mentions("attachments")
        assert exc_info.value.mentions("ATTACHMENTS")
        assert not exc_info.value.mentions("username")

    @pytest.mark.asyncio
    async def test_plain_text_error_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="upstream down"))

        with pytest.raises(PersistenceError) as exc_info:
            await SupabaseService(transport=transport).get_chats("user-1")

        assert exc_info.value.status_code == 503
        assert exc_info.value.message == "upstream down"

    @pytest.mark.asyncio
    async def test_unreachable_database(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PersistenceError) as exc_info:
            await SupabaseService(transport=httpx.MockTransport(handler)).create_message(
                "chat-1", "ai", "Gemini", "Hello!", True
            )

        assert exc_info.value.status_code == 503
        assert "connection refused" in exc_info.value.message
