"""
Message dispatcher: runs one user send end to end.

Flow per send:
1. Reject empty sends and sends to a chat that already has one in flight
2. Ask the relevance heuristic; drop the chat's conversation if context is not needed
3. Get or create the conversation; a fresh one is seeded from history in the background
4. Persist the user message (retrying once without attachments)
5. Wait for the seed, then stream the reply (or one multimodal call for images)
6. Persist the reply once; schedule title generation for a chat's first exchange

The work runs in its own task and publishes events on a queue. A client that
goes away only stops reading events; the reply is still stored.
"""

import asyncio
import base64
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, ClassVar

import httpx
from fastapi import Request

from threadchat.config import get_settings
from threadchat.errors import EmptyMessageError, PersistenceError, SendInProgressError
from threadchat.models.chat import Attachment, MessageResponse
from threadchat.services.context_classifier import needs_context
from threadchat.services.llm_service import ConversationHandle, LLMService, get_llm_service
from threadchat.services.session_registry import SessionRegistry
from threadchat.services.storage_service import StorageService
from threadchat.services.summarizer_service import seed_handle
from threadchat.services.supabase_service import SupabaseService

logger = logging.getLogger(__name__)

AI_USER_ID = "ai"


@dataclass
class DispatchEvent:
    type: ClassVar[str] = "event"

    def to_dict(self) -> dict:
        return {"type": self.type, **asdict(self)}


@dataclass
class UserMessageEvent(DispatchEvent):
    """Optimistic copy of the user's message, sent before it is stored."""
    type: ClassVar[str] = "user_message"
    temp_id: str
    message: dict


@dataclass
class UserMessageSavedEvent(DispatchEvent):
    type: ClassVar[str] = "user_message_saved"
    temp_id: str
    message: dict


@dataclass
class AssistantStartEvent(DispatchEvent):
    type: ClassVar[str] = "assistant_start"
    temp_id: str


@dataclass
class ContentEvent(DispatchEvent):
    type: ClassVar[str] = "content"
    temp_id: str
    content: str


@dataclass
class AssistantCompleteEvent(DispatchEvent):
    type: ClassVar[str] = "assistant_complete"
    temp_id: str
    content: str
    message: dict | None = None


@dataclass
class AssistantAbortedEvent(DispatchEvent):
    """The placeholder reply must be removed from the UI."""
    type: ClassVar[str] = "assistant_aborted"
    temp_id: str


@dataclass
class ErrorEvent(DispatchEvent):
    type: ClassVar[str] = "error"
    error: str


@dataclass
class SendContext:
    """Everything one send needs besides the dispatcher's own state."""
    chat: dict
    user_id: str
    username: str
    content: str
    supabase: SupabaseService
    storage: StorageService
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def chat_id(self) -> str:
        return self.chat["id"]


def file_info_prompt(attachments: list[Attachment]) -> str:
    if not attachments:
        return ""
    lines = ["", "", "The user has attached the following files:"]
    for i, att in enumerate(attachments, start=1):
        lines.append(f"{i}. {att.name} ({att.type or 'unknown type'})")
    lines.append("")
    lines.append("Please analyze and describe these files in your response.")
    return "\n".join(lines)


class MessageDispatcher:
    def __init__(
        self,
        registry: SessionRegistry,
        llm_provider: Callable[[], LLMService] = get_llm_service,
    ):
        self.registry = registry
        self._llm_provider = llm_provider
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    def is_in_flight(self, chat_id: str) -> bool:
        return chat_id in self._in_flight

    def dispatch(self, ctx: SendContext) -> AsyncGenerator[DispatchEvent, None]:
        """
        Start a send and return its event stream.

        Raises EmptyMessageError / SendInProgressError before anything is
        started, so callers can map them to a plain HTTP error.
        """
        if not ctx.content.strip() and not ctx.attachments:
            raise EmptyMessageError("Message is empty")
        if ctx.chat_id in self._in_flight:
            raise SendInProgressError(ctx.chat_id)

        # marked before the first await: one send per chat
        self._in_flight.add(ctx.chat_id)
        queue: asyncio.Queue[DispatchEvent | None] = asyncio.Queue()
        self._spawn(self._run(ctx, queue))
        return self._drain(queue)

    async def wait_idle(self) -> None:
        """Wait for running sends and background jobs (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _drain(queue: asyncio.Queue) -> AsyncGenerator[DispatchEvent, None]:
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    async def _run(self, ctx: SendContext, queue: asyncio.Queue) -> None:
        try:
            await self._send(ctx, queue.put_nowait)
        except Exception as e:
            logger.error("Send to chat %s failed: %s", ctx.chat_id, e, exc_info=True)
            queue.put_nowait(ErrorEvent(error=str(e) or "Failed to send message"))
        finally:
            self._in_flight.discard(ctx.chat_id)
            queue.put_nowait(None)

    async def _send(self, ctx: SendContext, emit: Callable[[DispatchEvent], None]) -> None:
        settings = get_settings()
        content = ctx.content.strip()

        history = [MessageResponse(**m) for m in await ctx.supabase.get_messages(ctx.chat_id)]
        has_prior = bool(history)

        fresh_start = not needs_context(content, has_prior)
        if fresh_start:
            logger.info("Chat %s: context not needed, starting a fresh conversation", ctx.chat_id)
            self.registry.clear(ctx.chat_id)

        handle, created = self.registry.get_or_create_with_status(ctx.chat_id)
        seed_task = None
        # a deliberate fresh start is not reseeded
        if created and has_prior and not fresh_start:
            seed_task = self._spawn(
                seed_handle(
                    handle,
                    history,
                    window=settings.history_window,
                    char_limit=settings.summary_char_limit,
                )
            )

        temp_id = f"temp-{uuid.uuid4().hex}"
        emit(UserMessageEvent(temp_id=temp_id, message=self._draft(ctx, content)))
        try:
            saved = await self._persist_user_message(ctx, content)
        except PersistenceError as e:
            logger.error("Could not save message in chat %s: %s", ctx.chat_id, e.message)
            emit(ErrorEvent(error=e.message))
            return
        emit(UserMessageSavedEvent(temp_id=temp_id, message=saved))

        assistant_id = f"temp-ai-{uuid.uuid4().hex}"
        emit(AssistantStartEvent(temp_id=assistant_id))

        if seed_task is not None:
            await self._finish_seed(seed_task, settings.seed_timeout_seconds)

        images = [a for a in ctx.attachments if a.is_image]
        prompt = content + file_info_prompt(ctx.attachments)
        full_response = ""
        try:
            if images:
                full_response = await self._send_multimodal(ctx, handle, content, prompt, images)
                emit(ContentEvent(temp_id=assistant_id, content=full_response))
            else:
                async for chunk in handle.send_streaming(prompt):
                    full_response += chunk
                    emit(ContentEvent(temp_id=assistant_id, content=chunk))
        except Exception as e:
            logger.error("Model request for chat %s failed: %s", ctx.chat_id, e)
            emit(AssistantAbortedEvent(temp_id=assistant_id))
            emit(ErrorEvent(error=str(e) or "Failed to generate AI response"))
            return

        stored = None
        try:
            stored = await ctx.supabase.create_message(
                chat_id=ctx.chat_id,
                user_id=AI_USER_ID,
                username=settings.assistant_display_name,
                content=full_response,
                is_ai=True,
            )
        except (PersistenceError, httpx.HTTPError) as e:
            # the reply was delivered; the placeholder still completes
            logger.error("Could not save reply in chat %s: %s", ctx.chat_id, e)
        emit(AssistantCompleteEvent(temp_id=assistant_id, content=full_response, message=stored))

        if not has_prior:
            self._spawn(self._generate_title(ctx, content))

    def _draft(self, ctx: SendContext, content: str) -> dict:
        return {
            "chat_id": ctx.chat_id,
            "user_id": ctx.user_id,
            "username": ctx.username,
            "content": content,
            "is_ai": False,
            "attachments": [a.model_dump() for a in ctx.attachments] or None,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

    async def _persist_user_message(self, ctx: SendContext, content: str) -> dict:
        attachments = [a.model_dump() for a in ctx.attachments] or None
        try:
            return await ctx.supabase.create_message(
                chat_id=ctx.chat_id,
                user_id=ctx.user_id,
                username=ctx.username,
                content=content,
                is_ai=False,
                attachments=attachments,
            )
        except PersistenceError as e:
            if not attachments or not e.mentions("attachments"):
                raise
            logger.warning("Saving attachments failed (%s), retrying without them", e.message)
            return await ctx.supabase.create_message(
                chat_id=ctx.chat_id,
                user_id=ctx.user_id,
                username=ctx.username,
                content=content,
                is_ai=False,
            )

    @staticmethod
    async def _finish_seed(seed_task: asyncio.Task, timeout: float) -> None:
        # the new turn must not overtake the history turn
        try:
            await asyncio.wait_for(seed_task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Seeding history took longer than %ss, continuing without it", timeout)

    async def _send_multimodal(
        self,
        ctx: SendContext,
        handle: ConversationHandle,
        content: str,
        prompt: str,
        images: list[Attachment],
    ) -> str:
        """
        One non-streaming call on the vision model, then record the exchange
        in the handle as a single user/assistant pair.
        """
        settings = get_settings()
        parts: list[dict] = [{"type": "text", "text": prompt}]
        for image in images:
            if image.is_local:
                local = ctx.storage.read_local(image, ctx.user_id, ctx.chat_id)
                if local is None:
                    logger.warning("Chat %s: local image %s is not available, skipping", ctx.chat_id, image.id)
                    continue
                b64_data = base64.b64encode(local).decode("utf-8")
                url = f"data:{image.type or 'image/jpeg'};base64,{b64_data}"
            else:
                url = image.url
            parts.append({"type": "image_url", "image_url": {"url": url}})

        included = len(parts) - 1
        logger.info(
            "Chat %s: sending %d image(s) to %s", ctx.chat_id, included, settings.vision_model
        )
        full_response = await self._llm_provider().generate(settings.vision_model, parts)

        if included:
            plural = "s" if included > 1 else ""
            content = f"{content} [Included {included} image{plural}]"
        handle.record_turn(content, full_response)
        return full_response

    async def _generate_title(self, ctx: SendContext, first_message: str) -> None:
        """Title a chat after its first exchange; never overwrite a user's title."""
        placeholder = get_settings().placeholder_title
        try:
            chat = await ctx.supabase.get_chat(ctx.chat_id, ctx.user_id)
            if not chat or chat.get("title") != placeholder:
                return
            source = first_message or ", ".join(a.name for a in ctx.attachments)
            title = await self._llm_provider().generate_title(source)
            if not title:
                return
            updated = await ctx.supabase.update_chat_title_if(
                ctx.chat_id, ctx.user_id, title, expected_title=placeholder
            )
            if updated is None:
                logger.info("Chat %s was renamed meanwhile, dropping generated title", ctx.chat_id)
            else:
                logger.info("Chat %s titled %r", ctx.chat_id, title)
        except Exception:
            logger.warning("Title generation for chat %s failed", ctx.chat_id, exc_info=True)


def get_dispatcher(request: Request) -> MessageDispatcher:
    return request.app.state.dispatcher
