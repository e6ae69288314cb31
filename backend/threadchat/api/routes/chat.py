import json
import logging
from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, status
from fastapi.responses import Response
from sse_starlette.sse import EventSourceResponse

from threadchat.api.middleware.auth import get_current_user, TokenPayload
from threadchat.config import get_settings
from threadchat.errors import EmptyMessageError, PersistenceError, SendInProgressError
from threadchat.models.chat import (
    Attachment,
    ChatResponse,
    ChatUpdate,
    ChatWithMessages,
    MessageCreate,
)
from threadchat.services.dispatcher_service import (
    MessageDispatcher,
    SendContext,
    get_dispatcher,
)
from threadchat.services.session_registry import SessionRegistry, get_session_registry
from threadchat.services.storage_service import (
    EphemeralBlobStore,
    StorageService,
    get_blob_store,
    get_storage_service,
)
from threadchat.services.supabase_service import SupabaseService, get_supabase_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _persistence_failed(e: PersistenceError) -> HTTPException:
    logger.error("Database request failed (%s): %s", e.status_code, e.message)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)


async def _owned_chat(chat_id: str, user: TokenPayload, supabase: SupabaseService) -> dict:
    try:
        chat = await supabase.get_chat(chat_id, user.sub)
    except PersistenceError as e:
        raise _persistence_failed(e)
    if not chat:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Chat not found",
        )
    return chat


@router.post("/chats", response_model=ChatResponse)
async def create_chat(
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
):
    """Create a new chat titled with the placeholder."""
    try:
        return await supabase.create_chat(user_id=user.sub)
    except PersistenceError as e:
        raise _persistence_failed(e)


@router.get("/chats", response_model=list[ChatResponse])
async def list_chats(
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
):
    """List all chats for the current user, newest first."""
    try:
        return await supabase.get_chats(user.sub)
    except PersistenceError as e:
        raise _persistence_failed(e)


@router.delete("/chats", status_code=status.HTTP_204_NO_CONTENT)
async def delete_all_chats(
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
    registry: SessionRegistry = Depends(get_session_registry),
    blobs: EphemeralBlobStore = Depends(get_blob_store),
):
    """Delete every chat, message and local attachment of the current user."""
    try:
        chats = await supabase.get_chats(user.sub)
        await supabase.delete_user_data(user.sub)
    except PersistenceError as e:
        raise _persistence_failed(e)
    for chat in chats:
        registry.clear(chat["id"])
    blobs.evict_user(user.sub)


@router.get("/chats/{chat_id}", response_model=ChatWithMessages)
async def get_chat(
    chat_id: str,
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
):
    """Get a chat with its messages in conversation order."""
    chat = await _owned_chat(chat_id, user, supabase)
    try:
        messages = await supabase.get_messages(chat_id)
    except PersistenceError as e:
        raise _persistence_failed(e)
    return {**chat, "messages": messages}


@router.patch("/chats/{chat_id}", response_model=ChatResponse)
async def rename_chat(
    chat_id: str,
    update: ChatUpdate,
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
):
    """Rename a chat."""
    title = update.title.strip()
    if not title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is empty")
    await _owned_chat(chat_id, user, supabase)
    try:
        return await supabase.update_chat_title(chat_id, user.sub, title)
    except PersistenceError as e:
        raise _persistence_failed(e)


@router.delete("/chats/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat(
    chat_id: str,
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
    registry: SessionRegistry = Depends(get_session_registry),
    blobs: EphemeralBlobStore = Depends(get_blob_store),
):
    """Delete a chat, its messages, local attachments and conversation."""
    await _owned_chat(chat_id, user, supabase)
    try:
        await supabase.delete_chat(chat_id, user.sub)
    except PersistenceError as e:
        raise _persistence_failed(e)
    registry.clear(chat_id)
    blobs.evict_chat(chat_id)


@router.delete("/chats/{chat_id}/messages", status_code=status.HTTP_204_NO_CONTENT)
async def clear_chat_history(
    chat_id: str,
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
    registry: SessionRegistry = Depends(get_session_registry),
    blobs: EphemeralBlobStore = Depends(get_blob_store),
):
    """Remove a chat's messages, local attachments and conversation; the chat stays."""
    await _owned_chat(chat_id, user, supabase)
    try:
        await supabase.delete_messages(chat_id)
    except PersistenceError as e:
        raise _persistence_failed(e)
    registry.clear(chat_id)
    blobs.evict_chat(chat_id)


@router.post("/chats/{chat_id}/attachments", response_model=Attachment)
async def upload_attachment(
    chat_id: str,
    file: UploadFile = File(...),
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
    storage: StorageService = Depends(get_storage_service),
):
    """Upload a file for use in a chat message."""
    await _owned_chat(chat_id, user, supabase)

    content = await file.read()
    max_bytes = get_settings().attachment_max_bytes
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File too large (max {max_bytes // (1024 * 1024)}MB)",
        )

    return await storage.upload_attachment(
        user_id=user.sub,
        chat_id=chat_id,
        filename=file.filename or "file",
        content=content,
        content_type=file.content_type or "",
    )


@router.get("/blobs/{blob_id}")
async def get_blob(
    blob_id: str,
    user: TokenPayload = Depends(get_current_user),
    blobs: EphemeralBlobStore = Depends(get_blob_store),
):
    """Serve an attachment that only exists in this server process, to its uploader."""
    blob = blobs.get(blob_id, user.sub)
    if blob is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return Response(content=blob.content, media_type=blob.content_type or "application/octet-stream")


@router.post("/chats/{chat_id}/messages")
async def send_message(
    chat_id: str,
    message: MessageCreate,
    user: TokenPayload = Depends(get_current_user),
    supabase: SupabaseService = Depends(get_supabase_service),
    storage: StorageService = Depends(get_storage_service),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
):
    """Send a message and stream the assistant's response."""
    chat = await _owned_chat(chat_id, user, supabase)

    ctx = SendContext(
        chat=chat,
        user_id=user.sub,
        username=user.display_name,
        content=message.content,
        attachments=message.attachments or [],
        supabase=supabase,
        storage=storage,
    )
    try:
        events = dispatcher.dispatch(ctx)
    except EmptyMessageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SendInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    async def event_generator():
        async for event in events:
            yield {"data": json.dumps(event.to_dict(), default=str)}
        yield {"data": "[DONE]"}

    return EventSourceResponse(event_generator())
