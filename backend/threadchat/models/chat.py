import re
from datetime import datetime
from pydantic import BaseModel

IMAGE_EXTENSION_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp|svg|avif)$", re.IGNORECASE)


class ChatResponse(BaseModel):
    id: str
    user_id: str
    title: str
    created_at: datetime


class ChatWithMessages(ChatResponse):
    messages: list["MessageResponse"]


class ChatUpdate(BaseModel):
    title: str


class Attachment(BaseModel):
    id: str
    name: str
    size: int
    type: str  # MIME type, may be empty
    url: str  # public URL or "/api/blobs/{id}" for local blobs
    path: str  # storage path, "local/..." when not in Supabase Storage

    @property
    def is_local(self) -> bool:
        return self.path.startswith("local/")

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/") or bool(IMAGE_EXTENSION_RE.search(self.name))


class MessageCreate(BaseModel):
    content: str = ""
    attachments: list[Attachment] | None = None


class MessageResponse(BaseModel):
    id: str
    chat_id: str
    user_id: str
    username: str
    content: str
    is_ai: bool
    attachments: list[Attachment] | None = None
    created_at: datetime


ChatWithMessages.model_rebuild()
