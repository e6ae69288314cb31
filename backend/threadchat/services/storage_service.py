import logging
import secrets
import time
import uuid
from dataclasses import dataclass

import httpx
from fastapi import Request

from threadchat.config import get_settings
from threadchat.errors import StorageError
from threadchat.models.chat import Attachment

logger = logging.getLogger(__name__)


@dataclass
class Blob:
    content: bytes
    content_type: str
    user_id: str
    chat_id: str


class EphemeralBlobStore:
    """
    In-process fallback for attachments that could not reach Supabase Storage.

    Blobs live as long as the server process or until their chat is deleted
    or cleared; nothing is written to disk. Only the uploader can read a blob.
    """

    def __init__(self):
        self._blobs: dict[str, Blob] = {}

    def put(self, content: bytes, content_type: str, user_id: str, chat_id: str) -> str:
        blob_id = uuid.uuid4().hex
        self._blobs[blob_id] = Blob(
            content=content,
            content_type=content_type,
            user_id=user_id,
            chat_id=chat_id,
        )
        return blob_id

    def get(self, blob_id: str, user_id: str) -> Blob | None:
        """The blob if user_id uploaded it, else None (same as missing)."""
        blob = self._blobs.get(blob_id)
        if blob is None or blob.user_id != user_id:
            return None
        return blob

    def evict_chat(self, chat_id: str) -> int:
        return self._evict(lambda blob: blob.chat_id == chat_id)

    def evict_user(self, user_id: str) -> int:
        return self._evict(lambda blob: blob.user_id == user_id)

    def _evict(self, match) -> int:
        doomed = [blob_id for blob_id, blob in self._blobs.items() if match(blob)]
        for blob_id in doomed:
            del self._blobs[blob_id]
        if doomed:
            logger.info("Dropped %d local attachment(s)", len(doomed))
        return len(doomed)

    def __len__(self) -> int:
        return len(self._blobs)


class StorageService:
    def __init__(
        self,
        blobs: EphemeralBlobStore,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = f"{settings.supabase_url}/storage/v1"
        self.bucket = settings.attachments_bucket
        self.max_bytes = settings.attachment_max_bytes
        self.headers = {
            "apikey": settings.supabase_service_key,
            "Authorization": f"Bearer {settings.supabase_service_key}",
        }
        self.blobs = blobs
        self._transport = transport

    async def ensure_bucket(self) -> bool:
        """
        Make sure the attachments bucket exists.

        Returns False when the bucket is missing and we are not allowed to
        create it; callers then keep files in the ephemeral blob store.
        """
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/bucket", headers=self.headers)
                if response.is_error:
                    logger.warning(
                        "Cannot list storage buckets (%s), using local attachments",
                        response.status_code,
                    )
                    return False
                if any(b.get("name") == self.bucket for b in response.json()):
                    return True

                response = await client.post(
                    f"{self.base_url}/bucket",
                    headers={**self.headers, "Content-Type": "application/json"},
                    json={
                        "id": self.bucket,
                        "name": self.bucket,
                        "public": True,
                        "file_size_limit": self.max_bytes,
                    },
                )
                # 400 means bucket already exists - that's fine
                if response.status_code in (200, 201, 400):
                    return True
                logger.warning(
                    "Cannot create bucket %s (%s), using local attachments",
                    self.bucket,
                    response.status_code,
                )
                return False
        except httpx.HTTPError:
            logger.warning("Storage unreachable, using local attachments", exc_info=True)
            return False

    def public_url(self, storage_path: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{storage_path}"

    async def upload_attachment(
        self,
        user_id: str,
        chat_id: str,
        filename: str,
        content: bytes,
        content_type: str,
    ) -> Attachment:
        """
        Upload a chat attachment, falling back to the local blob store.

        Upload failures downgrade durability; they never raise.
        """
        ext = filename.rsplit(".", 1)[-1] if "." in filename else "file"
        stored_name = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}.{ext}"
        storage_path = f"{user_id}/chats/{chat_id}/{stored_name}"

        if await self.ensure_bucket():
            try:
                await self._upload(storage_path, content, content_type)
                return Attachment(
                    id=storage_path,
                    name=filename,
                    size=len(content),
                    type=content_type,
                    url=self.public_url(storage_path),
                    path=storage_path,
                )
            except (httpx.HTTPError, StorageError):
                logger.warning("Upload of %s failed, keeping it locally", filename, exc_info=True)

        blob_id = self.blobs.put(content, content_type, user_id, chat_id)
        return Attachment(
            id=f"local-{blob_id}",
            name=filename,
            size=len(content),
            type=content_type,
            url=f"/api/blobs/{blob_id}",
            path=f"local/{stored_name}",
        )

    async def _upload(self, storage_path: str, content: bytes, content_type: str) -> None:
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/object/{self.bucket}/{storage_path}",
                headers={
                    **self.headers,
                    "Content-Type": content_type or "application/octet-stream",
                    "Cache-Control": "3600",
                    "x-upsert": "true",
                },
                content=content,
            )
            if response.is_error:
                raise StorageError(f"Upload rejected with {response.status_code}: {response.text}")

    def read_local(self, attachment: Attachment, user_id: str, chat_id: str) -> bytes | None:
        """
        Bytes of a locally kept attachment.

        None for remote attachments and for blobs that are gone or were
        uploaded by another user or into another chat.
        """
        if not attachment.is_local:
            return None
        blob = self.blobs.get(attachment.url.rsplit("/", 1)[-1], user_id)
        if blob is None or blob.chat_id != chat_id:
            return None
        return blob.content


def get_blob_store(request: Request) -> EphemeralBlobStore:
    return request.app.state.blobs


def get_storage_service(request: Request) -> StorageService:
    return StorageService(get_blob_store(request))
