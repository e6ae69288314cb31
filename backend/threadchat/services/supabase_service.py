import httpx
from threadchat.config import get_settings
from threadchat.errors import PersistenceError


class SupabaseService:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        self.base_url = f"{settings.supabase_url}/rest/v1"
        self.placeholder_title = settings.placeholder_title
        self.headers = {
            "apikey": settings.supabase_service_key,
            "Authorization": f"Bearer {settings.supabase_service_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | list | None = None,
    ) -> dict | list | None:
        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                response = await client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=self.headers,
                    params=params,
                    json=json,
                )
            except httpx.HTTPError as e:
                # connection failures surface like rejected requests
                raise PersistenceError(503, f"Database unreachable: {e}") from e
            if response.is_error:
                raise PersistenceError(response.status_code, _error_message(response))
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

    # ==================== Chats ====================

    async def create_chat(self, user_id: str, title: str | None = None) -> dict:
        result = await self._request(
            "POST",
            "chats",
            json={
                "user_id": user_id,
                "title": title or self.placeholder_title,
            },
        )
        return result[0] if isinstance(result, list) else result

    async def get_chats(self, user_id: str) -> list[dict]:
        result = await self._request(
            "GET",
            "chats",
            params={
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
            },
        )
        return result if isinstance(result, list) else []

    async def get_chat(self, chat_id: str, user_id: str) -> dict | None:
        result = await self._request(
            "GET",
            "chats",
            params={
                "id": f"eq.{chat_id}",
                "user_id": f"eq.{user_id}",
            },
        )
        if isinstance(result, list) and len(result) > 0:
            return result[0]
        return None

    async def update_chat_title(
        self, chat_id: str, user_id: str, title: str
    ) -> dict | None:
        result = await self._request(
            "PATCH",
            "chats",
            params={
                "id": f"eq.{chat_id}",
                "user_id": f"eq.{user_id}",
            },
            json={"title": title},
        )
        if isinstance(result, list) and len(result) > 0:
            return result[0]
        return None

    async def update_chat_title_if(
        self, chat_id: str, user_id: str, title: str, expected_title: str
    ) -> dict | None:
        """
        Set the title only while the row still carries expected_title.

        The filter runs inside the UPDATE, so a concurrent rename wins and
        this call returns None.
        """
        result = await self._request(
            "PATCH",
            "chats",
            params={
                "id": f"eq.{chat_id}",
                "user_id": f"eq.{user_id}",
                "title": f"eq.{expected_title}",
            },
            json={"title": title},
        )
        if isinstance(result, list) and len(result) > 0:
            return result[0]
        return None

    async def delete_chat(self, chat_id: str, user_id: str) -> None:
        # messages reference chats, remove them first
        await self.delete_messages(chat_id)
        await self._request(
            "DELETE",
            "chats",
            params={
                "id": f"eq.{chat_id}",
                "user_id": f"eq.{user_id}",
            },
        )

    async def delete_user_data(self, user_id: str) -> None:
        """Remove every chat and message owned by user_id."""
        await self._request("POST", "rpc/delete_user_messages", json={"user_uuid": user_id})
        await self._request("POST", "rpc/delete_user_chats", json={"user_uuid": user_id})

    # ==================== Messages ====================

    async def create_message(
        self,
        chat_id: str,
        user_id: str,
        username: str,
        content: str,
        is_ai: bool,
        attachments: list[dict] | None = None,
    ) -> dict:
        data = {
            "chat_id": chat_id,
            "user_id": user_id,
            "username": username,
            "content": content,
            "is_ai": is_ai,
        }
        if attachments:
            data["attachments"] = attachments
        result = await self._request("POST", "messages", json=data)
        return result[0] if isinstance(result, list) else result

    async def get_messages(self, chat_id: str) -> list[dict]:
        result = await self._request(
            "GET",
            "messages",
            params={
                "chat_id": f"eq.{chat_id}",
                "order": "created_at.asc",
            },
        )
        return result if isinstance(result, list) else []

    async def delete_messages(self, chat_id: str) -> None:
        await self._request(
            "DELETE",
            "messages",
            params={"chat_id": f"eq.{chat_id}"},
        )


def _error_message(response: httpx.Response) -> str:
    """PostgREST puts the reason in "message" (and sometimes "details")."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        parts = [body.get("message"), body.get("details"), body.get("hint")]
        message = " ".join(p for p in parts if p)
        if message:
            return message
    return response.text


def get_supabase_service() -> SupabaseService:
    return SupabaseService()
