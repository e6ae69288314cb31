import logging
import time
from datetime import timedelta

import httpx
from threadchat.config import get_settings
from threadchat.errors import AuthError
from threadchat.models.auth import AuthSession

logger = logging.getLogger(__name__)


class AuthService:
    """Thin client for Supabase Auth (GoTrue)."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        self.base_url = f"{settings.supabase_url}/auth/v1"
        self.headers = {
            "apikey": settings.supabase_anon_key,
            "Content-Type": "application/json",
        }
        self.refresh_margin = timedelta(minutes=settings.session_refresh_margin_minutes)
        self._transport = transport

    async def _request(
        self,
        endpoint: str,
        json: dict | None = None,
        params: dict | None = None,
        access_token: str | None = None,
    ) -> dict | None:
        headers = dict(self.headers)
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/{endpoint}",
                headers=headers,
                params=params,
                json=json,
            )
            if response.is_error:
                raise AuthError(_error_message(response), status_code=response.status_code)
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

    async def sign_in(self, email: str, password: str) -> AuthSession:
        data = await self._request(
            "token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return _to_session(data)

    async def sign_up(self, email: str, password: str) -> AuthSession | None:
        """
        Register an account.

        Returns None when the project requires email confirmation, in which
        case GoTrue answers with the user but no session.
        """
        data = await self._request("signup", json={"email": email, "password": password})
        if not data or "access_token" not in data:
            return None
        return _to_session(data)

    async def reset_password(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._request("recover", json={"email": email}, params=params)

    async def sign_out(self, access_token: str) -> None:
        await self._request("logout", access_token=access_token)

    async def refresh(self, refresh_token: str) -> AuthSession:
        data = await self._request(
            "token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        return _to_session(data)

    async def refresh_if_expiring(self, session: AuthSession) -> AuthSession:
        """Refresh the session when it expires within the configured margin."""
        if not session.expires_within(self.refresh_margin):
            return session
        logger.info("Session expiring soon, refreshing")
        return await self.refresh(session.refresh_token)


def _to_session(data: dict | None) -> AuthSession:
    if not data or "access_token" not in data:
        raise AuthError("Auth response did not contain a session")
    expires_at = data.get("expires_at")
    if expires_at is None:
        expires_at = int(time.time()) + int(data.get("expires_in", 3600))
    return AuthSession(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token", ""),
        expires_at=expires_at,
        user=data.get("user"),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return response.text


def get_auth_service() -> AuthService:
    return AuthService()
