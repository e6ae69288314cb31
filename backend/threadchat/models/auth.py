from datetime import datetime, timedelta, timezone
from pydantic import BaseModel


class Credentials(BaseModel):
    email: str
    password: str


class PasswordResetRequest(BaseModel):
    email: str
    redirect_to: str | None = None


class RefreshRequest(BaseModel):
    refresh_token: str


class AuthUser(BaseModel):
    id: str
    email: str | None = None
    user_metadata: dict = {}


class AuthSession(BaseModel):
    access_token: str
    refresh_token: str
    expires_at: int  # unix seconds
    user: AuthUser | None = None

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires = datetime.fromtimestamp(self.expires_at, tz=timezone.utc)
        return expires < now + margin
