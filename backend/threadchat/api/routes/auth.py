from fastapi import APIRouter, Depends, HTTPException, status

from threadchat.api.middleware.auth import get_current_user, TokenPayload
from threadchat.errors import AuthError
from threadchat.models.auth import (
    AuthSession,
    Credentials,
    PasswordResetRequest,
    RefreshRequest,
)
from threadchat.services.auth_service import AuthService, get_auth_service

router = APIRouter()


def _auth_failed(e: AuthError) -> HTTPException:
    # any refusal means the client has to authenticate again
    code = e.status_code if e.status_code in (400, 401, 403, 422, 429) else status.HTTP_401_UNAUTHORIZED
    return HTTPException(status_code=code, detail=str(e))


@router.post("/auth/sign-in", response_model=AuthSession)
async def sign_in(
    credentials: Credentials,
    auth: AuthService = Depends(get_auth_service),
):
    try:
        return await auth.sign_in(credentials.email, credentials.password)
    except AuthError as e:
        raise _auth_failed(e)


@router.post("/auth/sign-up", response_model=AuthSession | None)
async def sign_up(
    credentials: Credentials,
    auth: AuthService = Depends(get_auth_service),
):
    """Create an account; returns no session while email confirmation is pending."""
    try:
        return await auth.sign_up(credentials.email, credentials.password)
    except AuthError as e:
        raise _auth_failed(e)


@router.post("/auth/reset-password", status_code=status.HTTP_204_NO_CONTENT)
async def reset_password(
    request: PasswordResetRequest,
    auth: AuthService = Depends(get_auth_service),
):
    try:
        await auth.reset_password(request.email, request.redirect_to)
    except AuthError as e:
        raise _auth_failed(e)


@router.post("/auth/sign-out", status_code=status.HTTP_204_NO_CONTENT)
async def sign_out(
    user: TokenPayload = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    try:
        await auth.sign_out(user.token)
    except AuthError as e:
        raise _auth_failed(e)


@router.post("/auth/refresh", response_model=AuthSession)
async def refresh(
    request: RefreshRequest,
    auth: AuthService = Depends(get_auth_service),
):
    try:
        return await auth.refresh(request.refresh_token)
    except AuthError as e:
        raise _auth_failed(e)


@router.post("/auth/keep-alive", response_model=AuthSession)
async def keep_alive(
    session: AuthSession,
    auth: AuthService = Depends(get_auth_service),
):
    """
    Periodic client check: returns the same session, or a refreshed one when
    it expires within the configured margin.
    """
    try:
        return await auth.refresh_if_expiring(session)
    except AuthError as e:
        raise _auth_failed(e)
