import base64
import binascii

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError, jwk
from pydantic import BaseModel

from threadchat.config import get_settings

security = HTTPBearer()

# Cache for JWKS
_jwks_cache: dict | None = None


class TokenPayload(BaseModel):
    sub: str  # user_id
    email: str | None = None
    user_metadata: dict = {}
    token: str = ""

    @property
    def display_name(self) -> str:
        """Full name when the account has one, else the email's local part."""
        full_name = self.user_metadata.get("full_name")
        if full_name:
            return full_name
        if self.email:
            return self.email.split("@")[0]
        return "Anonymous"


async def get_jwks(supabase_url: str) -> dict:
    """Fetch JWKS from Supabase."""
    global _jwks_cache
    if _jwks_cache:
        return _jwks_cache

    jwks_url = f"{supabase_url}/auth/v1/.well-known/jwks.json"
    async with httpx.AsyncClient() as client:
        response = await client.get(jwks_url)
        response.raise_for_status()
        _jwks_cache = response.json()
        return _jwks_cache


def get_signing_key(jwks: dict, kid: str):
    """Get the signing key from JWKS by key ID."""
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return jwk.construct(key)
    raise JWTError(f"Key with kid {kid} not found in JWKS")


def _symmetric_secret(raw: str) -> str:
    """Supabase hands out the JWT secret either plain or base64-encoded."""
    if raw.startswith("-----"):
        return raw
    try:
        return base64.b64decode(raw, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return raw


def decode_token(token: str, secret: str, signing_key=None) -> dict:
    header = jwt.get_unverified_header(token)
    algorithm = header.get("alg", "HS256")
    if signing_key is not None:
        return jwt.decode(
            token,
            signing_key,
            algorithms=[algorithm],
            audience="authenticated",
            options={"verify_aud": True},
        )
    return jwt.decode(
        token,
        _symmetric_secret(secret),
        algorithms=["HS256", "HS384", "HS512"],
        audience="authenticated",
        options={"verify_aud": True},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> TokenPayload:
    settings = get_settings()
    token = credentials.credentials

    try:
        header = jwt.get_unverified_header(token)
        algorithm = header.get("alg", "HS256")

        signing_key = None
        if algorithm.startswith("ES") or algorithm.startswith("RS"):
            # Asymmetric algorithm - use JWKS
            kid = header.get("kid")
            if not kid:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Token missing key ID (kid)",
                )
            jwks = await get_jwks(settings.supabase_url)
            signing_key = get_signing_key(jwks, kid)

        payload = decode_token(token, settings.supabase_jwt_secret, signing_key)

        user_id = payload.get("sub")
        if user_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token payload",
            )
        return TokenPayload(
            sub=user_id,
            email=payload.get("email"),
            user_metadata=payload.get("user_metadata") or {},
            token=token,
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Could not validate credentials: {str(e)}",
        )
    except httpx.HTTPError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Could not fetch JWKS: {str(e)}",
        )
