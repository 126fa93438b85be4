# voicenotes/security.py
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hmac
from typing import Optional
import jwt  # PyJWT
from fastapi import HTTPException, Header
from fastapi.security.utils import get_authorization_scheme_param
from .config import get_settings

@dataclass(frozen=True)
class Caller:
    id: str
    email: Optional[str] = None

def _now() -> datetime:
    return datetime.now(timezone.utc)

def create_access_token(sub: str, email: Optional[str] = None, expires_minutes: int = 60) -> str:
    settings = get_settings()
    payload = {
        "sub": sub,
        "iat": int(_now().timestamp()),
        "exp": int((_now() + timedelta(minutes=expires_minutes)).timestamp()),
        "iss": "voicenotes",
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)

def _decode_token(token: str) -> dict:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

def _const_time_eq(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())

async def require_user(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> Caller:
    """Resolve the verified caller from a bearer JWT (sub = user id, optional email claim)."""
    if authorization:
        scheme, token = get_authorization_scheme_param(authorization)
        if scheme.lower() == "bearer" and token:
            payload = _decode_token(token)
            sub = payload.get("sub")
            if not sub:
                raise HTTPException(status_code=401, detail="Invalid token")
            return Caller(id=str(sub), email=payload.get("email"))

    # Dev bypass (never enable in prod)
    if get_settings().dev_allow_no_auth:
        return Caller(id="dev-user", email=None)

    raise HTTPException(status_code=401, detail="Unauthorized.")

async def require_webhook_secret(
    x_webhook_secret: Optional[str] = Header(default=None, alias="X-Webhook-Secret"),
) -> None:
    expected = get_settings().webhook_secret
    if expected and not (x_webhook_secret and _const_time_eq(x_webhook_secret, expected)):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

async def require_service_token(
    x_service_token: Optional[str] = Header(default=None, alias="X-Service-Token"),
) -> None:
    expected = get_settings().service_token
    if expected and not (x_service_token and _const_time_eq(x_service_token, expected)):
        raise HTTPException(status_code=401, detail="Invalid service token")
