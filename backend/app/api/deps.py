from __future__ import annotations

from collections.abc import Generator
import json
import time
import urllib.request

from fastapi import Depends, Header, HTTPException, Request
from jose import jwt
from jose.exceptions import JWTError
from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.db.session import SessionLocal
from app.models.user import User

MISSING_TOKEN = "No autorizado: no se proporciona ningún token"
INVALID_TOKEN = "No autorizado - Token inválido"
USER_NOT_FOUND = "Usuario no encontrado"


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


_JWKS_CACHE: dict | None = None
_JWKS_CACHE_UNTIL: float = 0


def _get_jwks() -> dict:
    global _JWKS_CACHE, _JWKS_CACHE_UNTIL

    if _JWKS_CACHE and time.time() < _JWKS_CACHE_UNTIL:
        return _JWKS_CACHE

    if not settings.AUTH0_DOMAIN:
        raise RuntimeError("AUTH0_DOMAIN not configured")

    url = f"https://{settings.AUTH0_DOMAIN}/.well-known/jwks.json"
    with urllib.request.urlopen(url, timeout=5) as resp:
        data = json.loads(resp.read().decode("utf-8"))

    _JWKS_CACHE = data
    _JWKS_CACHE_UNTIL = time.time() + 3600
    return data


def _extract_token(request: Request, authorization: str | None) -> str | None:
    if authorization:
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise HTTPException(status_code=401, detail=INVALID_TOKEN)
        return parts[1]
    return request.cookies.get(settings.AUTH_COOKIE_NAME)


def _decode_auth0(token: str) -> dict:
    unverified_header = jwt.get_unverified_header(token)
    kid = unverified_header.get("kid")
    jwks = _get_jwks()
    key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
    if not key:
        raise HTTPException(status_code=401, detail=INVALID_TOKEN)

    return jwt.decode(
        token,
        key,
        algorithms=["RS256"],
        audience=settings.AUTH0_AUDIENCE,
        issuer=f"https://{settings.AUTH0_DOMAIN}/",
    )


def get_current_user_id(
    request: Request,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
) -> str:
    auth0_configured = bool(settings.AUTH0_DOMAIN and settings.AUTH0_AUDIENCE)
    if not auth0_configured and not settings.JWT_SECRET:
        # Dev fallback until a token issuer is configured.
        return x_user_id or "dev-user"

    token = _extract_token(request, authorization)
    if not token:
        raise HTTPException(status_code=401, detail=MISSING_TOKEN)

    try:
        if auth0_configured:
            payload = _decode_auth0(token)
        else:
            payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except HTTPException:
        raise
    except JWTError as e:
        logger.debug("Rejected token: {}", e)
        raise HTTPException(status_code=401, detail=INVALID_TOKEN)

    sub = payload.get("sub") or payload.get("userId")
    if not sub:
        raise HTTPException(status_code=401, detail=INVALID_TOKEN)
    return str(sub)


def get_current_user(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> User:
    user = db.execute(select(User).where(User.external_id == user_id)).scalars().one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail=USER_NOT_FOUND)
    return user
