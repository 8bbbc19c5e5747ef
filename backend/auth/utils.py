from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from config import settings
from db.database import get_db
from db.models import User

bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_token(user_id: int, expiry_hours_override: int | None = None) -> str:
    expiry_hours = int(expiry_hours_override) if expiry_hours_override is not None else settings.JWT_EXPIRY_HOURS
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iss": settings.JWT_ISSUER,
        "iat": now,
        "exp": now + timedelta(hours=expiry_hours),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")


def token_user_id(token: str) -> int:
    try:
        return int(decode_token(token)["sub"])
    except (KeyError, TypeError, ValueError):
        raise _unauthorized("Invalid token")


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not credentials or not credentials.credentials:
        raise _unauthorized("Not authenticated")
    user = db.get(User, token_user_id(credentials.credentials))
    if not user:
        raise _unauthorized("User not found")
    request.state.user_id = user.id
    return user
