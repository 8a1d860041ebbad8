from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError

from app.config import settings


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_user_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    # sub = "user:<id>"
    return create_access_token({"sub": f"user:{user_id}"}, expires_delta)


def decode_access_token(token: str) -> Optional[str]:
    """
    Ritorna il sub se il token e' valido, altrimenti None.
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        sub = payload.get("sub")
        if sub is None:
            return None
        return str(sub)
    except JWTError:
        return None


def user_id_from_token(token: Optional[str]) -> Optional[int]:
    sub = decode_access_token(token) if token else None
    if not sub or not sub.startswith("user:"):
        return None
    raw = sub.split(":", 1)[1]
    return int(raw) if raw.isdigit() else None
