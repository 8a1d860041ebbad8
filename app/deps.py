# app/deps.py
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.config import EngineConfig, settings
from app.db import get_db
from app.security import user_id_from_token
from models.affiliates import Affiliate, AffiliateStatus
from models.users import User

# Authorization: Bearer <token>
bearer_scheme = HTTPBearer(auto_error=False)


def get_engine_config() -> EngineConfig:
    # override nei test
    return settings.engine_config()


def _load_user(db: Session, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[User]:
    if credentials is None:
        return None
    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        return None
    return db.query(User).filter(User.id == user_id).first()


def get_optional_user(
    db: Session = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[User]:
    return _load_user(db, credentials)


def get_current_user(
    db: Session = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token.",
        )
    user = _load_user(db, credentials)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token.",
        )
    return user


def get_current_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required.",
        )
    return current_user


def get_current_affiliate(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Affiliate:
    affiliate = (
        db.query(Affiliate)
        .filter(Affiliate.user_id == current_user.id, Affiliate.status == AffiliateStatus.APPROVED)
        .first()
    )
    if not affiliate:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Approved affiliate account not found.",
        )
    return affiliate
