# app/attribution_service.py

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import AttributionStrategy, EngineConfig
from app.errors import AuthorizationError, ConflictError, NotFoundError
from app.promo_service import as_utc, money2
from models.affiliates import Affiliate, AffiliateStatus
from models.promo_codes import PromoCode, PromoCodeKind
from models.referral_events import ReferralEvent, ReferralEventType

logger = logging.getLogger(__name__)

COOKIE_NAME = "ss_aff"
CLICK_RATE_LIMIT = 10  # click per codice+ip nell'ultima ora


@dataclass(frozen=True)
class Attribution:
    affiliate_id: int
    code_id: int
    session_id: Optional[str] = None
    source: str = "cookie"  # cookie | history


@dataclass(frozen=True)
class TrackedClick:
    code_id: int
    session_id: str
    cookie_value: str
    max_age: int


def hash_value(value: Optional[str]) -> str:
    # privacy: mai ip / user-agent in chiaro
    return hashlib.sha256((value or "unknown").encode("utf-8")).hexdigest()[:16]


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


# -------------------------------------------------
# Cookie firmato: <base64url(json)>.<hmac-sha256 hex>
# -------------------------------------------------
def sign_cookie(payload: Dict[str, Any], secret: str) -> str:
    body = _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    signature = hmac.new(secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).hexdigest()
    return f"{body}.{signature}"


def verify_cookie(
    value: Optional[str],
    secret: str,
    window_days: int,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """
    Ritorna il payload solo se la firma coincide E il cookie e' dentro la finestra.
    Qualsiasi cookie malformato equivale a "nessun cookie".
    """
    if not value or value.count(".") != 1:
        return None

    body, signature = value.split(".", 1)
    expected = hmac.new(secret.encode("utf-8"), body.encode("ascii", "ignore"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
        return None

    try:
        payload = json.loads(_b64decode(body).decode("utf-8"))
        code_id = int(payload["code_id"])
        timestamp = float(payload["timestamp"])
        issued_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (ValueError, KeyError, TypeError, OverflowError, OSError):
        return None

    now = as_utc(now) or datetime.now(timezone.utc)
    if now - issued_at > timedelta(days=window_days) or issued_at - now > timedelta(minutes=5):
        return None

    return {"code_id": code_id, "session_id": payload.get("session_id"), "timestamp": timestamp}


class AttributionResolver:
    def __init__(self, db: Session, config: EngineConfig):
        self.db = db
        self.config = config

    @property
    def window(self) -> timedelta:
        return timedelta(days=self.config.attribution_window_days)

    def _approved_code(self, code_id: int) -> Optional[PromoCode]:
        return (
            self.db.query(PromoCode)
            .join(Affiliate, PromoCode.affiliate_id == Affiliate.id)
            .filter(PromoCode.id == code_id)
            .filter(Affiliate.status == AffiliateStatus.APPROVED)
            .first()
        )

    def _from_history(self, user_id: int, now: datetime) -> Optional[Attribution]:
        newest_first = self.config.attribution_strategy != AttributionStrategy.FIRST_CLICK
        order_by = ReferralEvent.created_at.desc() if newest_first else ReferralEvent.created_at.asc()

        event = (
            self.db.query(ReferralEvent)
            .join(PromoCode, ReferralEvent.code_id == PromoCode.id)
            .join(Affiliate, PromoCode.affiliate_id == Affiliate.id)
            .filter(ReferralEvent.user_id == user_id)
            .filter(ReferralEvent.event_type == ReferralEventType.CLICK)
            .filter(ReferralEvent.created_at > now - self.window)
            .filter(Affiliate.status == AffiliateStatus.APPROVED)
            .order_by(order_by, ReferralEvent.id.desc() if newest_first else ReferralEvent.id.asc())
            .first()
        )
        if event is None:
            return None

        code = self.db.query(PromoCode).filter(PromoCode.id == event.code_id).first()
        return Attribution(
            affiliate_id=code.affiliate_id,
            code_id=code.id,
            session_id=event.session_id,
            source="history",
        )

    # -----------------------------
    # resolve
    # -----------------------------
    def resolve(
        self,
        user_id: Optional[int],
        cookie: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Attribution]:
        if not self.config.affiliates_enabled:
            return None

        now = as_utc(now) or datetime.now(timezone.utc)
        found: Optional[Attribution] = None

        if self.config.attribution_strategy == AttributionStrategy.LAST_CLICK:
            data = verify_cookie(cookie, self.config.cookie_secret, self.config.attribution_window_days, now)
            if data:
                code = self._approved_code(data["code_id"])
                if code is not None:
                    found = Attribution(
                        affiliate_id=code.affiliate_id,
                        code_id=code.id,
                        session_id=data.get("session_id"),
                    )

        if found is None and user_id:
            found = self._from_history(user_id, now)

        if found is None:
            return None

        if user_id:
            owner = self.db.query(Affiliate.user_id).filter(Affiliate.id == found.affiliate_id).scalar()
            if owner == user_id:
                logger.info("Self-referral dropped for user %s (affiliate %s)", user_id, found.affiliate_id)
                return None

        return found

    # -----------------------------
    # Eventi (append-only)
    # -----------------------------
    def track_click(
        self,
        code: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        referrer: Optional[str] = None,
        session_id: Optional[str] = None,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> TrackedClick:
        if not self.config.affiliates_enabled:
            raise ConflictError("Affiliate feature is disabled", reason="FEATURE_DISABLED")

        now = as_utc(now) or datetime.now(timezone.utc)

        promo = (
            self.db.query(PromoCode)
            .filter(PromoCode.code == (code or "").strip().upper())
            .filter(PromoCode.kind == PromoCodeKind.AFFILIATE)
            .filter(PromoCode.is_active.is_(True))
            .first()
        )
        if promo is None or promo.affiliate is None:
            raise NotFoundError("Invalid affiliate code", reason="NOT_FOUND")
        if promo.affiliate.status != AffiliateStatus.APPROVED:
            raise AuthorizationError("Affiliate not approved", reason="AFFILIATE_NOT_APPROVED")

        ip_hash = hash_value(ip)
        recent = (
            self.db.query(func.count(ReferralEvent.id))
            .filter(ReferralEvent.code_id == promo.id)
            .filter(ReferralEvent.ip_hash == ip_hash)
            .filter(ReferralEvent.event_type == ReferralEventType.CLICK)
            .filter(ReferralEvent.created_at > now - timedelta(hours=1))
            .scalar()
            or 0
        )
        if recent > CLICK_RATE_LIMIT:
            raise ConflictError("Too many clicks from this IP", reason="RATE_LIMITED")

        session_id = session_id or secrets.token_hex(16)
        self.db.add(
            ReferralEvent(
                code_id=promo.id,
                user_id=user_id,
                event_type=ReferralEventType.CLICK,
                session_id=session_id,
                ip_hash=ip_hash,
                user_agent_hash=hash_value(user_agent),
                referrer_url=(referrer or None) and referrer[:500],
                created_at=now,
            )
        )
        self.db.flush()

        cookie_value = sign_cookie(
            {"code_id": promo.id, "session_id": session_id, "timestamp": now.timestamp()},
            self.config.cookie_secret,
        )
        return TrackedClick(
            code_id=promo.id,
            session_id=session_id,
            cookie_value=cookie_value,
            max_age=self.config.attribution_window_days * 24 * 60 * 60,
        )

    def track_signup(
        self,
        user_id: int,
        cookie: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Lega il nuovo utente al codice del cookie: evento signup + click "utente"
        cosi' il fallback su storico (e FIRST_CLICK) lo trova.
        """
        if not self.config.affiliates_enabled:
            return None

        now = as_utc(now) or datetime.now(timezone.utc)
        data = verify_cookie(cookie, self.config.cookie_secret, self.config.attribution_window_days, now)
        if not data or self._approved_code(data["code_id"]) is None:
            return None

        clicked_at = datetime.fromtimestamp(data["timestamp"], tz=timezone.utc)
        common = dict(
            code_id=data["code_id"],
            user_id=user_id,
            session_id=data.get("session_id"),
            ip_hash=hash_value(ip),
            user_agent_hash=hash_value(user_agent),
        )
        self.db.add(ReferralEvent(event_type=ReferralEventType.CLICK, created_at=clicked_at, **common))
        self.db.add(ReferralEvent(event_type=ReferralEventType.SIGNUP, created_at=now, **common))
        self.db.flush()
        return data["code_id"]

    def record_purchase(
        self,
        attribution: Attribution,
        user_id: Optional[int],
        order_id: int,
        conversion_value: Any,
    ) -> ReferralEvent:
        event = ReferralEvent(
            code_id=attribution.code_id,
            user_id=user_id,
            order_id=order_id,
            event_type=ReferralEventType.PURCHASE,
            session_id=attribution.session_id,
            conversion_value=money2(conversion_value),
        )
        self.db.add(event)
        self.db.flush()
        return event
