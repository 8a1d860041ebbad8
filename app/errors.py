# app/errors.py

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class DomainError(Exception):
    """Base class: ogni errore di dominio porta il suo HTTP status."""

    status_code = 400

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.__class__.__name__


class ValidationError(DomainError):
    status_code = 400


class NotFoundError(DomainError):
    status_code = 404


class ConflictError(DomainError):
    status_code = 409


class AuthorizationError(DomainError):
    status_code = 403


class UpstreamError(DomainError):
    # payment gateway: il client puo' ritentare il pagamento senza reinserire i dati
    status_code = 502


class TransientError(DomainError):
    # contesa sul DB durante l'incremento contatori: il chiamante ritenta con backoff
    status_code = 503


class RateLimitError(DomainError):
    status_code = 429


class RejectionReason(str, enum.Enum):
    # promo codes
    FEATURE_DISABLED = "FEATURE_DISABLED"
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    NOT_YET_ACTIVE = "NOT_YET_ACTIVE"
    EXPIRED = "EXPIRED"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    PER_USER_LIMIT_REACHED = "PER_USER_LIMIT_REACHED"
    SELF_REFERRAL = "SELF_REFERRAL"

    # workflow
    INVALID_STATUS = "INVALID_STATUS"
    REDUNDANT_STATUS = "REDUNDANT_STATUS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    MISSING_LYRICS = "MISSING_LYRICS"
    NOT_IN_REVIEW = "NOT_IN_REVIEW"
    FEEDBACK_REQUIRED = "FEEDBACK_REQUIRED"
    VERSION_REQUIRED = "VERSION_REQUIRED"
    VERSION_NOT_FOUND = "VERSION_NOT_FOUND"
    REVISION_LIMIT_REACHED = "REVISION_LIMIT_REACHED"


_REASON_ERRORS: dict[RejectionReason, type[DomainError]] = {
    RejectionReason.FEATURE_DISABLED: ConflictError,
    RejectionReason.NOT_FOUND: NotFoundError,
    RejectionReason.INACTIVE: ConflictError,
    RejectionReason.NOT_YET_ACTIVE: ConflictError,
    RejectionReason.EXPIRED: ConflictError,
    RejectionReason.BELOW_MINIMUM: ValidationError,
    RejectionReason.USAGE_LIMIT_REACHED: ConflictError,
    RejectionReason.PER_USER_LIMIT_REACHED: ConflictError,
    RejectionReason.SELF_REFERRAL: AuthorizationError,
    RejectionReason.INVALID_STATUS: ValidationError,
    RejectionReason.REDUNDANT_STATUS: ConflictError,
    RejectionReason.INVALID_TRANSITION: ConflictError,
    RejectionReason.MISSING_LYRICS: ConflictError,
    RejectionReason.NOT_IN_REVIEW: ConflictError,
    RejectionReason.FEEDBACK_REQUIRED: ValidationError,
    RejectionReason.VERSION_REQUIRED: ValidationError,
    RejectionReason.VERSION_NOT_FOUND: NotFoundError,
    RejectionReason.REVISION_LIMIT_REACHED: ConflictError,
}


@dataclass(frozen=True)
class Rejection:
    """
    Esito "atteso" di una regola di business (codice scaduto, transizione non valida...).
    Non e' un'eccezione: i router la convertono con to_error().
    """

    reason: RejectionReason
    message: str

    @property
    def error_class(self) -> type[DomainError]:
        return _REASON_ERRORS.get(self.reason, ValidationError)

    def to_error(self) -> DomainError:
        return self.error_class(self.message, reason=self.reason.value)


def unwrap(outcome):
    """Ritorna il valore, oppure solleva l'errore mappato se e' una Rejection."""
    if isinstance(outcome, Rejection):
        raise outcome.to_error()
    return outcome
