"""
Two-Factor Request Model

One row per verification challenge raised by a supplier site. Rows are an
audit trail and are never deleted; status only moves along the edges in
ALLOWED_TRANSITIONS.
"""

from sqlmodel import SQLModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timedelta
from enum import Enum
import secrets
import uuid

from KitchenCart.exceptions import InvalidTwoFactorTransitionError

MAX_ATTEMPTS = 3
TIMEOUT_MINUTES = 5


class TwoFactorRequestType(str, Enum):
    LOGIN = "login"
    CHECKOUT = "checkout"
    PRICE_REFRESH = "price_refresh"


class TwoFactorType(str, Enum):
    SMS = "sms"
    TOTP = "totp"
    EMAIL = "email"
    UNKNOWN = "unknown"


class TwoFactorStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS = {
    TwoFactorStatus.PENDING: {TwoFactorStatus.SUBMITTED, TwoFactorStatus.EXPIRED, TwoFactorStatus.CANCELLED},
    TwoFactorStatus.SUBMITTED: {TwoFactorStatus.VERIFIED, TwoFactorStatus.FAILED},
}


def _session_token() -> str:
    return secrets.token_urlsafe(32)


def _default_expiry() -> datetime:
    return datetime.utcnow() + timedelta(minutes=TIMEOUT_MINUTES)


class TwoFactorRequestModel(SQLModel, table=True):
    """A pending or finished request for a human-relayed verification code."""
    __tablename__ = "two_factor_requests"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    supplier_credential_id: str = Field(foreign_key="supplier_credentials.id", index=True)
    session_token: str = Field(default_factory=_session_token, unique=True, index=True)

    request_type: TwoFactorRequestType = Field(default=TwoFactorRequestType.LOGIN)
    two_fa_type: TwoFactorType = Field(default=TwoFactorType.UNKNOWN)
    prompt_message: Optional[str] = None

    status: TwoFactorStatus = Field(default=TwoFactorStatus.PENDING, index=True)
    code_submitted: Optional[str] = None
    attempts: int = Field(default=0, ge=0)
    expires_at: datetime = Field(default_factory=_default_expiry)
    verified_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def transition_to(self, new_status: TwoFactorStatus):
        """Move to new_status or raise InvalidTwoFactorTransitionError."""
        new_status = TwoFactorStatus(new_status)
        allowed = ALLOWED_TRANSITIONS.get(TwoFactorStatus(self.status), set())
        if new_status not in allowed:
            raise InvalidTwoFactorTransitionError(
                f"Cannot move two-factor request {self.id} from {self.status} to {new_status.value}",
                from_status=TwoFactorStatus(self.status).value,
                to_status=new_status.value,
            )
        self.status = new_status
        self.updated_at = datetime.utcnow()

    def record_attempt(self, code: str):
        self.transition_to(TwoFactorStatus.SUBMITTED)
        self.attempts += 1
        self.code_submitted = code

    def mark_verified(self):
        self.transition_to(TwoFactorStatus.VERIFIED)
        self.verified_at = datetime.utcnow()

    def mark_failed(self):
        self.transition_to(TwoFactorStatus.FAILED)

    def mark_expired(self):
        self.transition_to(TwoFactorStatus.EXPIRED)

    def mark_cancelled(self):
        self.transition_to(TwoFactorStatus.CANCELLED)

    def is_pending(self) -> bool:
        return self.status == TwoFactorStatus.PENDING

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.status == TwoFactorStatus.EXPIRED or self.expires_at <= now

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.is_pending() and not self.is_expired(now)

    def can_retry(self, now: Optional[datetime] = None) -> bool:
        return self.attempts < MAX_ATTEMPTS and not self.is_expired(now)

    @property
    def attempts_remaining(self) -> int:
        return max(MAX_ATTEMPTS - self.attempts, 0)

    def time_remaining(self, now: Optional[datetime] = None) -> int:
        """Seconds until expiry, zero once expired."""
        now = now or datetime.utcnow()
        if self.is_expired(now):
            return 0
        return int((self.expires_at - now).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "supplier_credential_id": self.supplier_credential_id,
            "session_token": self.session_token,
            "request_type": self.request_type,
            "two_fa_type": self.two_fa_type,
            "prompt_message": self.prompt_message,
            "status": self.status,
            "attempts": self.attempts,
            "attempts_remaining": self.attempts_remaining,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class SubmitTwoFactorCodeRequest(SQLModel):
    """Request body for submitting a verification code"""
    code: str = Field(min_length=1, max_length=32)
