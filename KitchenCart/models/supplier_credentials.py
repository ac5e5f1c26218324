"""
Supplier Credentials Model

Per-user, per-supplier login secrets and the serialized browser session.
Secret columns hold EncryptionService tokens ("salt:ciphertext"), never
plaintext.
"""

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import Text, UniqueConstraint
from typing import Optional, Dict, Any
from datetime import datetime, timedelta
from enum import Enum
import uuid

# Sessions older than this are refreshed by the background scheduler
REFRESH_AFTER = timedelta(hours=6)


class CredentialStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    FAILED = "failed"
    HOLD = "hold"


class SupplierCredentialModel(SQLModel, table=True):
    """Login secrets and session state for one user at one supplier."""
    __tablename__ = "supplier_credentials"
    __table_args__ = (UniqueConstraint("user_id", "supplier_id", name="uq_credential_user_supplier"),)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    supplier_id: str = Field(foreign_key="suppliers.id", index=True)
    organization_id: Optional[str] = Field(default=None, index=True)

    encrypted_username: Optional[str] = Field(default=None, sa_column=Column(Text))
    encrypted_password: Optional[str] = Field(default=None, sa_column=Column(Text))
    encrypted_session_data: Optional[str] = Field(default=None, sa_column=Column(Text))

    status: CredentialStatus = Field(default=CredentialStatus.PENDING, index=True)
    last_login_at: Optional[datetime] = None
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text))

    two_fa_enabled: bool = Field(default=False)
    two_fa_type: Optional[str] = None
    trusted_device_token: Optional[str] = Field(default=None, sa_column=Column(Text))
    trusted_device_expires_at: Optional[datetime] = None

    account_on_hold: bool = Field(default=False)
    hold_reason: Optional[str] = None
    refresh_failures: int = Field(default=0)
    importing: bool = Field(default=False)
    last_import_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def _touch(self):
        self.updated_at = datetime.utcnow()

    def mark_active(self):
        self.status = CredentialStatus.ACTIVE
        self.last_login_at = datetime.utcnow()
        self.last_error = None
        self.refresh_failures = 0
        self._touch()

    def mark_failed(self, error_message: str):
        self.status = CredentialStatus.FAILED
        self.last_error = error_message
        self._touch()

    def mark_expired(self):
        self.status = CredentialStatus.EXPIRED
        self._touch()

    def mark_on_hold(self, reason: str):
        self.status = CredentialStatus.HOLD
        self.account_on_hold = True
        self.hold_reason = reason
        self.last_error = reason
        self._touch()

    def clear_session(self):
        """Drop the stored browser session (explicit disconnect)."""
        self.encrypted_session_data = None
        self._touch()

    @property
    def is_active(self) -> bool:
        return self.status == CredentialStatus.ACTIVE

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.last_login_at is None or self.last_login_at < now - REFRESH_AFTER

    def trusted_device_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return bool(self.trusted_device_token) and self.trusted_device_expires_at is not None \
            and self.trusted_device_expires_at > now

    def to_dict(self) -> Dict[str, Any]:
        """Public view; secrets are never included."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "supplier_id": self.supplier_id,
            "organization_id": self.organization_id,
            "status": self.status,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "last_error": self.last_error,
            "two_fa_enabled": self.two_fa_enabled,
            "two_fa_type": self.two_fa_type,
            "has_session": bool(self.encrypted_session_data),
            "trusted_device_expires_at": (
                self.trusted_device_expires_at.isoformat() if self.trusted_device_expires_at else None
            ),
            "account_on_hold": self.account_on_hold,
            "hold_reason": self.hold_reason,
            "refresh_failures": self.refresh_failures,
            "importing": self.importing,
        }
