"""
Supplier Reference Model

Reference data describing each supplier website. Rows are seeded at startup
and only read by the automation layer.
"""

from sqlmodel import SQLModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
import uuid


class AuthType(str, Enum):
    PASSWORD = "password"
    TWO_FA = "two_fa"
    WELCOME_URL = "welcome_url"


class SupplierModel(SQLModel, table=True):
    """A supplier website the system can order from."""
    __tablename__ = "suppliers"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    code: str = Field(index=True, unique=True, max_length=64, description="Registry key, e.g. 'usfoods'")
    name: str = Field(max_length=255)
    base_url: str
    login_url: Optional[str] = None
    auth_type: AuthType = Field(default=AuthType.PASSWORD)
    active: bool = Field(default=True)
    checkout_enabled: bool = Field(default=False, description="Mirrors the adapter's live mode flag")

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def password_required(self) -> bool:
        return self.auth_type == AuthType.PASSWORD

    @property
    def no_password_required(self) -> bool:
        return not self.password_required

    @property
    def requires_human_reauth(self) -> bool:
        """Re-authenticating this supplier needs a person to relay a code."""
        return self.auth_type == AuthType.TWO_FA

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "base_url": self.base_url,
            "login_url": self.login_url,
            "auth_type": self.auth_type,
            "active": self.active,
            "checkout_enabled": self.checkout_enabled,
            "password_required": self.password_required,
        }
