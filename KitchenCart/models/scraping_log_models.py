"""
Scraping Log Model

One row per supplier operation attempt, opened when the operation starts and
closed when it completes or fails.
"""

from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import Text
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
import uuid


class ScrapingLogStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScrapingOperation(str, Enum):
    AUTHENTICATE = "authenticate"
    VALIDATE = "validate"
    IMPORT = "import"
    LISTS = "lists"
    PRICE_REFRESH = "price_refresh"
    ADD_TO_CART = "add_to_cart"
    CHECKOUT = "checkout"
    PLACE_ORDER = "place_order"


class ScrapingLogModel(SQLModel, table=True):
    __tablename__ = "scraping_logs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    supplier_id: str = Field(foreign_key="suppliers.id", index=True)
    supplier_credential_id: Optional[str] = Field(default=None, foreign_key="supplier_credentials.id", index=True)
    operation: ScrapingOperation = Field(default=ScrapingOperation.IMPORT)
    status: ScrapingLogStatus = Field(default=ScrapingLogStatus.PENDING, index=True)

    started_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    completed_at: Optional[datetime] = None
    products_imported: int = Field(default=0)
    products_updated: Optional[int] = None
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    error_details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    def mark_running(self):
        self.status = ScrapingLogStatus.RUNNING
        self.started_at = datetime.utcnow()

    def mark_completed(self, product_count: int = 0, products_updated: Optional[int] = None):
        self.status = ScrapingLogStatus.COMPLETED
        self.completed_at = datetime.utcnow()
        self.products_imported = product_count
        self.products_updated = products_updated

    def mark_failed(self, error_message: str, error_details: Optional[Dict[str, Any]] = None):
        self.status = ScrapingLogStatus.FAILED
        self.completed_at = datetime.utcnow()
        self.error_message = error_message
        self.error_details = error_details

    def mark_cancelled(self):
        self.status = ScrapingLogStatus.CANCELLED
        self.completed_at = datetime.utcnow()

    @property
    def duration(self) -> Optional[float]:
        """Seconds between start and completion, None while still open."""
        if not self.started_at or not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def duration_formatted(self) -> str:
        seconds = self.duration
        if seconds is None:
            return "In progress"
        if seconds < 60:
            return f"{seconds:.1f}s"
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "supplier_id": self.supplier_id,
            "supplier_credential_id": self.supplier_credential_id,
            "operation": self.operation,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration_formatted,
            "products_imported": self.products_imported,
            "products_updated": self.products_updated,
            "error_message": self.error_message,
        }
