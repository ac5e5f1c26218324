from sqlmodel import SQLModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum
import json
import uuid


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRY = "retry"
    WAITING_INPUT = "waiting_input"  # parked on a two-factor request


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TaskType(str, Enum):
    # Supplier catalog and lists
    CATALOG_IMPORT = "catalog_import"
    SUPPLIER_LISTS_IMPORT = "supplier_lists_import"
    PRICE_REFRESH = "price_refresh"

    # Ordering
    ADD_TO_CART = "add_to_cart"
    CHECKOUT = "checkout"

    # Credential maintenance
    VALIDATE_CREDENTIALS = "validate_credentials"
    SESSION_REFRESH = "session_refresh"

    # Two-factor housekeeping
    EXPIRE_TWO_FACTOR_REQUESTS = "expire_two_factor_requests"
    TWO_FACTOR_NOTIFICATION = "two_factor_notification"


class TaskModel(SQLModel, table=True):
    """Background task management model"""
    __tablename__ = "tasks"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)

    # Task identification
    task_type: TaskType = Field(index=True)
    name: str = Field(max_length=255)
    description: Optional[str] = None

    # Task status and progress
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    priority: TaskPriority = Field(default=TaskPriority.NORMAL, index=True)
    progress_percentage: int = Field(default=0, ge=0, le=100)
    current_step: Optional[str] = None

    # Task data and results
    input_data: Optional[str] = Field(default=None)  # JSON string
    result_data: Optional[str] = Field(default=None)  # JSON string
    error_message: Optional[str] = None
    error_type: Optional[str] = None

    # Execution tracking
    max_retries: int = Field(default=3)
    retry_count: int = Field(default=0)
    timeout_seconds: Optional[int] = Field(default=900)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # User and context
    created_by_user_id: Optional[str] = Field(default=None, index=True)
    related_entity_type: Optional[str] = None  # e.g. "supplier_credential", "two_factor_request"
    related_entity_id: Optional[str] = Field(default=None, index=True)
    waiting_on_request_id: Optional[str] = Field(default=None, index=True)

    def set_input_data(self, data: Dict[str, Any]):
        """Set input data as JSON"""
        self.input_data = json.dumps(data, default=str) if data else None

    def get_input_data(self) -> Dict[str, Any]:
        """Get input data from JSON"""
        return json.loads(self.input_data) if self.input_data else {}

    def set_result_data(self, data: Dict[str, Any]):
        """Set result data as JSON"""
        self.result_data = json.dumps(data, default=str) if data else None

    def get_result_data(self) -> Dict[str, Any]:
        """Get result data from JSON"""
        return json.loads(self.result_data) if self.result_data else {}

    def is_ready_to_run(self, now: Optional[datetime] = None) -> bool:
        """Pending (or re-queued) and past its scheduled time"""
        if self.status not in (TaskStatus.PENDING, TaskStatus.RETRY):
            return False

        now = now or datetime.utcnow()
        if self.scheduled_at and self.scheduled_at > now:
            return False

        return True

    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "task_type": self.task_type,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "progress_percentage": self.progress_percentage,
            "current_step": self.current_step,
            "input_data": self.get_input_data(),
            "result_data": self.get_result_data(),
            "error_message": self.error_message,
            "error_type": self.error_type,
            "max_retries": self.max_retries,
            "retry_count": self.retry_count,
            "timeout_seconds": self.timeout_seconds,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_by_user_id": self.created_by_user_id,
            "related_entity_type": self.related_entity_type,
            "related_entity_id": self.related_entity_id,
            "waiting_on_request_id": self.waiting_on_request_id,
        }


class CreateTaskRequest(SQLModel):
    """Request model for creating tasks"""
    task_type: TaskType
    name: str
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL
    input_data: Optional[Dict[str, Any]] = None
    max_retries: int = 3
    timeout_seconds: Optional[int] = 900
    scheduled_at: Optional[datetime] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None


class UpdateTaskRequest(SQLModel):
    """Request model for updating tasks"""
    status: Optional[TaskStatus] = None
    progress_percentage: Optional[int] = None
    current_step: Optional[str] = None
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    retry_count: Optional[int] = None
    waiting_on_request_id: Optional[str] = None


class TaskFilterRequest(SQLModel):
    """Request model for filtering tasks"""
    status: Optional[List[TaskStatus]] = None
    task_type: Optional[List[TaskType]] = None
    related_entity_id: Optional[str] = None
    limit: int = Field(default=50, le=1000)
    offset: int = Field(default=0, ge=0)
