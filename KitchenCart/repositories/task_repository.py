import logging
from datetime import datetime
from typing import List, Optional
from sqlmodel import Session, select, and_, or_
from KitchenCart.models.task_models import TaskModel, TaskStatus, TaskFilterRequest
from KitchenCart.repositories.base_repository import BaseRepository

logger = logging.getLogger(__name__)


class TaskRepository(BaseRepository[TaskModel]):
    """
    Repository for task database operations.

    Only repositories touch the session; TaskService delegates all reads
    and writes here.
    """

    def __init__(self):
        super().__init__(TaskModel)

    def create_task(self, session: Session, task: TaskModel) -> TaskModel:
        return self.save(session, task)

    def update_task(self, session: Session, task: TaskModel) -> TaskModel:
        return self.save(session, task)

    def get_tasks_with_filter(self, session: Session, filter_request: TaskFilterRequest) -> List[TaskModel]:
        query = select(TaskModel)
        conditions = []

        if filter_request.status:
            conditions.append(TaskModel.status.in_(filter_request.status))

        if filter_request.task_type:
            conditions.append(TaskModel.task_type.in_(filter_request.task_type))

        if filter_request.related_entity_id:
            conditions.append(TaskModel.related_entity_id == filter_request.related_entity_id)

        if conditions:
            query = query.where(and_(*conditions))

        query = query.order_by(TaskModel.created_at.desc())
        query = query.offset(filter_request.offset).limit(filter_request.limit)
        return list(session.exec(query).all())

    def get_tasks_ready_to_run(self, session: Session, now: Optional[datetime] = None) -> List[TaskModel]:
        """Pending or re-queued tasks whose scheduled time has passed, oldest first."""
        now = now or datetime.utcnow()
        query = select(TaskModel).where(
            and_(
                TaskModel.status.in_([TaskStatus.PENDING, TaskStatus.RETRY]),
                or_(
                    TaskModel.scheduled_at.is_(None),
                    TaskModel.scheduled_at <= now
                )
            )
        ).order_by(TaskModel.created_at)
        return list(session.exec(query).all())

    def get_waiting_on_request(self, session: Session, request_id: str) -> List[TaskModel]:
        query = select(TaskModel).where(
            and_(
                TaskModel.status == TaskStatus.WAITING_INPUT,
                TaskModel.waiting_on_request_id == request_id,
            )
        )
        return list(session.exec(query).all())

    def get_running_tasks(self, session: Session) -> List[TaskModel]:
        query = select(TaskModel).where(TaskModel.status == TaskStatus.RUNNING)
        return list(session.exec(query).all())

    def get_active_for_entity(self, session: Session, related_entity_id: str) -> List[TaskModel]:
        """Tasks for a credential that have not reached a terminal state."""
        query = select(TaskModel).where(
            and_(
                TaskModel.related_entity_id == related_entity_id,
                TaskModel.status.in_([
                    TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.RETRY, TaskStatus.WAITING_INPUT
                ]),
            )
        )
        return list(session.exec(query).all())

    def update_task_status(self, session: Session, task_id: str, status: TaskStatus,
                           current_step: str = None, progress_percentage: int = None,
                           error_message: str = None, error_type: str = None,
                           result_data: dict = None) -> Optional[TaskModel]:
        task = self.get_by_id(session, task_id)
        if not task:
            return None

        task.status = status

        if status == TaskStatus.RUNNING and not task.started_at:
            task.started_at = datetime.utcnow()
        elif status in [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED]:
            task.completed_at = datetime.utcnow()

        if current_step is not None:
            task.current_step = current_step
        if progress_percentage is not None:
            task.progress_percentage = progress_percentage
        if error_message is not None:
            task.error_message = error_message
        if error_type is not None:
            task.error_type = error_type
        if result_data is not None:
            task.set_result_data(result_data)

        return self.save(session, task)

    def schedule_retry(self, session: Session, task_id: str, run_at: datetime,
                       error_message: str = None, error_type: str = None) -> Optional[TaskModel]:
        """Re-queue a task for a later run, counting the retry."""
        task = self.get_by_id(session, task_id)
        if not task or not task.can_retry():
            return None

        task.status = TaskStatus.RETRY
        task.retry_count += 1
        task.scheduled_at = run_at
        task.error_message = error_message
        task.error_type = error_type
        task.started_at = None
        task.completed_at = None
        task.progress_percentage = 0
        task.current_step = None

        task = self.save(session, task)
        logger.info(f"Retrying task {task_id} at {run_at.isoformat()} (attempt {task.retry_count})")
        return task
