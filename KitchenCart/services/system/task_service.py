import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional
from KitchenCart.exceptions import SupplierError
from KitchenCart.models.task_models import (
    TaskModel, TaskStatus, TaskPriority, TaskType,
    CreateTaskRequest, UpdateTaskRequest, TaskFilterRequest
)
from KitchenCart.repositories.task_repository import TaskRepository
from KitchenCart.tasks import get_all_task_types, WaitingForInput
from KitchenCart.services.base_service import BaseService, ServiceResponse

logger = logging.getLogger(__name__)

RETRY_BASE_SECONDS = 60
RETRY_MAX_SECONDS = 30 * 60


def retry_delay(retry_count: int, error: Optional[SupplierError] = None) -> int:
    """Exponential backoff with jitter; a supplier's own retry_after wins when it is longer."""
    delay = min(RETRY_BASE_SECONDS * (2 ** retry_count), RETRY_MAX_SECONDS)
    delay += random.randint(0, 15)
    retry_after = getattr(error, "retry_after", None)
    if retry_after:
        delay = max(delay, retry_after)
    return delay


class TaskService(BaseService):
    """
    Background job runner for supplier operations.

    Jobs are rows in the tasks table; the worker picks up pending ones and
    runs them as asyncio tasks, so jobs for different credentials run
    concurrently while same-credential jobs queue on the credential lock.

    Outcome policy:
        retryable supplier error  -> re-queued with backoff up to max_retries
        WaitingForInput           -> waiting_input until the code arrives
        anything else             -> failed
    """

    def __init__(self, engine_override=None, operation_service=None):
        super().__init__(engine_override)
        self.entity_name = "Task"
        self.task_repository = TaskRepository()
        self.running_tasks: Dict[str, asyncio.Task] = {}
        self.task_instances: Dict[str, Any] = {}  # Cache task instances
        self.is_worker_running = False
        self._operation_service = operation_service

        self._register_modular_handlers()

    @property
    def operations(self):
        """Supplier operation service the task handlers drive."""
        if self._operation_service is None:
            from KitchenCart.services.system.supplier_operation_service import SupplierOperationService
            self._operation_service = SupplierOperationService(engine_override=self.engine)
        return self._operation_service

    def _register_modular_handlers(self):
        """Register modular task handlers from the tasks directory"""
        for task_type, task_class in get_all_task_types().items():
            self.task_instances[task_type] = task_class(task_service=self)
            logger.debug(f"Registered task handler: {task_type} -> {task_class.__name__}")

    def get_available_task_types(self) -> List[Dict[str, str]]:
        """Get list of available task types with metadata"""
        return [
            {"type": task_type, "name": instance.name, "description": instance.description}
            for task_type, instance in self.task_instances.items()
        ]

    async def create_task(self, task_request: CreateTaskRequest, user_id: str = None) -> ServiceResponse[Dict[str, Any]]:
        try:
            self.log_operation("create", task_request.name)

            async with self.get_async_session() as session:
                task = TaskModel(
                    task_type=task_request.task_type,
                    name=task_request.name,
                    description=task_request.description,
                    priority=task_request.priority,
                    max_retries=task_request.max_retries,
                    timeout_seconds=task_request.timeout_seconds,
                    scheduled_at=task_request.scheduled_at,
                    created_by_user_id=user_id,
                    related_entity_type=task_request.related_entity_type,
                    related_entity_id=task_request.related_entity_id,
                )

                if task_request.input_data:
                    task.set_input_data(task_request.input_data)

                created_task = self.task_repository.create_task(session, task)
                task_dict = created_task.to_dict()

            return self.success_response(
                f"{self.entity_name} '{created_task.name}' created successfully",
                task_dict
            )

        except Exception as e:
            return self.handle_exception(e, f"create {self.entity_name}")

    def log_operation(self, operation: str, name: str):
        self.logger.info(f"{operation} {self.entity_name}: {name}")

    async def get_task(self, task_id: str) -> ServiceResponse[Dict[str, Any]]:
        try:
            async with self.get_async_session() as session:
                task = self.task_repository.get_by_id(session, task_id)
                if not task:
                    return self.error_response(f"{self.entity_name} with ID {task_id} not found")
                task_dict = task.to_dict()

            return self.success_response(f"{self.entity_name} retrieved successfully", task_dict)

        except Exception as e:
            return self.handle_exception(e, f"get {self.entity_name}")

    async def get_tasks(self, filter_request: TaskFilterRequest) -> List[Dict[str, Any]]:
        async with self.get_async_session() as session:
            tasks = self.task_repository.get_tasks_with_filter(session, filter_request)
            return [task.to_dict() for task in tasks]

    async def update_task(self, task_id: str, update_request: UpdateTaskRequest) -> Optional[TaskModel]:
        async with self.get_async_session() as session:
            task = self.task_repository.get_by_id(session, task_id)
            if not task:
                return None

            if update_request.status is not None:
                task.status = update_request.status
                if update_request.status == TaskStatus.RUNNING and not task.started_at:
                    task.started_at = datetime.utcnow()
                elif update_request.status in [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED]:
                    task.completed_at = datetime.utcnow()

            if update_request.progress_percentage is not None:
                task.progress_percentage = update_request.progress_percentage

            if update_request.current_step is not None:
                task.current_step = update_request.current_step

            if update_request.result_data is not None:
                task.set_result_data(update_request.result_data)

            if update_request.error_message is not None:
                task.error_message = update_request.error_message

            if update_request.error_type is not None:
                task.error_type = update_request.error_type

            if update_request.waiting_on_request_id is not None:
                task.waiting_on_request_id = update_request.waiting_on_request_id

            return self.task_repository.update_task(session, task)

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a task"""
        if task_id in self.running_tasks:
            self.running_tasks[task_id].cancel()
            del self.running_tasks[task_id]

        task = await self.update_task(task_id, UpdateTaskRequest(
            status=TaskStatus.CANCELLED,
            current_step="Task cancelled by user"
        ))
        return task is not None

    async def start_worker(self):
        """Start the task worker with automatic restart on errors"""
        if self.is_worker_running:
            return

        self.is_worker_running = True
        logger.info("Starting task worker")

        while self.is_worker_running:
            try:
                await self._process_pending_tasks()
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"Task worker error: {e}", exc_info=True)
                await asyncio.sleep(5)

        logger.info("Task worker stopped")

    async def stop_worker(self):
        """Stop the task worker"""
        self.is_worker_running = False

        for task_id, task in list(self.running_tasks.items()):
            task.cancel()
            await self.update_task(task_id, UpdateTaskRequest(
                status=TaskStatus.CANCELLED,
                current_step="Worker shutdown"
            ))

        self.running_tasks.clear()

    async def _process_pending_tasks(self):
        async with self.get_async_session() as session:
            ready = self.task_repository.get_tasks_ready_to_run(session)
            task_ids_to_start = [task.id for task in ready if task.id not in self.running_tasks]

        for task_id in task_ids_to_start:
            try:
                self._start_task_by_id(task_id)
            except Exception as e:
                logger.error(f"Failed to start task {task_id}: {e}", exc_info=True)

    def _start_task_by_id(self, task_id: str):
        async_task = asyncio.create_task(self.execute_task(task_id))
        self.running_tasks[task_id] = async_task

    async def execute_task(self, task_id: str) -> Optional[TaskModel]:
        """Run one task to a terminal (or parked) state and return the stored row."""
        timeout_seconds = None
        try:
            async with self.get_async_session() as session:
                task = self.task_repository.get_by_id(session, task_id)
                if not task:
                    logger.error(f"Task {task_id} not found when trying to start")
                    return None

            task_type = str(getattr(task.task_type, "value", task.task_type))
            if task_type not in self.task_instances:
                return await self.update_task(task_id, UpdateTaskRequest(
                    status=TaskStatus.FAILED,
                    error_message=f"No handler found for task type: {task_type}"
                ))

            logger.info(f"Starting task {task_id}: {task.name}")
            task = await self.update_task(task_id, UpdateTaskRequest(
                status=TaskStatus.RUNNING,
                current_step="Starting task execution"
            ))

            task_instance = self.task_instances[task_type]
            timeout_seconds = task.timeout_seconds
            if timeout_seconds:
                result_data = await asyncio.wait_for(task_instance.execute(task), timeout=timeout_seconds)
            else:
                result_data = await task_instance.execute(task)

            logger.info(f"Task {task_id} completed successfully")
            return await self.update_task(task_id, UpdateTaskRequest(
                status=TaskStatus.COMPLETED,
                progress_percentage=100,
                current_step="Task completed successfully",
                result_data=result_data or {},
            ))

        except WaitingForInput as waiting:
            pending = waiting.pending
            logger.info(f"Task {task_id} waiting on two-factor request {pending.request_id}")
            return await self.update_task(task_id, UpdateTaskRequest(
                status=TaskStatus.WAITING_INPUT,
                current_step="Waiting for verification code",
                result_data={"two_factor": pending.to_dict()},
                waiting_on_request_id=pending.request_id,
            ))

        except asyncio.TimeoutError:
            logger.error(f"Task {task_id} timed out")
            return await self.update_task(task_id, UpdateTaskRequest(
                status=TaskStatus.FAILED,
                error_message=f"Task timed out after {timeout_seconds} seconds",
                error_type="TimeoutError",
            ))

        except asyncio.CancelledError:
            logger.info(f"Task {task_id} was cancelled")
            await self.update_task(task_id, UpdateTaskRequest(
                status=TaskStatus.CANCELLED,
                current_step="Task was cancelled"
            ))
            raise

        except Exception as e:
            return await self._handle_failure(task_id, e)

        finally:
            self.running_tasks.pop(task_id, None)

    async def _handle_failure(self, task_id: str, error: Exception) -> Optional[TaskModel]:
        error_type = type(error).__name__
        message = str(error)

        if isinstance(error, SupplierError) and error.retryable:
            async with self.get_async_session() as session:
                task = self.task_repository.get_by_id(session, task_id)
                run_at = datetime.utcnow() + timedelta(seconds=retry_delay(task.retry_count if task else 0, error))
                retried = self.task_repository.schedule_retry(session, task_id, run_at, message, error_type)
            if retried is not None:
                logger.warning(f"Task {task_id} hit {error_type}; retry {retried.retry_count} at {run_at.isoformat()}")
                return retried

        logger.error(f"Task {task_id} failed: {error_type}: {message}")
        return await self.update_task(task_id, UpdateTaskRequest(
            status=TaskStatus.FAILED,
            error_message=message,
            error_type=error_type,
        ))


# Global task service instance
task_service = TaskService()


async def create_two_factor_notification_task(user_id: str, payload: Dict[str, Any]):
    """Queue the fallback message for a two-factor prompt."""
    response = await task_service.create_task(
        CreateTaskRequest(
            task_type=TaskType.TWO_FACTOR_NOTIFICATION,
            name=f"Two-factor notification for {payload.get('supplierName', 'supplier')}",
            priority=TaskPriority.HIGH,
            input_data={"user_id": user_id, "payload": payload},
            max_retries=0,
            timeout_seconds=60,
            related_entity_type="two_factor_request",
            related_entity_id=payload.get("requestId"),
        ),
        user_id=user_id,
    )
    return response.data
