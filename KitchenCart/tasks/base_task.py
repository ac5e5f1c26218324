"""
Base task class for all background tasks
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List
from KitchenCart.models.task_models import TaskModel, UpdateTaskRequest
from KitchenCart.suppliers.two_factor import WaitingForInput

logger = logging.getLogger(__name__)


class BaseTask(ABC):
    """Base class for all background tasks"""

    def __init__(self, task_service=None):
        self.task_service = task_service
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def task_type(self) -> str:
        """Return the task type identifier"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the human-readable task name"""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Return the task description"""
        pass

    @abstractmethod
    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        """
        Execute the task logic

        Args:
            task: The task model containing input data and metadata

        Returns:
            Dict containing the result data

        Raises:
            WaitingForInput: the operation is parked on a two-factor prompt
        """
        pass

    @property
    def operations(self):
        """The supplier operation service this task drives."""
        return self.task_service.operations

    async def update_progress(self, task: TaskModel, progress: int, step: Optional[str] = None):
        """Update task progress"""
        if self.task_service:
            await self.task_service.update_task(
                task.id,
                UpdateTaskRequest(
                    progress_percentage=progress,
                    current_step=step
                )
            )

    async def update_step(self, task: TaskModel, step: str):
        """Update current step without changing progress"""
        if self.task_service:
            await self.task_service.update_task(
                task.id,
                UpdateTaskRequest(current_step=step)
            )

    async def sleep(self, seconds: float):
        await asyncio.sleep(seconds)

    def get_input_data(self, task: TaskModel) -> Dict[str, Any]:
        """Get input data from task"""
        return task.get_input_data() if task else {}

    def operation_options(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """Background jobs never block on a human; a two-factor prompt parks the job."""
        return {
            "allow_two_factor_wait": False,
            "resume_request_id": input_data.get("resume_request_id"),
        }

    def log_info(self, message: str, task: TaskModel = None):
        if task:
            self.logger.info(f"Task {task.id}: {message}")
        else:
            self.logger.info(message)

    def log_error(self, message: str, task: TaskModel = None, exc_info: bool = False):
        if task:
            self.logger.error(f"Task {task.id}: {message}", exc_info=exc_info)
        else:
            self.logger.error(message, exc_info=exc_info)

    def require_input(self, task: TaskModel, required_fields: List[str]) -> Dict[str, Any]:
        """Return the input data, raising ValueError when a required field is missing."""
        input_data = self.get_input_data(task)
        missing_fields = [field for field in required_fields if field not in input_data]

        if missing_fields:
            self.log_error(f"Missing required fields: {missing_fields}", task)
            raise ValueError(f"Missing required fields: {', '.join(missing_fields)}")

        return input_data
