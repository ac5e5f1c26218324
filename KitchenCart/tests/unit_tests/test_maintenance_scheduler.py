"""
Unit tests for the maintenance scheduler's job queueing.
"""

from functools import partial

import pytest

from KitchenCart.database.db import session_scope
from KitchenCart.models.task_models import TaskModel, TaskPriority, TaskStatus, TaskType
from KitchenCart.services.system.maintenance_scheduler import MaintenanceScheduler
from conftest import RecordingTaskService


class SchedulerTaskService(RecordingTaskService):
    def __init__(self, engine, error=None):
        super().__init__()
        self.get_session = partial(session_scope, engine)
        self.error = error

    async def create_task(self, task_request, user_id: str = None):
        if self.error is not None:
            raise self.error
        return await super().create_task(task_request, user_id)


class TestMaintenanceScheduler:

    def test_schedules_both_jobs(self, engine):
        scheduler = MaintenanceScheduler(task_service=SchedulerTaskService(engine))

        scheduler.schedule_jobs()

        assert {job.id for job in scheduler.scheduler.get_jobs()} == {
            "expire_two_factor_requests", "session_refresh",
        }

    @pytest.mark.asyncio
    async def test_queues_sweep(self, engine):
        task_service = SchedulerTaskService(engine)
        scheduler = MaintenanceScheduler(task_service=task_service)

        task_id = await scheduler._queue_two_factor_sweep()

        assert task_id == "task-1"
        [(request, _)] = task_service.created
        assert request.task_type == TaskType.EXPIRE_TWO_FACTOR_REQUESTS
        assert request.priority == TaskPriority.HIGH
        assert request.related_entity_id == "expire_two_factor_requests"

    @pytest.mark.asyncio
    async def test_skips_while_previous_run_active(self, engine, session_factory):
        with session_factory() as session:
            session.add(TaskModel(
                task_type=TaskType.SESSION_REFRESH,
                name="Scheduled Session Refresh",
                status=TaskStatus.RUNNING,
                related_entity_type="system",
                related_entity_id="session_refresh",
            ))
        task_service = SchedulerTaskService(engine)
        scheduler = MaintenanceScheduler(task_service=task_service)

        assert await scheduler._queue_session_refresh() is None
        assert task_service.created == []

    @pytest.mark.asyncio
    async def test_queue_failure_logged_not_raised(self, engine):
        scheduler = MaintenanceScheduler(task_service=SchedulerTaskService(engine, error=RuntimeError("db down")))

        assert await scheduler._queue_session_refresh() is None
