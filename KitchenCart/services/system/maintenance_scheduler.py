"""
Maintenance Scheduler Service

Queues the recurring housekeeping jobs using APScheduler: expiring two-factor
requests nobody answered, and refreshing supplier sessions before their
stored cookies go stale. The scheduler only creates tasks; the task worker
runs them.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from typing import Optional
import logging

from KitchenCart.models.task_models import CreateTaskRequest, TaskType, TaskPriority

logger = logging.getLogger(__name__)

TWO_FACTOR_SWEEP_SECONDS = 60
SESSION_REFRESH_MINUTES = 60


class MaintenanceScheduler:
    """Manages scheduled maintenance operations"""

    def __init__(self, task_service=None):
        self.scheduler = AsyncIOScheduler()
        self._task_service = task_service
        self.expire_job_id = "expire_two_factor_requests"
        self.refresh_job_id = "session_refresh"

    @property
    def task_service(self):
        if self._task_service is None:
            from KitchenCart.services.system.task_service import task_service
            self._task_service = task_service
        return self._task_service

    async def start(self):
        """Start the maintenance scheduler"""
        try:
            self.schedule_jobs()
            self.scheduler.start()
            logger.info("Maintenance scheduler started successfully")
        except Exception as e:
            logger.error(f"Failed to start maintenance scheduler: {e}", exc_info=True)

    async def stop(self):
        """Stop the maintenance scheduler"""
        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            logger.info("Maintenance scheduler stopped")
        except Exception as e:
            logger.error(f"Failed to stop maintenance scheduler: {e}", exc_info=True)

    def schedule_jobs(self):
        self.scheduler.add_job(
            self._queue_two_factor_sweep,
            trigger=IntervalTrigger(seconds=TWO_FACTOR_SWEEP_SECONDS),
            id=self.expire_job_id,
            name="Expire Two-Factor Requests",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._queue_session_refresh,
            trigger=IntervalTrigger(minutes=SESSION_REFRESH_MINUTES),
            id=self.refresh_job_id,
            name="Session Refresh",
            replace_existing=True,
        )
        logger.info(
            f"Maintenance jobs scheduled: two-factor sweep every {TWO_FACTOR_SWEEP_SECONDS}s, "
            f"session refresh every {SESSION_REFRESH_MINUTES}m"
        )

    def _already_queued(self, job_key: str) -> bool:
        from KitchenCart.repositories.task_repository import TaskRepository

        with self.task_service.get_session() as session:
            return bool(TaskRepository().get_active_for_entity(session, job_key))

    async def _queue(self, job_key: str, task_type: TaskType, name: str,
                     priority: TaskPriority, timeout_seconds: int) -> Optional[str]:
        """Create the maintenance task unless one is still pending or running."""
        try:
            if self._already_queued(job_key):
                logger.debug(f"Skipping {name}: previous run still active")
                return None

            response = await self.task_service.create_task(CreateTaskRequest(
                task_type=task_type,
                name=name,
                priority=priority,
                input_data={},
                max_retries=0,
                timeout_seconds=timeout_seconds,
                related_entity_type="system",
                related_entity_id=job_key,
            ))
            if not response.success:
                logger.error(f"Failed to queue {name}: {response.message}")
                return None
            return response.data["id"]

        except Exception as e:
            logger.error(f"Failed to queue {name}: {e}", exc_info=True)
            return None

    async def _queue_two_factor_sweep(self) -> Optional[str]:
        return await self._queue(
            self.expire_job_id, TaskType.EXPIRE_TWO_FACTOR_REQUESTS,
            "Expire Two-Factor Requests", TaskPriority.HIGH, 60,
        )

    async def _queue_session_refresh(self) -> Optional[str]:
        return await self._queue(
            self.refresh_job_id, TaskType.SESSION_REFRESH,
            "Scheduled Session Refresh", TaskPriority.LOW, 1800,
        )


# Global scheduler instance
maintenance_scheduler = MaintenanceScheduler()
