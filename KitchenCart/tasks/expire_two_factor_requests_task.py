"""
Expire Two-Factor Requests Task - Sweeps pending verification prompts past their deadline
"""

from typing import Dict, Any
from .base_task import BaseTask
from KitchenCart.models.task_models import TaskModel
from KitchenCart.services.system.two_factor_service import TwoFactorService


class ExpireTwoFactorRequestsTask(BaseTask):

    @property
    def task_type(self) -> str:
        return "expire_two_factor_requests"

    @property
    def name(self) -> str:
        return "Expire Two-Factor Requests"

    @property
    def description(self) -> str:
        return "Expire stale two-factor requests and release the jobs waiting on them"

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        engine = self.task_service.engine if self.task_service else None
        expired = await TwoFactorService(engine_override=engine).expire_stale_requests()
        if expired:
            self.log_info(f"Expired {expired} two-factor requests", task)
        return {"expired_count": expired}
