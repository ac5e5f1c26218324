"""
Validate Credentials Task - Logs in once to check a newly saved credential
"""

from typing import Dict, Any
from .base_task import BaseTask
from KitchenCart.models.task_models import TaskModel


class ValidateCredentialsTask(BaseTask):

    @property
    def task_type(self) -> str:
        return "validate_credentials"

    @property
    def name(self) -> str:
        return "Validate Credentials"

    @property
    def description(self) -> str:
        return "Verify supplier credentials by logging in"

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        input_data = self.require_input(task, ["credential_id"])

        await self.update_progress(task, 10, "Logging in to supplier")
        result = await self.operations.validate_credentials(input_data["credential_id"])

        if not result["valid"]:
            self.log_info(f"Credentials invalid: {result['message']}", task)
        return result
