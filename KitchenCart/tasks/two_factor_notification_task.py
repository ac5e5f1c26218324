"""
Two-Factor Notification Task - Out-of-band delivery of a verification prompt
"""

from typing import Dict, Any

import aiohttp

from .base_task import BaseTask
from KitchenCart.models.task_models import TaskModel
from KitchenCart.utils.config import notification_webhook_url

WEBHOOK_TIMEOUT_SECONDS = 10


class TwoFactorNotificationTask(BaseTask):
    """
    POST the two_fa_required payload to TWO_FA_NOTIFICATION_WEBHOOK_URL so a
    user without the app open still sees the prompt. Without a webhook the
    prompt is only logged.
    """

    @property
    def task_type(self) -> str:
        return "two_factor_notification"

    @property
    def name(self) -> str:
        return "Two-Factor Notification"

    @property
    def description(self) -> str:
        return "Deliver a two-factor prompt outside the WebSocket channel"

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        input_data = self.require_input(task, ["user_id", "payload"])
        payload = input_data["payload"]
        supplier_name = payload.get("supplierName", "supplier")

        url = notification_webhook_url()
        if not url:
            self.log_info(
                f"Verification code needed for {supplier_name} (user {input_data['user_id']}, "
                f"request {payload.get('requestId')}); no webhook configured", task
            )
            return {"delivered": False, "channel": "log"}

        body = {"user_id": input_data["user_id"], **payload}
        timeout = aiohttp.ClientTimeout(total=WEBHOOK_TIMEOUT_SECONDS)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=body) as response:
                response.raise_for_status()
                status = response.status

        self.log_info(f"Two-factor prompt for {supplier_name} sent to webhook ({status})", task)
        return {"delivered": True, "channel": "webhook", "status": status}
