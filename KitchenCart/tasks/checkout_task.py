"""
Checkout Task - Drives the supplier checkout to a confirmation or a dry-run halt
"""

from typing import Dict, Any
from .base_task import BaseTask
from KitchenCart.models.task_models import TaskModel


class CheckoutTask(BaseTask):
    """
    Check out the current cart. Runs as a dry run unless the job explicitly
    asks otherwise; an adapter without live mode stays dry regardless.
    With items in the input, the cart is rebuilt first in the same browser.
    """

    @property
    def task_type(self) -> str:
        return "checkout"

    @property
    def name(self) -> str:
        return "Checkout"

    @property
    def description(self) -> str:
        return "Validate the cart and check out with the supplier"

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        input_data = self.require_input(task, ["credential_id"])
        credential_id = input_data["credential_id"]
        dry_run = input_data.get("dry_run", True)
        delivery_date = input_data.get("delivery_date")
        options = self.operation_options(input_data)

        if input_data.get("items"):
            await self.update_progress(task, 10, f"Placing order ({'dry run' if dry_run else 'live'})")
            result = await self.operations.place_order(
                credential_id, input_data["items"], delivery_date=delivery_date, dry_run=dry_run, **options
            )
            confirmation = result["confirmation"]
            return {"cart": result["cart"].to_dict(), "confirmation": confirmation.to_dict()}

        await self.update_progress(task, 10, f"Checking out ({'dry run' if dry_run else 'live'})")
        confirmation = await self.operations.checkout(
            credential_id, dry_run=dry_run, delivery_date=delivery_date, **options
        )
        self.log_info(f"Checkout finished: {confirmation.confirmation_number}", task)
        return {"confirmation": confirmation.to_dict()}
