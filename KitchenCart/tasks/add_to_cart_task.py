"""
Add To Cart Task - Places requested items into the supplier's cart
"""

from typing import Dict, Any
from .base_task import BaseTask
from KitchenCart.models.task_models import TaskModel


class AddToCartTask(BaseTask):

    @property
    def task_type(self) -> str:
        return "add_to_cart"

    @property
    def name(self) -> str:
        return "Add To Cart"

    @property
    def description(self) -> str:
        return "Add items to a supplier cart"

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        input_data = self.require_input(task, ["credential_id", "items"])
        items = input_data["items"]

        await self.update_progress(task, 10, f"Adding {len(items)} items to cart")
        result = await self.operations.add_to_cart(
            input_data["credential_id"],
            items,
            delivery_date=input_data.get("delivery_date"),
            clear_first=input_data.get("clear_first", False),
            **self.operation_options(input_data),
        )

        if result.failed:
            self.log_info(f"{len(result.failed)} of {len(items)} items could not be added", task)
        return result.to_dict()
