"""
Price Refresh Task - Re-reads current prices for known supplier SKUs
"""

from typing import Dict, Any
from .base_task import BaseTask
from KitchenCart.models.task_models import TaskModel


class PriceRefreshTask(BaseTask):
    """Fetch the live product page for each SKU and report the current price and stock"""

    @property
    def task_type(self) -> str:
        return "price_refresh"

    @property
    def name(self) -> str:
        return "Price Refresh"

    @property
    def description(self) -> str:
        return "Refresh prices and availability for supplier SKUs"

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        input_data = self.require_input(task, ["credential_id"])
        skus = input_data.get("skus", [])

        await self.update_progress(task, 10, f"Refreshing prices for {len(skus)} SKUs")
        products = await self.operations.refresh_prices(
            input_data["credential_id"], skus, **self.operation_options(input_data)
        )

        found = {product.supplier_sku for product in products}
        missing = [sku for sku in skus if sku not in found]
        if missing:
            self.log_info(f"{len(missing)} SKUs not found: {', '.join(missing[:10])}", task)

        return {
            "updated_count": len(products),
            "products": [product.to_dict() for product in products],
            "missing_skus": missing,
        }
