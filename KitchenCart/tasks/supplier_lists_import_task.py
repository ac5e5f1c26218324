"""
Supplier Lists Import Task - Reads order guides and favorites from a supplier account
"""

from typing import Dict, Any
from .base_task import BaseTask
from KitchenCart.models.task_models import TaskModel


class SupplierListsImportTask(BaseTask):

    @property
    def task_type(self) -> str:
        return "supplier_lists_import"

    @property
    def name(self) -> str:
        return "Supplier Lists Import"

    @property
    def description(self) -> str:
        return "Import order guides and saved lists from a supplier account"

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        input_data = self.require_input(task, ["credential_id"])

        await self.update_progress(task, 10, "Reading supplier lists")
        lists = await self.operations.scrape_supplier_lists(
            input_data["credential_id"], **self.operation_options(input_data)
        )

        return {
            "list_count": len(lists),
            "item_count": sum(len(supplier_list.items) for supplier_list in lists),
            "lists": [supplier_list.to_dict() for supplier_list in lists],
        }
