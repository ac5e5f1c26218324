"""
Catalog Import Task - Discovers a supplier's catalog through the logged-in site
"""

from typing import Dict, Any
from .base_task import BaseTask
from KitchenCart.models.task_models import TaskModel


class CatalogImportTask(BaseTask):
    """Browse categories and search terms for one credential and return the products found"""

    @property
    def task_type(self) -> str:
        return "catalog_import"

    @property
    def name(self) -> str:
        return "Catalog Import"

    @property
    def description(self) -> str:
        return "Import a supplier catalog by browsing categories and searching"

    async def execute(self, task: TaskModel) -> Dict[str, Any]:
        input_data = self.require_input(task, ["credential_id"])
        credential_id = input_data["credential_id"]
        search_terms = input_data.get("search_terms", [])

        await self.update_progress(task, 10, f"Importing catalog ({len(search_terms)} search terms)")
        products = await self.operations.scrape_catalog(
            credential_id, search_terms, **self.operation_options(input_data)
        )

        self.log_info(f"Imported {len(products)} products", task)
        return {
            "credential_id": credential_id,
            "product_count": len(products),
            "products": [product.to_dict() for product in products],
        }
