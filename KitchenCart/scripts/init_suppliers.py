#!/usr/bin/env python3
"""
Initialize supplier reference rows in the database.

Every adapter registered with the supplier registry gets a row keyed by its
code. Existing rows are refreshed from the adapter descriptor so URLs and
the live-mode flag never drift from the code.
"""

import logging
from typing import List

from sqlmodel import Session

from KitchenCart.models.models import engine
from KitchenCart.models.supplier_models import SupplierModel
from KitchenCart.repositories.supplier_repository import SupplierRepository
from KitchenCart.suppliers import SupplierRegistry

logger = logging.getLogger(__name__)


def supplier_rows() -> List[SupplierModel]:
    rows = []
    for code, info in sorted(SupplierRegistry.get_all_supplier_info().items()):
        rows.append(SupplierModel(
            code=code,
            name=info.display_name,
            base_url=info.base_url,
            login_url=info.login_url,
            auth_type=info.auth_type,
            checkout_enabled=info.live_mode_enabled,
        ))
    return rows


def init_suppliers(bind=None) -> List[str]:
    """Upsert one row per registered supplier; returns the seeded codes."""
    repository = SupplierRepository()
    seeded = []

    with Session(bind if bind is not None else engine, expire_on_commit=False) as session:
        for supplier in supplier_rows():
            repository.upsert(session, supplier)
            seeded.append(supplier.code)

    logger.info(f"Suppliers initialized: {', '.join(seeded)}")
    return seeded


if __name__ == "__main__":
    from KitchenCart.database.db import create_db_and_tables

    logging.basicConfig(level=logging.INFO)
    create_db_and_tables()
    codes = init_suppliers()
    print(f"Initialized {len(codes)} suppliers: {', '.join(codes)}")
