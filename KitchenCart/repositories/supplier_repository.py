import logging
from typing import List, Optional

from sqlmodel import Session, select

from KitchenCart.exceptions import SupplierNotFoundError
from KitchenCart.models.supplier_models import SupplierModel
from KitchenCart.repositories.base_repository import BaseRepository

logger = logging.getLogger(__name__)


class SupplierRepository(BaseRepository[SupplierModel]):
    """Read access to supplier reference rows, plus the upsert used by seeding."""

    not_found_error = SupplierNotFoundError

    def __init__(self):
        super().__init__(SupplierModel)

    def get_by_code(self, session: Session, code: str) -> Optional[SupplierModel]:
        return session.exec(select(SupplierModel).where(SupplierModel.code == code.lower())).first()

    def get_by_code_or_raise(self, session: Session, code: str) -> SupplierModel:
        supplier = self.get_by_code(session, code)
        if supplier is None:
            raise SupplierNotFoundError(f"Supplier '{code}' not found", supplier_code=code)
        return supplier

    def get_active(self, session: Session) -> List[SupplierModel]:
        return list(session.exec(select(SupplierModel).where(SupplierModel.active == True)).all())  # noqa: E712

    def upsert(self, session: Session, supplier: SupplierModel) -> SupplierModel:
        """Insert a supplier or refresh the existing row with the same code."""
        existing = self.get_by_code(session, supplier.code)
        if existing is None:
            logger.info(f"Seeding supplier {supplier.code}")
            return self.save(session, supplier)

        for field in ("name", "base_url", "login_url", "auth_type", "checkout_enabled"):
            setattr(existing, field, getattr(supplier, field))
        return self.save(session, existing)
