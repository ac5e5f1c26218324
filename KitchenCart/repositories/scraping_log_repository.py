import logging
from typing import List, Optional

from sqlmodel import Session, select

from KitchenCart.models.scraping_log_models import ScrapingLogModel, ScrapingOperation
from KitchenCart.repositories.base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ScrapingLogRepository(BaseRepository[ScrapingLogModel]):

    def __init__(self):
        super().__init__(ScrapingLogModel)

    def start(self, session: Session, supplier_id: str, supplier_credential_id: Optional[str],
              operation: ScrapingOperation) -> ScrapingLogModel:
        log = ScrapingLogModel(
            supplier_id=supplier_id,
            supplier_credential_id=supplier_credential_id,
            operation=operation,
        )
        log.mark_running()
        return self.save(session, log)

    def complete(self, session: Session, log: ScrapingLogModel, product_count: int = 0,
                 products_updated: Optional[int] = None) -> ScrapingLogModel:
        log.mark_completed(product_count, products_updated)
        return self.save(session, log)

    def fail(self, session: Session, log: ScrapingLogModel, error_message: str,
             error_details: Optional[dict] = None) -> ScrapingLogModel:
        log.mark_failed(error_message, error_details)
        return self.save(session, log)

    def cancel(self, session: Session, log: ScrapingLogModel) -> ScrapingLogModel:
        log.mark_cancelled()
        return self.save(session, log)

    def recent_for_credential(self, session: Session, supplier_credential_id: str,
                              limit: int = 20) -> List[ScrapingLogModel]:
        statement = (
            select(ScrapingLogModel)
            .where(ScrapingLogModel.supplier_credential_id == supplier_credential_id)
            .order_by(ScrapingLogModel.started_at.desc())
            .limit(limit)
        )
        return list(session.exec(statement).all())
