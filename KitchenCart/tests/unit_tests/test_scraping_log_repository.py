"""
Unit tests for the scraping log lifecycle and per-credential history.
"""

from datetime import datetime, timedelta

from KitchenCart.models.scraping_log_models import ScrapingLogStatus, ScrapingOperation
from KitchenCart.repositories.scraping_log_repository import ScrapingLogRepository


class TestScrapingLogRepository:

    def test_lifecycle_records_outcome(self, make_credential, session_factory):
        credential = make_credential()
        repository = ScrapingLogRepository()

        with session_factory() as session:
            log = repository.start(session, credential.supplier_id, credential.id, ScrapingOperation.ADD_TO_CART)
            assert log.status == ScrapingLogStatus.RUNNING
            log = repository.fail(session, log, "Checkout button not found", {"url": "https://demo.example.com/cart"})

        assert log.status == ScrapingLogStatus.FAILED
        assert log.completed_at is not None
        assert log.error_details == {"url": "https://demo.example.com/cart"}

    def test_history_is_newest_first_and_limited(self, make_credential, session_factory):
        credential = make_credential()
        other = make_credential(user_id="user-2")
        repository = ScrapingLogRepository()
        base = datetime(2024, 3, 1, 8, 0)

        with session_factory() as session:
            for hours, operation in enumerate([ScrapingOperation.IMPORT, ScrapingOperation.PRICE_REFRESH,
                                               ScrapingOperation.CHECKOUT]):
                log = repository.start(session, credential.supplier_id, credential.id, operation)
                log.started_at = base + timedelta(hours=hours)
                repository.complete(session, log, product_count=hours)
            repository.start(session, other.supplier_id, other.id, ScrapingOperation.IMPORT)

            recent = repository.recent_for_credential(session, credential.id, limit=2)

        assert [log.operation for log in recent] == [ScrapingOperation.CHECKOUT, ScrapingOperation.PRICE_REFRESH]
        assert all(log.status == ScrapingLogStatus.COMPLETED for log in recent)
