import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlmodel import Session, select, and_

from KitchenCart.exceptions import TwoFactorRequestNotFoundError
from KitchenCart.models.two_factor_models import (
    TIMEOUT_MINUTES,
    TwoFactorRequestModel,
    TwoFactorRequestType,
    TwoFactorStatus,
    TwoFactorType,
)
from KitchenCart.repositories.base_repository import BaseRepository

logger = logging.getLogger(__name__)


class TwoFactorRepository(BaseRepository[TwoFactorRequestModel]):
    """
    Persistence for two-factor requests. Rows are never deleted; callers
    move them through the model's transition methods and save here.
    """

    not_found_error = TwoFactorRequestNotFoundError

    def __init__(self):
        super().__init__(TwoFactorRequestModel)

    def create_request(
        self,
        session: Session,
        user_id: str,
        supplier_credential_id: str,
        request_type: TwoFactorRequestType = TwoFactorRequestType.LOGIN,
        two_fa_type: TwoFactorType = TwoFactorType.UNKNOWN,
        prompt_message: Optional[str] = None,
        timeout_minutes: int = TIMEOUT_MINUTES,
        attempts: int = 0,
        now: Optional[datetime] = None,
    ) -> TwoFactorRequestModel:
        """Open a new request, closing any request still pending for the credential."""
        now = now or datetime.utcnow()

        for previous in self.get_pending_for_credential(session, supplier_credential_id):
            if previous.is_expired(now):
                previous.mark_expired()
            else:
                previous.mark_cancelled()
            session.add(previous)
            logger.info(f"Closed two-factor request {previous.id} ({previous.status}) before opening a new one")

        request = TwoFactorRequestModel(
            user_id=user_id,
            supplier_credential_id=supplier_credential_id,
            request_type=request_type,
            two_fa_type=two_fa_type,
            prompt_message=prompt_message,
            attempts=attempts,
            expires_at=now + timedelta(minutes=timeout_minutes),
            created_at=now,
            updated_at=now,
        )
        return self.save(session, request)

    def get_by_session_token(self, session: Session, session_token: str) -> Optional[TwoFactorRequestModel]:
        statement = select(TwoFactorRequestModel).where(TwoFactorRequestModel.session_token == session_token)
        return session.exec(statement).first()

    def get_by_id_or_token(self, session: Session, identifier: str) -> TwoFactorRequestModel:
        request = self.get_by_id(session, identifier) or self.get_by_session_token(session, identifier)
        if request is None:
            raise TwoFactorRequestNotFoundError(f"Two-factor request {identifier} not found", request_id=identifier)
        return request

    def get_pending_for_credential(self, session: Session, supplier_credential_id: str) -> List[TwoFactorRequestModel]:
        statement = select(TwoFactorRequestModel).where(
            and_(
                TwoFactorRequestModel.supplier_credential_id == supplier_credential_id,
                TwoFactorRequestModel.status == TwoFactorStatus.PENDING,
            )
        )
        return list(session.exec(statement).all())

    def get_active_for_credential(self, session: Session, supplier_credential_id: str,
                                  now: Optional[datetime] = None) -> Optional[TwoFactorRequestModel]:
        now = now or datetime.utcnow()
        for request in self.get_pending_for_credential(session, supplier_credential_id):
            if request.is_active(now):
                return request
        return None

    def get_history(self, session: Session, supplier_credential_id: str, limit: int = 20) -> List[TwoFactorRequestModel]:
        statement = (
            select(TwoFactorRequestModel)
            .where(TwoFactorRequestModel.supplier_credential_id == supplier_credential_id)
            .order_by(TwoFactorRequestModel.created_at.desc())
            .limit(limit)
        )
        return list(session.exec(statement).all())

    def expire_stale(self, session: Session, now: Optional[datetime] = None) -> List[TwoFactorRequestModel]:
        """Mark every pending request past its deadline as expired and return them."""
        now = now or datetime.utcnow()
        statement = select(TwoFactorRequestModel).where(
            and_(
                TwoFactorRequestModel.status == TwoFactorStatus.PENDING,
                TwoFactorRequestModel.expires_at <= now,
            )
        )
        stale = list(session.exec(statement).all())
        for request in stale:
            request.mark_expired()
            session.add(request)
        if stale:
            session.commit()
            logger.info(f"Expired {len(stale)} stale two-factor requests")
        return stale
