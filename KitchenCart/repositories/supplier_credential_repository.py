"""
Supplier Credential Repository

Data access for per-user supplier credentials. Secrets go in and out of this
repository as plaintext and are stored only as EncryptionService tokens.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, select, and_, or_

from KitchenCart.exceptions import (
    CredentialNotFoundError,
    ResourceAlreadyExistsError,
    ValidationError,
)
from KitchenCart.models.supplier_credentials import (
    CredentialStatus,
    REFRESH_AFTER,
    SupplierCredentialModel,
)
from KitchenCart.models.supplier_models import SupplierModel
from KitchenCart.repositories.base_repository import BaseRepository
from KitchenCart.services.encryption_service import EncryptionService, get_encryption_service

logger = logging.getLogger(__name__)


class SupplierCredentialRepository(BaseRepository[SupplierCredentialModel]):

    not_found_error = CredentialNotFoundError

    def __init__(self, encryption_service: Optional[EncryptionService] = None):
        super().__init__(SupplierCredentialModel)
        self._encryption = encryption_service
        self.logger = logging.getLogger(f"{__name__}.SupplierCredentialRepository")

    @property
    def encryption(self) -> EncryptionService:
        if self._encryption is None:
            self._encryption = get_encryption_service()
        return self._encryption

    def create_credential(
        self,
        session: Session,
        user_id: str,
        supplier: SupplierModel,
        username: Optional[str] = None,
        password: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> SupplierCredentialModel:
        """
        Create a credential for a user at a supplier.

        Raises:
            ValidationError: password missing for a supplier that logs in with one
            ResourceAlreadyExistsError: the user already connected this supplier
        """
        if supplier.password_required:
            missing = [name for name, value in (("username", username), ("password", password)) if not value]
            if missing:
                raise ValidationError(
                    f"{supplier.name} requires a username and password",
                    missing_fields=missing,
                )

        if self.get_for_user(session, user_id, supplier.id) is not None:
            raise ResourceAlreadyExistsError(
                f"User {user_id} already has credentials for {supplier.name}",
                resource_type="supplier_credential",
                conflicting_field="supplier_id",
            )

        credential = SupplierCredentialModel(
            user_id=user_id,
            supplier_id=supplier.id,
            organization_id=organization_id,
            encrypted_username=self.encryption.encrypt_value(username),
            encrypted_password=self.encryption.encrypt_value(password),
        )
        credential = self.save(session, credential)
        self.logger.info(f"Created credential {credential.id} for user {user_id} at {supplier.code}")
        return credential

    def get_for_user(self, session: Session, user_id: str, supplier_id: str) -> Optional[SupplierCredentialModel]:
        statement = select(SupplierCredentialModel).where(
            and_(SupplierCredentialModel.user_id == user_id, SupplierCredentialModel.supplier_id == supplier_id)
        )
        return session.exec(statement).first()

    def get_supplier(self, session: Session, credential: SupplierCredentialModel) -> SupplierModel:
        return session.exec(select(SupplierModel).where(SupplierModel.id == credential.supplier_id)).one()

    # Secrets

    def get_username(self, credential: SupplierCredentialModel) -> Optional[str]:
        return self.encryption.decrypt_value(credential.encrypted_username)

    def get_password(self, credential: SupplierCredentialModel) -> Optional[str]:
        return self.encryption.decrypt_value(credential.encrypted_password)

    def get_session_data(self, credential: SupplierCredentialModel) -> Optional[str]:
        return self.encryption.decrypt_value(credential.encrypted_session_data)

    def set_session_data(self, session: Session, credential: SupplierCredentialModel,
                         session_json: Optional[str]) -> SupplierCredentialModel:
        credential.encrypted_session_data = self.encryption.encrypt_value(session_json)
        credential.updated_at = datetime.utcnow()
        return self.save(session, credential)

    def update_secrets(self, session: Session, credential: SupplierCredentialModel,
                       username: Optional[str] = None, password: Optional[str] = None) -> SupplierCredentialModel:
        """Replace login secrets; the stored session is dropped since it belonged to the old login."""
        if username is not None:
            credential.encrypted_username = self.encryption.encrypt_value(username)
        if password is not None:
            credential.encrypted_password = self.encryption.encrypt_value(password)
        credential.clear_session()
        credential.status = CredentialStatus.PENDING
        return self.save(session, credential)

    # Status

    def mark_active(self, session: Session, credential: SupplierCredentialModel) -> SupplierCredentialModel:
        credential.mark_active()
        return self.save(session, credential)

    def mark_failed(self, session: Session, credential: SupplierCredentialModel,
                    error_message: str) -> SupplierCredentialModel:
        credential.mark_failed(error_message)
        return self.save(session, credential)

    def mark_expired(self, session: Session, credential: SupplierCredentialModel) -> SupplierCredentialModel:
        credential.mark_expired()
        return self.save(session, credential)

    def mark_on_hold(self, session: Session, credential: SupplierCredentialModel,
                     reason: str) -> SupplierCredentialModel:
        credential.mark_on_hold(reason)
        return self.save(session, credential)

    def disconnect(self, session: Session, credential: SupplierCredentialModel) -> SupplierCredentialModel:
        credential.clear_session()
        credential.trusted_device_token = None
        credential.trusted_device_expires_at = None
        credential.status = CredentialStatus.PENDING
        return self.save(session, credential)

    def list_needing_refresh(self, session: Session, now: Optional[datetime] = None) -> List[SupplierCredentialModel]:
        """Active credentials whose last login is older than the refresh window."""
        now = now or datetime.utcnow()
        statement = select(SupplierCredentialModel).where(
            and_(
                SupplierCredentialModel.status == CredentialStatus.ACTIVE,
                SupplierCredentialModel.account_on_hold == False,  # noqa: E712
                or_(
                    SupplierCredentialModel.last_login_at.is_(None),
                    SupplierCredentialModel.last_login_at < now - REFRESH_AFTER,
                ),
            )
        )
        return list(session.exec(statement).all())

    # Trusted device

    def get_trusted_device(self, credential: SupplierCredentialModel) -> Optional[str]:
        return self.encryption.decrypt_value(credential.trusted_device_token)

    def set_trusted_device(self, session: Session, credential: SupplierCredentialModel, token_json: str,
                           expires_at: datetime) -> SupplierCredentialModel:
        credential.trusted_device_token = self.encryption.encrypt_value(token_json)
        credential.trusted_device_expires_at = expires_at
        credential.updated_at = datetime.utcnow()
        return self.save(session, credential)
