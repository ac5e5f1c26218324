"""
Consolidated KitchenCart Exception Hierarchy

All exception classes used across KitchenCart live here so that services,
supplier adapters, background tasks and the HTTP layer share one error
vocabulary and one response format.

Architecture:
- Base exception classes for common error types
- Supplier failure taxonomy (SupplierError and subclasses) used by the
  browser automation layer
- Propagation policy encoded as class attributes: whether the job scheduler
  may retry, whether the error is transient, and which status the owning
  credential should move to
"""

import logging
from typing import Any, Dict, Optional, List

logger = logging.getLogger(__name__)


# =============================================================================
# Base Exception Classes
# =============================================================================


class KitchenCartException(Exception):
    """Base exception for all KitchenCart-related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {"error_code": self.error_code, "message": self.message, "details": self.details}


class ValidationError(KitchenCartException):
    """Raised when input validation fails."""

    def __init__(
        self, message: str, field_errors: Optional[Dict[str, str]] = None, missing_fields: Optional[List[str]] = None
    ):
        super().__init__(message, error_code="VALIDATION_ERROR")
        self.field_errors = field_errors or {}
        self.missing_fields = missing_fields or []

        if field_errors or missing_fields:
            self.details.update({"field_errors": field_errors, "missing_fields": missing_fields})


class ResourceNotFoundError(KitchenCartException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None):
        super().__init__(message, error_code="RESOURCE_NOT_FOUND")
        self.resource_type = resource_type
        self.resource_id = resource_id

        if resource_type or resource_id:
            self.details.update({"resource_type": resource_type, "resource_id": resource_id})


class ResourceAlreadyExistsError(KitchenCartException):
    """Raised when attempting to create a resource that already exists."""

    def __init__(self, message: str, resource_type: Optional[str] = None, conflicting_field: Optional[str] = None):
        super().__init__(message, error_code="RESOURCE_ALREADY_EXISTS")
        self.resource_type = resource_type
        self.conflicting_field = conflicting_field

        if resource_type or conflicting_field:
            self.details.update({"resource_type": resource_type, "conflicting_field": conflicting_field})


class ConfigurationError(KitchenCartException):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_field: Optional[str] = None):
        super().__init__(message, error_code="CONFIGURATION_ERROR")
        self.config_field = config_field

        if config_field:
            self.details.update({"config_field": config_field})


class EncryptionError(KitchenCartException):
    """Raised when a stored secret cannot be encrypted or decrypted."""

    def __init__(self, message: str):
        super().__init__(message, error_code="ENCRYPTION_ERROR")


# =============================================================================
# Domain-Specific Exception Classes
# =============================================================================


# Record lookups
class SupplierNotFoundError(ResourceNotFoundError):
    """Raised when a supplier row or adapter is not found."""

    def __init__(self, message: str, supplier_code: Optional[str] = None):
        super().__init__(message, resource_type="supplier", resource_id=supplier_code)


class CredentialNotFoundError(ResourceNotFoundError):
    """Raised when a supplier credential is not found."""

    def __init__(self, message: str, credential_id: Optional[str] = None):
        super().__init__(message, resource_type="supplier_credential", resource_id=credential_id)


class TwoFactorRequestNotFoundError(ResourceNotFoundError):
    """Raised when a two-factor request is not found."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message, resource_type="two_factor_request", resource_id=request_id)


class InvalidTwoFactorTransitionError(KitchenCartException):
    """Raised when a two-factor request is moved along an edge its state machine does not allow."""

    def __init__(self, message: str, from_status: Optional[str] = None, to_status: Optional[str] = None):
        super().__init__(message, error_code="INVALID_TWO_FACTOR_TRANSITION")
        self.from_status = from_status
        self.to_status = to_status
        self.details.update({"from_status": from_status, "to_status": to_status})


class InvalidCheckoutTransitionError(KitchenCartException):
    """Raised when the checkout state machine is asked to take an illegal edge."""

    def __init__(self, message: str, from_state: Optional[str] = None, to_state: Optional[str] = None):
        super().__init__(message, error_code="INVALID_CHECKOUT_TRANSITION")
        self.details.update({"from_state": from_state, "to_state": to_state})


# Supplier failure taxonomy
class SupplierError(KitchenCartException):
    """
    Base class for failures raised while driving a supplier website.

    Class attributes describe how the failure propagates:
        retryable: the job scheduler may re-run the operation later
        transient: not the user's fault; the credential is left untouched
        credential_status: status the owning credential moves to, if any
    """

    retryable: bool = False
    transient: bool = False
    credential_status: Optional[str] = None
    default_error_code = "SUPPLIER_ERROR"

    def __init__(
        self,
        message: str,
        supplier_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message, details=details, error_code=error_code or self.default_error_code)
        self.supplier_name = supplier_name

        if supplier_name:
            self.details.update({"supplier_name": supplier_name})

    def attach_diagnostics(self, diagnostics: Dict[str, Any]) -> "SupplierError":
        """Attach a captured diagnostic bundle and return self for re-raising."""
        self.details["diagnostics"] = diagnostics
        return self

    @property
    def diagnostics(self) -> Optional[Dict[str, Any]]:
        return self.details.get("diagnostics")


class AuthenticationError(SupplierError):
    """Could not establish identity on the supplier site."""

    credential_status = "failed"
    default_error_code = "AUTHENTICATION_ERROR"


class TwoFactorTimeoutError(AuthenticationError):
    """No verification code was submitted before the request expired."""

    default_error_code = "TWO_FACTOR_TIMEOUT"


class SessionExpiredError(SupplierError):
    """Stored session is dead and cannot be silently re-established."""

    credential_status = "expired"
    default_error_code = "SESSION_EXPIRED"


class TwoFactorCancelledError(SupplierError):
    """The human side cancelled a pending verification request."""

    default_error_code = "TWO_FACTOR_CANCELLED"


class CaptchaDetectedError(SupplierError):
    """The supplier served a CAPTCHA challenge."""

    transient = True
    default_error_code = "CAPTCHA_DETECTED"


class MaintenanceError(SupplierError):
    """The supplier site is down for maintenance."""

    transient = True
    retryable = True
    default_error_code = "SUPPLIER_MAINTENANCE"


class RateLimitedError(SupplierError):
    """The supplier throttled this account or address."""

    transient = True
    retryable = True
    default_error_code = "SUPPLIER_RATE_LIMITED"

    def __init__(self, message: str, supplier_name: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message, supplier_name=supplier_name)
        self.retry_after = retry_after

        if retry_after:
            self.details.update({"retry_after": retry_after})


class AccountHoldError(SupplierError):
    """The supplier account is on hold or over its credit limit."""

    credential_status = "hold"
    default_error_code = "ACCOUNT_HOLD"


class OrderMinimumError(SupplierError):
    """Cart subtotal is below the supplier's order minimum."""

    default_error_code = "ORDER_MINIMUM"

    def __init__(self, message: str, minimum: float, current_total: float, supplier_name: Optional[str] = None):
        super().__init__(message, supplier_name=supplier_name)
        self.minimum = minimum
        self.current_total = current_total
        self.details.update({"minimum": minimum, "current_total": current_total})


class ItemUnavailableError(SupplierError):
    """One or more requested items cannot be ordered."""

    default_error_code = "ITEM_UNAVAILABLE"

    def __init__(self, message: str, items: List[Dict[str, Any]], supplier_name: Optional[str] = None):
        super().__init__(message, supplier_name=supplier_name)
        self.items = list(items)
        self.details.update({"items": self.items})


class DeliveryUnavailableError(SupplierError):
    """No delivery date can be selected for this order."""

    default_error_code = "DELIVERY_UNAVAILABLE"


class PriceChangedError(SupplierError):
    """Cart prices moved since the items were added."""

    default_error_code = "PRICE_CHANGED"

    def __init__(self, message: str, changes: List[Dict[str, Any]], supplier_name: Optional[str] = None):
        super().__init__(message, supplier_name=supplier_name)
        self.changes = list(changes)
        self.details.update({"changes": self.changes})


class ScrapingError(SupplierError):
    """The automation itself failed (selector missing, timeout, unexpected page)."""

    default_error_code = "SCRAPING_ERROR"


# =============================================================================
# Utility Functions
# =============================================================================


def log_exception(exception: Exception, context: str = None, extra_info: Optional[Dict[str, Any]] = None):
    """
    Centralized exception logging with consistent format.

    Transient supplier failures are logged as warnings since they are
    expected from time to time and need no code change.
    """
    if isinstance(exception, KitchenCartException):
        log_data = {
            "error_code": exception.error_code,
            "error_message": exception.message,
            "details": exception.details,
            "context": context,
        }

        if extra_info:
            log_data.update(extra_info)

        if isinstance(exception, SupplierError) and exception.transient:
            logger.warning(f"KitchenCart Error: {exception.message}", extra=log_data)
        else:
            logger.error(f"KitchenCart Error: {exception.message}", extra=log_data)
    else:
        log_data = {
            "exception_type": type(exception).__name__,
            "error_message": str(exception),
            "context": context,
        }

        if extra_info:
            log_data.update(extra_info)

        logger.error(f"Unexpected Error: {str(exception)}", extra=log_data, exc_info=True)


def get_http_status_code(exception: Exception) -> int:
    """
    Get appropriate HTTP status code for an exception.
    """
    if isinstance(exception, ValidationError):
        return 422
    elif isinstance(exception, ResourceNotFoundError):
        return 404
    elif isinstance(exception, ResourceAlreadyExistsError):
        return 409
    elif isinstance(exception, InvalidTwoFactorTransitionError):
        return 409
    elif isinstance(exception, AuthenticationError):
        return 401
    elif isinstance(exception, RateLimitedError):
        return 429
    elif isinstance(exception, (MaintenanceError, CaptchaDetectedError)):
        return 503
    elif isinstance(exception, (OrderMinimumError, ItemUnavailableError, PriceChangedError, DeliveryUnavailableError)):
        return 409
    elif isinstance(exception, (ConfigurationError, EncryptionError)):
        return 500
    elif isinstance(exception, ScrapingError):
        return 502
    elif isinstance(exception, KitchenCartException):
        return 400
    else:
        return 500
