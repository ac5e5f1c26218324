"""
Supplier System Exceptions

Re-exports the supplier failure taxonomy from KitchenCart.exceptions so
adapters can import everything they raise from one place.
"""

from KitchenCart.exceptions import (
    AccountHoldError,
    AuthenticationError,
    CaptchaDetectedError,
    DeliveryUnavailableError,
    ItemUnavailableError,
    MaintenanceError,
    OrderMinimumError,
    PriceChangedError,
    RateLimitedError,
    ScrapingError,
    SessionExpiredError,
    SupplierError,
    SupplierNotFoundError,
    TwoFactorCancelledError,
    TwoFactorTimeoutError,
)

__all__ = [
    'AccountHoldError',
    'AuthenticationError',
    'CaptchaDetectedError',
    'DeliveryUnavailableError',
    'ItemUnavailableError',
    'MaintenanceError',
    'OrderMinimumError',
    'PriceChangedError',
    'RateLimitedError',
    'ScrapingError',
    'SessionExpiredError',
    'SupplierError',
    'SupplierNotFoundError',
    'TwoFactorCancelledError',
    'TwoFactorTimeoutError',
]
