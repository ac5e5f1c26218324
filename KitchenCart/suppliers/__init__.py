"""
Supplier Automation

Browser automation for foodservice supplier websites. Each supplier is an
adapter over BaseSupplier; the shared algorithms (authentication chain,
two-factor orchestration, catalog scrolling, cart building and the checkout
state machine) live in this package.

Usage:
    from KitchenCart.suppliers import SupplierRegistry

    adapter = SupplierRegistry.get_supplier("usfoods", context)
    async with with_session(adapter.browser_config()) as browser:
        await adapter.authenticate(browser)
        products = await adapter.discover_catalog(browser, ["chicken"])
"""

from .base import BaseSupplier, OperationContext, SupplierCapability, SupplierInfo, UnavailableItemPolicy
from .browser import BrowserConfig, BrowserSession, open_session, with_session
from .registry import SupplierRegistry, register_supplier

# Import supplier implementations to register them
from . import chefs_warehouse
from . import us_foods
from . import what_chefs_want
from . import premiere_produce_one

__all__ = [
    "BaseSupplier",
    "BrowserConfig",
    "BrowserSession",
    "OperationContext",
    "SupplierCapability",
    "SupplierInfo",
    "SupplierRegistry",
    "UnavailableItemPolicy",
    "open_session",
    "register_supplier",
    "with_session",
]
