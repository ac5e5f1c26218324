"""
Cart Builder

Adds items one at a time, isolating per-item failures so one missing SKU
never stops the rest of the order, then checks the cart for what actually
landed.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from playwright.async_api import Error as PlaywrightError

from KitchenCart.exceptions import (
    AccountHoldError,
    AuthenticationError,
    CaptchaDetectedError,
    ItemUnavailableError,
    MaintenanceError,
    RateLimitedError,
    ScrapingError,
    SessionExpiredError,
    SupplierError,
)
from .base import AddItemsResult, CartItem, FailedItem

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"
OUT_OF_STOCK = "out_of_stock"
INTERACTION_FAILED = "interaction_failed"
NOT_IN_CART = "not_in_cart"

# Errors that say something about the whole session, not one item
FATAL_ERRORS = (
    AuthenticationError,
    SessionExpiredError,
    CaptchaDetectedError,
    MaintenanceError,
    RateLimitedError,
    AccountHoldError,
)


class CartItemError(SupplierError):
    """One item could not be added; carries the failure reason for the result."""

    default_error_code = "CART_ITEM_FAILED"

    def __init__(self, sku: str, reason: str, message: str, supplier_name: Optional[str] = None):
        super().__init__(message, supplier_name=supplier_name, details={"sku": sku, "reason": reason})
        self.sku = sku
        self.reason = reason


class CartBuilder:

    def __init__(self, adapter, browser, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.adapter = adapter
        self.browser = browser
        self.sleep = sleep
        self.supplier_name = adapter.DISPLAY_NAME

    async def add_items(self, items: List[CartItem], delivery_date: Optional[str] = None,
                        clear_first: bool = False) -> AddItemsResult:
        """
        Raises:
            ItemUnavailableError: every item failed
            AuthenticationError, CaptchaDetectedError, ...: the session itself broke
        """
        if not items:
            return AddItemsResult(added=0)

        if clear_first:
            await self.adapter.clear_cart(self.browser)

        result = AddItemsResult(added=0)
        for item in items:
            failure = await self._add_one(item)
            if failure is None:
                result.added_skus.append(item.sku)
            else:
                result.failed.append(failure)
            await self.adapter.rate_limit_delay()

        if result.added_skus:
            await self._verify(result, items)

        result.added = len(result.added_skus)
        logger.info(f"[{self.supplier_name}] Cart: {result.added} added, {len(result.failed)} failed")

        if result.added == 0:
            raise ItemUnavailableError(
                f"None of the {len(items)} items could be added to the cart",
                items=[{"sku": f.sku, "reason": f.reason, "message": f.message} for f in result.failed],
                supplier_name=self.supplier_name,
            )
        return result

    async def _add_one(self, item: CartItem) -> Optional[FailedItem]:
        try:
            await self.adapter.add_single_item(self.browser, item)
            return None
        except FATAL_ERRORS:
            raise
        except CartItemError as e:
            logger.warning(f"[{self.supplier_name}] SKU {item.sku}: {e.reason}")
            return FailedItem(sku=item.sku, reason=e.reason, message=e.message, name=item.name)
        except ItemUnavailableError as e:
            logger.warning(f"[{self.supplier_name}] SKU {item.sku} unavailable: {e.message}")
            return FailedItem(sku=item.sku, reason=OUT_OF_STOCK, message=e.message, name=item.name)
        except (ScrapingError, PlaywrightError) as e:
            logger.warning(f"[{self.supplier_name}] SKU {item.sku} add failed: {e}")
            return FailedItem(sku=item.sku, reason=INTERACTION_FAILED, message=str(e), name=item.name)

    async def _verify(self, result: AddItemsResult, items: List[CartItem]):
        """Move anything the cart page does not show into the failed list."""
        if not self.adapter.CART_EXPOSES_SKUS:
            return

        try:
            in_cart = await self.adapter.cart_skus(self.browser)
        except (ScrapingError, PlaywrightError, NotImplementedError) as e:
            logger.warning(f"[{self.supplier_name}] Cart verification skipped: {e}")
            return

        # An empty cart fails every added item
        names = {item.sku: item.name for item in items}
        missing = [sku for sku in result.added_skus if sku not in in_cart]
        for sku in missing:
            result.added_skus.remove(sku)
            result.failed.append(
                FailedItem(sku=sku, reason=NOT_IN_CART, message="Item was not found in the cart", name=names.get(sku))
            )
