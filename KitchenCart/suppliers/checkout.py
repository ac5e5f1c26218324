"""
Checkout State Machine

SESSION_READY -> CART_EXTRACTED -> VALIDATED -> REVIEW_EXTRACTED, then either
DRY_RUN_HALT or SUBMITTED -> CONFIRMED. Any state may fall to FAILED.

The submit button is only ever clicked when the caller asked for a live
order AND the adapter has LIVE_MODE_ENABLED set.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from KitchenCart.exceptions import (
    InvalidCheckoutTransitionError,
    ItemUnavailableError,
    OrderMinimumError,
    PriceChangedError,
    ScrapingError,
)
from .base import CartSnapshot, CheckoutConfirmation, ReviewSnapshot, UnavailableItemPolicy

logger = logging.getLogger(__name__)

CONFIRMATION_POLL_SECONDS = 1.0
CONFIRMATION_TIMEOUT_SECONDS = 30


class CheckoutState(str, Enum):
    SESSION_READY = "session_ready"
    CART_EXTRACTED = "cart_extracted"
    VALIDATED = "validated"
    REVIEW_EXTRACTED = "review_extracted"
    DRY_RUN_HALT = "dry_run_halt"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


TERMINAL_STATES = {CheckoutState.DRY_RUN_HALT, CheckoutState.CONFIRMED, CheckoutState.FAILED}

ALLOWED_TRANSITIONS: Dict[CheckoutState, List[CheckoutState]] = {
    CheckoutState.SESSION_READY: [CheckoutState.CART_EXTRACTED],
    CheckoutState.CART_EXTRACTED: [CheckoutState.VALIDATED],
    CheckoutState.VALIDATED: [CheckoutState.REVIEW_EXTRACTED],
    CheckoutState.REVIEW_EXTRACTED: [CheckoutState.DRY_RUN_HALT, CheckoutState.SUBMITTED],
    CheckoutState.SUBMITTED: [CheckoutState.CONFIRMED],
}


def dry_run_confirmation_number(now: datetime) -> str:
    return f"DRY-RUN-{now.strftime('%Y%m%d%H%M%S')}"


class CheckoutStateMachine:

    def __init__(self, adapter, browser, clock: Callable[[], datetime] = datetime.utcnow,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.adapter = adapter
        self.browser = browser
        self.clock = clock
        self.sleep = sleep
        self.state = CheckoutState.SESSION_READY
        self.history: List[CheckoutState] = [CheckoutState.SESSION_READY]
        self.warnings: List[Dict] = []
        self.logger = logging.getLogger(f"{__name__}.CheckoutStateMachine")

    @property
    def supplier_name(self) -> str:
        return self.adapter.DISPLAY_NAME

    def _advance(self, target: CheckoutState):
        if target == CheckoutState.FAILED:
            if self.state in TERMINAL_STATES:
                raise InvalidCheckoutTransitionError(
                    f"Cannot fail a checkout that already ended in {self.state.value}",
                    from_state=self.state.value, to_state=target.value,
                )
        elif target not in ALLOWED_TRANSITIONS.get(self.state, []):
            raise InvalidCheckoutTransitionError(
                f"Invalid checkout transition {self.state.value} -> {target.value}",
                from_state=self.state.value, to_state=target.value,
            )
        self.logger.debug(f"[{self.supplier_name}] Checkout {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    async def run(self, dry_run: bool = True, delivery_date: Optional[str] = None) -> CheckoutConfirmation:
        try:
            return await self._run(dry_run, delivery_date)
        except Exception:
            if self.state not in TERMINAL_STATES:
                self._advance(CheckoutState.FAILED)
            raise

    async def _run(self, dry_run: bool, delivery_date: Optional[str]) -> CheckoutConfirmation:
        await self.adapter.open_cart(self.browser)
        cart = await self.adapter.read_cart(self.browser)
        if cart.item_count == 0:
            raise ScrapingError("Cart is empty", supplier_name=self.supplier_name)
        self._advance(CheckoutState.CART_EXTRACTED)
        self.logger.info(f"[{self.supplier_name}] Cart: {cart.item_count} items, subtotal ${cart.subtotal:.2f}")

        await self.validate(cart)
        self._advance(CheckoutState.VALIDATED)

        await self.adapter.open_review(self.browser)
        await self.adapter.ensure_delivery(self.browser, delivery_date)
        review = await self.adapter.read_review(self.browser)
        self._advance(CheckoutState.REVIEW_EXTRACTED)

        effective_dry_run = dry_run or not self.adapter.LIVE_MODE_ENABLED
        if effective_dry_run:
            if not dry_run:
                self.logger.warning(f"[{self.supplier_name}] Live ordering is disabled; halting before submit")
            self._advance(CheckoutState.DRY_RUN_HALT)
            confirmation = self._confirmation(dry_run_confirmation_number(self.clock()), True, cart, review)
            self.logger.info(f"[{self.supplier_name}] Dry run complete: {confirmation.confirmation_number}")
            return confirmation

        await self.adapter.submit_order(self.browser)
        self._advance(CheckoutState.SUBMITTED)
        self.logger.info(f"[{self.supplier_name}] Order submitted, waiting for confirmation")

        details = await self._await_confirmation(cart)
        self._advance(CheckoutState.CONFIRMED)
        confirmation = self._confirmation(details.get("confirmation_number") or "UNKNOWN", False, cart, review)
        confirmation.total = details.get("total") or confirmation.total
        confirmation.delivery_date = details.get("delivery_date") or confirmation.delivery_date
        self.logger.info(f"[{self.supplier_name}] Order confirmed: {confirmation.confirmation_number}")
        return confirmation

    async def validate(self, cart: CartSnapshot):
        minimum = await self.adapter.order_minimum(self.browser, cart)
        if minimum and cart.subtotal < minimum:
            raise OrderMinimumError(
                f"Order subtotal ${cart.subtotal:.2f} is below the ${minimum:.2f} minimum",
                minimum=minimum, current_total=cart.subtotal, supplier_name=self.supplier_name,
            )

        unavailable = [line for line in cart.lines if line.unavailable]
        if unavailable:
            items = [{"sku": line.sku, "name": line.name, "message": line.message} for line in unavailable]
            if self.adapter.UNAVAILABLE_ITEM_POLICY == UnavailableItemPolicy.FAIL:
                raise ItemUnavailableError(
                    f"{len(unavailable)} items in the cart are unavailable", items=items,
                    supplier_name=self.supplier_name,
                )

            remaining = cart.subtotal - sum(line.line_total or 0.0 for line in unavailable)
            if minimum and remaining < minimum:
                raise ItemUnavailableError(
                    f"Without unavailable items the order is ${remaining:.2f}, below the ${minimum:.2f} minimum",
                    items=items, supplier_name=self.supplier_name,
                )
            self.logger.warning(f"[{self.supplier_name}] Proceeding without {len(unavailable)} unavailable items")
            self.warnings.extend({"type": "item_unavailable", **item} for item in items)

        changes = await self.adapter.detect_price_changes(self.browser, cart)
        if changes:
            raise PriceChangedError(
                f"Prices changed for {len(changes)} items", changes=changes, supplier_name=self.supplier_name
            )

    async def _await_confirmation(self, cart: CartSnapshot) -> Dict:
        polls = int(CONFIRMATION_TIMEOUT_SECONDS / CONFIRMATION_POLL_SECONDS)
        for _ in range(polls):
            if await self.adapter.confirmation_present(self.browser):
                return await self.adapter.read_confirmation(self.browser)

            error = await self.adapter.checkout_error_text(self.browser)
            if error:
                raise self.adapter.handle_checkout_error(error, current_total=cart.subtotal)

            self.browser.touch()
            await self.sleep(CONFIRMATION_POLL_SECONDS)

        raise ScrapingError("Checkout timeout", supplier_name=self.supplier_name)

    def _confirmation(self, number: str, dry_run: bool, cart: CartSnapshot,
                      review: ReviewSnapshot) -> CheckoutConfirmation:
        return CheckoutConfirmation(
            confirmation_number=number,
            dry_run=dry_run,
            total=review.total if review.total is not None else cart.subtotal,
            subtotal=cart.subtotal,
            item_count=review.item_count or cart.item_count,
            delivery_date=review.delivery_date,
            cart_snapshot=cart.to_dict(),
            review_snapshot=review.to_dict(),
            warnings=list(self.warnings),
        )
