"""
Unit tests for the checkout state machine: validation, dry-run safety and
live submission.
"""

from datetime import datetime

import pytest

from KitchenCart.exceptions import (
    InvalidCheckoutTransitionError,
    ItemUnavailableError,
    OrderMinimumError,
    ScrapingError,
)
from KitchenCart.suppliers.base import UnavailableItemPolicy
from KitchenCart.suppliers.checkout import CheckoutState, CheckoutStateMachine, dry_run_confirmation_number
from conftest import DemoSupplier

FIXED_NOW = datetime(2026, 3, 2, 9, 30, 0)
SUBMIT = ".place-order, .submit-order"


class LiveDemoSupplier(DemoSupplier):
    LIVE_MODE_ENABLED = True


class LenientDemoSupplier(DemoSupplier):
    UNAVAILABLE_ITEM_POLICY = UnavailableItemPolicy.WARN


def line(sku, total, unavailable=False):
    return {
        "sku": sku,
        "name": f"Item {sku}",
        "quantity": "1",
        "price": f"${total:.2f}",
        "unavailable": unavailable,
        "message": "Out of stock" if unavailable else None,
    }


@pytest.fixture
def checkout_adapter(make_credential, make_adapter):
    def factory(supplier_class=DemoSupplier):
        return make_adapter(make_credential(supplier_class), supplier_class, clock=lambda: FIXED_NOW)
    return factory


class TestValidation:

    @pytest.mark.asyncio
    async def test_below_minimum_raises_before_review(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 50.00)], subtotal=50.00)
        adapter = checkout_adapter()

        with pytest.raises(OrderMinimumError) as exc_info:
            await adapter.checkout(browser, dry_run=True)

        assert exc_info.value.minimum == 200.00
        assert exc_info.value.current_total == 50.00
        assert ".checkout-btn, .proceed-checkout" not in browser.clicks
        assert SUBMIT not in browser.clicks

    @pytest.mark.asyncio
    async def test_empty_cart(self, checkout_adapter, browser):
        browser.present.add(".empty-cart")
        adapter = checkout_adapter()

        with pytest.raises(ScrapingError):
            await adapter.checkout(browser)

    @pytest.mark.asyncio
    async def test_unavailable_line_fails_under_strict_policy(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 240.00), line("B200", 30.00, unavailable=True)], subtotal=270.00)
        adapter = checkout_adapter()

        with pytest.raises(ItemUnavailableError) as exc_info:
            await adapter.checkout(browser)

        assert [item["sku"] for item in exc_info.value.items] == ["B200"]

    @pytest.mark.asyncio
    async def test_unavailable_line_warns_under_lenient_policy(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 200.00), line("B200", 30.00, unavailable=True)], subtotal=230.00)
        adapter = checkout_adapter(LenientDemoSupplier)

        confirmation = await adapter.checkout(browser)

        assert confirmation.dry_run is True
        assert confirmation.warnings == [
            {"type": "item_unavailable", "sku": "B200", "name": "Item B200", "message": "Out of stock"}
        ]

    @pytest.mark.asyncio
    async def test_lenient_policy_still_enforces_minimum_without_unavailable(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 190.00), line("B200", 60.00, unavailable=True)], subtotal=250.00)
        adapter = checkout_adapter(LenientDemoSupplier)

        with pytest.raises(ItemUnavailableError):
            await adapter.checkout(browser)


class TestDryRun:

    def test_confirmation_number_format(self):
        assert dry_run_confirmation_number(FIXED_NOW) == "DRY-RUN-20260302093000"

    @pytest.mark.asyncio
    async def test_dry_run_never_submits(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 150.00), line("B200", 100.00)], subtotal=250.00)
        browser.confirm_orders("SO-991")
        adapter = checkout_adapter(LiveDemoSupplier)

        confirmation = await adapter.checkout(browser, dry_run=True)

        assert confirmation.dry_run is True
        assert confirmation.confirmation_number == "DRY-RUN-20260302093000"
        assert confirmation.total == 250.00
        assert confirmation.item_count == 2
        assert SUBMIT not in browser.clicks

    @pytest.mark.asyncio
    async def test_live_request_halts_when_live_mode_disabled(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 250.00)], subtotal=250.00)
        browser.confirm_orders("SO-991")
        adapter = checkout_adapter()

        confirmation = await adapter.checkout(browser, dry_run=False)

        assert confirmation.dry_run is True
        assert confirmation.confirmation_number.startswith("DRY-RUN-")
        assert SUBMIT not in browser.clicks


class TestLiveSubmit:

    @pytest.mark.asyncio
    async def test_live_order_confirmed(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 250.00)], subtotal=250.00)
        browser.confirm_orders("SO-991")
        adapter = checkout_adapter(LiveDemoSupplier)

        confirmation = await adapter.checkout(browser, dry_run=False)

        assert confirmation.dry_run is False
        assert confirmation.confirmation_number == "SO-991"
        assert confirmation.total == 250.00
        assert browser.clicks.count(SUBMIT) == 1

    @pytest.mark.asyncio
    async def test_error_after_submit_is_classified(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 250.00)], subtotal=250.00)
        browser.present.add(".place-order")
        browser.texts[".checkout-error"] = "Your order does not meet the minimum order amount"
        adapter = checkout_adapter(LiveDemoSupplier)

        with pytest.raises(OrderMinimumError):
            await adapter.checkout(browser, dry_run=False)


class TestStateMachine:

    @pytest.mark.asyncio
    async def test_failure_recorded_in_history(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 50.00)], subtotal=50.00)
        machine = CheckoutStateMachine(checkout_adapter(), browser, clock=lambda: FIXED_NOW)

        with pytest.raises(OrderMinimumError):
            await machine.run(dry_run=True)

        assert machine.state == CheckoutState.FAILED
        assert machine.history == [CheckoutState.SESSION_READY, CheckoutState.CART_EXTRACTED, CheckoutState.FAILED]

    @pytest.mark.asyncio
    async def test_dry_run_history(self, checkout_adapter, browser):
        browser.show_cart([line("A100", 250.00)], subtotal=250.00)
        machine = CheckoutStateMachine(checkout_adapter(), browser, clock=lambda: FIXED_NOW)

        await machine.run(dry_run=True)

        assert machine.history[-2:] == [CheckoutState.REVIEW_EXTRACTED, CheckoutState.DRY_RUN_HALT]

    def test_skipping_states_rejected(self, checkout_adapter, browser):
        machine = CheckoutStateMachine(checkout_adapter(), browser)

        with pytest.raises(InvalidCheckoutTransitionError):
            machine._advance(CheckoutState.SUBMITTED)

    def test_terminal_state_cannot_fail(self, checkout_adapter, browser):
        machine = CheckoutStateMachine(checkout_adapter(), browser)
        machine.state = CheckoutState.CONFIRMED

        with pytest.raises(InvalidCheckoutTransitionError):
            machine._advance(CheckoutState.FAILED)
