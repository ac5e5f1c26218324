"""
What Chefs Want supplier implementation

Accounts sign in through a personalized welcome link; the link is stored
as the credential's username. Accounts that still have a password fall
back to the customer login form.
"""

import logging
import re
from typing import List, Optional
from urllib.parse import urljoin

from KitchenCart.models.supplier_models import AuthType
from .base import BaseSupplier, CartItem, CatalogProduct, UnavailableItemPolicy
from .exceptions import AuthenticationError, DeliveryUnavailableError, ScrapingError
from .registry import register_supplier

logger = logging.getLogger(__name__)

ACCOUNT_SELECTORS = ".user-menu, .account-dropdown, .logged-in, [data-user-logged-in]"
EMAIL_SELECTORS = "input[name='email'], #email, input[type='email']"
PASSWORD_SELECTORS = "input[name='password'], #password"
PRODUCT_PAGE_SELECTORS = [".product-page", ".product-detail", ".product-info", ".pdp-container"]
QUANTITY_SELECTORS = "input[name='quantity'], .quantity-field, #quantity, input[type='number'], .qty-input"
ADD_TO_CART_SELECTORS = (
    ".add-to-cart, .btn-add-cart, [data-action='add-to-cart'], button.add-to-cart, #add-to-cart, "
    ".product-add-to-cart"
)
CART_CONFIRMATION_SELECTORS = [".cart-added", ".success-message", ".cart-updated", ".cart-notification",
                               ".added-to-cart"]
DELIVERY_SELECT = ".delivery-date-select, select[name='delivery_date']"

SEARCH_CARDS_JS = """
() => Array.from(document.querySelectorAll('.product-card, .product-item, .product-tile, .search-result-item'))
    .map(item => {
        const pick = (sel) => { const el = item.querySelector(sel); return el ? el.innerText.trim() : null; };
        const link = item.querySelector("a[href*='/products/']");
        const skuEl = item.querySelector('[data-sku]');
        return {
            sku: item.getAttribute('data-sku') || (skuEl && skuEl.getAttribute('data-sku')),
            href: link ? link.getAttribute('href') : null,
            name: pick('.product-title, .product-name, h3, h4'),
            price: pick('.price, .product-price, .current-price'),
            pack_size: pick('.pack-size, .product-unit'),
            out_of_stock: !!item.querySelector('.out-of-stock, .unavailable, .sold-out'),
        };
    })
"""

SELECT_DELIVERY_JS = """
([selector, wanted]) => {
    const select = document.querySelector(selector);
    if (!select) return 'absent';
    const options = Array.from(select.options).filter(o => !o.disabled && o.value);
    if (!options.length) return null;
    const match = wanted ? options.find(o => o.value === wanted || o.text.includes(wanted)) : null;
    const chosen = match || options[0];
    select.value = chosen.value;
    select.dispatchEvent(new Event('change', { bubbles: true }));
    return chosen.text.trim();
}
"""


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


@register_supplier("whatchefswant")
class WhatChefsWantSupplier(BaseSupplier):

    CODE = "whatchefswant"
    DISPLAY_NAME = "What Chefs Want"
    BASE_URL = "https://www.whatchefswant.com"
    LOGIN_URL = "https://www.whatchefswant.com/customer-login/"
    AUTH_TYPE = AuthType.WELCOME_URL
    ORDER_MINIMUM = 150.00
    UNAVAILABLE_ITEM_POLICY = UnavailableItemPolicy.WARN

    CART_PAGE_SELECTORS = [".cart-container", ".shopping-cart", ".cart-page"]
    CART_LINE_SELECTOR = ".cart-item, .cart-product"
    CART_UNAVAILABLE_SELECTOR = ".out-of-stock, .not-available"
    EMPTY_CART_SELECTORS = ".empty-cart, .cart-empty, .no-items"
    SUBTOTAL_SELECTORS = ".subtotal, .cart-total"
    CHECKOUT_BUTTON_SELECTORS = ".checkout, .btn-checkout, [data-action='checkout']"
    REVIEW_PAGE_SELECTORS = [".checkout-page", ".order-review"]
    REVIEW_TOTAL_SELECTORS = ".total, .order-total"
    DELIVERY_DATE_SELECTORS = ".delivery-date, .expected-delivery"
    SUBMIT_ORDER_SELECTORS = ".place-order, .btn-submit-order, [data-action='place-order']"
    CONFIRMATION_SELECTORS = ".order-confirmation, .success, .thank-you-page"
    CONFIRMATION_NUMBER_SELECTORS = ".order-id, .confirmation-number, .order-ref"
    CHECKOUT_ERROR_SELECTORS = ".error-message, .checkout-error, .alert-danger"

    async def is_authenticated(self, browser) -> bool:
        return await browser.exists(ACCOUNT_SELECTORS)

    async def after_session_restore(self, browser):
        await browser.reload()

    async def perform_login_steps(self, browser):
        welcome_url = self.username or ""
        if welcome_url.startswith("http"):
            self.logger.info(f"{self._label()} Signing in with welcome link")
            await browser.goto(welcome_url)
            await browser.wait_for_idle()
            await self.sleep(2)
            return

        if not self.password:
            raise AuthenticationError(
                "A welcome link or an email and password is required", supplier_name=self.DISPLAY_NAME
            )

        await browser.goto(self.LOGIN_URL)
        await browser.wait_for_any([EMAIL_SELECTORS])
        await browser.fill(EMAIL_SELECTORS, welcome_url)
        await browser.fill(PASSWORD_SELECTORS, self.password)
        await browser.click("button[type='submit'], .login-button, .btn-login")
        await browser.wait_for_idle()
        await self.sleep(2)

    # Catalog

    def search_url(self, term: str) -> str:
        return self.url(f"/search?q={self.search_query(term)}")

    async def extract_visible_products(self, browser) -> List[CatalogProduct]:
        products = []
        for item in await browser.evaluate(SEARCH_CARDS_JS) or []:
            name = item.get("name")
            if not name:
                continue
            href = item.get("href") or ""
            match = re.search(r"/products/([^/?#]+)", href)
            sku = item.get("sku") or (match.group(1) if match else None) or _slug(name)
            products.append(CatalogProduct(
                supplier_sku=sku,
                name=name[:255],
                price=self.extract_price(item.get("price")),
                pack_size=item.get("pack_size"),
                in_stock=not item.get("out_of_stock"),
                url=urljoin(self.BASE_URL, href) if href else self.url(f"/products/{sku}"),
            ))
        return products

    async def advance_results(self, browser) -> bool:
        return await browser.click(".pagination .next:not(.disabled), a[rel='next']")

    async def scrape_product(self, browser, sku: str) -> Optional[CatalogProduct]:
        await browser.goto(self.url(f"/products/{sku}"))
        if not await browser.exists(".product-page, .product-detail"):
            return None

        return CatalogProduct(
            supplier_sku=sku,
            name=await browser.text_of(".product-title, .product-name, h1") or "",
            price=self.extract_price(await browser.text_of(".price, .product-price, .current-price")),
            pack_size=await browser.text_of(".pack-size, .product-unit"),
            in_stock=not await browser.exists(".out-of-stock, .unavailable, .sold-out"),
            url=browser.current_url,
        )

    # Cart and checkout

    async def add_single_item(self, browser, item: CartItem):
        await browser.goto(self.url(f"/products/{item.sku}"))
        await self.sleep(2)

        try:
            await browser.wait_for_any(PRODUCT_PAGE_SELECTORS, timeout=5)
        except ScrapingError:
            self.logger.debug(f"{self._label()} No product page for {item.sku}, searching")
            await browser.goto(self.search_url(item.sku))
            await self.sleep(2)
            if not await browser.click(".product-card a, .product-item a, .search-result a"):
                raise self.item_unavailable(item, "not_found", f"Product not found for SKU {item.sku}")
            await browser.wait_for_any(PRODUCT_PAGE_SELECTORS[:2], timeout=10)

        if await browser.exists(".out-of-stock, .sold-out"):
            raise self.item_unavailable(item, "out_of_stock")

        if item.quantity > 1:
            await browser.fill(QUANTITY_SELECTORS, str(item.quantity))
            await self.sleep(0.5)

        if not await browser.click(ADD_TO_CART_SELECTORS):
            raise ScrapingError(f"Add to cart button not found for SKU {item.sku}", supplier_name=self.DISPLAY_NAME)

        try:
            await browser.wait_for_any(CART_CONFIRMATION_SELECTORS, timeout=5)
        except ScrapingError:
            self.logger.debug(f"{self._label()} No confirmation modal for {item.sku}")
        await self.sleep(1)

    async def order_minimum(self, browser, snapshot) -> float:
        text = await browser.text_of(".minimum-order-message, .order-minimum")
        return self.extract_price(text) or self.ORDER_MINIMUM

    async def ensure_delivery(self, browser, delivery_date: Optional[str] = None):
        chosen = await browser.evaluate(SELECT_DELIVERY_JS, [DELIVERY_SELECT, delivery_date])
        if chosen is None:
            raise DeliveryUnavailableError("No delivery dates available", supplier_name=self.DISPLAY_NAME)
        if chosen != "absent":
            self.logger.info(f"{self._label()} Delivery date selected: {chosen}")
