"""
Chef's Warehouse supplier implementation

Plain username/password login, server-rendered product pages.
"""

import logging
from typing import List, Optional

from KitchenCart.models.supplier_models import AuthType
from .base import BaseSupplier, CartItem, CatalogProduct, UnavailableItemPolicy
from .exceptions import ScrapingError
from .registry import register_supplier

logger = logging.getLogger(__name__)

EMAIL_SELECTORS = "#email, input[name='email'], input[type='email']"
PASSWORD_SELECTORS = "#password, input[name='password']"
LOGIN_BUTTON_SELECTORS = "button[type='submit'], .login-btn, .sign-in-button"
ACCOUNT_SELECTORS = ".account-menu, .user-nav, .my-account-link, [data-testid='account']"

PRODUCT_CARDS_JS = """
() => Array.from(document.querySelectorAll('.product-item, .product-card, [data-sku]')).map(card => {
    const pick = (sel) => { const el = card.querySelector(sel); return el ? el.innerText.trim() : null; };
    const link = card.querySelector('a[href]');
    return {
        sku: card.getAttribute('data-sku') || card.getAttribute('data-product-id'),
        name: pick('.product-name, .product-title, h3'),
        price: pick('.price, .product-price'),
        pack_size: pick('.pack-info, .unit-size'),
        out_of_stock: !!card.querySelector('.out-of-stock, .sold-out'),
        url: link ? link.href : null,
    };
})
"""


@register_supplier("chefswarehouse")
class ChefsWarehouseSupplier(BaseSupplier):

    CODE = "chefswarehouse"
    DISPLAY_NAME = "Chef's Warehouse"
    BASE_URL = "https://www.chefswarehouse.com"
    LOGIN_URL = "https://www.chefswarehouse.com/login"
    AUTH_TYPE = AuthType.PASSWORD
    ORDER_MINIMUM = 200.00
    UNAVAILABLE_ITEM_POLICY = UnavailableItemPolicy.FAIL

    async def is_authenticated(self, browser) -> bool:
        return await browser.exists(ACCOUNT_SELECTORS)

    async def after_session_restore(self, browser):
        await browser.reload()

    async def perform_login_steps(self, browser):
        await browser.goto(self.LOGIN_URL)
        await browser.wait_for_any([EMAIL_SELECTORS])

        await browser.fill(EMAIL_SELECTORS, self.username)
        await browser.fill(PASSWORD_SELECTORS, self.password)
        await browser.click(LOGIN_BUTTON_SELECTORS)

        await browser.wait_for_idle()
        await self.sleep(2)

    def search_url(self, term: str) -> str:
        return self.url(f"/search?q={self.search_query(term)}")

    async def extract_visible_products(self, browser) -> List[CatalogProduct]:
        cards = await browser.evaluate(PRODUCT_CARDS_JS) or []
        return [
            CatalogProduct(
                supplier_sku=str(card["sku"]),
                name=card.get("name") or "",
                price=self.extract_price(card.get("price")),
                pack_size=card.get("pack_size"),
                in_stock=not card.get("out_of_stock"),
                url=card.get("url"),
            )
            for card in cards
            if card.get("sku")
        ]

    async def advance_results(self, browser) -> bool:
        # Search results are paginated
        return await browser.click(".pagination .next:not(.disabled), a[rel='next']")

    async def scrape_product(self, browser, sku: str) -> Optional[CatalogProduct]:
        await browser.goto(self.url(f"/product/{sku}"))
        if not await browser.exists(".product-detail, .pdp-container"):
            return None

        return CatalogProduct(
            supplier_sku=sku,
            name=await browser.text_of(".product-name, h1.title") or "",
            price=self.extract_price(await browser.text_of(".price, .product-price")),
            pack_size=await browser.text_of(".pack-info, .unit-size"),
            in_stock=not await browser.exists(".out-of-stock, .sold-out"),
            url=browser.current_url,
        )

    async def add_single_item(self, browser, item: CartItem):
        await browser.goto(self.search_url(item.sku))
        try:
            await browser.wait_for_any([".product-list", ".search-results"], timeout=10)
        except ScrapingError:
            raise self.item_unavailable(item, "not_found")

        if not await browser.click(f"a[href*='{item.sku}'], .product-item a"):
            raise self.item_unavailable(item, "not_found")
        await browser.wait_for_any([".product-detail", ".pdp-container"])

        if await browser.exists(".out-of-stock, .sold-out"):
            raise self.item_unavailable(item, "out_of_stock")

        await browser.fill("input[name='quantity'], .qty-input", str(item.quantity))
        if not await browser.click(".add-to-cart, .add-to-order-btn"):
            raise ScrapingError(f"Add to cart button not found for SKU {item.sku}", supplier_name=self.DISPLAY_NAME)

        try:
            await browser.wait_for_any([".cart-notification", ".added-message"], timeout=5)
        except ScrapingError:
            self.logger.warning(f"{self._label()} No cart confirmation for SKU {item.sku}")
