"""
Premiere Produce One supplier implementation

A React storefront with passwordless sign-in: email, then a code sent to
that email. The code page has no URL change and sets no cookies, so the
browser has to stay open until the code arrives. Auth tokens live in
localStorage.

Orders go through the same open session from add-to-cart to checkout.
"""

import logging
import re
from typing import List, Optional

from KitchenCart.models.supplier_models import AuthType
from KitchenCart.models.two_factor_models import TwoFactorType
from .base import BaseSupplier, CartItem, CatalogProduct, UnavailableItemPolicy
from .exceptions import AuthenticationError, ScrapingError
from .registry import register_supplier
from .session_store import TWO_FA_SESSION_TTL
from .two_factor import TwoFactorChallenge, TwoFactorDetector

logger = logging.getLogger(__name__)

SEARCH_INPUT = "input[placeholder='Search']"
EMAIL_INPUT = "input[type='email']"
CODE_INPUTS = "input[autocomplete='one-time-code'], input[inputmode='numeric'], input[name*='code'], input[type='text']"
ACCOUNT_SELECTORS = ".user-menu, .account-dropdown, .logged-in, [data-user-logged-in], .my-account, .account-nav"
CODE_PAGE_PATTERN = re.compile(r"enter.*code|verification.*code|one.?time", re.IGNORECASE)
PROMPT_PATTERN = re.compile(r"your code.*?\.", re.IGNORECASE)
LOGGED_IN_PATTERN = re.compile(r"my account|sign out|log ?out|my orders|order guide|add to cart|your cart|add note",
                               re.IGNORECASE)
RENDERED_PATTERN = re.compile(r"order guide|add to cart|my orders|explore catalog|log out|become a customer|"
                              r"enter.*code|verification.*code|one.?time", re.IGNORECASE)

SELECT_EMAIL_TAB_JS = """
() => {
    for (const tab of document.querySelectorAll('[aria-selected]')) {
        if (tab.getAttribute('aria-selected') === 'false') { tab.click(); return true; }
    }
    return false;
}
"""

HAS_LOGOUT_JS = """
() => Array.from(document.querySelectorAll('button')).some(b => b.innerText.trim().toLowerCase() === 'log out')
"""

# Products render as text blocks ending in "Case • 12345"; the price follows the SKU line
PRODUCT_BLOCKS_JS = """
() => {
    const lines = document.body.innerText.split('\\n').map(l => l.trim()).filter(Boolean);
    const skip = [
        /^(All|BAKERY|BEVERAGE|DAIRY|FFV|FOODSERVICE|PANTRY|PRODUCE|PROTEIN|SPECIALTY|Sort:)/,
        /^See all \\d+ products/, /^\\d+$/, /^".*"$/, /^\\d+\\s+fulfilled\\s+on\\s+/i, /^Add to cart$/i, /^\\d+\\s*[-+]$/,
    ];
    const products = [];
    for (let i = 0; i < lines.length; i++) {
        const skuMatch = lines[i].match(/^(Case|Each|Piece)\\s*[•·]\\s*(\\d{3,})$/);
        if (!skuMatch) continue;
        let name = null, description = '', price = null, packSize = null, brand = null;
        for (let j = i - 1; j >= Math.max(0, i - 6); j--) {
            const line = lines[j];
            if (skip.some(re => re.test(line))) continue;
            if (line.includes('Brand:') || line.includes('Pack Size:')) {
                description = line;
                const b = line.match(/Brand:\\s*([^|]+)/);
                if (b) brand = b[1].trim();
                const p = line.match(/Pack Size:\\s*([^|]+)/);
                if (p) packSize = p[1].trim();
                continue;
            }
            if (price === null) {
                const m = line.match(/\\$([\\d,.]+)/);
                if (m && line.length < 30) { price = m[1]; continue; }
            }
            if (line.length > 2 && line.length < 120 && !line.includes('|') && !/^[a-z]/.test(line)
                && !/fulfilled on/i.test(line)) {
                name = line;
                break;
            }
        }
        if (!name) continue;
        for (let k = i + 1; price === null && k <= Math.min(i + 3, lines.length - 1); k++) {
            const m = lines[k].match(/^\\$([\\d,.]+)/);
            if (m) { price = m[1]; break; }
            if (/^Add note$/i.test(lines[k]) || /^(Case|Each|Piece)\\s*[•·]/.test(lines[k])) break;
        }
        products.push({
            sku: skuMatch[2],
            name: name,
            price: price,
            pack_size: packSize ? skuMatch[1] + ' - ' + packSize : skuMatch[1],
            brand: brand,
            in_stock: !description.includes('Special Order Item'),
        });
    }
    return products;
}
"""

# Finds the product row showing the SKU and presses its "+" control
CLICK_INCREASE_JS = """
(sku) => {
    for (const el of document.querySelectorAll('*')) {
        if (el.children.length > 5) continue;
        const m = (el.innerText || '').match(/(?:Case|Each|Piece)\\s*[•·]\\s*(\\d+)/);
        if (!m || m[1] !== sku) continue;
        let container = el;
        for (let j = 0; j < 10 && container; j++) {
            container = container.parentElement;
            if (!container) break;
            for (const btn of container.querySelectorAll('button')) {
                const text = (btn.innerText || '').trim();
                const label = (btn.getAttribute('aria-label') || '').toLowerCase();
                if (text === '+' || label.includes('increase') || label.includes('add')) { btn.click(); return true; }
            }
        }
    }
    return false;
}
"""


class PremiereProduceOneCodeDetector(TwoFactorDetector):
    """The code page is recognised by its text; the code always goes to email."""

    async def detect(self, browser) -> Optional[TwoFactorChallenge]:
        text = await browser.body_text(2000)
        if not CODE_PAGE_PATTERN.search(text) or not await browser.exists(CODE_INPUTS):
            return None
        match = PROMPT_PATTERN.search(text)
        prompt = match.group(0) if match else "A verification code has been sent to your email."
        return TwoFactorChallenge(TwoFactorType.EMAIL, prompt, CODE_INPUTS)


@register_supplier("premiereproduceone")
class PremiereProduceOneSupplier(BaseSupplier):

    CODE = "premiereproduceone"
    DISPLAY_NAME = "Premiere Produce One"
    BASE_URL = "https://premierproduceone.pepr.app"
    LOGIN_URL = "https://premierproduceone.pepr.app/"
    AUTH_TYPE = AuthType.TWO_FA
    ORDER_MINIMUM = 0.00
    UNAVAILABLE_ITEM_POLICY = UnavailableItemPolicy.WARN
    SESSION_TTL = TWO_FA_SESSION_TTL
    # Codes expire quickly on this site
    TWO_FA_TIMEOUT_MINUTES = 3

    CART_PAGE_SELECTORS = [".cart-container", ".shopping-cart", ".cart-page"]
    CART_LINE_SELECTOR = ".cart-item, .cart-product"
    CART_UNAVAILABLE_SELECTOR = ".out-of-stock, .not-available"
    CHECKOUT_BUTTON_SELECTORS = ".checkout, .btn-checkout, [data-action='checkout']"
    REVIEW_PAGE_SELECTORS = [".checkout-page", ".order-review"]
    REVIEW_TOTAL_SELECTORS = ".total, .order-total"
    DELIVERY_DATE_SELECTORS = ".delivery-date, .expected-delivery"
    SUBMIT_ORDER_SELECTORS = ".place-order, .btn-submit-order, [data-action='place-order']"
    CONFIRMATION_SELECTORS = ".order-confirmation, .success, .thank-you-page"
    CONFIRMATION_NUMBER_SELECTORS = ".order-id, .confirmation-number, .order-ref"
    CHECKOUT_ERROR_SELECTORS = ".error-message, .checkout-error, .alert-danger"

    # Authentication

    async def is_authenticated(self, browser) -> bool:
        if await browser.exists(ACCOUNT_SELECTORS):
            return True
        if await self.two_factor_detector.detect(browser) is not None:
            return False
        if await browser.evaluate(HAS_LOGOUT_JS):
            return True

        text = await browser.body_text(3000)
        # Landing page for visitors
        if re.search(r"become a customer", text, re.IGNORECASE) and not re.search(
                r"order guide|add to cart|my orders", text, re.IGNORECASE):
            return False
        return bool(LOGGED_IN_PATTERN.search(text))

    async def after_session_restore(self, browser):
        await browser.reload()
        await self._wait_for_render(browser, timeout=15)

    async def _wait_for_render(self, browser, timeout: int = 10):
        for _ in range(timeout * 2):
            text = await browser.body_text(2000)
            if len(text) > 100 and RENDERED_PATTERN.search(text):
                return
            await self.sleep(0.5)
        self.logger.warning(f"{self._label()} Page did not finish rendering after {timeout}s")

    @property
    def two_factor_detector(self) -> TwoFactorDetector:
        return PremiereProduceOneCodeDetector()

    async def perform_login_steps(self, browser):
        await browser.goto(self.LOGIN_URL)
        await self.sleep(3)

        await browser.click_button_by_text("sign in")
        await self.sleep(2)
        await browser.evaluate(SELECT_EMAIL_TAB_JS)
        await self.sleep(1)

        if not await browser.fill(EMAIL_INPUT, self.username or ""):
            raise AuthenticationError("Could not find email input on login page", supplier_name=self.DISPLAY_NAME)
        await self.sleep(1)

        await browser.click_button_by_text("continue")
        await self.sleep(3)
        await browser.wait_for_idle()

    async def enter_two_factor_code(self, browser, challenge: TwoFactorChallenge, code: str) -> bool:
        if not await browser.fill(challenge.selector or CODE_INPUTS, code.strip()):
            raise AuthenticationError("Could not find verification code input", supplier_name=self.DISPLAY_NAME)
        await self.sleep(1)

        if not await browser.click_button_by_text("continue", last=True):
            await browser.press("Enter")
        await self.sleep(3)
        await browser.wait_for_idle()

        # Repeated bad codes lock the email out for a while
        self.detect_rate_limit((await browser.body_text(2000)).lower())
        return True

    async def request_new_code(self, browser) -> bool:
        clicked = await browser.click_button_by_text("resend code")
        if clicked:
            await self.sleep(2)
        return clicked

    # Catalog

    def search_url(self, term: str) -> str:
        return self.BASE_URL

    async def ensure_catalog_page(self, browser):
        if await browser.exists(SEARCH_INPUT):
            return
        if await browser.click_button_by_text("explore catalog"):
            await self.sleep(5)
        for _ in range(10):
            if await browser.exists(SEARCH_INPUT):
                return
            await self.sleep(1)
        await browser.goto(self.BASE_URL)
        await self.sleep(3)
        await browser.click_button_by_text("explore catalog")
        await self.sleep(5)
        if not await browser.exists(SEARCH_INPUT):
            raise ScrapingError("Catalog search input not found", supplier_name=self.DISPLAY_NAME)

    async def search_catalog(self, browser, terms) -> List[CatalogProduct]:
        """Search filters the list in place, so there is no search URL to visit."""
        await self.ensure_catalog_page(browser)
        found = {}
        for term in terms:
            await browser.fill(SEARCH_INPUT, term)
            await self.sleep(1.5)
            products = await self.collect_by_scrolling(
                browser, self.extract_visible_products, self.advance_results,
                max_rounds=self.SEARCH_SCROLL_ROUNDS, stale_limit=self.SEARCH_STALE_LIMIT,
            )
            for product in products:
                found.setdefault(product.supplier_sku, product)
            self.logger.info(f"{self._label()} Search '{term}': {len(products)} products")
            await self.rate_limit_delay()
        return list(found.values())

    async def extract_visible_products(self, browser) -> List[CatalogProduct]:
        return [
            CatalogProduct(
                supplier_sku=block["sku"],
                name=block["name"][:255],
                brand=block.get("brand"),
                price=self.extract_price(block.get("price")),
                pack_size=block.get("pack_size"),
                in_stock=block.get("in_stock", True),
            )
            for block in await browser.evaluate(PRODUCT_BLOCKS_JS) or []
        ]

    async def scrape_product(self, browser, sku: str) -> Optional[CatalogProduct]:
        await self.ensure_catalog_page(browser)
        await browser.fill(SEARCH_INPUT, sku)
        await self.sleep(1.5)
        return next((p for p in await self.extract_visible_products(browser) if p.supplier_sku == sku), None)

    # Cart

    async def add_single_item(self, browser, item: CartItem):
        await self.ensure_catalog_page(browser)
        await browser.fill(SEARCH_INPUT, item.sku)
        await self.sleep(3)

        quantity = max(int(item.quantity), 1)
        for i in range(quantity):
            if not await browser.evaluate(CLICK_INCREASE_JS, item.sku):
                if i == 0:
                    raise self.item_unavailable(item, "not_found",
                                                f"Product not found or add button missing for SKU {item.sku}")
                self.logger.warning(f"{self._label()} Could only add {i} of {quantity} for SKU {item.sku}")
                break
            if i < quantity - 1:
                await self.sleep(0.3)

        try:
            await browser.wait_for_any([".cart-added", ".success-message", ".cart-updated", ".toast",
                                        "[class*='success']"], timeout=5)
        except ScrapingError:
            self.logger.debug(f"{self._label()} No confirmation toast for {item.sku}")
        await self.sleep(1)
