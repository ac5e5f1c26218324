"""
US Foods supplier implementation

order.usfoods.com is an Ionic single-page app behind a CloudFront WAF.
Sign-in goes through Azure AD B2C: user id, then either a password or an
MFA method picker followed by six single-digit code inputs. Auth tokens
live in localStorage/sessionStorage, so stored sessions carry both.

The product list is an ion-infinite-scroll that recycles cards, which is
why catalog collection dedupes by SKU between scroll rounds.
"""

import logging
import re
from typing import List, Optional
from urllib.parse import quote

from KitchenCart.models.supplier_models import AuthType
from KitchenCart.models.two_factor_models import TwoFactorType
from .base import BaseSupplier, CartItem, CatalogProduct, SupplierCapability, UnavailableItemPolicy
from .browser import StealthProfile
from .exceptions import AuthenticationError, DeliveryUnavailableError, ScrapingError
from .registry import register_supplier
from .session_store import TWO_FA_SESSION_TTL
from .two_factor import TwoFactorChallenge, TwoFactorDetector

logger = logging.getLogger(__name__)

USERID_FIELD = "#signInName-facade"
PASSWORD_FIELD = "#passwordInput"
SUBMIT_BTN = "button#next[type='submit']"
MFA_HEADER = "#mfa-select-modal-modal-header-text"
MFA_CODE_INPUTS = [f"#code{i}" for i in range(1, 7)]
MFA_ERROR = "#modal-error"
B2C_HOST = "b2clogin.com"

LOGGED_IN_SELECTORS = (
    "ion-button[class*='account'], ion-icon[name*='person'], a[href*='my-account'], a[href*='/account'], "
    ".account-menu, .user-nav, .my-account-link, [data-testid='user-menu'], [data-testid='account'], "
    "a[href*='logout'], a[href*='sign-out']"
)

CLICK_LOGIN_JS = """
() => {
    for (const btn of document.querySelectorAll('ion-button')) {
        if (btn.innerText.trim() === 'Log In') { btn.click(); return true; }
    }
    for (const el of document.querySelectorAll('a, button')) {
        const text = (el.innerText || '').trim().toLowerCase();
        if (text === 'log in' || text === 'sign in') { el.click(); return true; }
    }
    return false;
}
"""

# B2C renders a facade input that syncs into a hidden one; both need the value and events
SET_USER_ID_JS = """
(username) => {
    const setter = Object.getOwnPropertyDescriptor(window.HTMLInputElement.prototype, 'value').set;
    for (const id of ['signInName-facade', 'signInName']) {
        const el = document.getElementById(id);
        if (!el) continue;
        setter.call(el, username);
        for (const type of ['input', 'change', 'blur']) el.dispatchEvent(new Event(type, { bubbles: true }));
    }
    const hidden = document.getElementById('signInName');
    return hidden ? hidden.value : null;
}
"""

CLICK_CONTINUE_JS = """
() => {
    const press = (el) => { el.removeAttribute('disabled'); el.click(); };
    const cont = document.getElementById('continue');
    if (cont) { press(cont); return '#continue'; }
    const selectors = ['#continueButton', 'button#next', "button[type='submit']", "input[type='submit']",
                       '#attributeVerification button'];
    for (const sel of selectors) {
        const el = document.querySelector(sel);
        if (el) { press(el); return sel; }
    }
    for (const el of document.querySelectorAll("button, input[type='submit'], [role='button']")) {
        const text = (el.innerText || el.value || '').trim().toLowerCase();
        if (['continue', 'next', 'proceed', 'submit'].includes(text)) { press(el); return 'text:' + text; }
    }
    const form = document.getElementById('attributeVerification');
    if (form && typeof form.submit === 'function') { form.submit(); return 'form'; }
    return null;
}
"""

INFINITE_SCROLL_JS = """
async () => {
    const content = document.querySelector('ion-content');
    if (content && typeof content.getScrollElement === 'function') {
        try {
            const el = await content.getScrollElement();
            el.scrollTop = el.scrollHeight;
            el.dispatchEvent(new CustomEvent('scroll', { bubbles: true }));
        } catch (e) {}
    }
    if (content && typeof content.scrollToBottom === 'function') {
        try { await content.scrollToBottom(300); } catch (e) {}
    }
    const infinite = document.querySelector('ion-infinite-scroll');
    if (infinite) {
        if (typeof infinite.complete === 'function') { try { await infinite.complete(); } catch (e) {} }
        infinite.dispatchEvent(new CustomEvent('ionInfinite', { bubbles: true, detail: { complete() {} } }));
    }
    window.scrollTo(0, document.body.scrollHeight);
    return !!infinite;
}
"""

ION_CARDS_JS = """
() => {
    const products = [];
    for (const card of document.querySelectorAll('ion-card')) {
        const text = card.innerText || '';
        const sku = text.match(/#(\\d{5,})/);
        if (!sku) continue;
        const pick = (sel) => { const el = card.querySelector(sel); return el ? el.innerText.trim() : ''; };
        const brand = pick('[data-cy*="product-brand"]');
        const desc = pick('[data-cy="product-description-text"]');
        const name = brand ? brand + ' ' + desc : desc;
        if (!name) continue;
        const price = text.match(/\\$(\\d+[,\\d]*\\.\\d{2})/);
        const lower = text.toLowerCase();
        products.push({
            sku: sku[1],
            brand: brand,
            name: name,
            pack_size: pick('[data-cy*="product-packsize"]'),
            price: price ? price[1] : null,
            in_stock: !lower.includes('out of stock') && !lower.includes('unavailable')
                && !card.querySelector('[data-cy*="out-of-stock"]'),
        });
    }
    return products;
}
"""

PRICE_CHANGES_JS = """
() => Array.from(document.querySelectorAll('.cart-item, .line-item')).filter(row =>
    row.querySelector('.price-changed-warning, .price-alert')
).map(row => {
    const pick = (sel) => { const el = row.querySelector(sel); return el ? el.innerText.trim() : null; };
    const skuEl = row.querySelector('[data-sku]');
    return {
        sku: skuEl ? skuEl.getAttribute('data-sku') : null,
        name: pick('.item-name, .product-name'),
        old_price: pick('.original-price, .was-price'),
        new_price: pick('.current-price, .now-price'),
    };
})
"""


class UsFoodsMfaDetector(TwoFactorDetector):
    """The B2C code screen is six visible single-digit inputs."""

    def __init__(self, two_fa_type: TwoFactorType, prompt: Optional[str]):
        super().__init__()
        self.two_fa_type = two_fa_type
        self.prompt_text = prompt

    async def detect(self, browser) -> Optional[TwoFactorChallenge]:
        if await browser.first_visible(MFA_CODE_INPUTS[0]) is not None:
            return TwoFactorChallenge(self.two_fa_type, self.prompt_text or await self.prompt(browser),
                                      MFA_CODE_INPUTS[0])
        return await super().detect(browser)


@register_supplier("usfoods")
class UsFoodsSupplier(BaseSupplier):

    CODE = "usfoods"
    DISPLAY_NAME = "US Foods"
    BASE_URL = "https://order.usfoods.com"
    LOGIN_URL = None
    AUTH_TYPE = AuthType.TWO_FA
    ORDER_MINIMUM = 250.00
    UNAVAILABLE_ITEM_POLICY = UnavailableItemPolicy.FAIL
    SESSION_TTL = TWO_FA_SESSION_TTL
    CAPABILITIES = BaseSupplier.CAPABILITIES + [SupplierCapability.BROWSE_CATEGORY]

    CATEGORIES = [
        "Beef",
        "Beverages",
        "Dairy and Eggs",
        "Dry Storage",
        "Fresh Produce",
        "Frozen Foods",
        "Pork",
        "Poultry",
        "Prepared Foods and Deli",
        "Seafood",
        "Specialty Meats",
        # Subcategories that do not load fully from their parent
        "Beef|Ground Beef",
        "Beef|Steaks",
        "Fresh Produce|Vegetables",
        "Fresh Produce|Fruits",
        "Seafood|Shellfish",
        "Seafood|Fin Fish",
        "Frozen Foods|Frozen Vegetables",
        "Frozen Foods|Frozen Fruits",
        "Frozen Foods|Frozen Desserts",
        "Dairy and Eggs|Cheese",
        "Dairy and Eggs|Milk and Cream",
        "Dry Storage|Canned Goods",
        "Dry Storage|Pasta and Grains",
        "Dry Storage|Sauces and Condiments",
        "Dry Storage|Spices and Seasonings",
        "Specialty Meats|Veal",
        "Specialty Meats|Lamb",
        "Specialty Meats|Game",
        "Prepared Foods and Deli|Soups",
        "Prepared Foods and Deli|Salads",
        "Poultry|Turkey",
        "Poultry|Chicken",
        "Poultry|Duck",
    ]

    CART_PAGE_SELECTORS = [".cart-contents", ".cart-items", "[data-testid='cart']"]
    CART_LINE_SELECTOR = ".cart-item, .line-item, [data-testid='cart-item']"
    CART_UNAVAILABLE_SELECTOR = ".out-of-stock, .unavailable, .item-unavailable"
    EMPTY_CART_SELECTORS = ".empty-cart, .cart-empty"
    SUBTOTAL_SELECTORS = ".cart-subtotal, .subtotal, [data-testid='subtotal']"
    CHECKOUT_BUTTON_SELECTORS = ".checkout-button, .proceed-to-checkout, [data-testid='checkout']"
    REVIEW_PAGE_SELECTORS = [".order-review", ".checkout-summary", "[data-testid='order-review']"]
    REVIEW_TOTAL_SELECTORS = ".order-total, .total-amount"
    DELIVERY_DATE_SELECTORS = ".delivery-date, .estimated-delivery"
    SUBMIT_ORDER_SELECTORS = ".place-order-button, .submit-order, [data-testid='place-order']"
    CONFIRMATION_SELECTORS = ".order-confirmation, .confirmation-page, [data-testid='confirmation']"
    CONFIRMATION_NUMBER_SELECTORS = ".confirmation-number, .order-number, [data-testid='confirmation']"
    CHECKOUT_ERROR_SELECTORS = ".checkout-error, .order-error, .alert-danger"

    def __init__(self, context):
        super().__init__(context)
        self._mfa_type = TwoFactorType.EMAIL
        self._mfa_prompt: Optional[str] = None

    def stealth_profile(self) -> StealthProfile:
        return StealthProfile.hardened()

    # Authentication

    async def is_authenticated(self, browser) -> bool:
        if B2C_HOST in browser.current_url:
            return False
        return await browser.exists(LOGGED_IN_SELECTORS)

    async def after_session_restore(self, browser):
        await browser.reload()
        await self.sleep(2)

    @property
    def two_factor_detector(self) -> TwoFactorDetector:
        return UsFoodsMfaDetector(self._mfa_type, self._mfa_prompt)

    async def perform_login_steps(self, browser):
        self.logger.info(f"{self._label()} Starting login")
        await browser.goto(self.BASE_URL)
        await self.sleep(3)

        for attempt in range(3):
            if await browser.evaluate(CLICK_LOGIN_JS):
                break
            self.logger.debug(f"{self._label()} Log In button not found (attempt {attempt + 1})")
            await self.sleep(2)
        else:
            raise ScrapingError("Could not find Log In button on order.usfoods.com", supplier_name=self.DISPLAY_NAME)

        await browser.wait_for_any([USERID_FIELD], timeout=30)
        await browser.evaluate(SET_USER_ID_JS, self.username)
        await self.sleep(0.5)
        await browser.click(SUBMIT_BTN)
        await self.sleep(4)

        page_text = (await browser.body_text(1000)).lower()
        if "could not find" in page_text and "user id" in page_text:
            raise AuthenticationError(
                "We could not find the User ID that you entered. Please verify and try again.",
                supplier_name=self.DISPLAY_NAME,
            )

        if await browser.text_of(MFA_HEADER):
            await self._select_mfa_method(browser)
            return

        if await browser.first_visible(PASSWORD_FIELD) is not None:
            await browser.fill(PASSWORD_FIELD, self.password or "")
            await self.sleep(0.5)
            await browser.click(SUBMIT_BTN)
            await self._wait_for_redirect(browser, timeout=20)
            return

        raise ScrapingError("Unexpected page after User ID submission", supplier_name=self.DISPLAY_NAME)

    async def _select_mfa_method(self, browser):
        """Prefer email; the code inputs appear once a method is chosen."""
        email = await browser.text_of("#mfa-selector-option-text-email")
        phone = await browser.text_of("#mfa-selector-option-text-phone-number")

        if await browser.exists("button#Email"):
            self._mfa_type = TwoFactorType.EMAIL
            self._mfa_prompt = f"US Foods verification code sent to {email or 'your email'}"
            await browser.click("button#Email")
        elif await browser.exists("button#Text"):
            self._mfa_type = TwoFactorType.SMS
            self._mfa_prompt = f"US Foods verification code sent via text to {phone or 'your phone'}"
            await browser.click("button#Text")
        else:
            raise ScrapingError("No MFA options found on page", supplier_name=self.DISPLAY_NAME)

        self.logger.info(f"{self._label()} Selected MFA method: {self._mfa_type.value}")
        await self.sleep(5)
        await browser.wait_for_any(MFA_CODE_INPUTS[:1], timeout=10)

    async def enter_two_factor_code(self, browser, challenge: TwoFactorChallenge, code: str) -> bool:
        digits = re.sub(r"\D", "", code)[:6]
        if await browser.first_visible(MFA_CODE_INPUTS[0]) is None:
            return await super().enter_two_factor_code(browser, challenge, code)

        for selector, digit in zip(MFA_CODE_INPUTS, digits):
            await browser.fill(selector, digit)
            await self.sleep(0.3)
        # The form auto-submits after the sixth digit
        await self.sleep(6)
        return True

    async def request_new_code(self, browser) -> bool:
        return await browser.click_button_by_text("Send a new code") or await super().request_new_code(browser)

    async def finalize_login(self, browser):
        await self._click_b2c_continue(browser)
        await super().finalize_login(browser)

    async def _click_b2c_continue(self, browser):
        """After MFA, B2C stops on a confirmation page until Continue is pressed."""
        for attempt in range(15):
            if B2C_HOST not in browser.current_url:
                return
            clicked = await browser.evaluate(CLICK_CONTINUE_JS)
            if clicked:
                self.logger.info(f"{self._label()} Clicked B2C continue via {clicked} (attempt {attempt + 1})")
                await self.sleep(4)
            else:
                await self.sleep(2)

        error = await browser.text_of(MFA_ERROR)
        if error:
            raise AuthenticationError(f"MFA verification failed: {error}", supplier_name=self.DISPLAY_NAME)

    async def _wait_for_redirect(self, browser, timeout: int = 20):
        for _ in range(timeout * 2):
            if "usfoods.com" in browser.current_url and B2C_HOST not in browser.current_url:
                return
            await self.sleep(0.5)
        raise ScrapingError(
            f"Login did not redirect back to usfoods.com (stuck at: {browser.current_url})",
            supplier_name=self.DISPLAY_NAME,
        )

    # Catalog

    def search_url(self, term: str) -> str:
        return self.url(f"/desktop/search2?q={self.search_query(term)}")

    def category_url(self, name: str) -> str:
        facet = "|".join(quote(part, safe="") for part in name.split("|"))
        return self.url(f"/desktop/search2?originSearchPage=catalog&facetFilters=ec_category:{facet}")

    async def browse_category(self, browser, name: str) -> List[CatalogProduct]:
        products = await super().browse_category(browser, name)
        display_name = name.split("|")[-1]
        for product in products:
            product.category = display_name
        return products

    async def extract_visible_products(self, browser) -> List[CatalogProduct]:
        cards = await browser.evaluate(ION_CARDS_JS) or []
        return [
            CatalogProduct(
                supplier_sku=card["sku"],
                name=card["name"][:255],
                brand=card.get("brand") or None,
                price=self.extract_price(card.get("price")),
                pack_size=card.get("pack_size") or None,
                in_stock=card.get("in_stock", True),
                url=self.url(f"/desktop/product/{card['sku']}"),
            )
            for card in cards
        ]

    async def advance_results(self, browser) -> bool:
        await browser.evaluate(INFINITE_SCROLL_JS)
        await self.sleep(3)
        return True

    async def scrape_product(self, browser, sku: str) -> Optional[CatalogProduct]:
        await browser.goto(self.url(f"/desktop/product/{sku}"))
        await self.sleep(3)
        if not await browser.exists("[data-cy='product-description-text']"):
            return None

        brand = await browser.text_of("[data-cy*='product-brand']")
        description = await browser.text_of("[data-cy='product-description-text']") or ""
        body = await browser.body_text(20000)
        price = re.search(r"\$(\d+[,\d]*\.\d{2})", body)
        return CatalogProduct(
            supplier_sku=sku,
            name=f"{brand} {description}".strip() if brand else description,
            brand=brand,
            price=self.extract_price(price.group(1)) if price else None,
            pack_size=await browser.text_of("[data-cy*='product-packsize']"),
            in_stock="out of stock" not in body.lower(),
            url=browser.current_url,
        )

    # Cart and checkout

    async def add_single_item(self, browser, item: CartItem):
        await browser.goto(self.url(f"/product/{item.sku}"))
        add_button = ".add-to-cart, .add-to-order, [data-testid='add-to-cart']"
        try:
            await browser.wait_for_any([add_button], timeout=10)
        except ScrapingError:
            if "out of stock" in (await browser.body_text(5000)).lower():
                raise self.item_unavailable(item, "out_of_stock")
            raise self.item_unavailable(item, "not_found")

        await browser.fill("input[name='quantity'], .quantity-input, [data-testid='quantity']", str(item.quantity))
        if not await browser.click(add_button):
            raise ScrapingError(f"Add to cart failed for SKU {item.sku}", supplier_name=self.DISPLAY_NAME)

        try:
            await browser.wait_for_any([".cart-confirmation, .added-to-cart, .cart-updated"], timeout=5)
        except ScrapingError:
            self.logger.warning(f"{self._label()} No cart confirmation for SKU {item.sku}")

    async def order_minimum(self, browser, snapshot) -> float:
        # The cart shows the account's own minimum when it differs from the default
        text = await browser.text_of(".order-minimum-message, .minimum-order")
        return self.extract_price(text) or self.ORDER_MINIMUM

    async def detect_price_changes(self, browser, snapshot) -> List[dict]:
        rows = await browser.evaluate(PRICE_CHANGES_JS) or []
        return [
            {
                "sku": row.get("sku"),
                "name": row.get("name"),
                "old_price": self.extract_price(row.get("old_price")),
                "new_price": self.extract_price(row.get("new_price")),
            }
            for row in rows
        ]

    async def ensure_delivery(self, browser, delivery_date: Optional[str] = None):
        if not await browser.exists(".delivery-date-selector option:not([disabled]), .delivery-slot:not(.unavailable)"):
            raise DeliveryUnavailableError(
                "No delivery dates available for your location", supplier_name=self.DISPLAY_NAME
            )
