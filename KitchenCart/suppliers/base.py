"""
Base Supplier Interface

Every supplier website is driven by one BaseSupplier subclass. The base
class owns the shared algorithms (authentication fallback chain, catalog
discovery, scroll collection, error-page detection) and delegates the
site-specific steps to a small set of hooks.

Adapters never create browsers. The operation service opens a
BrowserSession and passes it into each call, which is what lets one
keep-alive session span add-to-cart and checkout.
"""

import asyncio
import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import quote_plus

from KitchenCart.exceptions import (
    AccountHoldError,
    AuthenticationError,
    CaptchaDetectedError,
    MaintenanceError,
    RateLimitedError,
    ScrapingError,
    SessionExpiredError,
    SupplierError,
)
from KitchenCart.models.supplier_credentials import SupplierCredentialModel
from KitchenCart.models.supplier_models import AuthType, SupplierModel
from KitchenCart.models.two_factor_models import TIMEOUT_MINUTES, TwoFactorRequestType
from KitchenCart.repositories.supplier_credential_repository import SupplierCredentialRepository
from KitchenCart.repositories.two_factor_repository import TwoFactorRepository
from KitchenCart.utils.config import BrowserSettings
from .browser import BrowserConfig, StealthProfile
from .diagnostics import capture_diagnostics
from .session_store import SessionStore
from .two_factor import (
    TwoFactorChallenge,
    TwoFactorDetector,
    TwoFactorHooks,
    TwoFactorNotifier,
    TwoFactorOrchestrator,
    TwoFactorPending,
    enter_code_default,
    request_new_code_default,
)

logger = logging.getLogger(__name__)

PRICE_PATTERN = re.compile(r"[\d,]+\.?\d*")

CAPTCHA_SELECTORS = [
    "#captcha",
    ".captcha-container",
    "iframe[src*='recaptcha']",
    ".g-recaptcha",
    "#challenge-form",
    "[data-testid='captcha']",
]
MAINTENANCE_PHRASES = [
    "maintenance",
    "temporarily unavailable",
    "scheduled downtime",
    "under construction",
    "be right back",
]
RATE_LIMIT_PATTERN = re.compile(
    r"too many requests|too many.*attempts|rate.?limit|maximum.*attempts|try again in \d+ minutes", re.IGNORECASE
)
ACCOUNT_HOLD_SELECTORS = ".account-hold-banner, .account-alert"
CREDIT_LIMIT_SELECTORS = ".credit-limit-warning, .credit-alert"
LOGIN_ERROR_SELECTORS = ".error-message, .alert-danger, .error, .login-error"


class SupplierCapability(Enum):
    """Capabilities that suppliers can support"""
    AUTHENTICATE = "authenticate"
    SEARCH_CATALOG = "search_catalog"
    BROWSE_CATEGORY = "browse_category"
    IMPORT_LISTS = "import_lists"
    ADD_ITEMS = "add_items"
    CHECKOUT = "checkout"
    PRICE_REFRESH = "price_refresh"


class UnavailableItemPolicy(str, Enum):
    FAIL = "fail"  # any unavailable cart line stops checkout
    WARN = "warn"  # proceed with the rest if the remainder still meets the minimum


@dataclass
class SupplierInfo:
    """Information about a supplier"""
    code: str
    display_name: str
    base_url: str
    login_url: Optional[str]
    auth_type: AuthType
    order_minimum: float
    live_mode_enabled: bool
    unavailable_item_policy: UnavailableItemPolicy
    categories: List[str] = None

    def __post_init__(self):
        if self.categories is None:
            self.categories = []

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["auth_type"] = AuthType(self.auth_type).value
        data["unavailable_item_policy"] = self.unavailable_item_policy.value
        return data


@dataclass
class CatalogProduct:
    supplier_sku: str
    name: str
    price: Optional[float] = None
    pack_size: Optional[str] = None
    in_stock: bool = True
    category: Optional[str] = None
    brand: Optional[str] = None
    url: Optional[str] = None
    scraped_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["scraped_at"] = self.scraped_at.isoformat()
        return data


@dataclass
class SupplierListItem:
    sku: str
    name: Optional[str] = None
    quantity: Optional[float] = None
    price: Optional[float] = None
    pack_size: Optional[str] = None


@dataclass
class SupplierList:
    remote_id: str
    name: str
    list_type: str = "custom"  # order_guide | custom | favorites | managed
    url: Optional[str] = None
    items: List[SupplierListItem] = None

    def __post_init__(self):
        if self.items is None:
            self.items = []

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CartItem:
    sku: str
    quantity: int = 1
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartItem":
        return cls(sku=str(data["sku"]), quantity=int(data.get("quantity", 1)), name=data.get("name"))


@dataclass
class FailedItem:
    sku: str
    reason: str
    message: Optional[str] = None
    name: Optional[str] = None


@dataclass
class AddItemsResult:
    added: int
    failed: List[FailedItem] = None
    added_skus: List[str] = None

    def __post_init__(self):
        if self.failed is None:
            self.failed = []
        if self.added_skus is None:
            self.added_skus = []

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CartLine:
    sku: Optional[str]
    name: Optional[str] = None
    quantity: Optional[float] = None
    line_total: Optional[float] = None
    unavailable: bool = False
    message: Optional[str] = None


@dataclass
class CartSnapshot:
    item_count: int
    subtotal: float
    lines: List[CartLine] = None

    def __post_init__(self):
        if self.lines is None:
            self.lines = []

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReviewSnapshot:
    total: Optional[float] = None
    subtotal: Optional[float] = None
    delivery_date: Optional[str] = None
    item_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CheckoutConfirmation:
    confirmation_number: str
    dry_run: bool
    total: Optional[float] = None
    subtotal: Optional[float] = None
    item_count: int = 0
    delivery_date: Optional[str] = None
    cart_snapshot: Optional[Dict[str, Any]] = None
    review_snapshot: Optional[Dict[str, Any]] = None
    warnings: List[Dict[str, Any]] = None

    def __post_init__(self):
        if self.warnings is None:
            self.warnings = []

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuthOutcome:
    """How authenticate() established the session, or the request it is parked on."""
    authenticated: bool
    method: Optional[str] = None  # trusted_device | session | login
    pending: Optional[TwoFactorPending] = None


@dataclass
class OperationContext:
    """Everything an adapter needs besides the browser for one operation."""
    credential: SupplierCredentialModel
    supplier: SupplierModel
    credential_repository: SupplierCredentialRepository
    two_factor_repository: TwoFactorRepository
    session_factory: Callable
    notifier: TwoFactorNotifier
    session_store: Optional[SessionStore] = None
    request_type: TwoFactorRequestType = TwoFactorRequestType.LOGIN
    browser_settings: Optional[BrowserSettings] = None
    clock: Callable[[], datetime] = datetime.utcnow
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self):
        if self.session_store is None:
            self.session_store = SessionStore(
                self.credential, self.supplier, self.credential_repository, self.session_factory, clock=self.clock
            )


class BaseSupplier(TwoFactorHooks, ABC):
    """
    Abstract base class for all supplier implementations.

    Subclasses set the class constants and implement the site hooks. The
    template methods here should rarely need overriding.
    """

    CODE: str = ""
    DISPLAY_NAME: str = ""
    BASE_URL: str = ""
    LOGIN_URL: Optional[str] = None
    AUTH_TYPE: AuthType = AuthType.PASSWORD
    ORDER_MINIMUM: float = 0.0
    LIVE_MODE_ENABLED: bool = False
    UNAVAILABLE_ITEM_POLICY: UnavailableItemPolicy = UnavailableItemPolicy.FAIL
    CATEGORIES: List[str] = []
    CAPABILITIES: List[SupplierCapability] = [
        SupplierCapability.AUTHENTICATE,
        SupplierCapability.SEARCH_CATALOG,
        SupplierCapability.ADD_ITEMS,
        SupplierCapability.CHECKOUT,
        SupplierCapability.PRICE_REFRESH,
    ]

    SESSION_TTL = None
    TWO_FA_TIMEOUT_MINUTES: int = TIMEOUT_MINUTES
    CAN_RAISE_TWO_FA: bool = False
    TWO_FA_SELECTORS: Dict = {}
    TWO_FA_MESSAGE_SELECTORS: List[str] = []

    # Scroll collection: stop after STALE_ROUND_LIMIT advances with nothing new
    MAX_SCROLL_ROUNDS: int = 25
    STALE_ROUND_LIMIT: int = 3
    SEARCH_SCROLL_ROUNDS: int = 10
    SEARCH_STALE_LIMIT: int = 2

    # Cart and checkout selectors used by the default hooks
    CART_PATH: str = "/cart"
    CART_PAGE_SELECTORS: List[str] = [".cart-page", ".shopping-cart"]
    CART_LINE_SELECTOR: str = ".cart-item, .line-item"
    CART_UNAVAILABLE_SELECTOR: str = ".out-of-stock, .unavailable"
    EMPTY_CART_SELECTORS: str = ".empty-cart, .no-items"
    # Cart lines carry data-sku; adapters whose cart page hides SKUs set False to skip verification
    CART_EXPOSES_SKUS: bool = True
    SUBTOTAL_SELECTORS: str = ".subtotal, .cart-subtotal"
    CHECKOUT_BUTTON_SELECTORS: str = ".checkout-btn, .proceed-checkout"
    REVIEW_PAGE_SELECTORS: List[str] = [".checkout-page", ".order-summary"]
    REVIEW_TOTAL_SELECTORS: str = ".order-total, .grand-total"
    DELIVERY_DATE_SELECTORS: str = ".delivery-date, .ship-date"
    SUBMIT_ORDER_SELECTORS: str = ".place-order, .submit-order"
    CONFIRMATION_SELECTORS: str = ".confirmation, .order-success, .thank-you"
    CONFIRMATION_NUMBER_SELECTORS: str = ".order-number, .confirmation-id"
    CHECKOUT_ERROR_SELECTORS: str = ".error, .checkout-error"

    def __init__(self, context: OperationContext):
        self.context = context
        self.credential = context.credential
        self.supplier = context.supplier
        self.store = context.session_store
        self.clock = context.clock
        self.sleep = context.sleep
        self.logger = logging.getLogger(self.__class__.__name__)
        if self.SESSION_TTL is not None:
            self.store.ttl = self.SESSION_TTL

    # Descriptors

    @classmethod
    def get_supplier_info(cls) -> SupplierInfo:
        return SupplierInfo(
            code=cls.CODE,
            display_name=cls.DISPLAY_NAME,
            base_url=cls.BASE_URL,
            login_url=cls.LOGIN_URL,
            auth_type=cls.AUTH_TYPE,
            order_minimum=cls.ORDER_MINIMUM,
            live_mode_enabled=cls.LIVE_MODE_ENABLED,
            unavailable_item_policy=cls.UNAVAILABLE_ITEM_POLICY,
            categories=list(cls.CATEGORIES),
        )

    @classmethod
    def get_capabilities(cls) -> List[SupplierCapability]:
        return list(cls.CAPABILITIES)

    @classmethod
    def supports(cls, capability: SupplierCapability) -> bool:
        return capability in cls.get_capabilities()

    @property
    def requires_human_reauth(self) -> bool:
        return self.AUTH_TYPE == AuthType.TWO_FA

    def _label(self) -> str:
        return f"[{self.DISPLAY_NAME}]"

    def url(self, path: str) -> str:
        return f"{self.BASE_URL.rstrip('/')}/{path.lstrip('/')}"

    @property
    def username(self) -> Optional[str]:
        return self.context.credential_repository.get_username(self.credential)

    @property
    def password(self) -> Optional[str]:
        return self.context.credential_repository.get_password(self.credential)

    def stealth_profile(self) -> StealthProfile:
        return StealthProfile.default()

    def browser_config(self) -> BrowserConfig:
        """Browser settings for this supplier; the idle timeout outlasts any two-factor wait."""
        settings = self.context.browser_settings or BrowserSettings.from_env()
        config = BrowserConfig.from_settings(settings, stealth=self.stealth_profile())
        if self.requires_human_reauth or self.CAN_RAISE_TWO_FA:
            window = max(settings.two_fa_timeout_seconds, self.TWO_FA_TIMEOUT_MINUTES * 60 + 60)
            config = config.with_idle_timeout(window)
        return config

    # Site hooks

    @abstractmethod
    async def is_authenticated(self, browser) -> bool:
        pass

    @abstractmethod
    async def perform_login_steps(self, browser):
        """Fill and submit the login form. Two-factor handling happens afterwards."""

    @abstractmethod
    def search_url(self, term: str) -> str:
        pass

    @abstractmethod
    async def extract_visible_products(self, browser) -> List[CatalogProduct]:
        """Products rendered in the current viewport or page. Must not scroll."""

    @abstractmethod
    async def add_single_item(self, browser, item: CartItem):
        """Add one line to the cart; raise item_unavailable() or ScrapingError on failure."""

    def category_url(self, name: str) -> str:
        raise NotImplementedError(f"{self.DISPLAY_NAME} does not support category browsing")

    @property
    def home_url(self) -> str:
        return self.BASE_URL

    async def after_session_restore(self, browser):
        await browser.goto(self.home_url)

    async def advance_results(self, browser) -> bool:
        """Move the result list forward one step. False when there is nothing further."""
        await browser.evaluate("() => window.scrollBy(0, window.innerHeight)")
        await self.sleep(1.0)
        return True

    async def scrape_lists(self, browser) -> List[SupplierList]:
        return []

    async def scrape_product(self, browser, sku: str) -> Optional[CatalogProduct]:
        """Current data for one SKU; default searches for it and takes the exact match."""
        await browser.goto(self.search_url(sku))
        for product in await self.extract_visible_products(browser):
            if product.supplier_sku == sku:
                return product
        return None

    async def cart_skus(self, browser) -> Set[str]:
        await self.open_cart(browser)
        return {line.sku for line in (await self.read_cart(browser)).lines if line.sku}

    async def clear_cart(self, browser):
        raise NotImplementedError(f"{self.DISPLAY_NAME} cannot clear its cart")

    # Two-factor hooks

    @property
    def two_factor_detector(self) -> TwoFactorDetector:
        return TwoFactorDetector(
            extra_selectors=self.TWO_FA_SELECTORS,
            extra_message_selectors=self.TWO_FA_MESSAGE_SELECTORS,
        )

    async def enter_two_factor_code(self, browser, challenge: TwoFactorChallenge, code: str) -> bool:
        return await enter_code_default(browser, challenge, code)

    async def request_new_code(self, browser) -> bool:
        return await request_new_code_default(browser)

    def two_factor_orchestrator(self, browser, request_type: Optional[TwoFactorRequestType] = None):
        return TwoFactorOrchestrator(
            credential=self.credential,
            supplier_name=self.DISPLAY_NAME,
            browser=browser,
            hooks=self,
            repository=self.context.two_factor_repository,
            session_factory=self.context.session_factory,
            notifier=self.context.notifier,
            session_store=self.store,
            request_type=request_type or self.context.request_type,
            timeout_minutes=self.TWO_FA_TIMEOUT_MINUTES,
            clock=self.clock,
            sleep=self.sleep,
        )

    # Authentication

    async def authenticate(self, browser, allow_two_factor_wait: bool = True,
                           allow_interactive_login: bool = True,
                           resume_request_id: Optional[str] = None) -> AuthOutcome:
        """
        Trusted device, then stored session, then a fresh login with any
        two-factor challenge routed through the orchestrator.
        """
        if await self.store.restore_trusted_device(browser):
            await browser.goto(self.home_url)
            if await self.is_authenticated(browser):
                await self.store.save(browser)
                self.logger.info(f"{self._label()} Authenticated with trusted device")
                return AuthOutcome(True, "trusted_device")

        if await self.store.restore(browser):
            await self.after_session_restore(browser)
            if await self.is_authenticated(browser):
                await self.store.save(browser)
                self.logger.info(f"{self._label()} Authenticated with stored session")
                return AuthOutcome(True, "session")
            self.logger.info(f"{self._label()} Stored session is no longer valid")

        if self.requires_human_reauth and not allow_interactive_login:
            raise SessionExpiredError(
                f"{self.DISPLAY_NAME} session expired. Reconnect the account to sign in again.",
                supplier_name=self.DISPLAY_NAME,
            )

        self.logger.info(f"{self._label()} Performing fresh login")
        await self.perform_login_steps(browser)
        await self.detect_error_conditions(browser)

        orchestrator = self.two_factor_orchestrator(browser)
        challenge = await orchestrator.detect()
        if challenge is not None:
            pending = await orchestrator.complete(
                challenge, allow_wait=allow_two_factor_wait, resume_request_id=resume_request_id
            )
            if pending is not None:
                return AuthOutcome(False, "login", pending=pending)

        await self.finalize_login(browser)
        return AuthOutcome(True, "login")

    async def resume_authentication(self, browser, resume_request_id: str) -> AuthOutcome:
        """Continue a login parked on a challenge page, using the code submitted for resume_request_id."""
        orchestrator = self.two_factor_orchestrator(browser)
        challenge = await orchestrator.detect()
        if challenge is not None:
            await orchestrator.complete(challenge, allow_wait=True, resume_request_id=resume_request_id)
        await self.finalize_login(browser)
        return AuthOutcome(True, "login")

    async def finalize_login(self, browser):
        if await self.is_authenticated(browser):
            await self.store.save(browser)
            self.logger.info(f"{self._label()} Login successful")
            return

        await self.detect_error_conditions(browser)
        bundle = await capture_diagnostics(browser)
        message = bundle.error_messages[0] if bundle.error_messages else "Login failed"
        self.logger.error(f"{self._label()} Login failed: {message} ({bundle.summary()})")
        raise AuthenticationError(message, supplier_name=self.DISPLAY_NAME).attach_diagnostics(bundle.to_dict())

    # Error pages

    async def detect_error_conditions(self, browser):
        await self.detect_captcha(browser)
        page_text = (await browser.body_text(20000)).lower()
        self.detect_maintenance(page_text)
        self.detect_rate_limit(page_text)
        await self.detect_account_issues(browser)

    async def detect_captcha(self, browser):
        for selector in CAPTCHA_SELECTORS:
            if await browser.exists(selector):
                self.logger.warning(f"{self._label()} CAPTCHA detected")
                raise CaptchaDetectedError(
                    "CAPTCHA detected. Manual intervention required.", supplier_name=self.DISPLAY_NAME
                )

    def detect_maintenance(self, page_text: str):
        if any(phrase in page_text for phrase in MAINTENANCE_PHRASES):
            self.logger.warning(f"{self._label()} Site maintenance detected")
            raise MaintenanceError(
                "Supplier site is under maintenance. Please try again later.", supplier_name=self.DISPLAY_NAME
            )

    def detect_rate_limit(self, page_text: str):
        match = RATE_LIMIT_PATTERN.search(page_text)
        if match:
            self.logger.warning(f"{self._label()} Rate limit message: {match.group(0)}")
            raise RateLimitedError(f"Rate limited by supplier: {match.group(0)}", supplier_name=self.DISPLAY_NAME)

    async def detect_account_issues(self, browser):
        hold = await browser.text_of(ACCOUNT_HOLD_SELECTORS)
        if hold:
            raise AccountHoldError(hold, supplier_name=self.DISPLAY_NAME)
        credit = await browser.text_of(CREDIT_LIMIT_SELECTORS)
        if credit:
            raise AccountHoldError(f"Credit limit reached: {credit}", supplier_name=self.DISPLAY_NAME)

    async def rate_limit_delay(self):
        await self.sleep(random.uniform(1.0, 2.5))

    @staticmethod
    def extract_price(text: Optional[str]) -> Optional[float]:
        if not text:
            return None
        match = PRICE_PATTERN.search(text)
        if not match:
            return None
        try:
            return float(match.group(0).replace(",", ""))
        except ValueError:
            return None

    # Catalog

    async def collect_by_scrolling(
        self,
        browser,
        extract: Callable[[Any], Awaitable[List[CatalogProduct]]],
        advance: Callable[[Any], Awaitable[bool]],
        max_rounds: Optional[int] = None,
        stale_limit: Optional[int] = None,
    ) -> List[CatalogProduct]:
        """
        Extract, advance, repeat. Works for paginated lists and recycled-DOM
        lists alike since only SKUs not seen before count as progress.
        """
        max_rounds = max_rounds or self.MAX_SCROLL_ROUNDS
        stale_limit = stale_limit or self.STALE_ROUND_LIMIT
        seen: Dict[str, CatalogProduct] = {}
        stale_rounds = 0

        for _ in range(max_rounds):
            new_count = 0
            for product in await extract(browser):
                if product.supplier_sku and product.supplier_sku not in seen:
                    seen[product.supplier_sku] = product
                    new_count += 1

            stale_rounds = 0 if new_count else stale_rounds + 1
            if stale_rounds >= stale_limit:
                break
            if not await advance(browser):
                break

        return list(seen.values())

    async def search_catalog(self, browser, terms: Iterable[str]) -> List[CatalogProduct]:
        found: Dict[str, CatalogProduct] = {}
        for term in terms:
            await browser.goto(self.search_url(term))
            await self.detect_error_conditions(browser)
            products = await self.collect_by_scrolling(
                browser, self.extract_visible_products, self.advance_results,
                max_rounds=self.SEARCH_SCROLL_ROUNDS, stale_limit=self.SEARCH_STALE_LIMIT,
            )
            for product in products:
                found.setdefault(product.supplier_sku, product)
            self.logger.info(f"{self._label()} Search '{term}': {len(products)} products")
            await self.rate_limit_delay()
        return list(found.values())

    async def browse_category(self, browser, name: str) -> List[CatalogProduct]:
        await browser.goto(self.category_url(name))
        await self.detect_error_conditions(browser)
        products = await self.collect_by_scrolling(browser, self.extract_visible_products, self.advance_results)
        for product in products:
            product.category = product.category or name
        self.logger.info(f"{self._label()} Category '{name}': {len(products)} products")
        return products

    async def discover_catalog(self, browser, terms: Optional[Iterable[str]] = None) -> List[CatalogProduct]:
        """
        Categories first for broad coverage, then keyword search only for
        terms no category result already matches.
        """
        terms = list(terms or [])
        found: Dict[str, CatalogProduct] = {}

        if self.supports(SupplierCapability.BROWSE_CATEGORY):
            for category in self.CATEGORIES:
                try:
                    products = await self.browse_category(browser, category)
                except ScrapingError as e:
                    self.logger.warning(f"{self._label()} Category '{category}' failed: {e.message}")
                    continue
                for product in products:
                    found.setdefault(product.supplier_sku, product)
                await self.rate_limit_delay()

        pending_terms = []
        for term in terms:
            needle = term.strip().lower()
            if needle and not any(needle in product.name.lower() for product in found.values()):
                pending_terms.append(term)

        skipped = len(terms) - len(pending_terms)
        if skipped:
            self.logger.info(f"{self._label()} Skipping {skipped} search terms already covered by categories")

        for product in await self.search_catalog(browser, pending_terms):
            found.setdefault(product.supplier_sku, product)

        return list(found.values())

    async def refresh_prices(self, browser, skus: Iterable[str]) -> List[CatalogProduct]:
        results = []
        for sku in skus:
            try:
                product = await self.scrape_product(browser, sku)
            except ScrapingError as e:
                self.logger.warning(f"{self._label()} Failed to refresh SKU {sku}: {e.message}")
                product = None
            if product is not None:
                results.append(product)
            await self.rate_limit_delay()
        return results

    # Cart and checkout

    def item_unavailable(self, item: CartItem, reason: str, message: Optional[str] = None) -> SupplierError:
        """Per-item failure for add_single_item: reason is not_found or out_of_stock."""
        from .cart import CartItemError
        return CartItemError(item.sku, reason, message or f"SKU {item.sku} {reason.replace('_', ' ')}",
                             supplier_name=self.DISPLAY_NAME)

    async def add_items(self, browser, items: List[CartItem], delivery_date: Optional[str] = None,
                        clear_first: bool = False) -> AddItemsResult:
        from .cart import CartBuilder
        return await CartBuilder(self, browser, sleep=self.sleep).add_items(items, delivery_date, clear_first)

    async def checkout(self, browser, dry_run: bool = True, delivery_date: Optional[str] = None) -> CheckoutConfirmation:
        from .checkout import CheckoutStateMachine
        machine = CheckoutStateMachine(self, browser, clock=self.clock, sleep=self.sleep)
        return await machine.run(dry_run=dry_run, delivery_date=delivery_date)

    async def open_cart(self, browser):
        await browser.goto(self.url(self.CART_PATH))
        await browser.wait_for_any(self.CART_PAGE_SELECTORS + [self.EMPTY_CART_SELECTORS])

    async def read_cart(self, browser) -> CartSnapshot:
        if await browser.exists(self.EMPTY_CART_SELECTORS):
            return CartSnapshot(item_count=0, subtotal=0.0)

        rows = await browser.evaluate(
            """([lineSel, unavailableSel]) => Array.from(document.querySelectorAll(lineSel)).map(row => {
                const pick = (sel) => { const el = row.querySelector(sel); return el ? el.innerText.trim() : null; };
                const skuEl = row.querySelector('[data-sku], [data-product-id]');
                const qtyEl = row.querySelector("input[name*='quantity'], .qty-input, .quantity");
                return {
                    sku: row.getAttribute('data-sku') || (skuEl && (skuEl.getAttribute('data-sku') || skuEl.getAttribute('data-product-id'))),
                    name: pick('.product-name, .item-title, .item-name'),
                    quantity: qtyEl ? (qtyEl.value || qtyEl.innerText) : null,
                    price: pick('.line-total, .item-total, .price'),
                    unavailable: !!row.querySelector(unavailableSel),
                    message: pick('.stock-message, .availability-message'),
                };
            })""",
            [self.CART_LINE_SELECTOR, self.CART_UNAVAILABLE_SELECTOR],
        ) or []

        lines = [
            CartLine(
                sku=row.get("sku"),
                name=row.get("name"),
                quantity=self.extract_price(row.get("quantity")),
                line_total=self.extract_price(row.get("price")),
                unavailable=bool(row.get("unavailable")),
                message=row.get("message"),
            )
            for row in rows
        ]
        subtotal = self.extract_price(await browser.text_of(self.SUBTOTAL_SELECTORS)) or 0.0
        return CartSnapshot(item_count=len(lines), subtotal=subtotal, lines=lines)

    async def order_minimum(self, browser, snapshot: CartSnapshot) -> float:
        return self.ORDER_MINIMUM

    async def detect_price_changes(self, browser, snapshot: CartSnapshot) -> List[Dict[str, Any]]:
        return []

    async def open_review(self, browser):
        if not await browser.click(self.CHECKOUT_BUTTON_SELECTORS):
            raise ScrapingError("Checkout button not found", supplier_name=self.DISPLAY_NAME)
        await browser.wait_for_any(self.REVIEW_PAGE_SELECTORS)

    async def ensure_delivery(self, browser, delivery_date: Optional[str] = None):
        """Pick or confirm a delivery date; raise DeliveryUnavailableError when none can be had."""

    async def read_review(self, browser) -> ReviewSnapshot:
        return ReviewSnapshot(
            total=self.extract_price(await browser.text_of(self.REVIEW_TOTAL_SELECTORS)),
            delivery_date=await browser.text_of(self.DELIVERY_DATE_SELECTORS),
        )

    async def submit_order(self, browser):
        if not await browser.click(self.SUBMIT_ORDER_SELECTORS):
            raise ScrapingError("Place order button not found", supplier_name=self.DISPLAY_NAME)

    async def confirmation_present(self, browser) -> bool:
        return await browser.exists(self.CONFIRMATION_SELECTORS)

    async def checkout_error_text(self, browser) -> Optional[str]:
        return await browser.text_of(self.CHECKOUT_ERROR_SELECTORS)

    async def read_confirmation(self, browser) -> Dict[str, Any]:
        return {
            "confirmation_number": await browser.text_of(self.CONFIRMATION_NUMBER_SELECTORS),
            "total": self.extract_price(await browser.text_of(self.REVIEW_TOTAL_SELECTORS)),
            "delivery_date": await browser.text_of(self.DELIVERY_DATE_SELECTORS),
        }

    def handle_checkout_error(self, message: str, minimum: Optional[float] = None,
                              current_total: float = 0.0) -> SupplierError:
        """Map an error shown after submitting to the matching taxonomy error."""
        from KitchenCart.exceptions import (
            DeliveryUnavailableError,
            ItemUnavailableError,
            OrderMinimumError,
        )

        text = message.lower()
        if re.search(r"minimum.*order|order.*minimum", text):
            return OrderMinimumError(message, minimum=minimum if minimum is not None else self.ORDER_MINIMUM,
                                     current_total=current_total, supplier_name=self.DISPLAY_NAME)
        if re.search(r"credit.*hold|account.*hold", text):
            return AccountHoldError(message, supplier_name=self.DISPLAY_NAME)
        if re.search(r"delivery.*unavailable|no delivery", text):
            return DeliveryUnavailableError(message, supplier_name=self.DISPLAY_NAME)
        if re.search(r"out of stock|unavailable", text):
            return ItemUnavailableError(message, items=[], supplier_name=self.DISPLAY_NAME)
        return ScrapingError(f"Checkout failed: {message}", supplier_name=self.DISPLAY_NAME)

    def search_query(self, term: str) -> str:
        return quote_plus(term.strip())
