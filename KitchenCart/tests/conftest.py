"""
Shared test fixtures.

Every test runs against an in-memory SQLite database and a scripted
FakeBrowserSession; nothing here launches a real browser.
"""

import base64
import json
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

import KitchenCart.models.models  # noqa: F401  registers every table
from KitchenCart.database.db import session_scope
from KitchenCart.exceptions import ScrapingError
from KitchenCart.models.supplier_models import AuthType, SupplierModel
from KitchenCart.repositories.supplier_credential_repository import SupplierCredentialRepository
from KitchenCart.repositories.two_factor_repository import TwoFactorRepository
from KitchenCart.services.encryption_service import EncryptionService
from KitchenCart.suppliers.base import BaseSupplier, CatalogProduct, OperationContext
from KitchenCart.suppliers.browser import BrowserConfig
from KitchenCart.suppliers.registry import SupplierRegistry
from KitchenCart.suppliers.two_factor import TwoFactorNotifier

TEST_MASTER_KEY = base64.b64encode(b"kitchencart-test-key-0123456789!").decode("utf-8")

PRODUCT_ROWS_JS = "() => Array.from(document.querySelectorAll('.product-card')).map(card => card.dataset)"


async def no_sleep(seconds: float):
    return None


class FakeBrowserSession:
    """
    Scriptable stand-in for BrowserSession.

    Selectors "exist" when listed in `present`; comma-separated selector
    lists match when any part is present. Clicks run the handler registered
    for the matched selector, which is how tests make a page change state.
    Every navigation, click, fill and cookie write is recorded.
    """

    def __init__(self, present=None, texts: Optional[Dict[str, str]] = None, body: str = ""):
        self.present = set(present or [])
        self.texts: Dict[str, str] = dict(texts or {})
        self.body = body
        self.url = "about:blank"
        self.page_title = "Demo Foods"
        self.config = BrowserConfig(stealth=None)
        self.on_click: Dict[str, Callable[["FakeBrowserSession"], None]] = {}
        self.scripts: List[tuple] = [("lineSel", lambda arg: self.cart_rows())]
        self.cookie_jar: List[Dict[str, Any]] = []
        self.storage: Dict[str, Dict[str, str]] = {"local": {}, "session": {}}
        self.cart: List[str] = []
        self.cart_lines: Optional[List[Dict[str, Any]]] = None

        self.gotos: List[str] = []
        self.clicks: List[str] = []
        self.fills: List[tuple] = []
        self.keys: List[str] = []
        self.added_cookies: List[Dict[str, Any]] = []
        self.storage_writes: List[tuple] = []
        self.touches = 0
        self.closed = False

    # Scripting helpers

    def allow_login(self):
        """Login form whose submit button leads to a signed-in page."""
        self.present.update({"#username", "#password", "#login-button"})
        self.on_click["#login-button"] = lambda browser: browser.present.add(".account-menu")

    def require_sms_code(self):
        """Login form whose submit button leads to an SMS code challenge."""
        self.present.update({"#username", "#password", "#login-button"})

        def show_challenge(browser):
            browser.present.update({"#smsCode", "input[type='tel']", "button[type='submit']"})

        def accept_code(browser):
            browser.present.difference_update({"#smsCode", "input[type='tel']"})
            browser.present.add(".account-menu")

        self.on_click["#login-button"] = show_challenge
        self.on_click["button[type='submit']"] = accept_code

    def stock(self, *skus: str):
        """SKUs that can be found and added; clicking add puts them in the cart."""
        self.present.add(".cart-page")
        for sku in skus:
            row = f"[data-sku='{sku}']"
            self.present.update({row, f"{row} .add-to-cart"})
            self.on_click[f"{row} .add-to-cart"] = lambda browser, sku=sku: browser.cart.append(sku)

    def show_cart(self, lines: List[Dict[str, Any]], subtotal: float):
        """A cart page whose checkout button opens the review page."""
        self.present.update({".cart-page", ".checkout-btn"})
        self.cart_lines = lines
        self.texts[".subtotal"] = f"${subtotal:,.2f}"
        self.texts[".order-total"] = f"${subtotal:,.2f}"
        self.on_click[".checkout-btn"] = lambda browser: browser.present.add(".checkout-page")

    def confirm_orders(self, number: str):
        """Submitting the order shows a confirmation page carrying number."""
        self.present.add(".place-order")

        def confirm(browser):
            browser.present.add(".order-success")
            browser.texts[".order-number"] = number

        self.on_click[".place-order"] = confirm

    def cart_rows(self) -> List[Dict[str, Any]]:
        if self.cart_lines is not None:
            return self.cart_lines
        return [{"sku": sku, "name": sku, "quantity": "1", "price": None, "unavailable": False} for sku in self.cart]

    @property
    def interactions(self) -> int:
        return len(self.gotos) + len(self.clicks) + len(self.fills) + len(self.keys) \
            + len(self.added_cookies) + len(self.storage_writes)

    def _parts(self, selector: str) -> List[str]:
        return [part.strip() for part in selector.split(",") if part.strip()]

    def _match(self, selector: str) -> Optional[str]:
        return next((part for part in self._parts(selector) if part in self.present), None)

    # BrowserSession surface

    @property
    def is_closed(self) -> bool:
        return self.closed

    async def close(self):
        self.closed = True

    def touch(self):
        self.touches += 1

    async def goto(self, url: str):
        self.gotos.append(url)
        self.url = url

    async def reload(self):
        return None

    @property
    def current_url(self) -> str:
        return self.url

    async def title(self) -> str:
        return self.page_title

    async def wait_for_idle(self, seconds: float = 5):
        return None

    async def exists(self, selector: str) -> bool:
        return self._match(selector) is not None

    async def first_visible(self, selector: str):
        return self._match(selector)

    async def text_of(self, selector: str) -> Optional[str]:
        for part in self._parts(selector):
            if part in self.texts:
                return self.texts[part]
        return None

    async def texts_of(self, selector: str) -> List[str]:
        return [self.texts[part] for part in self._parts(selector) if part in self.texts]

    async def attribute_of(self, selector: str, name: str) -> Optional[str]:
        return None

    async def body_text(self, limit: Optional[int] = None) -> str:
        return self.body[:limit] if limit else self.body

    async def wait_for_any(self, selectors, timeout: float = 10) -> str:
        for selector in selectors:
            if await self.exists(selector):
                return selector
        raise ScrapingError(f"Timeout waiting for any of: {', '.join(selectors)}")

    async def fill(self, selector: str, value: str) -> bool:
        self.fills.append((selector, value))
        return await self.exists(selector)

    async def click(self, selector: str) -> bool:
        self.clicks.append(selector)
        matched = self._match(selector)
        if matched is None:
            return False
        handler = self.on_click.get(matched)
        if handler is not None:
            handler(self)
        return True

    async def click_button_by_text(self, text: str, last: bool = False) -> bool:
        self.clicks.append(f"text={text}")
        return False

    async def press(self, key: str):
        self.keys.append(key)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        for marker, result in self.scripts:
            if marker in script:
                return result(arg) if callable(result) else result
        return None

    async def cookies(self) -> List[Dict[str, Any]]:
        return list(self.cookie_jar)

    async def add_cookies(self, cookies: List[Dict[str, Any]]):
        self.added_cookies.extend(cookies)
        self.cookie_jar.extend(cookies)

    async def read_storage(self, kind: str) -> Dict[str, str]:
        return dict(self.storage[kind])

    async def write_storage(self, kind: str, data: Dict[str, str]) -> int:
        self.storage_writes.append((kind, data))
        self.storage[kind].update(data)
        return len(data)


class DemoSupplier(BaseSupplier):
    """Minimal password-login adapter over the fake page above."""

    CODE = "demo"
    DISPLAY_NAME = "Demo Foods"
    BASE_URL = "https://demo.example.com"
    LOGIN_URL = "https://demo.example.com/login"
    AUTH_TYPE = AuthType.PASSWORD
    ORDER_MINIMUM = 200.00

    async def is_authenticated(self, browser) -> bool:
        return await browser.exists(".account-menu")

    async def perform_login_steps(self, browser):
        await browser.goto(self.LOGIN_URL)
        await browser.fill("#username", self.username or "")
        await browser.fill("#password", self.password or "")
        await browser.click("#login-button")

    def search_url(self, term: str) -> str:
        return self.url(f"/search?q={self.search_query(term)}")

    async def extract_visible_products(self, browser) -> List[CatalogProduct]:
        rows = await browser.evaluate(PRODUCT_ROWS_JS) or []
        return [
            CatalogProduct(supplier_sku=row["sku"], name=row["name"], price=self.extract_price(row.get("price")))
            for row in rows
        ]

    async def add_single_item(self, browser, item):
        row = f"[data-sku='{item.sku}']"
        await browser.goto(self.search_url(item.sku))
        if not await browser.exists(row):
            raise self.item_unavailable(item, "not_found")
        await browser.fill(f"{row} .qty", str(item.quantity))
        await browser.click(f"{row} .add-to-cart")


class DemoTwoFactorSupplier(DemoSupplier):
    CODE = "demo2fa"
    DISPLAY_NAME = "Demo Two-Factor Foods"
    AUTH_TYPE = AuthType.TWO_FA


class RecordingNotifier(TwoFactorNotifier):
    def __init__(self):
        self.required = []
        self.results = []

    async def two_factor_required(self, request, supplier_name: str):
        self.required.append((request.id, supplier_name))

    async def code_result(self, user_id: str, request_id: str, success: bool, error: Optional[str] = None,
                          can_retry: Optional[bool] = None, attempts_remaining: Optional[int] = None):
        self.results.append({
            "user_id": user_id,
            "request_id": request_id,
            "success": success,
            "error": error,
            "can_retry": can_retry,
            "attempts_remaining": attempts_remaining,
        })


class RecordingTaskService:
    """Accepts follow-up jobs from the two-factor service without running them."""

    def __init__(self):
        self.created = []

    async def create_task(self, task_request, user_id: str = None):
        from KitchenCart.services.base_service import ServiceResponse

        task_id = f"task-{len(self.created) + 1}"
        self.created.append((task_request, user_id))
        return ServiceResponse.success_response("created", {"id": task_id})


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return partial(session_scope, engine)


@pytest.fixture
def encryption():
    return EncryptionService(master_key=TEST_MASTER_KEY)


@pytest.fixture
def credential_repository(encryption):
    return SupplierCredentialRepository(encryption_service=encryption)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def browser():
    return FakeBrowserSession()


@pytest.fixture
def make_supplier(session_factory):
    def factory(supplier_class=DemoSupplier) -> SupplierModel:
        supplier = SupplierModel(
            code=supplier_class.CODE,
            name=supplier_class.DISPLAY_NAME,
            base_url=supplier_class.BASE_URL,
            login_url=supplier_class.LOGIN_URL,
            auth_type=supplier_class.AUTH_TYPE,
        )
        with session_factory() as session:
            session.add(supplier)
            session.commit()
            session.refresh(supplier)
        return supplier

    return factory


@pytest.fixture
def make_credential(session_factory, credential_repository, make_supplier):
    """
    Create a credential; session_data (a dict) is stored encrypted with
    last_login_at set to login_age before now.
    """
    suppliers: Dict[str, SupplierModel] = {}

    def factory(supplier_class=DemoSupplier, user_id: str = "user-1", username: str = "chef",
                password: str = "secret", session_data: Optional[Dict[str, Any]] = None,
                login_age: Optional[timedelta] = None, **fields):
        if supplier_class.CODE not in suppliers:
            suppliers[supplier_class.CODE] = make_supplier(supplier_class)
        supplier = suppliers[supplier_class.CODE]

        with session_factory() as session:
            credential = credential_repository.create_credential(
                session, user_id, supplier, username=username, password=password
            )
            if session_data is not None:
                credential = credential_repository.set_session_data(session, credential, json.dumps(session_data))
            if login_age is not None:
                credential.last_login_at = datetime.utcnow() - login_age
            for name, value in fields.items():
                setattr(credential, name, value)
            credential = credential_repository.save(session, credential)
        return credential

    return factory


@pytest.fixture
def make_adapter(session_factory, credential_repository, notifier):
    def factory(credential, supplier_class=DemoSupplier, clock: Callable[[], datetime] = datetime.utcnow,
                sleep=no_sleep) -> BaseSupplier:
        with session_factory() as session:
            supplier = credential_repository.get_supplier(session, credential)
        context = OperationContext(
            credential=credential,
            supplier=supplier,
            credential_repository=credential_repository,
            two_factor_repository=TwoFactorRepository(),
            session_factory=session_factory,
            notifier=notifier,
            clock=clock,
            sleep=sleep,
        )
        return supplier_class(context)

    return factory


@pytest.fixture
def demo_registry():
    """Register the demo adapters for the duration of one test."""
    SupplierRegistry.register(DemoSupplier.CODE, DemoSupplier)
    SupplierRegistry.register(DemoTwoFactorSupplier.CODE, DemoTwoFactorSupplier)
    yield SupplierRegistry
    for code in (DemoSupplier.CODE, DemoTwoFactorSupplier.CODE):
        SupplierRegistry._suppliers.pop(code, None)
    SupplierRegistry.clear_cache()
