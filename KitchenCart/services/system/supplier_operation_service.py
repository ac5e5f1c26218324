"""
Supplier Operation Service

The inbound interface of the automation core. Every public operation runs
the same envelope:

    per-credential lock -> ScrapingLog opened -> browser opened ->
    authenticate -> step -> log closed -> credential status policy

Taxonomy errors propagate unchanged; anything else is wrapped into a
ScrapingError carrying a diagnostic bundle of the page it failed on.

A login that stops on a two-factor prompt while the caller cannot wait
keeps its browser open in the parked-login registry, keyed by the
two-factor request id, so the follow-up job can type the code into the
same page instead of starting over.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from KitchenCart.database.db import session_scope
from KitchenCart.exceptions import (
    AccountHoldError,
    AuthenticationError,
    CaptchaDetectedError,
    MaintenanceError,
    RateLimitedError,
    ScrapingError,
    SessionExpiredError,
    SupplierError,
    TwoFactorCancelledError,
    TwoFactorTimeoutError,
)
from KitchenCart.models.scraping_log_models import ScrapingLogModel, ScrapingOperation
from KitchenCart.models.supplier_credentials import CredentialStatus, SupplierCredentialModel
from KitchenCart.models.supplier_models import SupplierModel
from KitchenCart.models.two_factor_models import TwoFactorRequestType
from KitchenCart.repositories.scraping_log_repository import ScrapingLogRepository
from KitchenCart.repositories.supplier_credential_repository import SupplierCredentialRepository
from KitchenCart.repositories.two_factor_repository import TwoFactorRepository
from KitchenCart.services.base_service import BaseService
from KitchenCart.services.system.websocket_service import WebSocketTwoFactorNotifier
from KitchenCart.suppliers import SupplierRegistry
from KitchenCart.suppliers.base import (
    AddItemsResult,
    BaseSupplier,
    CartItem,
    CatalogProduct,
    CheckoutConfirmation,
    OperationContext,
    SupplierList,
)
from KitchenCart.suppliers.browser import BrowserFactory, BrowserSession, open_session
from KitchenCart.suppliers.diagnostics import capture_diagnostics, wrap_unexpected
from KitchenCart.suppliers.two_factor import TwoFactorNotifier, TwoFactorPending, WaitingForInput
from KitchenCart.utils.config import BrowserSettings

logger = logging.getLogger(__name__)

Step = Callable[[BaseSupplier, BrowserSession], Awaitable[Any]]


@dataclass
class OperationOutcome:
    credential_id: str
    supplier_code: str
    authenticated: bool
    method: Optional[str] = None
    result: Any = None
    pending: Optional[TwoFactorPending] = None

    @property
    def waiting_for_code(self) -> bool:
        return self.pending is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "supplier_code": self.supplier_code,
            "authenticated": self.authenticated,
            "method": self.method,
            "result": _serialize(self.result),
            "pending": self.pending.to_dict() if self.pending else None,
        }


def _serialize(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    return value


class CredentialLockRegistry:
    """One asyncio.Lock per credential; operations on the same account run one at a time."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, credential_id: str) -> asyncio.Lock:
        return self._locks.setdefault(credential_id, asyncio.Lock())

    def is_locked(self, credential_id: str) -> bool:
        lock = self._locks.get(credential_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, credential_id: str):
        lock = self.lock_for(credential_id)
        if lock.locked():
            logger.info(f"Waiting for another operation on credential {credential_id}")
        async with lock:
            yield


@dataclass
class ParkedLogin:
    browser: BrowserSession
    adapter: BaseSupplier
    credential_id: str
    parked_at: datetime = field(default_factory=datetime.utcnow)


class ParkedLoginRegistry:
    """Browsers left open on a two-factor page, keyed by request id."""

    def __init__(self):
        self._parked: Dict[str, ParkedLogin] = {}

    def __len__(self) -> int:
        return len(self._parked)

    def park(self, request_id: str, browser: BrowserSession, adapter: BaseSupplier, credential_id: str):
        self._parked[request_id] = ParkedLogin(browser, adapter, credential_id)
        logger.info(f"Parked login for credential {credential_id} on two-factor request {request_id}")

    def has(self, request_id: str) -> bool:
        parked = self._parked.get(request_id)
        return parked is not None and not parked.browser.is_closed

    def take(self, request_id: str) -> Optional[ParkedLogin]:
        parked = self._parked.pop(request_id, None)
        if parked is None:
            return None
        if parked.browser.is_closed:
            logger.info(f"Parked browser for request {request_id} closed while idle")
            return None
        return parked

    async def discard(self, request_id: str):
        parked = self._parked.pop(request_id, None)
        if parked is not None:
            await parked.browser.close()

    async def close_all(self):
        for request_id in list(self._parked):
            await self.discard(request_id)


# Global registry shared by the operation and two-factor services
parked_logins = ParkedLoginRegistry()


def user_message(error: Exception, supplier_name: str) -> str:
    """Plain-language explanation of a failed credential check."""
    if isinstance(error, TwoFactorTimeoutError):
        return f"No verification code was entered for {supplier_name} in time. Please try again."
    if isinstance(error, AuthenticationError):
        return f"Authentication failed: {error.message}"
    if isinstance(error, SessionExpiredError):
        return f"Your {supplier_name} session expired. Reconnect the account to sign in again."
    if isinstance(error, TwoFactorCancelledError):
        return "Verification was cancelled"
    if isinstance(error, CaptchaDetectedError):
        return (f"CAPTCHA detected on {supplier_name}'s login page. "
                "Please try again later or log in manually.")
    if isinstance(error, MaintenanceError):
        return f"{supplier_name}'s website is currently under maintenance. Please try again later."
    if isinstance(error, RateLimitedError):
        return f"{supplier_name} is limiting login attempts. Please wait a few minutes and try again."
    if isinstance(error, AccountHoldError):
        return f"Your {supplier_name} account is on hold: {error.message}"
    if isinstance(error, ScrapingError):
        return f"Could not complete login on {supplier_name}: {error.message}"
    return f"Unexpected error validating {supplier_name} credentials: {error}"


class SupplierOperationService(BaseService):

    def __init__(self, engine_override=None, browser_factory: Optional[BrowserFactory] = None,
                 notifier: Optional[TwoFactorNotifier] = None,
                 locks: Optional[CredentialLockRegistry] = None,
                 parked: Optional[ParkedLoginRegistry] = None,
                 credential_repository: Optional[SupplierCredentialRepository] = None,
                 browser_settings: Optional[BrowserSettings] = None,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        super().__init__(engine_override)
        self.browser_factory = browser_factory or open_session
        self.notifier = notifier or WebSocketTwoFactorNotifier()
        self.locks = locks or credential_locks
        self.parked = parked if parked is not None else parked_logins
        self.credential_repository = credential_repository or SupplierCredentialRepository()
        self.two_factor_repository = TwoFactorRepository()
        self.scraping_log_repository = ScrapingLogRepository()
        self.browser_settings = browser_settings
        self.clock = clock
        self.sleep = sleep
        self.session_factory = partial(session_scope, self.engine)

    # Lookups

    def _load(self, credential_id: str):
        with self.session_factory() as session:
            credential = self.credential_repository.get_by_id_or_raise(session, credential_id)
            supplier = self.credential_repository.get_supplier(session, credential)
        return credential, supplier

    def _adapter(self, credential: SupplierCredentialModel, supplier: SupplierModel,
                 request_type: TwoFactorRequestType) -> BaseSupplier:
        context = OperationContext(
            credential=credential,
            supplier=supplier,
            credential_repository=self.credential_repository,
            two_factor_repository=self.two_factor_repository,
            session_factory=self.session_factory,
            notifier=self.notifier,
            request_type=request_type,
            browser_settings=self.browser_settings,
            clock=self.clock,
            sleep=self.sleep,
        )
        return SupplierRegistry.get_supplier(supplier.code, context)

    # Scraping log

    def _start_log(self, supplier: SupplierModel, credential: SupplierCredentialModel,
                   operation: ScrapingOperation) -> ScrapingLogModel:
        with self.session_factory() as session:
            return self.scraping_log_repository.start(session, supplier.id, credential.id, operation)

    def _complete_log(self, log: ScrapingLogModel, result: Any):
        count = len(result) if isinstance(result, list) else 0
        if isinstance(result, AddItemsResult):
            count = result.added
        with self.session_factory() as session:
            self.scraping_log_repository.complete(session, log, product_count=count)

    def _fail_log(self, log: ScrapingLogModel, error: SupplierError):
        with self.session_factory() as session:
            self.scraping_log_repository.fail(session, log, error.message, error.to_dict())

    def _cancel_log(self, log: ScrapingLogModel):
        with self.session_factory() as session:
            self.scraping_log_repository.cancel(session, log)

    # Credential status policy

    def apply_credential_policy(self, credential_id: str, error: SupplierError):
        """Move the credential as the error class dictates; transient errors leave it alone."""
        status = error.credential_status
        if not status:
            return

        with self.session_factory() as session:
            credential = self.credential_repository.get_by_id_or_raise(session, credential_id)
            if status == CredentialStatus.FAILED:
                self.credential_repository.mark_failed(session, credential, error.message)
            elif status == CredentialStatus.EXPIRED:
                self.credential_repository.mark_expired(session, credential)
            elif status == CredentialStatus.HOLD:
                self.credential_repository.mark_on_hold(session, credential, error.message)
        self.logger.info(f"Credential {credential_id} marked {status} after {type(error).__name__}")

    async def _classify(self, exc: Exception, adapter: Optional[BaseSupplier],
                        browser: Optional[BrowserSession]) -> SupplierError:
        supplier_name = adapter.DISPLAY_NAME if adapter else None
        needs_bundle = not isinstance(exc, SupplierError) or (
            isinstance(exc, ScrapingError) and exc.diagnostics is None
        )
        bundle = None
        if needs_bundle and browser is not None and not browser.is_closed:
            bundle = await capture_diagnostics(browser)
        return wrap_unexpected(exc, bundle, supplier_name=supplier_name)

    # Envelope

    async def run_operation(
        self,
        credential_id: str,
        operation: ScrapingOperation,
        step: Optional[Step] = None,
        request_type: TwoFactorRequestType = TwoFactorRequestType.LOGIN,
        allow_two_factor_wait: bool = True,
        allow_interactive_login: bool = True,
        resume_request_id: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Run one supplier operation end to end.

        Returns an outcome whose pending field is set when the login stopped
        on a two-factor prompt and allow_two_factor_wait was False; the
        browser is then parked rather than closed.
        """
        async with self.locks.hold(credential_id):
            credential, supplier = self._load(credential_id)
            adapter = self._adapter(credential, supplier, request_type)
            log = self._start_log(supplier, credential, operation)
            browser: Optional[BrowserSession] = None
            keep_browser = False

            try:
                parked = self.parked.take(resume_request_id) if resume_request_id else None
                if parked is not None:
                    browser, adapter = parked.browser, parked.adapter
                    self.logger.info(f"Resuming parked login for {supplier.name} (request {resume_request_id})")
                    auth = await adapter.resume_authentication(browser, resume_request_id)
                else:
                    browser = await self.browser_factory(adapter.browser_config())
                    auth = await adapter.authenticate(
                        browser,
                        allow_two_factor_wait=allow_two_factor_wait,
                        allow_interactive_login=allow_interactive_login,
                        resume_request_id=resume_request_id,
                    )

                if auth.pending is not None:
                    self.parked.park(auth.pending.request_id, browser, adapter, credential_id)
                    keep_browser = True
                    self._cancel_log(log)
                    return OperationOutcome(
                        credential_id, supplier.code, authenticated=False, method=auth.method, pending=auth.pending
                    )

                result = await step(adapter, browser) if step is not None else None
                self._complete_log(log, result)
                return OperationOutcome(
                    credential_id, supplier.code, authenticated=True, method=auth.method, result=result
                )

            except asyncio.CancelledError:
                self._cancel_log(log)
                raise
            except Exception as e:
                error = await self._classify(e, adapter, browser)
                self._fail_log(log, error)
                self.apply_credential_policy(credential_id, error)
                if error is e:
                    raise
                raise error from e
            finally:
                if browser is not None and not keep_browser:
                    await browser.close()

    @staticmethod
    def _result(outcome: OperationOutcome) -> Any:
        if outcome.pending is not None:
            raise WaitingForInput(outcome.pending)
        return outcome.result

    # Operations

    async def authenticate(self, credential_id: str, allow_two_factor_wait: bool = True,
                           allow_interactive_login: bool = True,
                           resume_request_id: Optional[str] = None) -> OperationOutcome:
        return await self.run_operation(
            credential_id,
            ScrapingOperation.AUTHENTICATE,
            allow_two_factor_wait=allow_two_factor_wait,
            allow_interactive_login=allow_interactive_login,
            resume_request_id=resume_request_id,
        )

    async def validate_credentials(self, credential_id: str) -> Dict[str, Any]:
        """Log in once and report {valid, message, two_fa_required?} instead of raising."""
        credential, supplier = self._load(credential_id)
        try:
            outcome = await self.run_operation(
                credential_id, ScrapingOperation.VALIDATE, allow_two_factor_wait=False
            )
        except SupplierError as e:
            self.logger.warning(f"Credential check failed for {supplier.name}: {e.message}")
            return {"valid": False, "message": user_message(e, supplier.name)}

        if outcome.pending is not None:
            return {
                "valid": False,
                "two_fa_required": True,
                "message": "Verification code required",
                "request_id": outcome.pending.request_id,
                "session_token": outcome.pending.session_token,
            }

        message = "Credentials validated successfully"
        if outcome.method == "session":
            message += " (session restored)"
        return {"valid": True, "message": message}

    async def scrape_catalog(self, credential_id: str, search_terms: Optional[Iterable[str]] = None,
                             **options) -> List[CatalogProduct]:
        terms = list(search_terms or [])

        async def step(adapter: BaseSupplier, browser: BrowserSession):
            self._set_importing(credential_id, True)
            try:
                return await adapter.discover_catalog(browser, terms)
            finally:
                self._set_importing(credential_id, False)

        outcome = await self.run_operation(credential_id, ScrapingOperation.IMPORT, step, **options)
        products = self._result(outcome)
        self._mark_imported(credential_id)
        return products

    async def scrape_supplier_lists(self, credential_id: str, **options) -> List[SupplierList]:
        outcome = await self.run_operation(
            credential_id, ScrapingOperation.LISTS, lambda adapter, browser: adapter.scrape_lists(browser), **options
        )
        return self._result(outcome)

    async def refresh_prices(self, credential_id: str, skus: Iterable[str], **options) -> List[CatalogProduct]:
        skus = list(skus)
        outcome = await self.run_operation(
            credential_id,
            ScrapingOperation.PRICE_REFRESH,
            lambda adapter, browser: adapter.refresh_prices(browser, skus),
            request_type=TwoFactorRequestType.PRICE_REFRESH,
            **options,
        )
        return self._result(outcome)

    async def add_to_cart(self, credential_id: str, items: List[Union[CartItem, Dict[str, Any]]],
                          delivery_date: Optional[str] = None, clear_first: bool = False,
                          **options) -> AddItemsResult:
        cart_items = _cart_items(items)
        outcome = await self.run_operation(
            credential_id,
            ScrapingOperation.ADD_TO_CART,
            lambda adapter, browser: adapter.add_items(browser, cart_items, delivery_date, clear_first),
            **options,
        )
        return self._result(outcome)

    async def checkout(self, credential_id: str, dry_run: bool = True, delivery_date: Optional[str] = None,
                       **options) -> CheckoutConfirmation:
        outcome = await self.run_operation(
            credential_id,
            ScrapingOperation.CHECKOUT,
            lambda adapter, browser: adapter.checkout(browser, dry_run=dry_run, delivery_date=delivery_date),
            request_type=TwoFactorRequestType.CHECKOUT,
            **options,
        )
        return self._result(outcome)

    async def place_order(self, credential_id: str, items: List[Union[CartItem, Dict[str, Any]]],
                          delivery_date: Optional[str] = None, dry_run: bool = True,
                          **options) -> Dict[str, Any]:
        """Add items and check out in one browser session. Returns {"cart", "confirmation"}."""
        cart_items = _cart_items(items)

        async def step(adapter: BaseSupplier, browser: BrowserSession):
            cart = await adapter.add_items(browser, cart_items, delivery_date, clear_first=True)
            confirmation = await adapter.checkout(browser, dry_run=dry_run, delivery_date=delivery_date)
            return {"cart": cart, "confirmation": confirmation}

        outcome = await self.run_operation(
            credential_id, ScrapingOperation.PLACE_ORDER, step,
            request_type=TwoFactorRequestType.CHECKOUT, **options,
        )
        return self._result(outcome)

    async def submit_two_factor_code(self, request_id: str, code: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        from KitchenCart.services.system.two_factor_service import TwoFactorService

        service = TwoFactorService(engine_override=self.engine, notifier=self.notifier, parked=self.parked)
        return await service.submit_two_factor_code(request_id, code, user_id=user_id)

    # Import bookkeeping

    def _set_importing(self, credential_id: str, importing: bool):
        with self.session_factory() as session:
            credential = self.credential_repository.get_by_id_or_raise(session, credential_id)
            credential.importing = importing
            self.credential_repository.save(session, credential)

    def _mark_imported(self, credential_id: str):
        with self.session_factory() as session:
            credential = self.credential_repository.get_by_id_or_raise(session, credential_id)
            credential.last_import_at = self.clock()
            self.credential_repository.save(session, credential)


def _cart_items(items: List[Union[CartItem, Dict[str, Any]]]) -> List[CartItem]:
    return [item if isinstance(item, CartItem) else CartItem.from_dict(item) for item in items]


# Global lock registry; one per process
credential_locks = CredentialLockRegistry()

_operation_service: Optional[SupplierOperationService] = None


def get_supplier_operation_service() -> SupplierOperationService:
    global _operation_service
    if _operation_service is None:
        _operation_service = SupplierOperationService()
    return _operation_service
