"""
Unit tests for SupplierOperationService: the operation envelope, the
credential status policy, parked two-factor logins and per-credential
locking.
"""

import asyncio
from datetime import timedelta

import pytest

from KitchenCart.exceptions import (
    AccountHoldError,
    AuthenticationError,
    CaptchaDetectedError,
    ScrapingError,
    SessionExpiredError,
)
from KitchenCart.models.scraping_log_models import ScrapingLogStatus, ScrapingOperation
from KitchenCart.models.supplier_credentials import CredentialStatus, SupplierCredentialModel
from KitchenCart.models.task_models import TaskModel, TaskType
from KitchenCart.models.two_factor_models import TwoFactorStatus
from KitchenCart.repositories.scraping_log_repository import ScrapingLogRepository
from KitchenCart.repositories.two_factor_repository import TwoFactorRepository
from KitchenCart.services.system.supplier_operation_service import (
    CredentialLockRegistry,
    ParkedLoginRegistry,
    SupplierOperationService,
)
from KitchenCart.suppliers.two_factor import WaitingForInput
from KitchenCart.tasks.session_refresh_task import SessionRefreshTask
from conftest import DemoTwoFactorSupplier, FakeBrowserSession, no_sleep

STORED_SESSION = {
    "cookies": [{"name": "sid", "value": "abc123", "domain": "demo.example.com", "path": "/"}],
}


class ScriptedBrowserFactory:
    """Hands out prepared fake browsers in order."""

    def __init__(self):
        self.pages = []
        self.opened = []

    def queue(self, browser=None) -> FakeBrowserSession:
        browser = browser or FakeBrowserSession()
        self.pages.append(browser)
        return browser

    async def __call__(self, config):
        browser = self.pages.pop(0)
        self.opened.append(browser)
        return browser


@pytest.fixture
def browsers():
    return ScriptedBrowserFactory()


@pytest.fixture
def service(engine, browsers, notifier, credential_repository, demo_registry):
    return SupplierOperationService(
        engine_override=engine,
        browser_factory=browsers,
        notifier=notifier,
        locks=CredentialLockRegistry(),
        parked=ParkedLoginRegistry(),
        credential_repository=credential_repository,
        sleep=no_sleep,
    )


def stored_credential(session_factory, credential_id) -> SupplierCredentialModel:
    with session_factory() as session:
        return session.get(SupplierCredentialModel, credential_id)


def logs(session_factory, credential_id):
    with session_factory() as session:
        return ScrapingLogRepository().recent_for_credential(session, credential_id)


class TestEnvelope:

    @pytest.mark.asyncio
    async def test_login_closes_browser_and_logs(self, service, browsers, make_credential, session_factory):
        credential = make_credential()
        page = browsers.queue()
        page.allow_login()

        outcome = await service.authenticate(credential.id)

        assert outcome.authenticated is True
        assert outcome.method == "login"
        assert page.closed is True
        assert stored_credential(session_factory, credential.id).status == CredentialStatus.ACTIVE
        [log] = logs(session_factory, credential.id)
        assert log.operation == ScrapingOperation.AUTHENTICATE
        assert log.status == ScrapingLogStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_transient_error_leaves_credential_alone(self, service, browsers, make_credential,
                                                           session_factory):
        credential = make_credential()
        page = browsers.queue()
        page.allow_login()
        page.present.add("#captcha")

        with pytest.raises(CaptchaDetectedError):
            await service.authenticate(credential.id)

        assert stored_credential(session_factory, credential.id).status == CredentialStatus.PENDING
        assert page.closed is True
        [log] = logs(session_factory, credential.id)
        assert log.status == ScrapingLogStatus.FAILED
        assert "CAPTCHA" in log.error_message

    @pytest.mark.asyncio
    async def test_rejected_login_fails_credential(self, service, browsers, make_credential, session_factory):
        credential = make_credential()
        page = browsers.queue()
        page.present.update({"#username", "#password", "#login-button"})
        page.texts[".error-message"] = "Invalid password"

        with pytest.raises(AuthenticationError) as exc_info:
            await service.authenticate(credential.id)

        assert exc_info.value.diagnostics["error_messages"] == ["Invalid password"]
        stored = stored_credential(session_factory, credential.id)
        assert stored.status == CredentialStatus.FAILED
        assert stored.last_error == "Invalid password"

    @pytest.mark.asyncio
    async def test_account_hold_marks_credential(self, service, browsers, make_credential, session_factory):
        credential = make_credential()
        page = browsers.queue()
        page.allow_login()
        page.texts[".account-alert"] = "Account on credit hold"

        with pytest.raises(AccountHoldError):
            await service.authenticate(credential.id)

        stored = stored_credential(session_factory, credential.id)
        assert stored.status == CredentialStatus.HOLD
        assert stored.account_on_hold is True

    @pytest.mark.asyncio
    async def test_unattended_two_factor_login_expires_credential(self, service, browsers, make_credential,
                                                                  session_factory):
        credential = make_credential(DemoTwoFactorSupplier)
        page = browsers.queue()
        page.require_sms_code()

        with pytest.raises(SessionExpiredError):
            await service.authenticate(credential.id, allow_two_factor_wait=False, allow_interactive_login=False)

        assert stored_credential(session_factory, credential.id).status == CredentialStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped_with_diagnostics(self, service, browsers, make_credential):
        credential = make_credential()
        page = browsers.queue()
        page.allow_login()

        async def broken_step(adapter, browser):
            raise RuntimeError("selector engine crashed")

        with pytest.raises(ScrapingError) as exc_info:
            await service.run_operation(credential.id, ScrapingOperation.IMPORT, broken_step)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "selector engine crashed" in exc_info.value.message
        assert exc_info.value.diagnostics["url"] == "https://demo.example.com/login"
        assert page.closed is True


class TestTwoFactorParking:

    @pytest.mark.asyncio
    async def test_parked_login_resumes_in_same_browser(self, service, browsers, make_credential,
                                                        session_factory):
        credential = make_credential(DemoTwoFactorSupplier)
        page = browsers.queue()
        page.require_sms_code()

        outcome = await service.authenticate(credential.id, allow_two_factor_wait=False)

        request_id = outcome.pending.request_id
        assert outcome.waiting_for_code is True
        assert page.closed is False
        assert service.parked.has(request_id)
        assert logs(session_factory, credential.id)[0].status == ScrapingLogStatus.CANCELLED

        repository = TwoFactorRepository()
        with session_factory() as session:
            request = repository.get_by_id(session, request_id)
            request.record_attempt("482913")
            session.add(request)

        resumed = await service.authenticate(credential.id, resume_request_id=request_id)

        assert resumed.authenticated is True
        assert browsers.opened == [page]
        assert page.closed is True
        assert len(service.parked) == 0
        with session_factory() as session:
            assert repository.get_by_id(session, request_id).status == TwoFactorStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_operation_result_raises_waiting_for_input(self, service, browsers, make_credential):
        credential = make_credential(DemoTwoFactorSupplier)
        browsers.queue().require_sms_code()

        with pytest.raises(WaitingForInput) as exc_info:
            await service.checkout(credential.id, allow_two_factor_wait=False)

        assert exc_info.value.pending.request_type == "checkout"


class TestValidateCredentials:

    @pytest.mark.asyncio
    async def test_restored_session(self, service, browsers, make_credential):
        credential = make_credential(session_data=STORED_SESSION, login_age=timedelta(hours=1))
        browsers.queue().present.add(".account-menu")

        result = await service.validate_credentials(credential.id)

        assert result == {"valid": True, "message": "Credentials validated successfully (session restored)"}

    @pytest.mark.asyncio
    async def test_failure_reported_not_raised(self, service, browsers, make_credential):
        credential = make_credential()
        page = browsers.queue()
        page.present.update({"#username", "#password", "#login-button"})
        page.texts[".alert-danger"] = "Wrong password"

        result = await service.validate_credentials(credential.id)

        assert result == {"valid": False, "message": "Authentication failed: Wrong password"}

    @pytest.mark.asyncio
    async def test_two_factor_required(self, service, browsers, make_credential):
        credential = make_credential(DemoTwoFactorSupplier)
        browsers.queue().require_sms_code()

        result = await service.validate_credentials(credential.id)

        assert result["valid"] is False
        assert result["two_fa_required"] is True
        assert result["request_id"]


class TestOperations:

    @pytest.mark.asyncio
    async def test_dry_run_checkout(self, service, browsers, make_credential, session_factory):
        credential = make_credential()
        page = browsers.queue()
        page.allow_login()
        page.show_cart([{"sku": "A100", "name": "Butter", "quantity": "4", "price": "$260.00"}], subtotal=260.00)

        confirmation = await service.checkout(credential.id, dry_run=False)

        assert confirmation.dry_run is True
        assert confirmation.confirmation_number.startswith("DRY-RUN-")
        assert ".place-order, .submit-order" not in page.clicks

    @pytest.mark.asyncio
    async def test_add_to_cart_accepts_dicts(self, service, browsers, make_credential, session_factory):
        credential = make_credential()
        page = browsers.queue()
        page.allow_login()
        page.stock("A100")

        result = await service.add_to_cart(credential.id, [{"sku": "A100", "quantity": 3}, {"sku": "Z999"}])

        assert result.added_skus == ["A100"]
        assert [f.sku for f in result.failed] == ["Z999"]
        assert logs(session_factory, credential.id)[0].products_imported == 1

    @pytest.mark.asyncio
    async def test_catalog_import_bookkeeping(self, service, browsers, make_credential, session_factory):
        credential = make_credential()
        page = browsers.queue()
        page.allow_login()
        page.scripts.append(("product-card", [{"sku": "CW-1", "name": "Butter", "price": "$89.50"}]))

        products = await service.scrape_catalog(credential.id, ["butter"])

        assert [p.supplier_sku for p in products] == ["CW-1"]
        stored = stored_credential(session_factory, credential.id)
        assert stored.importing is False
        assert stored.last_import_at is not None

    @pytest.mark.asyncio
    async def test_same_credential_runs_one_at_a_time(self, service, browsers, make_credential):
        credential = make_credential()
        for _ in range(2):
            browsers.queue().allow_login()
        events = []

        def step(name):
            async def run(adapter, browser):
                events.append(f"{name} start")
                await asyncio.sleep(0.01)
                events.append(f"{name} end")
            return run

        await asyncio.gather(
            service.run_operation(credential.id, ScrapingOperation.IMPORT, step("first")),
            service.run_operation(credential.id, ScrapingOperation.IMPORT, step("second")),
        )

        assert events == ["first start", "first end", "second start", "second end"]


class RefreshTaskService:
    """Just enough task service for SessionRefreshTask: the operations and progress updates."""

    def __init__(self, operations):
        self.operations = operations
        self.updates = []

    async def update_task(self, task_id, update_request):
        self.updates.append(update_request)


class TestSessionRefresh:

    @pytest.mark.asyncio
    async def test_live_two_factor_session_is_restamped(self, service, browsers, make_credential,
                                                        session_factory):
        credential = make_credential(DemoTwoFactorSupplier, session_data=STORED_SESSION,
                                     login_age=timedelta(hours=7), status=CredentialStatus.ACTIVE)
        previous_login = credential.last_login_at
        page = browsers.queue()
        page.present.add(".account-menu")
        task = TaskModel(task_type=TaskType.SESSION_REFRESH, name="Scheduled Session Refresh")

        result = await SessionRefreshTask(RefreshTaskService(service)).execute(task)

        assert result == {"refreshed": [credential.id], "expired": [], "failed": []}
        assert page.fills == []
        stored = stored_credential(session_factory, credential.id)
        assert stored.last_login_at > previous_login
        assert stored.needs_refresh() is False
        # The next sweep no longer picks it up
        assert await SessionRefreshTask(RefreshTaskService(service)).execute(task) == {
            "refreshed": [], "expired": [], "failed": [],
        }

    @pytest.mark.asyncio
    async def test_dead_two_factor_session_is_expired(self, service, browsers, make_credential, session_factory):
        credential = make_credential(DemoTwoFactorSupplier, session_data=STORED_SESSION,
                                     login_age=timedelta(hours=7), status=CredentialStatus.ACTIVE)
        page = browsers.queue()
        page.allow_login()
        task = TaskModel(task_type=TaskType.SESSION_REFRESH, name="Scheduled Session Refresh")

        result = await SessionRefreshTask(RefreshTaskService(service)).execute(task)

        assert result == {"refreshed": [], "expired": [credential.id], "failed": []}
        assert page.fills == []
        assert stored_credential(session_factory, credential.id).status == CredentialStatus.EXPIRED
