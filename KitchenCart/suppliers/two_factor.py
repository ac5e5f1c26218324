"""
Two-Factor Orchestrator

Detects a verification challenge on the live page, opens a TwoFactorRequest
for a human to answer, and waits for the code while keeping the browser
alive. The wait is bounded by the request's own expires_at, read from the
database on every tick, so a late poller can never wait past the deadline.

Background jobs run with allow_wait=False: instead of blocking, the
orchestrator returns a TwoFactorPending marker that the task service parks
as waiting_input. The follow-up job resumes with the submitted code.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Sequence

from KitchenCart.exceptions import (
    AuthenticationError,
    TwoFactorCancelledError,
    TwoFactorTimeoutError,
)
from KitchenCart.models.supplier_credentials import SupplierCredentialModel
from KitchenCart.models.two_factor_models import (
    MAX_ATTEMPTS,
    TIMEOUT_MINUTES,
    TwoFactorRequestModel,
    TwoFactorRequestType,
    TwoFactorStatus,
    TwoFactorType,
)
from KitchenCart.repositories.two_factor_repository import TwoFactorRepository

logger = logging.getLogger(__name__)

TYPE_SELECTORS: Dict[TwoFactorType, List[str]] = {
    TwoFactorType.SMS: [
        "input[name*='sms']",
        "input[name*='phone_code']",
        ".sms-verification",
        "[data-testid='sms-code-input']",
        "#smsCode",
    ],
    TwoFactorType.TOTP: [
        "input[name*='totp']",
        "input[name*='authenticator']",
        ".authenticator-code",
        "[data-testid='totp-input']",
        "#totpCode",
    ],
    TwoFactorType.EMAIL: [
        "input[name*='email_code']",
        ".email-verification",
        "[data-testid='email-code-input']",
        "#emailCode",
    ],
    TwoFactorType.UNKNOWN: [
        "input[name*='verification_code']",
        "input[name*='2fa']",
        "input[name*='mfa']",
        ".two-factor-input",
        ".verification-code-input",
        "#verificationCode",
        "input[name*='otp']",
        ".otp-input",
    ],
}

KEYWORD_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"enter.*code",
        r"verification.*code",
        r"two.?factor",
        r"2fa",
        r"authenticator",
        r"one.?time.*password",
        r"\botp\b",
        r"security.*code",
    )
]

MESSAGE_SELECTORS = [
    ".verification-message",
    ".two-factor-instructions",
    ".mfa-prompt",
    "label[for*='code']",
    ".form-description",
    "p.instructions",
    ".otp-message",
    ".code-prompt",
]

DEFAULT_PROMPT = "Please enter your verification code"
TEXT_INPUT_SELECTOR = "input[type='text'], input[type='tel'], input[type='number']"

CODE_INPUT_SELECTORS = (
    "input[name*='code'], input[name*='2fa'], input[name*='verification'], .verification-code-input input, "
    ".otp-input, input[type='tel'], input[autocomplete='one-time-code']"
)
SUBMIT_SELECTORS = [
    "button[type='submit']",
    "input[type='submit']",
    ".verify-button",
    ".submit-code",
    ".btn-verify",
    "[data-action='verify']",
]
CODE_ERROR_SELECTORS = ".error-message, .alert-danger, .invalid-code, .error"
REMEMBER_DEVICE_SELECTORS = "input[name*='remember'], input[name*='trust'], #rememberDevice, .trust-device input"

RESULT_SETTLE_SECONDS = 2


@dataclass
class TwoFactorChallenge:
    two_fa_type: TwoFactorType
    prompt: str = DEFAULT_PROMPT
    selector: Optional[str] = None


@dataclass
class TwoFactorPending:
    """Returned instead of blocking when the caller cannot wait for a human."""

    request_id: str
    session_token: str
    request_type: str
    two_fa_type: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "session_token": self.session_token,
            "request_type": self.request_type,
            "two_fa_type": self.two_fa_type,
            "expires_at": self.expires_at.isoformat(),
        }


class WaitingForInput(Exception):
    """Raised instead of blocking when an operation is parked on a two-factor request."""

    def __init__(self, pending: TwoFactorPending):
        super().__init__(f"Waiting on two-factor request {pending.request_id}")
        self.pending = pending


class TwoFactorDetector:
    """Selector tables first, then page-text keywords when a text input is present."""

    def __init__(
        self,
        extra_selectors: Optional[Dict[TwoFactorType, Sequence[str]]] = None,
        extra_keywords: Optional[Sequence[Pattern]] = None,
        extra_message_selectors: Optional[Sequence[str]] = None,
    ):
        self.selectors = {kind: list(selectors) for kind, selectors in TYPE_SELECTORS.items()}
        for kind, selectors in (extra_selectors or {}).items():
            self.selectors.setdefault(kind, [])
            self.selectors[kind] = list(selectors) + self.selectors[kind]
        self.keywords = list(KEYWORD_PATTERNS) + list(extra_keywords or [])
        self.message_selectors = list(extra_message_selectors or []) + MESSAGE_SELECTORS

    async def detect(self, browser) -> Optional[TwoFactorChallenge]:
        for kind in (TwoFactorType.SMS, TwoFactorType.TOTP, TwoFactorType.EMAIL, TwoFactorType.UNKNOWN):
            for selector in self.selectors.get(kind, []):
                if await browser.exists(selector):
                    return TwoFactorChallenge(kind, await self.prompt(browser), selector)

        page_text = await browser.body_text(5000)
        if any(pattern.search(page_text) for pattern in self.keywords) and await browser.exists(TEXT_INPUT_SELECTOR):
            return TwoFactorChallenge(TwoFactorType.UNKNOWN, await self.prompt(browser), None)

        return None

    async def prompt(self, browser) -> str:
        for selector in self.message_selectors:
            text = await browser.text_of(selector)
            if text:
                return text
        return DEFAULT_PROMPT


async def enter_code_default(browser, challenge: TwoFactorChallenge, code: str) -> bool:
    """Type the code, opt into remembering the device, and submit."""
    target = challenge.selector if challenge.selector and challenge.selector.startswith("input") else None
    if not await browser.fill(target or CODE_INPUT_SELECTORS, code):
        logger.warning("Could not find code input field")
        return False

    if await browser.exists(REMEMBER_DEVICE_SELECTORS):
        checked = await browser.evaluate(
            "(sel) => { const el = document.querySelector(sel); return !!(el && el.checked); }",
            REMEMBER_DEVICE_SELECTORS,
        )
        if not checked:
            await browser.click(REMEMBER_DEVICE_SELECTORS)

    for selector in SUBMIT_SELECTORS:
        if await browser.click(selector):
            return True
    await browser.press("Enter")
    return True


async def request_new_code_default(browser) -> bool:
    for label in ("resend code", "resend", "send new code", "send a new code"):
        if await browser.click_button_by_text(label):
            return True
    return False


class TwoFactorHooks(ABC):
    """Site-specific steps the orchestrator delegates to the supplier adapter."""

    @property
    @abstractmethod
    def two_factor_detector(self) -> TwoFactorDetector:
        pass

    @abstractmethod
    async def enter_two_factor_code(self, browser, challenge: TwoFactorChallenge, code: str) -> bool:
        pass

    @abstractmethod
    async def request_new_code(self, browser) -> bool:
        pass


class TwoFactorNotifier(ABC):
    """Outbound channel to the person who can read the code."""

    @abstractmethod
    async def two_factor_required(self, request: TwoFactorRequestModel, supplier_name: str):
        pass

    @abstractmethod
    async def code_result(self, user_id: str, request_id: str, success: bool, error: Optional[str] = None,
                          can_retry: Optional[bool] = None, attempts_remaining: Optional[int] = None):
        pass


class TwoFactorOrchestrator:

    def __init__(
        self,
        credential: SupplierCredentialModel,
        supplier_name: str,
        browser,
        hooks: TwoFactorHooks,
        repository: TwoFactorRepository,
        session_factory,
        notifier: TwoFactorNotifier,
        session_store=None,
        request_type: TwoFactorRequestType = TwoFactorRequestType.LOGIN,
        timeout_minutes: int = TIMEOUT_MINUTES,
        poll_interval: float = 2.0,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.credential = credential
        self.supplier_name = supplier_name
        self.browser = browser
        self.hooks = hooks
        self.repository = repository
        self.session_factory = session_factory
        self.notifier = notifier
        self.session_store = session_store
        self.request_type = TwoFactorRequestType(request_type)
        self.timeout_minutes = timeout_minutes
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep
        self.logger = logging.getLogger(f"{__name__}.TwoFactorOrchestrator")

    def _label(self) -> str:
        return f"[{self.supplier_name}]"

    async def detect(self) -> Optional[TwoFactorChallenge]:
        return await self.hooks.two_factor_detector.detect(self.browser)

    def _load(self, request_id: str) -> TwoFactorRequestModel:
        with self.session_factory() as session:
            return self.repository.get_by_id_or_raise(session, request_id)

    def _update(self, request_id: str, mutate: Callable[[TwoFactorRequestModel], None]) -> TwoFactorRequestModel:
        with self.session_factory() as session:
            request = self.repository.get_by_id_or_raise(session, request_id)
            mutate(request)
            return self.repository.save(session, request)

    async def open_request(self, challenge: TwoFactorChallenge, attempts: int = 0) -> TwoFactorRequestModel:
        with self.session_factory() as session:
            request = self.repository.create_request(
                session,
                user_id=self.credential.user_id,
                supplier_credential_id=self.credential.id,
                request_type=self.request_type,
                two_fa_type=challenge.two_fa_type,
                prompt_message=challenge.prompt,
                timeout_minutes=self.timeout_minutes,
                attempts=attempts,
                now=self.clock(),
            )
            credential = session.get(SupplierCredentialModel, self.credential.id)
            if credential is not None:
                credential.two_fa_enabled = True
                credential.two_fa_type = TwoFactorType(challenge.two_fa_type).value
                session.add(credential)
                session.commit()
                self.credential.two_fa_enabled = True
                self.credential.two_fa_type = credential.two_fa_type

        self.logger.info(
            f"{self._label()} Two-factor code required ({challenge.two_fa_type}); request {request.id} "
            f"expires {request.expires_at.isoformat()}"
        )
        await self.notifier.two_factor_required(request, self.supplier_name)
        return request

    async def wait_for_code(self, request: TwoFactorRequestModel) -> str:
        """Block until the human submits, cancels, or the request deadline passes."""
        while True:
            current = self._load(request.id)
            self.browser.touch()

            if current.status == TwoFactorStatus.SUBMITTED:
                return current.code_submitted
            if current.status == TwoFactorStatus.CANCELLED:
                raise TwoFactorCancelledError("Two-factor verification was cancelled", supplier_name=self.supplier_name)
            if current.status != TwoFactorStatus.PENDING or current.expires_at <= self.clock():
                if current.status == TwoFactorStatus.PENDING:
                    self._update(current.id, lambda r: r.mark_expired())
                raise TwoFactorTimeoutError(
                    "No verification code was entered in time", supplier_name=self.supplier_name
                )

            await self.sleep(self.poll_interval)

    def _resumable(self, request_id: str) -> Optional[TwoFactorRequestModel]:
        request = self._load(request_id)
        if request.status == TwoFactorStatus.SUBMITTED and request.expires_at > self.clock():
            return request
        self.logger.info(f"{self._label()} Request {request_id} is {request.status}; opening a new one")
        return None

    async def complete(self, challenge: TwoFactorChallenge, allow_wait: bool = True,
                       resume_request_id: Optional[str] = None) -> Optional[TwoFactorPending]:
        """
        Drive a detected challenge to completion.

        Returns None once the page is past the challenge, or a TwoFactorPending
        when allow_wait is False. Raises AuthenticationError (or a subclass)
        when the code is wrong too many times or never arrives.
        """
        request = self._resumable(resume_request_id) if resume_request_id else None
        code = request.code_submitted if request else None

        if request is None:
            request = await self.open_request(challenge)
            if not allow_wait:
                return TwoFactorPending(
                    request_id=request.id,
                    session_token=request.session_token,
                    request_type=self.request_type.value,
                    two_fa_type=TwoFactorType(request.two_fa_type).value,
                    expires_at=request.expires_at,
                )

        while True:
            if code is None:
                code = await self.wait_for_code(request)

            await self.hooks.enter_two_factor_code(self.browser, challenge, code)
            await self.sleep(RESULT_SETTLE_SECONDS)

            still_challenged = await self.detect()
            if still_challenged is None:
                self._update(request.id, lambda r: r.mark_verified())
                self.logger.info(f"{self._label()} Two-factor verification succeeded")
                await self.notifier.code_result(self.credential.user_id, request.id, True)
                if self.session_store is not None:
                    await self.session_store.save_trusted_device(self.browser)
                return None

            error = await self.browser.text_of(CODE_ERROR_SELECTORS) or "Invalid code"
            failed = self._update(request.id, lambda r: r.mark_failed())

            if failed.attempts < MAX_ATTEMPTS:
                remaining = MAX_ATTEMPTS - failed.attempts
                self.logger.warning(f"{self._label()} Code rejected ({error}); {remaining} attempts left")
                await self.notifier.code_result(
                    self.credential.user_id, request.id, False, error=error,
                    can_retry=True, attempts_remaining=remaining,
                )
                if not await self.hooks.request_new_code(self.browser):
                    self.logger.debug(f"{self._label()} No resend control found; reusing the current challenge")
                challenge = still_challenged
                request = await self.open_request(challenge, attempts=failed.attempts)
                code = None
                continue

            await self.notifier.code_result(
                self.credential.user_id, request.id, False, error=error, can_retry=False, attempts_remaining=0,
            )
            raise AuthenticationError(
                f"Two-factor verification failed after {MAX_ATTEMPTS} attempts: {error}",
                supplier_name=self.supplier_name,
            )
