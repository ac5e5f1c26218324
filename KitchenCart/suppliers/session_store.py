"""
Credential & Session Store

Serializes a logged-in browser (cookies plus local and session storage) into
the credential's encrypted session blob, and puts it back later when the
blob is still inside the supplier's validity window.

A successful restore only means the session is plausible. Callers always
confirm with the adapter's is_authenticated check.
"""

import json
import logging
import re
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from sqlmodel import Session

from KitchenCart.exceptions import EncryptionError
from KitchenCart.models.supplier_credentials import SupplierCredentialModel
from KitchenCart.models.supplier_models import AuthType, SupplierModel
from KitchenCart.repositories.supplier_credential_repository import SupplierCredentialRepository

logger = logging.getLogger(__name__)

PASSWORD_SESSION_TTL = timedelta(hours=6)
TWO_FA_SESSION_TTL = timedelta(hours=24)
WELCOME_URL_SESSION_TTL = timedelta(hours=20)
TRUSTED_DEVICE_TTL = timedelta(days=30)

TRUSTED_COOKIE_PATTERN = re.compile(r"trusted|remember|device", re.IGNORECASE)

_COOKIE_KEYS = ("name", "value", "domain", "path", "expires", "httpOnly", "secure", "sameSite")
_SAME_SITE = {"strict": "Strict", "lax": "Lax", "none": "None"}

SessionFactory = Callable[[], AbstractContextManager]


def session_ttl(auth_type: AuthType) -> timedelta:
    """Suppliers that need a person to re-authenticate get a longer window."""
    auth_type = AuthType(auth_type)
    if auth_type == AuthType.TWO_FA:
        return TWO_FA_SESSION_TTL
    if auth_type == AuthType.WELCOME_URL:
        return WELCOME_URL_SESSION_TTL
    return PASSWORD_SESSION_TTL


@dataclass
class SessionPayload:
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    local_storage: Dict[str, str] = field(default_factory=dict)
    session_storage: Dict[str, str] = field(default_factory=dict)
    saved_at: Optional[str] = None

    @classmethod
    def from_json(cls, raw: str, default_domain: Optional[str] = None) -> "SessionPayload":
        """
        Parse a stored blob. Older rows hold a flat {cookie_name: value} map
        with no storage; those become host cookies on default_domain.

        Raises ValueError on malformed input.
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Session blob is not a JSON object")

        cookies = data.get("cookies")
        if isinstance(cookies, list):
            return cls(
                cookies=[c for c in cookies if isinstance(c, dict) and c.get("name")],
                local_storage=dict(data.get("local_storage") or {}),
                session_storage=dict(data.get("session_storage") or {}),
                saved_at=data.get("saved_at"),
            )

        legacy = cookies if isinstance(cookies, dict) else data
        return cls(cookies=[
            {"name": str(name), "value": str(value), "domain": default_domain, "path": "/"}
            for name, value in legacy.items()
            if not isinstance(value, (dict, list))
        ])

    def to_json(self) -> str:
        return json.dumps({
            "cookies": self.cookies,
            "local_storage": self.local_storage,
            "session_storage": self.session_storage,
            "saved_at": self.saved_at,
        })


def normalize_cookie(cookie: Dict[str, Any], origin: str) -> Dict[str, Any]:
    """Shape a stored cookie so the browser will accept it."""
    clean = {key: cookie[key] for key in _COOKIE_KEYS if cookie.get(key) is not None}
    clean["value"] = str(clean.get("value", ""))
    if not clean.get("domain"):
        clean.pop("path", None)
        clean["url"] = origin
    else:
        clean.setdefault("path", "/")
    same_site = clean.get("sameSite")
    if same_site is not None:
        normalized = _SAME_SITE.get(str(same_site).lower())
        if normalized:
            clean["sameSite"] = normalized
        else:
            clean.pop("sameSite")
    expires = clean.get("expires")
    if expires is not None and not (isinstance(expires, (int, float)) and (expires == -1 or expires > 0)):
        clean.pop("expires")
    return clean


class SessionStore:
    """Session persistence for one credential at one supplier."""

    def __init__(
        self,
        credential: SupplierCredentialModel,
        supplier: SupplierModel,
        repository: SupplierCredentialRepository,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = datetime.utcnow,
        ttl: Optional[timedelta] = None,
    ):
        self.credential = credential
        self.supplier = supplier
        self.repository = repository
        self.session_factory = session_factory
        self.clock = clock
        self.ttl = ttl or session_ttl(supplier.auth_type)

    @property
    def origin(self) -> str:
        parsed = urlparse(self.supplier.base_url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def cookie_domain(self) -> Optional[str]:
        return urlparse(self.supplier.base_url).hostname

    def _label(self) -> str:
        return f"[{self.supplier.name}]"

    def is_within_ttl(self) -> bool:
        last_login = self.credential.last_login_at
        if last_login is None:
            return False
        return self.clock() - last_login <= self.ttl

    def _persist(self, mutate: Callable[[Session], SupplierCredentialModel]):
        with self.session_factory() as session:
            self.credential = mutate(session)

    async def restore(self, browser) -> bool:
        """
        Rehydrate cookies, then navigate to the origin, then storage.
        Never touches the browser when the blob is missing or outside the TTL.
        """
        if not self.credential.encrypted_session_data:
            logger.debug(f"{self._label()} No stored session")
            return False

        if not self.is_within_ttl():
            logger.info(f"{self._label()} Stored session older than {self.ttl}, not restoring")
            return False

        try:
            raw = self.repository.get_session_data(self.credential)
            payload = SessionPayload.from_json(raw, default_domain=self.cookie_domain)
        except (EncryptionError, ValueError) as e:
            logger.warning(f"{self._label()} Stored session unreadable: {e}")
            return False

        await browser.add_cookies([normalize_cookie(c, self.origin) for c in payload.cookies])
        await browser.goto(self.origin)
        if payload.local_storage:
            await browser.write_storage("local", payload.local_storage)
        if payload.session_storage:
            await browser.write_storage("session", payload.session_storage)

        logger.info(
            f"{self._label()} Session restored (cookies: {len(payload.cookies)}, "
            f"localStorage: {len(payload.local_storage)}, sessionStorage: {len(payload.session_storage)})"
        )
        return True

    async def save(self, browser):
        payload = SessionPayload(
            cookies=await browser.cookies(),
            local_storage=await browser.read_storage("local"),
            session_storage=await browser.read_storage("session"),
            saved_at=self.clock().isoformat(),
        )

        def mutate(session: Session) -> SupplierCredentialModel:
            credential = self.credential
            credential.mark_active()
            credential.last_login_at = self.clock()
            return self.repository.set_session_data(session, credential, payload.to_json())

        self._persist(mutate)
        logger.info(f"{self._label()} Session saved (cookies: {len(payload.cookies)})")

    async def restore_trusted_device(self, browser) -> bool:
        if not self.credential.trusted_device_valid(self.clock()):
            return False

        try:
            cookie = json.loads(self.repository.get_trusted_device(self.credential))
        except (EncryptionError, ValueError, TypeError) as e:
            logger.warning(f"{self._label()} Trusted device token unreadable: {e}")
            return False

        cookie.setdefault("domain", self.cookie_domain)
        await browser.add_cookies([normalize_cookie(cookie, self.origin)])
        logger.info(f"{self._label()} Trusted device cookie restored")
        return True

    async def save_trusted_device(self, browser, ttl: timedelta = TRUSTED_DEVICE_TTL) -> bool:
        cookies = await browser.cookies()
        match = next((c for c in cookies if TRUSTED_COOKIE_PATTERN.search(c.get("name", ""))), None)
        if match is None:
            logger.debug(f"{self._label()} No trusted device cookie offered")
            return False

        token = json.dumps({key: match[key] for key in ("name", "value", "domain", "path") if match.get(key)})
        expires_at = self.clock() + ttl
        self._persist(lambda session: self.repository.set_trusted_device(session, self.credential, token, expires_at))
        logger.info(f"{self._label()} Trusted device token saved until {expires_at.isoformat()}")
        return True

    def clear(self):
        self._persist(lambda session: self.repository.disconnect(session, self.credential))
        logger.info(f"{self._label()} Stored session cleared")
