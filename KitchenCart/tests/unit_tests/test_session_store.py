"""
Unit tests for session persistence and the restore TTL gate.
"""

import json
from datetime import datetime, timedelta

import pytest

from KitchenCart.models.supplier_credentials import SupplierCredentialModel
from KitchenCart.models.supplier_models import AuthType
from KitchenCart.repositories.two_factor_repository import TwoFactorRepository
from KitchenCart.suppliers.session_store import (
    PASSWORD_SESSION_TTL,
    TRUSTED_DEVICE_TTL,
    TWO_FA_SESSION_TTL,
    WELCOME_URL_SESSION_TTL,
    SessionPayload,
    normalize_cookie,
    session_ttl,
)
from conftest import DemoTwoFactorSupplier

STORED_SESSION = {
    "cookies": [{"name": "sid", "value": "abc123", "domain": "demo.example.com", "path": "/"}],
    "local_storage": {"cart_token": "tok-1"},
    "session_storage": {},
    "saved_at": "2026-03-02T08:00:00",
}


class TestSessionTtl:

    def test_ttl_per_auth_type(self):
        assert session_ttl(AuthType.PASSWORD) == PASSWORD_SESSION_TTL == timedelta(hours=6)
        assert session_ttl(AuthType.TWO_FA) == TWO_FA_SESSION_TTL == timedelta(hours=24)
        assert session_ttl(AuthType.WELCOME_URL) == WELCOME_URL_SESSION_TTL == timedelta(hours=20)

    def test_ttl_accepts_raw_value(self):
        assert session_ttl("two_fa") == timedelta(hours=24)


class TestSessionPayload:

    def test_structured_blob(self):
        payload = SessionPayload.from_json(json.dumps(STORED_SESSION))

        assert payload.cookies[0]["name"] == "sid"
        assert payload.local_storage == {"cart_token": "tok-1"}
        assert payload.saved_at == "2026-03-02T08:00:00"

    def test_legacy_flat_cookie_map(self):
        payload = SessionPayload.from_json(json.dumps({"sid": "abc", "pref": "1"}), default_domain="demo.example.com")

        assert {c["name"] for c in payload.cookies} == {"sid", "pref"}
        assert all(c["domain"] == "demo.example.com" for c in payload.cookies)
        assert payload.local_storage == {}

    def test_cookies_without_name_dropped(self):
        blob = {"cookies": [{"value": "orphan"}, {"name": "sid", "value": "1"}]}
        payload = SessionPayload.from_json(json.dumps(blob))

        assert [c["name"] for c in payload.cookies] == ["sid"]

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            SessionPayload.from_json("[1, 2, 3]")


class TestNormalizeCookie:

    def test_hostless_cookie_gets_origin_url(self):
        cookie = normalize_cookie({"name": "sid", "value": 5, "path": "/"}, "https://demo.example.com")

        assert cookie["url"] == "https://demo.example.com"
        assert "path" not in cookie
        assert cookie["value"] == "5"

    def test_same_site_normalized(self):
        cookie = normalize_cookie(
            {"name": "sid", "value": "1", "domain": "demo.example.com", "sameSite": "lax"}, "https://demo.example.com"
        )
        assert cookie["sameSite"] == "Lax"
        assert cookie["path"] == "/"

    def test_invalid_same_site_and_expiry_dropped(self):
        cookie = normalize_cookie(
            {"name": "sid", "value": "1", "domain": "demo.example.com", "sameSite": "sometimes", "expires": 0},
            "https://demo.example.com",
        )
        assert "sameSite" not in cookie
        assert "expires" not in cookie


class TestSessionStoreRestore:

    @pytest.mark.asyncio
    async def test_expired_blob_never_touches_browser(self, make_credential, make_adapter, browser):
        credential = make_credential(session_data=STORED_SESSION, login_age=timedelta(hours=7))
        adapter = make_adapter(credential)

        restored = await adapter.store.restore(browser)

        assert restored is False
        assert browser.interactions == 0

    @pytest.mark.asyncio
    async def test_missing_blob_never_touches_browser(self, make_credential, make_adapter, browser):
        credential = make_credential(login_age=timedelta(minutes=5))
        adapter = make_adapter(credential)

        assert await adapter.store.restore(browser) is False
        assert browser.interactions == 0

    @pytest.mark.asyncio
    async def test_restore_within_ttl(self, make_credential, make_adapter, browser):
        credential = make_credential(session_data=STORED_SESSION, login_age=timedelta(hours=1))
        adapter = make_adapter(credential)

        restored = await adapter.store.restore(browser)

        assert restored is True
        assert browser.added_cookies[0]["name"] == "sid"
        # Cookies first, then the origin, then storage
        assert browser.gotos == ["https://demo.example.com"]
        assert browser.storage_writes == [("local", {"cart_token": "tok-1"})]

    @pytest.mark.asyncio
    async def test_legacy_blob_restored_as_host_cookies(self, make_credential, make_adapter, browser):
        credential = make_credential(session_data={"sid": "legacy"}, login_age=timedelta(hours=1))
        adapter = make_adapter(credential)

        assert await adapter.store.restore(browser) is True
        assert browser.added_cookies == [
            {"name": "sid", "value": "legacy", "domain": "demo.example.com", "path": "/"}
        ]
        assert browser.storage_writes == []

    @pytest.mark.asyncio
    async def test_save_marks_credential_active(self, make_credential, make_adapter, credential_repository, browser):
        credential = make_credential()
        adapter = make_adapter(credential)
        browser.cookie_jar = [{"name": "sid", "value": "fresh", "domain": "demo.example.com", "path": "/"}]
        browser.storage["local"] = {"k": "v"}

        await adapter.store.save(browser)

        saved = adapter.store.credential
        assert saved.status == "active"
        assert saved.last_login_at is not None
        blob = json.loads(credential_repository.get_session_data(saved))
        assert blob["cookies"][0]["value"] == "fresh"
        assert blob["local_storage"] == {"k": "v"}
        # Stored encrypted, never as plaintext JSON
        assert "fresh" not in saved.encrypted_session_data

    @pytest.mark.asyncio
    async def test_unreadable_blob_is_not_restored(self, make_credential, make_adapter, session_factory, browser):
        credential = make_credential(login_age=timedelta(hours=1))
        with session_factory() as session:
            credential.encrypted_session_data = "not-a-token"
            session.add(credential)
        adapter = make_adapter(credential)

        assert await adapter.store.restore(browser) is False
        assert browser.interactions == 0


REMEMBER_COOKIE = {"name": "remember_device", "value": "dev-77", "domain": "demo.example.com", "path": "/"}


class TestTrustedDevice:

    @pytest.mark.asyncio
    async def test_verified_code_stores_remember_cookie(self, make_credential, make_adapter, credential_repository,
                                                        session_factory, browser):
        credential = make_credential(DemoTwoFactorSupplier)
        browser.require_sms_code()
        browser.cookie_jar = [{"name": "sid", "value": "fresh", "domain": "demo.example.com", "path": "/"},
                              dict(REMEMBER_COOKIE)]
        repository = TwoFactorRepository()

        async def submit_while_waiting(seconds):
            with session_factory() as session:
                for request in repository.get_pending_for_credential(session, credential.id):
                    request.record_attempt("482913")
                    session.add(request)

        adapter = make_adapter(credential, DemoTwoFactorSupplier, sleep=submit_while_waiting)

        await adapter.authenticate(browser)

        with session_factory() as session:
            stored = session.get(SupplierCredentialModel, credential.id)
        assert json.loads(credential_repository.get_trusted_device(stored)) == REMEMBER_COOKIE
        assert stored.trusted_device_expires_at > datetime.utcnow() + TRUSTED_DEVICE_TTL - timedelta(minutes=1)
        assert stored.trusted_device_valid() is True
        assert stored.encrypted_session_data is not None

    @pytest.mark.asyncio
    async def test_trusted_device_signs_in_without_login(self, make_credential, make_adapter, credential_repository,
                                                         session_factory, browser):
        credential = make_credential(DemoTwoFactorSupplier)
        token = json.dumps({"name": "remember_device", "value": "dev-77", "path": "/"})
        with session_factory() as session:
            credential = credential_repository.set_trusted_device(
                session, credential, token, datetime.utcnow() + timedelta(days=10)
            )
        browser.present.add(".account-menu")
        adapter = make_adapter(credential, DemoTwoFactorSupplier)

        outcome = await adapter.authenticate(browser, allow_interactive_login=False)

        assert outcome.method == "trusted_device"
        assert browser.added_cookies == [REMEMBER_COOKIE]
        assert browser.fills == []

    @pytest.mark.asyncio
    async def test_expired_trusted_device_is_not_restored(self, make_credential, make_adapter, credential_repository,
                                                          session_factory, browser):
        credential = make_credential(DemoTwoFactorSupplier)
        with session_factory() as session:
            credential = credential_repository.set_trusted_device(
                session, credential, json.dumps(REMEMBER_COOKIE), datetime.utcnow() - timedelta(minutes=1)
            )
        adapter = make_adapter(credential, DemoTwoFactorSupplier)

        assert await adapter.store.restore_trusted_device(browser) is False
        assert browser.interactions == 0

    @pytest.mark.asyncio
    async def test_no_remember_cookie_saves_nothing(self, make_credential, make_adapter, browser):
        adapter = make_adapter(make_credential(DemoTwoFactorSupplier), DemoTwoFactorSupplier)
        browser.cookie_jar = [{"name": "sid", "value": "fresh", "domain": "demo.example.com", "path": "/"}]

        assert await adapter.store.save_trusted_device(browser) is False
        assert adapter.store.credential.trusted_device_token is None
