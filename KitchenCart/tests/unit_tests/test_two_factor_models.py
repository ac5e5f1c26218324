"""
Unit tests for the two-factor request state machine.
"""

from datetime import datetime, timedelta

import pytest

from KitchenCart.exceptions import InvalidTwoFactorTransitionError
from KitchenCart.models.two_factor_models import MAX_ATTEMPTS, TwoFactorRequestModel, TwoFactorStatus


def make_request(**fields):
    fields.setdefault("user_id", "user-1")
    fields.setdefault("supplier_credential_id", "cred-1")
    return TwoFactorRequestModel(**fields)


class TestTwoFactorTransitions:

    def test_submit_then_verify(self):
        request = make_request()

        request.record_attempt("123456")
        assert request.status == TwoFactorStatus.SUBMITTED
        assert request.attempts == 1
        assert request.code_submitted == "123456"

        request.mark_verified()
        assert request.status == TwoFactorStatus.VERIFIED
        assert request.verified_at is not None

    def test_submit_then_fail(self):
        request = make_request()
        request.record_attempt("000000")
        request.mark_failed()

        assert request.status == TwoFactorStatus.FAILED

    @pytest.mark.parametrize("method", ["mark_verified", "mark_failed"])
    def test_pending_cannot_skip_submission(self, method):
        request = make_request()

        with pytest.raises(InvalidTwoFactorTransitionError) as exc_info:
            getattr(request, method)()

        assert exc_info.value.from_status == "pending"
        assert request.status == TwoFactorStatus.PENDING

    def test_submitted_cannot_be_cancelled(self):
        request = make_request()
        request.record_attempt("123456")

        with pytest.raises(InvalidTwoFactorTransitionError):
            request.mark_cancelled()

    @pytest.mark.parametrize("terminal", [
        TwoFactorStatus.VERIFIED, TwoFactorStatus.FAILED, TwoFactorStatus.EXPIRED, TwoFactorStatus.CANCELLED,
    ])
    def test_terminal_states_are_final(self, terminal):
        request = make_request(status=terminal)

        with pytest.raises(InvalidTwoFactorTransitionError):
            request.record_attempt("123456")
        with pytest.raises(InvalidTwoFactorTransitionError):
            request.mark_expired()

    def test_attempt_not_counted_on_rejected_transition(self):
        request = make_request(status=TwoFactorStatus.EXPIRED, attempts=1)

        with pytest.raises(InvalidTwoFactorTransitionError):
            request.record_attempt("123456")

        assert request.attempts == 1
        assert request.code_submitted is None


class TestTwoFactorExpiry:

    def test_expiry_and_time_remaining(self):
        now = datetime(2026, 3, 2, 9, 30, 0)
        request = make_request(expires_at=now + timedelta(minutes=5))

        assert request.is_active(now)
        assert request.time_remaining(now) == 300
        assert request.is_expired(now + timedelta(minutes=5))
        assert request.time_remaining(now + timedelta(minutes=6)) == 0

    def test_attempts_remaining(self):
        request = make_request(attempts=MAX_ATTEMPTS - 1)

        assert request.attempts_remaining == 1
        assert request.can_retry()

        request.attempts = MAX_ATTEMPTS
        assert request.attempts_remaining == 0
        assert not request.can_retry()

    def test_to_dict_reports_remaining_attempts(self):
        request = make_request(attempts=1)

        data = request.to_dict()

        assert data["attempts_remaining"] == MAX_ATTEMPTS - 1
        assert "code_submitted" not in data
