"""
Tests for verification request lifecycle: creation, attempts, expiry and cleanup.
"""

import re

import pytest

from app.core.exceptions import (
    AlreadyVerifiedError,
    AttemptsExceededError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from app.core.verification import (
    MAX_ATTEMPTS,
    VerificationManager,
    VerificationOutcome,
    codes_match,
    generate_verification_code,
    raise_for_outcome,
)
from app.models.verification_request import VerificationRequest, VerificationType


@pytest.fixture
def manager(db_session, clock):
    return VerificationManager(db_session, clock)


@pytest.fixture
def user(make_user):
    return make_user()


class TestCreateRequest:
    """Tokens, codes and expiry per type"""

    def test_email_request_has_long_token_and_no_code(self, manager, user, clock):
        issued = manager.create_request(user.id, VerificationType.EMAIL_VERIFICATION)
        assert re.match(r"^[0-9a-f]{64}$", issued.token)
        assert issued.code is None
        assert (issued.expires - clock()).total_seconds() == 24 * 3600

    def test_sms_request_has_six_digit_code(self, manager, user, clock):
        issued = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        assert re.match(r"^\d{6}$", issued.code)
        assert (issued.expires - clock()).total_seconds() == 10 * 60

    def test_tokens_are_unique(self, manager, user):
        tokens = {manager.create_request(user.id, VerificationType.EMAIL_VERIFICATION).token for _ in range(20)}
        assert len(tokens) == 20

    def test_expired_requests_of_same_type_are_purged(self, manager, user, clock, db_session):
        old = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        keep = manager.create_request(user.id, VerificationType.EMAIL_VERIFICATION)
        clock.advance(minutes=11)

        manager.create_request(user.id, VerificationType.SMS_VERIFICATION)

        assert manager.get_by_token(old.token) is None
        assert manager.get_by_token(keep.token) is not None

    def test_codes_are_in_range(self):
        for _ in range(200):
            assert 100000 <= int(generate_verification_code()) <= 999999


class TestVerifyByCode:
    """SMS codes: attempts, expiry, single use"""

    def test_correct_code_verifies_once(self, manager, user):
        issued = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        assert manager.verify_by_code(issued.token, issued.code) is True
        assert manager.check_code(issued.token, issued.code) is VerificationOutcome.ALREADY_VERIFIED

    def test_wrong_code_counts_an_attempt(self, manager, user):
        issued = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        wrong = "000000" if issued.code != "000000" else "111111"
        assert manager.check_code(issued.token, wrong) is VerificationOutcome.MISMATCH
        assert manager.get_by_token(issued.token).attempts == 1

    def test_five_wrong_codes_lock_the_request(self, manager, user):
        issued = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        wrong = "000000" if issued.code != "000000" else "111111"
        for _ in range(MAX_ATTEMPTS):
            assert manager.verify_by_code(issued.token, wrong) is False

        assert manager.check_code(issued.token, issued.code) is VerificationOutcome.ATTEMPTS_EXCEEDED
        request = manager.get_by_token(issued.token)
        assert request.verified is False
        assert request.attempts == MAX_ATTEMPTS

    def test_expired_request_rejected_even_with_right_code(self, manager, user, clock):
        issued = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        clock.advance(minutes=10)
        assert manager.check_code(issued.token, issued.code) is VerificationOutcome.EXPIRED

    def test_unknown_token(self, manager):
        assert manager.check_code("nope", "123456") is VerificationOutcome.NOT_FOUND


class TestConcurrentRedemption:
    """A caller holding a stale copy of the request cannot beat the limits"""

    def test_stale_reader_cannot_exceed_attempts(self, manager, user, other_session, clock, db_session):
        issued = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        wrong = "000000" if issued.code != "000000" else "111111"

        racer = VerificationManager(other_session, clock)
        assert racer.get_by_token(issued.token).attempts == 0

        for _ in range(MAX_ATTEMPTS):
            manager.check_code(issued.token, wrong)

        assert racer.check_code(issued.token, issued.code) is VerificationOutcome.ATTEMPTS_EXCEEDED

        db_session.expire_all()
        request = manager.get_by_token(issued.token)
        assert request.attempts == MAX_ATTEMPTS
        assert request.verified is False

    def test_second_winner_sees_already_verified(self, manager, user, other_session, clock):
        issued = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        racer = VerificationManager(other_session, clock)

        def verified_elsewhere(request):
            # The other request lands between this one's attempt and its commit
            assert racer.verify_by_code(issued.token, issued.code) is True
            return True

        result = manager.redeem(issued.token, verified_elsewhere)

        assert result.outcome is VerificationOutcome.ALREADY_VERIFIED
        assert result.user_id == user.id

    def test_redeem_reports_owner(self, manager, user):
        issued = manager.create_request(user.id, VerificationType.EMAIL_VERIFICATION)

        result = manager.redeem_link(issued.token)

        assert result.verified is True
        assert result.user_id == user.id


class TestVerifyByToken:
    """Email links: possession of the token is the proof"""

    def test_email_link_verifies(self, manager, user):
        issued = manager.create_request(user.id, VerificationType.EMAIL_VERIFICATION)
        assert manager.verify_by_token_only(issued.token) is True
        assert manager.verify_by_token_only(issued.token) is False

    def test_code_requests_cannot_be_redeemed_by_token(self, manager, user):
        issued = manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        assert manager.check_token_only(issued.token) is VerificationOutcome.WRONG_TYPE
        assert manager.get_by_token(issued.token).attempts == 0

    def test_only_link_types_allowed(self, manager):
        with pytest.raises(ValueError):
            manager.check_token_only("x", allowed_types={VerificationType.SMS_VERIFICATION})


class TestCleanup:
    """Hourly purge of expired requests"""

    def test_removes_only_expired(self, manager, user, clock, db_session):
        manager.create_request(user.id, VerificationType.SMS_VERIFICATION)
        manager.create_request(user.id, VerificationType.TWO_FA_SETUP)
        live = manager.create_request(user.id, VerificationType.EMAIL_VERIFICATION)
        clock.advance(hours=2)

        assert manager.cleanup_expired() == 2
        remaining = db_session.query(VerificationRequest).all()
        assert [r.token for r in remaining] == [live.token]


class TestOutcomeErrors:
    """Outcomes map onto typed errors"""

    @pytest.mark.parametrize("outcome,error", [
        (VerificationOutcome.NOT_FOUND, NotFoundError),
        (VerificationOutcome.EXPIRED, ExpiredError),
        (VerificationOutcome.ALREADY_VERIFIED, AlreadyVerifiedError),
        (VerificationOutcome.ATTEMPTS_EXCEEDED, AttemptsExceededError),
        (VerificationOutcome.WRONG_TYPE, ValidationError),
        (VerificationOutcome.MISMATCH, ValidationError),
    ])
    def test_failed_outcomes_raise(self, outcome, error):
        with pytest.raises(error):
            raise_for_outcome(outcome)

    def test_verified_does_not_raise(self):
        raise_for_outcome(VerificationOutcome.VERIFIED)

    def test_codes_match(self):
        assert codes_match("123456", " 123456 ") is True
        assert codes_match("123456", "654321") is False
        assert codes_match(None, "123456") is False
