"""
Flow tests for the SecurityOrchestrator: signup, login, onboarding and 2FA.
"""

import pytest

from app.core.exceptions import (
    AlreadyVerifiedError,
    AttemptsExceededError,
    AuthenticationRequired,
    ConflictError,
    InvalidCredentialsError,
    LockedAccountError,
    NotFoundError,
    RateLimitExceeded,
    ValidationError,
)
from app.core.two_factor import VerificationStep
from app.models.backup_code import BackupCode
from app.models.user import User
from app.schemas.user import SignupRequest
from app.services.security_service import SecurityOrchestrator

# Matches the make_user fixture default
TEST_PASSWORD = "Str0ng!Passw0rd"


def signup_request(**overrides):
    data = {
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "password": TEST_PASSWORD,
        "phone": "+15551234567",
        "gender": "FEMALE",
        "terms_accepted": True,
    }
    data.update(overrides)
    return SignupRequest(**data)


def enrol(orchestrator, user, clock):
    """Run 2FA setup to completion and return the enrolment."""
    enrolment = orchestrator.begin_two_fa_setup(user)
    code = orchestrator.two_factor.current_code(enrolment.secret, clock())
    orchestrator.confirm_two_fa_setup(user, enrolment.setup_token, code)
    return enrolment


class TestSignup:
    """Account creation"""

    def test_creates_inactive_user_and_sends_link(self, orchestrator, email_sender):
        result = orchestrator.signup(signup_request(), "10.0.0.1")

        user = result.user
        assert user.is_active is False
        assert user.email_verified_at is None
        assert user.terms_accepted_at is not None
        assert user.password_hash != TEST_PASSWORD
        assert result.email_sent is True
        assert email_sender.sent[0]["email"] == "ada@example.com"

    def test_email_failure_does_not_fail_signup(self, orchestrator, email_sender):
        email_sender.delivered = False
        result = orchestrator.signup(signup_request(), "10.0.0.1")
        assert result.email_sent is False
        assert result.user.id is not None

    def test_duplicate_email_conflicts(self, orchestrator):
        orchestrator.signup(signup_request(), "10.0.0.1")
        with pytest.raises(ConflictError):
            orchestrator.signup(signup_request(email="ADA@example.com", phone="+15559999999"), "10.0.0.1")

    def test_duplicate_phone_conflicts(self, orchestrator):
        orchestrator.signup(signup_request(), "10.0.0.1")
        with pytest.raises(ConflictError):
            orchestrator.signup(signup_request(email="other@example.com"), "10.0.0.1")


class TestLogin:
    """Password login, lockout and rehash"""

    def test_success_returns_tokens_and_step(self, orchestrator, make_user):
        user = make_user(email="bob@example.com")
        result = orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.0.1")
        assert result.tokens.access_token
        assert result.requires_two_fa is False
        assert result.step is VerificationStep.NEEDS_EMAIL
        assert result.user.id == user.id

    def test_unknown_email_is_generic_failure(self, orchestrator):
        with pytest.raises(InvalidCredentialsError) as exc:
            orchestrator.login("ghost@example.com", TEST_PASSWORD, "10.0.0.1")
        assert exc.value.message == "Invalid email or password"

    def test_five_failures_lock_even_correct_password(self, orchestrator, make_user, clock):
        make_user(email="bob@example.com")
        for i in range(5):
            with pytest.raises(InvalidCredentialsError):
                orchestrator.login("bob@example.com", "Wrong!Pass1", f"10.0.0.{i}")

        with pytest.raises(LockedAccountError) as exc:
            orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.1.1")
        assert exc.value.retry_after > 0

        clock.advance(minutes=16)
        assert orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.1.1").tokens is not None

    def test_ip_rate_limit(self, orchestrator, make_user):
        make_user(email="bob@example.com")
        for _ in range(5):
            orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.0.1")
        with pytest.raises(RateLimitExceeded):
            orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.0.1")

    def test_legacy_hash_upgraded_on_login(self, orchestrator, make_user):
        from passlib.context import CryptContext

        legacy = CryptContext(schemes=["bcrypt"]).hash(TEST_PASSWORD)
        user = make_user(email="old@example.com", password_hash=legacy)

        orchestrator.login("old@example.com", TEST_PASSWORD, "10.0.0.1")

        assert not user.password_hash.startswith("$2")
        assert orchestrator.vault.verify_password(TEST_PASSWORD, user.password_hash)

    def test_refresh_issues_new_pair(self, orchestrator, make_user):
        make_user(email="bob@example.com")
        result = orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.0.1")
        assert orchestrator.refresh_session(result.tokens.refresh_token).access_token

    def test_access_token_is_not_a_refresh_token(self, orchestrator, make_user):
        make_user(email="bob@example.com")
        result = orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.0.1")
        with pytest.raises(AuthenticationRequired):
            orchestrator.refresh_session(result.tokens.access_token)


class TestEmailAndPhone:
    """email -> phone onboarding"""

    def test_email_link_activates_account(self, orchestrator, email_sender):
        orchestrator.signup(signup_request(), "10.0.0.1")
        token = email_sender.sent[0]["token"]

        user = orchestrator.verify_email(token, "10.0.0.1")
        assert user.is_active is True
        assert user.email_verified_at is not None

        with pytest.raises(AlreadyVerifiedError):
            orchestrator.verify_email(token, "10.0.0.2")

    def test_resend_for_verified_email_rejected(self, orchestrator, make_user):
        make_user(email="bob@example.com", email_verified=True)
        with pytest.raises(AlreadyVerifiedError):
            orchestrator.resend_email_verification("bob@example.com")

    def test_resend_for_unknown_email(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.resend_email_verification("ghost@example.com")

    def test_sms_requires_verified_email(self, orchestrator, make_user):
        make_user(phone="+15550001111")
        with pytest.raises(ValidationError):
            orchestrator.send_sms_code("+15550001111")

    def test_sms_code_verifies_phone(self, orchestrator, make_user, sms_sender):
        user = make_user(phone="+15550001111", email_verified=True)
        challenge = orchestrator.send_sms_code("(555) 000-1111")

        assert challenge.masked_phone == "+1******1111"
        assert sms_sender.sent[0]["phone"] == "+15550001111"

        orchestrator.verify_sms_code(challenge.token, sms_sender.sent[0]["code"], "10.0.0.1")
        assert user.phone_verified_at is not None

    def test_sms_verified_even_if_request_purged_right_after(
        self, orchestrator, make_user, sms_sender, clock, monkeypatch
    ):
        user = make_user(phone="+15550001111", email_verified=True)
        challenge = orchestrator.send_sms_code("+15550001111")
        manager = orchestrator.verifications
        redeem = manager.redeem

        def redeem_then_purge(*args, **kwargs):
            result = redeem(*args, **kwargs)
            clock.advance(minutes=11)
            assert manager.cleanup_expired() == 1
            return result

        monkeypatch.setattr(manager, "redeem", redeem_then_purge)

        orchestrator.verify_sms_code(challenge.token, sms_sender.sent[0]["code"], "10.0.0.1")
        assert user.phone_verified_at == clock()

    def test_sms_wrong_codes_exhaust_attempts(self, orchestrator, make_user, sms_sender):
        make_user(phone="+15550001111", email_verified=True)
        challenge = orchestrator.send_sms_code("+15550001111")
        code = sms_sender.sent[0]["code"]
        wrong = "000000" if code != "000000" else "111111"

        for i in range(5):
            with pytest.raises(ValidationError):
                orchestrator.verify_sms_code(challenge.token, wrong, f"10.0.0.{i}")
        with pytest.raises(AttemptsExceededError):
            orchestrator.verify_sms_code(challenge.token, code, "10.0.1.1")

    def test_logged_in_user_can_change_number(self, orchestrator, make_user):
        user = make_user(phone="+15550001111", email_verified=True, phone_verified=True)
        orchestrator.send_sms_code("+15550002222", user=user)
        assert user.phone == "+15550002222"
        assert user.phone_verified_at is None

    def test_profile_update_can_remove_phone(self, orchestrator, make_user):
        user = make_user(phone="+15550001111", email_verified=True, phone_verified=True)

        orchestrator.update_profile(user, {"phone": ""})

        assert user.phone is None
        assert user.phone_verified_at is None
        assert orchestrator.security_settings(user)["verification_step"] == "needs_phone"

    def test_profile_update_needs_a_field(self, orchestrator, make_user):
        with pytest.raises(ValidationError):
            orchestrator.update_profile(make_user(), {})

    def test_number_of_another_account_conflicts(self, orchestrator, make_user):
        make_user(phone="+15550001111")
        user = make_user(phone="+15550002222", email_verified=True)
        with pytest.raises(ConflictError):
            orchestrator.send_sms_code("+15550001111", user=user)

    def test_sms_rate_limited_per_number(self, orchestrator, make_user):
        make_user(phone="+15550001111", email_verified=True)
        for _ in range(3):
            orchestrator.send_sms_code("+15550001111")
        with pytest.raises(RateLimitExceeded):
            orchestrator.send_sms_code("+15550001111")


class TestTwoFactor:
    """2FA setup, login and disable"""

    def test_setup_requires_verified_phone(self, orchestrator, make_user):
        user = make_user(email_verified=True)
        with pytest.raises(ValidationError):
            orchestrator.begin_two_fa_setup(user)

    def test_setup_stores_encrypted_secret_and_hashed_codes(self, orchestrator, make_user, db_session):
        user = make_user(email_verified=True, phone_verified=True)
        enrolment = orchestrator.begin_two_fa_setup(user)

        assert user.two_fa_enabled is False
        assert user.two_fa_secret != enrolment.secret
        assert orchestrator.vault.decrypt_field(user.two_fa_secret) == enrolment.secret
        assert enrolment.qr_code_url.startswith("data:image/png;base64,")
        assert len(enrolment.backup_codes) == 10

        stored = db_session.query(BackupCode).filter(BackupCode.user_id == user.id).all()
        assert len(stored) == 10
        assert not any(code in row.code_hash for row in stored for code in enrolment.backup_codes)

    def test_confirm_enables_two_fa(self, orchestrator, make_user, clock):
        user = make_user(email_verified=True, phone_verified=True)
        enrol(orchestrator, user, clock)
        assert user.two_fa_enabled is True

    def test_confirm_with_wrong_code(self, orchestrator, make_user, clock):
        user = make_user(email_verified=True, phone_verified=True)
        enrolment = orchestrator.begin_two_fa_setup(user)
        code = orchestrator.two_factor.current_code(enrolment.secret, clock())
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(ValidationError):
            orchestrator.confirm_two_fa_setup(user, enrolment.setup_token, wrong)
        assert user.two_fa_enabled is False

    def test_login_with_two_fa_needs_second_step(self, orchestrator, make_user, clock):
        user = make_user(email="bob@example.com", email_verified=True, phone_verified=True)
        enrolment = enrol(orchestrator, user, clock)

        result = orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.0.1")
        assert result.requires_two_fa is True
        assert result.tokens is None

        code = orchestrator.two_factor.current_code(enrolment.secret, clock())
        login = orchestrator.verify_two_fa_login(result.challenge_token, code=code)
        assert login.tokens.access_token
        assert login.backup_code_used is False

    def test_backup_code_is_single_use(self, orchestrator, make_user, clock):
        user = make_user(email="bob@example.com", email_verified=True, phone_verified=True)
        enrolment = enrol(orchestrator, user, clock)
        backup = enrolment.backup_codes[0]

        challenge = orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.0.1").challenge_token
        login = orchestrator.verify_two_fa_login(challenge, backup_code=backup.lower())
        assert login.backup_code_used is True

        with pytest.raises(ValidationError):
            orchestrator.verify_two_fa_login(challenge, backup_code=backup)

        status = orchestrator.backup_code_status(user)
        assert (status.total, status.used, status.remaining) == (10, 1, 9)
        assert status.last_used_at == clock()

    def test_backup_code_race_has_one_winner(
        self, orchestrator, make_user, clock, components, other_session, db_session
    ):
        user = make_user(email="bob@example.com", email_verified=True, phone_verified=True)
        enrolment = enrol(orchestrator, user, clock)
        backup = enrolment.backup_codes[0]
        challenge = orchestrator.login("bob@example.com", TEST_PASSWORD, "10.0.0.1").challenge_token

        # A concurrent request that already read the user and the unused codes
        racer = SecurityOrchestrator(other_session, **components)
        stale = other_session.get(User, user.id)
        assert all(not code.used for code in stale.backup_codes)

        assert orchestrator.verify_two_fa_login(challenge, backup_code=backup).backup_code_used is True
        with pytest.raises(ValidationError):
            racer.verify_two_fa_login(challenge, backup_code=backup)

        db_session.expire_all()
        assert db_session.query(BackupCode).filter(BackupCode.used.is_(True)).count() == 1

    def test_bad_challenge_token(self, orchestrator):
        with pytest.raises(AuthenticationRequired):
            orchestrator.verify_two_fa_login("not-a-jwt", code="123456")

    def test_disable_with_totp(self, orchestrator, make_user, clock, db_session):
        user = make_user(email_verified=True, phone_verified=True)
        enrolment = enrol(orchestrator, user, clock)

        code = orchestrator.two_factor.current_code(enrolment.secret, clock())
        orchestrator.disable_two_fa(user, code=code)

        assert user.two_fa_enabled is False
        assert user.two_fa_secret is None
        assert db_session.query(BackupCode).filter(BackupCode.user_id == user.id).count() == 0

    def test_security_settings(self, orchestrator, make_user, clock):
        user = make_user(email_verified=True, phone_verified=True)
        enrol(orchestrator, user, clock)

        settings = orchestrator.security_settings(user)
        assert settings["two_fa_enabled"] is True
        assert settings["verification_step"] == "complete"
        assert settings["backup_codes"] == {"total": 10, "used": 0, "remaining": 10}
        assert settings["locked_until"] is None
