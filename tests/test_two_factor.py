"""
Tests for TOTP codes, backup codes and onboarding step derivation.
"""

from datetime import timedelta
from types import SimpleNamespace

import pyotp
import pytest

from app.core.two_factor import TwoFactorAuth, VerificationStep, verification_step
from app.models.backup_code import BackupCode


@pytest.fixture
def two_factor():
    return TwoFactorAuth(issuer="Naggery")


class TestTotp:
    """RFC 6238 codes with one step of drift"""

    def test_secret_is_base32_160_bits(self, two_factor):
        secret = two_factor.generate_secret()
        assert len(secret) == 32
        pyotp.TOTP(secret).now()

    def test_current_code_verifies(self, two_factor, clock):
        secret = two_factor.generate_secret()
        code = two_factor.current_code(secret, clock())
        assert two_factor.verify_code(code, secret, for_time=clock()) is True

    def test_adjacent_steps_accepted_older_rejected(self, two_factor, clock):
        secret = two_factor.generate_secret()
        previous = two_factor.current_code(secret, clock() - timedelta(seconds=30))
        next_code = two_factor.current_code(secret, clock() + timedelta(seconds=30))
        stale = two_factor.current_code(secret, clock() - timedelta(seconds=90))

        assert two_factor.verify_code(previous, secret, for_time=clock()) is True
        assert two_factor.verify_code(next_code, secret, for_time=clock()) is True
        if stale not in (previous, next_code, two_factor.current_code(secret, clock())):
            assert two_factor.verify_code(stale, secret, for_time=clock()) is False

    def test_code_two_minutes_ahead_rejected(self, two_factor, clock):
        secret = two_factor.generate_secret()
        assert two_factor.verify_code(two_factor.current_code(secret, clock()), secret, for_time=clock())

        future = two_factor.current_code(secret, clock() + timedelta(seconds=120))
        window = {two_factor.current_code(secret, clock() + timedelta(seconds=s)) for s in (-30, 0, 30)}
        if future not in window:
            assert two_factor.verify_code(future, secret, for_time=clock()) is False

    def test_malformed_codes_rejected(self, two_factor, clock):
        secret = two_factor.generate_secret()
        for bad in ["", "12345", "1234567", "12a456", None]:
            assert two_factor.verify_code(bad, secret, for_time=clock()) is False

    def test_provisioning_uri(self, two_factor):
        uri = two_factor.provisioning_uri("JBSWY3DPEHPK3PXP", "ada@example.com")
        assert uri.startswith("otpauth://totp/")
        assert "issuer=Naggery" in uri
        assert "secret=JBSWY3DPEHPK3PXP" in uri


class TestBackupCodes:
    """Generation, hashing and single-use matching"""

    def test_generates_ten_unique_codes(self, two_factor):
        codes = two_factor.generate_backup_codes()
        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(len(c) == 8 and c.isalnum() and c.upper() == c for c in codes)

    def test_hash_is_salted(self, two_factor):
        first = two_factor.hash_backup_code("ABCD1234")
        second = two_factor.hash_backup_code("ABCD1234")
        assert first != second
        assert "ABCD1234" not in first
        assert two_factor.backup_code_matches("ABCD1234", first)
        assert two_factor.backup_code_matches("ABCD1234", second)

    def test_validate_is_case_insensitive_and_skips_used(self, two_factor):
        codes = [
            BackupCode(id=1, code_hash=two_factor.hash_backup_code("AAAA1111"), used=True),
            BackupCode(id=2, code_hash=two_factor.hash_backup_code("BBBB2222"), used=False),
        ]
        assert two_factor.validate_backup_code(codes, "bbbb2222").id == 2
        assert two_factor.validate_backup_code(codes, "AAAA1111") is None
        assert two_factor.validate_backup_code(codes, "CCCC3333") is None
        assert two_factor.validate_backup_code(codes, "bad!") is None


class TestVerificationStep:
    """Onboarding runs email -> phone -> 2FA"""

    def test_steps_in_order(self, clock):
        user = SimpleNamespace(email_verified_at=None, phone_verified_at=None, two_fa_enabled=False)
        assert verification_step(user) is VerificationStep.NEEDS_EMAIL

        user.email_verified_at = clock()
        assert verification_step(user) is VerificationStep.NEEDS_PHONE

        user.phone_verified_at = clock()
        assert verification_step(user) is VerificationStep.NEEDS_2FA

        user.two_fa_enabled = True
        assert verification_step(user) is VerificationStep.COMPLETE
