"""Tests for TOTP matching, secret encryption and backup codes."""

import re
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pyotp
import pytest
from cryptography.fernet import Fernet
from pydantic import SecretStr

from access import totp
from config.settings import MFASettings

# Mid-step instant so +/-30s lands squarely inside the neighbouring steps
NOW = datetime(2026, 3, 2, 9, 15, 15, tzinfo=timezone.utc)


@pytest.fixture
def secret():
    return pyotp.random_base32()


def _code(secret, moment):
    return pyotp.TOTP(secret).at(moment)


class TestMatchCode:
    @pytest.mark.parametrize("offset", [-30, 0, 30])
    def test_accepts_adjacent_steps(self, secret, offset):
        code = _code(secret, NOW + timedelta(seconds=offset))
        step = totp.match_code(secret, code, NOW)
        assert step == pyotp.TOTP(secret).timecode(NOW) + offset // 30

    @pytest.mark.parametrize("offset", [-60, 60])
    def test_rejects_two_steps_away(self, secret, offset):
        code = _code(secret, NOW + timedelta(seconds=offset))
        neighbours = {_code(secret, NOW + timedelta(seconds=s)) for s in (-30, 0, 30)}
        if code in neighbours:
            pytest.skip("code collision across steps")
        assert totp.match_code(secret, code, NOW) is None

    def test_tolerates_spaces(self, secret):
        code = _code(secret, NOW)
        assert totp.match_code(secret, f"{code[:3]} {code[3:]}", NOW) is not None

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_rejects_malformed(self, secret, code):
        assert totp.match_code(secret, code, NOW) is None

    def test_zero_window(self, secret):
        code = _code(secret, NOW + timedelta(seconds=30))
        assert totp.match_code(secret, code, NOW, valid_window=0) is None


class TestSecretCipher:
    def test_round_trip_with_configured_key(self, settings):
        key = Fernet.generate_key().decode()
        settings.mfa.encryption_key = SecretStr(key)
        cipher = totp.SecretCipher(settings)

        encrypted = cipher.encrypt("JBSWY3DPEHPK3PXP")

        assert encrypted != b"JBSWY3DPEHPK3PXP"
        assert cipher.decrypt(encrypted) == "JBSWY3DPEHPK3PXP"
        assert Fernet(key.encode()).decrypt(encrypted) == b"JBSWY3DPEHPK3PXP"

    def test_derived_key_when_unset(self, settings):
        settings.mfa.encryption_key = SecretStr("")
        first = totp.SecretCipher(settings)
        second = totp.SecretCipher(settings)
        assert second.decrypt(first.encrypt("SECRET")) == "SECRET"

    def test_invalid_configured_key_falls_back(self, settings):
        settings.mfa.encryption_key = SecretStr("not-a-fernet-key")
        cipher = totp.SecretCipher(settings)
        assert cipher.decrypt(cipher.encrypt("SECRET")) == "SECRET"

    def test_tampered_token(self, settings):
        cipher = totp.SecretCipher(settings)
        assert cipher.decrypt(b"garbage") is None


class TestProvisioning:
    def test_secret_is_fresh(self):
        assert totp.generate_secret() != totp.generate_secret()

    def test_provisioning_uri(self, settings, secret):
        uri = totp.provisioning_uri(secret, "driver@fleet.example", settings)
        assert uri.startswith("otpauth://totp/")
        assert f"secret={secret}" in uri
        assert "issuer=Fleet" in uri

    def test_qr_code_data_uri(self, secret, settings):
        data_uri = totp.qr_code_data_uri(totp.provisioning_uri(secret, "a", settings))
        assert data_uri.startswith("data:image/png;base64,")


class TestBackupCodes:
    def test_count_and_format(self):
        codes = totp.generate_backup_codes(10)
        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code in codes:
            assert re.fullmatch(r"[0-9A-F]{4}(-[0-9A-F]{4}){3}", code)

    def test_hash_ignores_formatting(self):
        assert totp.hash_backup_code("abcd-1234-ef56-7890") == totp.hash_backup_code("ABCD1234EF567890")
        assert totp.hash_backup_code("ABCD 1234 EF56 7890") == totp.hash_backup_code("ABCD-1234-EF56-7890")

    def test_hash_is_not_plaintext(self):
        assert "ABCD" not in totp.hash_backup_code("ABCD-1234-EF56-7890")

    def test_count_follows_settings(self):
        with patch.dict("os.environ", {"MFA_BACKUP_CODE_COUNT": "12"}):
            assert len(totp.generate_backup_codes(MFASettings().backup_code_count)) == 12
