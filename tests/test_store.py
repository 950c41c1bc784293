"""Tests for the in-memory credential store's per-user atomic operations."""

import threading
from datetime import timedelta

import pytest

from access import Decision, ErrorCode, InMemoryCredentialStore, TOTPCredential, User, WebAuthnCredential
from access.passwords import PasswordPolicy, device_fingerprint
from access.totp import hash_backup_code
from config.settings import AppSettings, AuthSettings
from core.locks import DEFAULT_STRIPES


def _totp_credential(clock, last_used_step=None):
    return TOTPCredential(
        secret_encrypted=b"encrypted-secret",
        created_at=clock.now(),
        last_used_step=last_used_step,
    )


def _webauthn_credential(clock, credential_id=b"cred-1", sign_count=0):
    return WebAuthnCredential(
        credential_id=credential_id,
        public_key=b"spki",
        algorithm=-7,
        sign_count=sign_count,
        created_at=clock.now(),
    )


class TestSessions:
    def test_create_and_lookup(self, store, clock):
        session = store.create_session("u-1")
        assert store.lookup_session(session.session_id) == session
        assert session.expires_at == clock.now() + timedelta(hours=12)
        assert session.mfa_satisfied is False

    def test_promote(self, store):
        session = store.create_session("u-1")
        assert store.promote_mfa_satisfied(session.session_id) is True
        assert store.lookup_session(session.session_id).mfa_satisfied is True

    def test_promote_revoked_or_unknown(self, store):
        session = store.create_session("u-1")
        store.revoke_session(session.session_id)
        assert store.promote_mfa_satisfied(session.session_id) is False
        assert store.promote_mfa_satisfied("missing") is False
        assert store.lookup_session(session.session_id).mfa_satisfied is False

    def test_revoke_unknown(self, store):
        assert store.revoke_session("missing") is False

    def test_device_fingerprint_stored(self, store):
        session = store.create_session("u-1", device_fingerprint=device_fingerprint("UA", "en", "gzip"))
        assert store.lookup_session(session.session_id).device_fingerprint == session.device_fingerprint
        assert len(session.device_fingerprint) == 64

    def test_purge_expired_sessions(self, store, clock):
        live = store.create_session("u-1")
        short = store.create_session("u-1", ttl=timedelta(minutes=5))
        revoked = store.create_session("u-2")
        store.revoke_session(revoked.session_id)

        clock.advance(minutes=6)
        assert store.purge_expired_sessions() == 2
        assert store.lookup_session(live.session_id) is not None
        assert store.lookup_session(short.session_id) is None
        assert store.lookup_session(revoked.session_id) is None


class TestPasswords:
    def test_check_password(self, store, make_user):
        make_user("u-1")
        assert store.set_password("u-1", "Correct-Horse-7-Battery") == []
        assert store.check_password("u-1", "Correct-Horse-7-Battery") is True
        assert store.check_password("u-1", "wrong") is False

    def test_no_password_set(self, store):
        assert store.check_password("u-unknown", "anything") is False

    def test_weak_password_not_stored(self, store, make_user):
        make_user("u-1")
        errors = store.set_password("u-1", "short")

        assert "Password must be at least 12 characters" in errors
        assert "Password must contain at least one uppercase letter" in errors
        assert store.check_password("u-1", "short") is False

    def test_policy_from_settings(self, clock):
        policy = PasswordPolicy.from_settings(AppSettings(auth=AuthSettings(
            password_min_length=4, password_require_special=False, password_require_uppercase=False,
        )))
        relaxed = InMemoryCredentialStore(clock=clock, password_policy=policy)
        assert relaxed.set_password("u-1", "abc1") == []
        assert relaxed.check_password("u-1", "abc1") is True


class TestPasswordPolicy:
    @pytest.mark.parametrize("password, message", [
        ("Aa1!", "at least 12 characters"),
        ("lowercase-only-1", "uppercase letter"),
        ("UPPERCASE-ONLY-1", "lowercase letter"),
        ("No-Digits-Here!", "digit"),
        ("NoSpecials12345", "special character"),
    ])
    def test_each_rule(self, password, message):
        errors = PasswordPolicy().violations(password)
        assert len(errors) == 1
        assert message in errors[0]

    def test_strong_password(self):
        assert PasswordPolicy().violations("Fleet-Depot-2024") == []


class TestStripedUserLocks:
    def test_lock_pool_is_fixed(self, store):
        for n in range(500):
            store.put_user(User(id=f"u-{n}", username=f"u-{n}", department="MOH",
                                roles=frozenset(), clearance_level="standard"))
        assert len(store._lock_for) == DEFAULT_STRIPES


class TestTOTPEnrollmentCommit:
    def test_commit_sets_enrolled(self, store, clock, make_user):
        make_user("u-1")
        store.commit_totp_enrollment("u-1", _totp_credential(clock), ["h1", "h2"])
        assert store.get_user("u-1").mfa_enrolled is True
        assert store.get_totp("u-1") is not None
        assert [c.code_hash for c in store.get_backup_codes("u-1")] == ["h1", "h2"]

    def test_commit_replaces_previous_codes(self, store, clock, make_user):
        make_user("u-1")
        store.commit_totp_enrollment("u-1", _totp_credential(clock), ["old-1", "old-2"])
        store.commit_totp_enrollment("u-1", _totp_credential(clock), ["new-1"])

        assert store.redeem_backup_code("u-1", "old-1").reason is ErrorCode.MFA_INVALID_CODE
        assert store.redeem_backup_code("u-1", "new-1").allowed

    def test_commit_unknown_user(self, store, clock):
        with pytest.raises(KeyError):
            store.commit_totp_enrollment("ghost", _totp_credential(clock), [])

    def test_get_backup_codes_returns_copy(self, store, clock, make_user):
        make_user("u-1")
        store.commit_totp_enrollment("u-1", _totp_credential(clock), ["h1"])
        store.get_backup_codes("u-1").clear()
        assert len(store.get_backup_codes("u-1")) == 1


class TestBackupCodeRedemption:
    def test_single_use(self, store, clock, make_user):
        make_user("u-1")
        code_hash = hash_backup_code("AAAA-BBBB-CCCC-DDDD")
        store.commit_totp_enrollment("u-1", _totp_credential(clock), [code_hash])

        assert store.redeem_backup_code("u-1", code_hash) == Decision.allow()
        assert store.redeem_backup_code("u-1", code_hash) == Decision.deny(ErrorCode.BACKUP_CODE_ALREADY_USED)

        used = store.get_backup_codes("u-1")[0]
        assert used.used is True
        assert used.used_at == clock.now()

    def test_unknown_code(self, store, clock, make_user):
        make_user("u-1")
        store.commit_totp_enrollment("u-1", _totp_credential(clock), ["h1"])
        assert store.redeem_backup_code("u-1", "nope").reason is ErrorCode.MFA_INVALID_CODE

    def test_concurrent_redemption_single_success(self, store, clock, make_user):
        """Racing redemptions of one code: exactly one wins."""
        make_user("u-1")
        code_hash = hash_backup_code("1111-2222-3333-4444")
        store.commit_totp_enrollment("u-1", _totp_credential(clock), [code_hash])

        workers = 16
        barrier = threading.Barrier(workers)
        results = []
        results_lock = threading.Lock()

        def redeem():
            barrier.wait()
            decision = store.redeem_backup_code("u-1", code_hash)
            with results_lock:
                results.append(decision)

        threads = [threading.Thread(target=redeem) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == workers
        assert sum(1 for d in results if d.allowed) == 1
        assert all(d.reason is ErrorCode.BACKUP_CODE_ALREADY_USED for d in results if not d.allowed)


class TestTOTPReplay:
    def test_step_must_advance(self, store, clock, make_user):
        make_user("u-1")
        store.commit_totp_enrollment("u-1", _totp_credential(clock, last_used_step=100), [])

        assert store.record_totp_step("u-1", 100).reason is ErrorCode.MFA_INVALID_CODE
        assert store.record_totp_step("u-1", 99).reason is ErrorCode.MFA_INVALID_CODE
        assert store.record_totp_step("u-1", 101).allowed
        assert store.get_totp("u-1").last_used_step == 101

    def test_not_enrolled(self, store):
        assert store.record_totp_step("u-1", 5).reason is ErrorCode.MFA_NOT_ENROLLED


class TestWebAuthn:
    def test_commit_and_owner_lookup(self, store, clock, make_user):
        make_user("u-1")
        assert store.commit_webauthn_enrollment("u-1", _webauthn_credential(clock)).allowed
        assert store.find_credential_owner(b"cred-1") == "u-1"
        assert store.get_user("u-1").mfa_enrolled is True

    def test_conflict_with_other_user(self, store, clock, make_user):
        make_user("u-1")
        make_user("u-2")
        store.commit_webauthn_enrollment("u-1", _webauthn_credential(clock))

        decision = store.commit_webauthn_enrollment("u-2", _webauthn_credential(clock))

        assert decision.reason is ErrorCode.ENROLLMENT_CONFLICT
        assert store.get_webauthn("u-2") is None
        assert store.get_user("u-2").mfa_enrolled is False

    def test_replacement_releases_old_id(self, store, clock, make_user):
        make_user("u-1")
        store.commit_webauthn_enrollment("u-1", _webauthn_credential(clock, b"cred-old"))
        store.commit_webauthn_enrollment("u-1", _webauthn_credential(clock, b"cred-new"))
        assert store.find_credential_owner(b"cred-old") is None
        assert store.find_credential_owner(b"cred-new") == "u-1"

    def test_sign_count_regression_is_clone(self, store, clock, make_user):
        make_user("u-1")
        store.commit_webauthn_enrollment("u-1", _webauthn_credential(clock, sign_count=42))

        decision = store.update_sign_count("u-1", b"cred-1", 10)

        assert decision == Decision.deny(ErrorCode.CLONE_DETECTED)
        assert store.get_webauthn("u-1").sign_count == 42

    def test_sign_count_advances(self, store, clock, make_user):
        make_user("u-1")
        store.commit_webauthn_enrollment("u-1", _webauthn_credential(clock, sign_count=42))
        assert store.update_sign_count("u-1", b"cred-1", 43).allowed
        assert store.get_webauthn("u-1").sign_count == 43

    def test_sign_count_wrong_credential(self, store, clock, make_user):
        make_user("u-1")
        store.commit_webauthn_enrollment("u-1", _webauthn_credential(clock))
        assert store.update_sign_count("u-1", b"other", 1).reason is ErrorCode.MFA_INVALID_CODE
