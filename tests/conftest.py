"""Shared pytest fixtures for fleetgate tests."""
import hashlib
import json
import os
import sys
from datetime import timedelta
from types import SimpleNamespace

import pyotp
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

# ---------------------------------------------------------------------------
# Deterministic test environment, set BEFORE any settings are instantiated.
# ---------------------------------------------------------------------------
os.environ.setdefault('TESTING', 'true')
os.environ.setdefault('JWT_SECRET', 'test-jwt-secret-for-pytest-32chars!')

from access import AuthorizationService, InMemoryCredentialStore, User, create_token  # noqa: E402
from access.webauthn import ALG_ES256, b64url_decode, b64url_encode  # noqa: E402
from config.settings import AppSettings, get_settings  # noqa: E402
from core.audit import AuditRecorder  # noqa: E402
from core.timestamps import FrozenClock, now  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """get_settings() is lru_cached; reset it so env patches don't leak."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def settings():
    return AppSettings()


@pytest.fixture
def clock():
    """Frozen clock started an hour in the past.

    Bearer tokens carry real iat/exp claims that PyJWT checks against the
    wall clock; starting behind it lets tests advance time freely.
    """
    return FrozenClock(now() - timedelta(hours=1))


@pytest.fixture
def store(clock):
    return InMemoryCredentialStore(clock=clock)


@pytest.fixture
def recorder(clock):
    return AuditRecorder(clock=clock)


@pytest.fixture
def service(store, recorder, settings, clock):
    svc = AuthorizationService(store, recorder, settings, clock)
    yield svc
    svc.bounded.shutdown()


@pytest.fixture
def make_user(store):
    """Factory that adds a user to the directory."""
    def _make(user_id="u-fleet", department="MOH", roles=("fleet_admin",),
              clearance_level="standard", mfa_enrolled=False, is_active=True):
        user = User(
            id=user_id,
            username=f"{user_id}@fleet.example",
            department=department,
            roles=frozenset(roles),
            clearance_level=clearance_level,
            mfa_enrolled=mfa_enrolled,
            is_active=is_active,
        )
        store.put_user(user)
        return user
    return _make


@pytest.fixture
def login(store, settings):
    """Factory that creates a session for a user and a bearer token for it."""
    def _login(user_id, mfa_satisfied=False, ttl=None):
        session = store.create_session(user_id, mfa_satisfied=mfa_satisfied, ttl=ttl)
        token = create_token(session, settings)
        return SimpleNamespace(
            session=session,
            token=token,
            headers={'Authorization': f'Bearer {token}'},
        )
    return _login


def totp_code(secret, clock, offset_seconds=0):
    """Code an authenticator app would show at clock.now() + offset."""
    return pyotp.TOTP(secret).at(clock.now() + timedelta(seconds=offset_seconds))


@pytest.fixture
def enroll_totp(service, clock):
    """Run a complete TOTP enrollment through the coordinator."""
    def _enroll(user_id):
        started = service.enrollment.start_enrollment(user_id, "totp")
        secret = started.data["secret"]
        verified = service.enrollment.verify_totp(user_id, totp_code(secret, clock))
        committed = service.enrollment.commit_enrollment(user_id)
        assert committed.ok
        return SimpleNamespace(secret=secret, backup_codes=verified.data["backup_codes"])
    return _enroll


@pytest.fixture
def enroll_webauthn(service, settings):
    """Run a complete WebAuthn enrollment with a fresh software authenticator."""
    def _enroll(user_id, sign_count=0):
        authenticator = SoftwareAuthenticator(settings, sign_count=sign_count)
        started = service.enrollment.start_enrollment(user_id, "webauthn")
        challenge = b64url_decode(started.data["challenge"])
        result = service.enrollment.complete_webauthn(user_id, authenticator.register(challenge))
        assert result.ok, result.reason
        return authenticator
    return _enroll


# =============================================================================
# WebAuthn
# =============================================================================

class SoftwareAuthenticator:
    """ES256 authenticator producing browser-shaped credential JSON."""

    def __init__(self, settings, credential_id=None, sign_count=0):
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = credential_id or os.urandom(16)
        self.sign_count = sign_count
        self.rp_id = settings.webauthn.rp_id
        self.origin = settings.webauthn.origin

    @property
    def public_key_der(self):
        return self.private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def client_data(self, ceremony, challenge, origin=None):
        return json.dumps({
            "type": ceremony,
            "challenge": b64url_encode(challenge),
            "origin": origin or self.origin,
        }).encode()

    def authenticator_data(self, flags, attested=False, rp_id=None):
        data = hashlib.sha256((rp_id or self.rp_id).encode()).digest()
        data += bytes([flags]) + self.sign_count.to_bytes(4, "big")
        if attested:
            data += b"\x00" * 16
            data += len(self.credential_id).to_bytes(2, "big") + self.credential_id
        return data

    def register(self, challenge, origin=None, rp_id=None, flags=0x41, ceremony="webauthn.create"):
        encoded_id = b64url_encode(self.credential_id)
        return {
            "id": encoded_id,
            "rawId": encoded_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(self.client_data(ceremony, challenge, origin)),
                "authenticatorData": b64url_encode(
                    self.authenticator_data(flags, attested=True, rp_id=rp_id)
                ),
                "publicKey": b64url_encode(self.public_key_der),
                "publicKeyAlgorithm": ALG_ES256,
            },
        }

    def sign_assertion(self, challenge, sign_count=None):
        """Assertion for ``challenge``. Bumps the counter unless one is given."""
        self.sign_count = self.sign_count + 1 if sign_count is None else sign_count
        client_data = self.client_data("webauthn.get", challenge)
        auth_data = self.authenticator_data(0x01)
        signature = self.private_key.sign(
            auth_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        encoded_id = b64url_encode(self.credential_id)
        return {
            "id": encoded_id,
            "rawId": encoded_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "authenticatorData": b64url_encode(auth_data),
                "signature": b64url_encode(signature),
            },
        }


# =============================================================================
# Flask Fixtures
# =============================================================================

def _gated_blueprint():
    """Routes that exercise every decorator, built fresh for each app."""
    from flask import Blueprint, g, jsonify

    from access import (
        audited,
        clearance_required,
        department_scoped,
        jwt_required,
        mfa_required,
        permission_required,
        role_required,
    )

    bp = Blueprint('gated', __name__, url_prefix='/api')

    @bp.route('/departments/<department_id>/vehicles', methods=['GET'])
    @permission_required('view_vehicles')
    @department_scoped
    def list_vehicles(department_id):
        return jsonify({'department': department_id, 'vehicles': []})

    @bp.route('/departments/<department_id>/vehicles/<vehicle_id>/transfer', methods=['POST'])
    @audited('vehicle_transfer')
    @permission_required('transfer_vehicles')
    @department_scoped
    @mfa_required
    def transfer_vehicle(department_id, vehicle_id):
        return jsonify({'status': 'transferred', 'vehicle': vehicle_id})

    @bp.route('/admin/users', methods=['GET'])
    @role_required('super_admin', 'org_admin')
    def list_users():
        return jsonify({'users': [], 'requested_by': g.principal.user_id})

    @bp.route('/reports/restricted', methods=['GET'])
    @clearance_required('high')
    def restricted_report():
        return jsonify({'report': 'ok'})

    @bp.route('/maintenance/fail', methods=['POST'])
    @audited('maintenance_run')
    @jwt_required
    def failing_operation():
        raise RuntimeError('maintenance backend exploded')

    return bp


@pytest.fixture
def app(store, recorder, settings, clock):
    """Create Flask app for testing with injected store, recorder and clock."""
    from api.app import create_app

    application = create_app(
        config={'TESTING': True},
        store=store,
        recorder=recorder,
        settings=settings,
        clock=clock,
    )
    application.register_blueprint(_gated_blueprint())
    yield application
    application.extensions['fleetgate'].bounded.shutdown()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def app_service(app):
    """The AuthorizationService the app was built with."""
    return app.extensions['fleetgate']


# =============================================================================
# Helper Fixtures
# =============================================================================

@pytest.fixture
def code_at(clock):
    """TOTP code for a secret at the frozen clock, optionally offset in seconds."""
    def _code(secret, offset_seconds=0):
        return totp_code(secret, clock, offset_seconds)
    return _code


@pytest.fixture
def new_authenticator(settings):
    """Factory for SoftwareAuthenticator instances bound to the test relying party."""
    def _new(**kwargs):
        return SoftwareAuthenticator(settings, **kwargs)
    return _new
