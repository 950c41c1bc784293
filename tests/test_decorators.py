"""Tests for the Flask route decorators and app-wide middleware."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from core.audit import AuditOutcome
from core.errors import StoreUnavailableError


@pytest.fixture
def fleet_admin(make_user, login):
    user = make_user('u-fleet', department='MOH', roles=('fleet_admin',))
    return login(user.id)


def _transfer_url(department='MOH', vehicle='v-100'):
    return f'/api/departments/{department}/vehicles/{vehicle}/transfer'


class TestJWTRequired:
    def test_missing_token(self, client):
        response = client.get('/api/departments/MOH/vehicles')
        assert response.status_code == 401
        assert response.get_json()['error'] == 'unauthorized'

    def test_expired_token_same_body(self, client, make_user, login):
        make_user('u-late')
        creds = login('u-late', ttl=timedelta(seconds=-5))
        response = client.get('/api/departments/MOH/vehicles', headers=creds.headers)
        assert response.status_code == 401
        assert set(response.get_json()) == {'error', 'error_id'}


class TestDepartmentScoped:
    def test_own_department(self, client, fleet_admin):
        response = client.get('/api/departments/MOH/vehicles', headers=fleet_admin.headers)
        assert response.status_code == 200
        assert response.get_json()['department'] == 'MOH'

    def test_other_department(self, client, fleet_admin, recorder):
        response = client.get('/api/departments/MOA/vehicles', headers=fleet_admin.headers)

        assert response.status_code == 403
        assert response.get_json()['error'] == 'forbidden'
        assert 'department_mismatch' not in response.get_data(as_text=True)
        entry = recorder.entries(operation='department_access')[0]
        assert entry.outcome is AuditOutcome.DENIED
        assert entry.target_department == 'MOA'
        assert entry.actor_id == 'u-fleet'

    def test_super_admin(self, client, make_user, login):
        make_user('u-root', department='HQ', roles=('super_admin',))
        response = client.get('/api/departments/MOA/vehicles', headers=login('u-root').headers)
        assert response.status_code == 200


class TestRoleAndClearance:
    def test_role_denied(self, client, fleet_admin):
        assert client.get('/api/admin/users', headers=fleet_admin.headers).status_code == 403

    def test_role_allowed(self, client, make_user, login):
        make_user('u-org', roles=('org_admin',))
        response = client.get('/api/admin/users', headers=login('u-org').headers)
        assert response.status_code == 200
        assert response.get_json()['requested_by'] == 'u-org'

    def test_clearance(self, client, fleet_admin, make_user, login):
        assert client.get('/api/reports/restricted', headers=fleet_admin.headers).status_code == 403
        make_user('u-cleared', clearance_level='high')
        assert client.get('/api/reports/restricted', headers=login('u-cleared').headers).status_code == 200


class TestSensitiveTransfer:
    def test_permission_denied_is_audited_once(self, client, make_user, login, recorder):
        make_user('u-viewer', roles=('department_user',))
        response = client.post(_transfer_url(), headers=login('u-viewer').headers)

        assert response.status_code == 403
        entries = recorder.entries(operation='vehicle_transfer')
        assert len(entries) == 1
        assert entries[0].outcome is AuditOutcome.DENIED
        assert recorder.entries(operation='permission_check')[0].outcome is AuditOutcome.DENIED

    def test_mfa_not_enrolled(self, client, fleet_admin, store):
        response = client.post(_transfer_url(), headers=fleet_admin.headers)
        assert response.status_code == 403
        assert response.get_json()['error'] == 'mfa_not_enrolled'
        assert store.lookup_session(fleet_admin.session.session_id).mfa_satisfied is False

    def test_mfa_required_without_factor(self, client, fleet_admin, enroll_totp):
        enroll_totp('u-fleet')
        response = client.post(_transfer_url(), headers=fleet_admin.headers)
        assert response.status_code == 403
        assert response.get_json()['error'] == 'mfa_required'

    def test_inline_totp_step_up(self, client, fleet_admin, enroll_totp, clock, code_at, store, recorder):
        enrolled = enroll_totp('u-fleet')
        clock.advance(seconds=30)
        headers = {**fleet_admin.headers, 'X-MFA-Code': code_at(enrolled.secret), 'X-Request-ID': 'req-1'}

        response = client.post(_transfer_url(), headers=headers)

        assert response.status_code == 200
        assert response.get_json()['status'] == 'transferred'
        assert store.lookup_session(fleet_admin.session.session_id).mfa_satisfied is True

        # A second request reusing the caller's X-Request-ID is a new attempt
        retry = client.post(_transfer_url(), headers={**fleet_admin.headers, 'X-Request-ID': 'req-1'})
        assert retry.status_code == 200
        entries = recorder.entries(operation='vehicle_transfer')
        assert len(entries) == 2
        assert all(e.outcome is AuditOutcome.SUCCESS for e in entries)
        assert {e.request_id for e in entries} == {'req-1'}
        assert entries[0].attempt_id != entries[1].attempt_id

    def test_backup_code_step_up(self, client, fleet_admin, enroll_totp):
        code = enroll_totp('u-fleet').backup_codes[3]
        headers = {**fleet_admin.headers, 'X-MFA-Backup-Code': code}
        assert client.post(_transfer_url(), headers=headers).status_code == 200

    def test_webauthn_step_up(self, client, fleet_admin, enroll_webauthn):
        from access.webauthn import b64url_decode

        authenticator = enroll_webauthn('u-fleet')
        options = client.post('/api/auth/mfa/step-up/challenge', headers=fleet_admin.headers).get_json()
        assertion = authenticator.sign_assertion(b64url_decode(options['options']['challenge']))

        response = client.post(
            _transfer_url(), json={'mfa_assertion': assertion}, headers=fleet_admin.headers
        )
        assert response.status_code == 200

    def test_cross_department_transfer_denied(self, client, fleet_admin, recorder):
        response = client.post(_transfer_url(department='MOA'), headers=fleet_admin.headers)
        assert response.status_code == 403
        assert recorder.entries(operation='vehicle_transfer')[0].target_department == 'MOA'


class TestFailures:
    def test_handler_exception_audited_once(self, client, fleet_admin, recorder):
        response = client.post('/api/maintenance/fail', headers=fleet_admin.headers)

        assert response.status_code == 500
        assert 'exploded' not in response.get_data(as_text=True)
        entries = recorder.entries(operation='maintenance_run')
        assert len(entries) == 1
        assert entries[0].outcome is AuditOutcome.FAILURE

    def test_store_down_fails_closed(self, client, fleet_admin, store, recorder):
        with patch.object(store, 'lookup_session', side_effect=StoreUnavailableError('session db down')):
            response = client.get('/api/departments/MOH/vehicles', headers=fleet_admin.headers)

        assert response.status_code == 503
        assert response.get_json()['error'] == 'system_error'
        assert recorder.entries(operation='authenticate_token')[0].outcome is AuditOutcome.SYSTEM_ERROR


class TestMiddleware:
    def test_security_headers_on_success_and_deny(self, client, fleet_admin):
        for url in ('/api/departments/MOH/vehicles', '/api/departments/MOA/vehicles'):
            response = client.get(url, headers=fleet_admin.headers)
            assert response.headers['X-Content-Type-Options'] == 'nosniff'
            assert 'Content-Security-Policy' in response.headers
            assert 'Strict-Transport-Security' not in response.headers

    def test_hsts_over_https(self, client, fleet_admin):
        response = client.get(
            '/api/departments/MOH/vehicles', headers=fleet_admin.headers, base_url='https://localhost'
        )
        assert response.headers['Strict-Transport-Security'].startswith('max-age=')

    def test_request_id_echoed(self, client, fleet_admin):
        response = client.get(
            '/api/departments/MOH/vehicles', headers={**fleet_admin.headers, 'X-Request-ID': 'trace-42'}
        )
        assert response.headers['X-Request-ID'] == 'trace-42'

    def test_unsafe_request_id_replaced(self, client, fleet_admin):
        response = client.get(
            '/api/departments/MOH/vehicles', headers={**fleet_admin.headers, 'X-Request-ID': 'bad id with spaces'}
        )
        echoed = response.headers['X-Request-ID']
        assert echoed != 'bad id with spaces'
        assert len(echoed) == 32


class TestCallerRequestIds:
    """A caller-chosen X-Request-ID is correlation only; it never merges audit entries."""

    def test_shared_request_id_across_users(self, client, make_user, login, recorder):
        make_user('u-alpha', department='MOH', roles=('fleet_admin',))
        make_user('u-beta', department='MOH', roles=('fleet_admin',))

        for user_id in ('u-alpha', 'u-beta'):
            headers = {**login(user_id).headers, 'X-Request-ID': 'shared-7'}
            assert client.post(_transfer_url(department='MOA'), headers=headers).status_code == 403

        transfers = recorder.entries(operation='vehicle_transfer')
        denials = recorder.entries(operation='department_access')
        assert {e.actor_id for e in transfers} == {'u-alpha', 'u-beta'}
        assert {e.actor_id for e in denials} == {'u-alpha', 'u-beta'}
        assert all(e.request_id == 'shared-7' for e in transfers + denials)

    def test_repeated_request_id_keeps_every_failed_step_up(self, client, fleet_admin, enroll_totp, recorder):
        enroll_totp('u-fleet')
        headers = {**fleet_admin.headers, 'X-MFA-Code': '000000', 'X-Request-ID': 'fixed'}

        for _ in range(4):
            assert client.post(_transfer_url(), headers=headers).status_code == 403

        failures = recorder.entries(operation='mfa_step_up', outcome=AuditOutcome.FAILURE)
        assert len(failures) == 4
        assert len(recorder.entries(operation='vehicle_transfer')) == 4


class TestDeviceBinding:
    DEVICE = {'User-Agent': 'FleetConsole/3.1', 'Accept-Language': 'en-GB', 'Accept-Encoding': 'gzip'}

    def _bound_login(self, store, settings):
        from access import create_token
        from access.passwords import device_fingerprint

        session = store.create_session(
            'u-fleet',
            device_fingerprint=device_fingerprint('FleetConsole/3.1', 'en-GB', 'gzip'),
        )
        return {'Authorization': f'Bearer {create_token(session, settings)}'}

    def test_same_device_accepted(self, client, make_user, store, settings):
        make_user('u-fleet')
        headers = {**self._bound_login(store, settings), **self.DEVICE}
        assert client.get('/api/departments/MOH/vehicles', headers=headers).status_code == 200

    def test_other_device_rejected(self, client, make_user, store, settings):
        make_user('u-fleet')
        headers = {**self._bound_login(store, settings), **self.DEVICE, 'User-Agent': 'curl/8.0'}
        response = client.get('/api/departments/MOH/vehicles', headers=headers)
        assert response.status_code == 401
        assert response.get_json()['error'] == 'unauthorized'

    def test_housekeeping_runs_before_requests(self, client, app_service, fleet_admin):
        with patch.object(app_service, 'housekeeping', wraps=app_service.housekeeping) as sweep:
            client.get('/api/departments/MOH/vehicles', headers=fleet_admin.headers)
        sweep.assert_called_once_with()
