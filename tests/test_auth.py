import json
from unittest.mock import MagicMock, patch

import google.auth.exceptions
import google.oauth2.credentials as cred_mod

from ExpenseSync.core import auth
from ExpenseSync.core.signals import signals
from ExpenseSync.settings import lib
from ExpenseSync.status.status import AuthenticationException, CredsInvalidException, CredsNotFoundException
from tests.base import BaseTestCase


class DummyCreds:
    def __init__(self, expired=True, refresh_token='rt', fail=False):
        self.expired = expired
        self.refresh_token = refresh_token
        self.fail = fail
        self.valid = not expired

    def refresh(self, request):
        if self.fail:
            raise google.auth.exceptions.RefreshError('refresh failed')
        self.expired = False

    def to_json(self):
        return json.dumps({'token': 'refreshed'})


def patched_creds(dummy):
    return patch.object(
        cred_mod.Credentials,
        'from_authorized_user_file',
        new=classmethod(lambda cls, f: dummy)
    )


class TestIdentity(BaseTestCase):
    """The current user id and its change notifications."""

    def test_starts_signed_out(self):
        self.assertIsNone(auth.AuthManager().current_user_id)

    def test_sign_in_notifies_subscribers_and_signal(self):
        manager = auth.AuthManager()
        seen, emitted = [], []
        manager.subscribe(seen.append)

        def on_user_changed(user_id):
            emitted.append(user_id)

        signals.userChanged.connect(on_user_changed)
        try:
            manager.sign_in('u1')
            manager.sign_in('u1')
            manager.sign_out()
        finally:
            signals.userChanged.disconnect(on_user_changed)

        self.assertEqual(seen, ['u1', None])
        self.assertEqual(emitted, ['u1', None])

    def test_disposer_unsubscribes(self):
        manager = auth.AuthManager()
        seen = []
        dispose = manager.subscribe(seen.append)
        dispose()
        dispose()
        manager.sign_in('u1')
        self.assertEqual(seen, [])

    def test_sign_in_requires_id(self):
        with self.assertRaises(ValueError):
            auth.AuthManager().sign_in('')

    def test_sign_out_forgets_credentials(self):
        manager = auth.AuthManager()
        manager._creds = object()
        manager.sign_in('u1')
        manager.sign_out()
        self.assertIsNone(manager._creds)


class TestCredentials(BaseTestCase):
    """Unit tests for credential loading and refresh."""

    def test_missing_credentials_raises_AuthExpiredError(self):
        manager = auth.AuthManager()
        with self.assertRaises(auth.AuthExpiredError):
            manager.get_valid_credentials()

    def test_invalid_credentials_file_raises_CredsInvalidException(self):
        creds_path = lib.settings.creds_path
        creds_path.write_text('not a json', encoding='utf-8')
        manager = auth.AuthManager()
        with self.assertRaises(CredsInvalidException):
            manager.get_valid_credentials()
        self.assertFalse(creds_path.exists())

    def test_valid_credentials_are_cached(self):
        dummy = DummyCreds(expired=False)
        lib.settings.creds_path.write_text(json.dumps({'token': 't'}), encoding='utf-8')
        manager = auth.AuthManager()
        with patched_creds(dummy):
            self.assertIs(manager.get_valid_credentials(), dummy)
        # no file read the second time
        self.assertIs(manager.get_valid_credentials(), dummy)

    def test_auto_refresh_succeeds_and_saves(self):
        dummy = DummyCreds()
        lib.settings.creds_path.write_text(json.dumps({'token': 't'}), encoding='utf-8')
        with patched_creds(dummy):
            result = auth.AuthManager().get_valid_credentials()

        self.assertIs(result, dummy)
        self.assertFalse(dummy.expired)
        self.assertEqual(json.loads(lib.settings.creds_path.read_text(encoding='utf-8')), {'token': 'refreshed'})

    def test_no_refresh_token_raises_AuthExpiredError(self):
        lib.settings.creds_path.write_text(json.dumps({'token': 't'}), encoding='utf-8')
        with patched_creds(DummyCreds(refresh_token=None)):
            with self.assertRaises(auth.AuthExpiredError):
                auth.AuthManager().get_valid_credentials()

    def test_refresh_failure_raises_AuthenticationException(self):
        lib.settings.creds_path.write_text(json.dumps({'token': 't'}), encoding='utf-8')
        with patched_creds(DummyCreds(fail=True)):
            with self.assertRaises(AuthenticationException):
                auth.AuthManager().get_valid_credentials()


class TestOAuthFlow(BaseTestCase):
    def write_client_secret(self, data):
        lib.settings.client_secret_path.write_text(json.dumps(data), encoding='utf-8')

    def test_missing_client_secret(self):
        with self.assertRaises(CredsNotFoundException):
            auth.load_client_config()

    def test_client_secret_without_client_section(self):
        self.write_client_secret({'other': {}})
        with self.assertRaises(CredsInvalidException):
            auth.load_client_config()

    def test_client_secret_not_json(self):
        lib.settings.client_secret_path.write_text('{', encoding='utf-8')
        with self.assertRaises(CredsInvalidException):
            auth.load_client_config()

    def test_authenticate_stores_credentials(self):
        self.write_client_secret({'installed': {'client_id': 'id', 'client_secret': 's'}})
        dummy = DummyCreds(expired=False)
        flow = MagicMock()
        flow.run_local_server.return_value = dummy

        manager = auth.AuthManager()
        with patch.object(auth.google_auth_oauthlib.flow.InstalledAppFlow, 'from_client_config',
                          return_value=flow) as from_config:
            self.assertIs(manager.authenticate(), dummy)

        from_config.assert_called_once_with(
            {'installed': {'client_id': 'id', 'client_secret': 's'}},
            scopes=auth.DEFAULT_SCOPES
        )
        self.assertTrue(lib.settings.creds_path.exists())
        self.assertIs(manager.get_valid_credentials(), dummy)

    def test_cancelled_flow_raises(self):
        self.write_client_secret({'installed': {}})
        flow = MagicMock()
        flow.run_local_server.side_effect = OSError('port in use')
        with patch.object(auth.google_auth_oauthlib.flow.InstalledAppFlow, 'from_client_config',
                          return_value=flow):
            with self.assertRaises(AuthenticationException):
                auth.authenticate()
