"""
User identity and Google OAuth2 credential management.

Provides the identity signal the sync engine reacts to (the current user id) and the
credentials the remote gateway authorizes its requests with.
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow

from .signals import signals
from ..status import status

DEFAULT_SCOPES = ['https://www.googleapis.com/auth/datastore', ]


class AuthExpiredError(Exception):
    """Raised when credentials have expired and require interactive refresh."""
    pass


class AuthManager:
    """Holds the current user id and manages OAuth2 credentials with thread-safe refresh.

    The user id scopes every remote path. Changing it emits ``signals.userChanged`` and
    notifies the callbacks registered with :meth:`subscribe`.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._creds: Optional[google.oauth2.credentials.Credentials] = None
        self._user_id: Optional[str] = None
        self._subscribers: list[Callable[[Optional[str]], Any]] = []

    @property
    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        """Set the current user.

        Raises:
            ValueError: If ``user_id`` is empty.
        """
        if not user_id or not isinstance(user_id, str):
            raise ValueError('A signed-in user needs a non-empty string id.')
        self._set_user(user_id)

    def sign_out(self) -> None:
        """Clear the current user and forget the cached credentials."""
        with self._lock:
            self._creds = None
        self._set_user(None)

    def _set_user(self, user_id: Optional[str]) -> None:
        if user_id == self._user_id:
            return
        self._user_id = user_id
        logging.info(f'Current user changed: {user_id or "<signed out>"}')

        signals.userChanged.emit(user_id)
        for callback in list(self._subscribers):
            callback(user_id)

    def subscribe(self, callback: Callable[[Optional[str]], Any]) -> Callable[[], None]:
        """Register ``callback`` for identity changes.

        Returns:
            A disposer that unregisters the callback. Calling it twice is harmless.
        """
        self._subscribers.append(callback)

        def dispose() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return dispose

    def get_valid_credentials(self) -> google.oauth2.credentials.Credentials:
        """
        Return valid credentials without any interaction.

        Raises:
            AuthExpiredError: if no credentials exist or a full interactive flow is required.
            status.AuthenticationException: if an auto-refresh fails.
            status.CredsInvalidException: if stored credentials are corrupt.
        """
        from ..settings import lib
        with self._lock:
            if self._creds is None:
                if not lib.settings.creds_path.exists():
                    raise AuthExpiredError(
                        'No credentials found; interactive authentication required')
                try:
                    self._creds = google.oauth2.credentials.Credentials.from_authorized_user_file(
                        str(lib.settings.creds_path))
                except (ValueError, json.JSONDecodeError) as ex:
                    lib.settings.creds_path.unlink(missing_ok=True)
                    raise status.CredsInvalidException('Failed to load credentials') from ex

            if self._creds.expired:
                if self._creds.refresh_token:
                    try:
                        self._creds.refresh(google.auth.transport.requests.Request())
                        save_creds(self._creds)
                    except google.auth.exceptions.RefreshError as ex:
                        raise status.AuthenticationException(
                            'Failed to auto-refresh credentials') from ex
                else:
                    raise AuthExpiredError(
                        'Credentials expired; interactive authentication required')

            return self._creds

    def authenticate(self) -> google.oauth2.credentials.Credentials:
        """Run the installed-app OAuth flow in the local browser and store the result.

        Blocks until the flow completes; call it from a worker thread.

        Raises:
            status.CredsNotFoundException: If the client secret file is missing.
            status.AuthenticationException: If the flow fails or is cancelled.
            status.CredsInvalidException: If the returned credentials are invalid.
        """
        creds = authenticate()
        with self._lock:
            self._creds = creds
        return creds


auth_manager = AuthManager()


def save_creds(creds: google.oauth2.credentials.Credentials) -> None:
    """
    Save OAuth2 credentials to the configured token file.

    Args:
        creds (google.oauth2.credentials.Credentials): Credentials to save.
    """
    from ..settings import lib
    lib.settings.creds_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lib.settings.creds_path, 'w', encoding='utf-8') as token_file:
        token_file.write(creds.to_json())

    logging.debug(f'Credentials saved to {lib.settings.creds_path}.')


def load_client_config() -> Dict[str, Any]:
    """Read the OAuth client secret file.

    Raises:
        status.CredsNotFoundException: If the file is missing.
        status.CredsInvalidException: If the file is not a valid client configuration.
    """
    from ..settings import lib
    if not lib.settings.client_secret_path.exists():
        raise status.CredsNotFoundException(f'Missing {lib.settings.client_secret_path}')
    try:
        with lib.settings.client_secret_path.open('r', encoding='utf-8') as f:
            data = json.load(f)
    except ValueError as ex:
        raise status.CredsInvalidException(f'Client secret is not valid JSON: {ex}') from ex
    if not isinstance(data, dict) or not ({'installed', 'web'} & set(data)):
        raise status.CredsInvalidException('Client secret must contain an "installed" or "web" section.')
    return data


def authenticate() -> google.oauth2.credentials.Credentials:
    """
    Run OAuth flow to authenticate and obtain credentials.

    Returns:
        google.oauth2.credentials.Credentials: The authenticated credentials.

    Raises:
        status.AuthenticationException: If authentication fails or is cancelled.
        status.CredsInvalidException: If credentials returned are invalid.
    """
    client_config = load_client_config()

    logging.debug('Starting new OAuth flow...')
    flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(client_config, scopes=DEFAULT_SCOPES)
    try:
        creds = flow.run_local_server(port=0)
    except (OSError, ValueError, google.auth.exceptions.GoogleAuthError) as ex:
        raise status.AuthenticationException(f'OAuth flow failed: {ex}') from ex

    if not creds:
        raise status.AuthenticationException('Authentication was cancelled or no credentials obtained.')
    if not creds.valid:
        raise status.CredsInvalidException('Invalid credentials returned from OAuth flow.')

    save_creds(creds)
    return creds
