"""
Remote account authentication and session management.

Provides the :class:`AuthManager` that signs in against the remote store's token endpoint,
stores the session on disk and refreshes it without user interaction when it expires.
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

import requests

from ..status import status

# Refresh this many seconds before the access token actually expires
EXPIRY_MARGIN: int = 60

SESSION_KEYS = ('access_token', 'refresh_token', 'expires_at', 'user_id', 'email')


class AuthExpiredError(Exception):
    """Raised when there is no usable session and an interactive sign-in is required."""
    pass


def remote_endpoint() -> Tuple[str, str, Optional[int]]:
    """Return the configured remote url, api key and request timeout.

    Raises:
        status.RemoteNotConfiguredException: If the url or api key is missing.
    """
    from ..settings import lib
    config: Dict[str, Any] = lib.settings.get_section('remote')
    url = (config.get('url') or '').rstrip('/')
    api_key = config.get('api_key') or ''
    if not url or not api_key:
        raise status.RemoteNotConfiguredException
    timeout = config.get('request_timeout') or None
    return url, api_key, timeout


def _session_from_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a token endpoint response into the stored session format."""
    try:
        user = data.get('user') or {}
        expires_at = data.get('expires_at')
        if expires_at is None:
            expires_at = int(time.time()) + int(data['expires_in'])
        return {
            'access_token': data['access_token'],
            'refresh_token': data['refresh_token'],
            'expires_at': int(expires_at),
            'user_id': user['id'],
            'email': user.get('email', ''),
        }
    except (KeyError, TypeError, ValueError) as ex:
        raise status.AuthenticationException(f'Unexpected token response: {ex}') from ex


def load_session() -> Optional[Dict[str, Any]]:
    """
    Load the stored session.

    Returns:
        The session dict, or None if no session is stored.

    Raises:
        status.CredsInvalidException: If the stored session is corrupt. The file is removed.
    """
    from ..settings import lib
    if not lib.settings.creds_path.exists():
        return None

    try:
        with open(lib.settings.creds_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict) or any(k not in data for k in SESSION_KEYS):
            raise ValueError('Session file is missing required keys')
        return data
    except (ValueError, OSError) as ex:
        try:
            lib.settings.creds_path.unlink()
        except OSError as e:
            logging.debug(f'Could not remove {lib.settings.creds_path}: {e}')
        raise status.CredsInvalidException('Failed to load the stored session') from ex


def save_session(session: Dict[str, Any]) -> None:
    """Save the session to the configured credentials file."""
    from ..settings import lib
    with open(lib.settings.creds_path, 'w', encoding='utf-8') as f:
        json.dump(session, f, indent=4, ensure_ascii=False)
    logging.debug(f'Session saved to {lib.settings.creds_path}.')


def is_expired(session: Dict[str, Any]) -> bool:
    return time.time() >= float(session.get('expires_at', 0)) - EXPIRY_MARGIN


class AuthManager:
    """Manages the remote session with thread-safe refresh."""

    def __init__(self):
        self._lock = threading.Lock()
        self._session: Optional[Dict[str, Any]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._session['user_id'] if self._session else None

    def _token_request(self, grant_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url, api_key, timeout = remote_endpoint()
        try:
            response = requests.post(
                f'{url}/auth/v1/token',
                params={'grant_type': grant_type},
                json=body,
                headers={'apikey': api_key, 'Content-Type': 'application/json'},
                timeout=timeout,
            )
        except requests.exceptions.RequestException as ex:
            raise status.RemoteUnavailableException(f'Could not reach the auth endpoint: {ex}') from ex

        if response.status_code >= 500:
            raise status.RemoteUnavailableException(f'Auth endpoint returned HTTP {response.status_code}.')
        if not response.ok:
            raise status.AuthenticationException(
                f'Token request rejected (HTTP {response.status_code}): {response.text[:200]}'
            )
        return _session_from_response(response.json())

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        """
        Sign in with email and password and store the session.

        Raises:
            status.AuthenticationException: If the credentials are rejected.
            status.RemoteUnavailableException: If the endpoint cannot be reached.
        """
        from ..ui.actions import signals
        with self._lock:
            session = self._token_request('password', {'email': email, 'password': password})
            save_session(session)
            self._session = session

        logging.info(f'Signed in as {session["email"] or session["user_id"]}.')
        signals.authStateChanged.emit(session['user_id'])
        return session

    def get_valid_session(self) -> Dict[str, Any]:
        """
        Return a valid session without any UI.

        Raises:
            AuthExpiredError: If no session exists or the refresh token was rejected.
            status.CredsInvalidException: If the stored session is corrupt.
            status.RemoteUnavailableException: If a refresh was needed but the endpoint is unreachable.
        """
        with self._lock:
            if self._session is None:
                self._session = load_session()
                if self._session is None:
                    raise AuthExpiredError('No session found; sign-in required')

            if is_expired(self._session):
                logging.debug('Session expired, refreshing...')
                try:
                    session = self._token_request(
                        'refresh_token', {'refresh_token': self._session['refresh_token']}
                    )
                except status.AuthenticationException as ex:
                    self._clear()
                    raise AuthExpiredError('Session refresh rejected; sign-in required') from ex
                save_session(session)
                self._session = session

            return self._session

    def access_token(self) -> str:
        return self.get_valid_session()['access_token']

    def _clear(self) -> None:
        from ..settings import lib
        self._session = None
        if lib.settings.creds_path.exists():
            logging.debug(f'Deleting {lib.settings.creds_path}...')
            lib.settings.creds_path.unlink()

    def sign_out(self) -> None:
        """Delete the stored session."""
        from ..ui.actions import signals
        from . import service

        with self._lock:
            self._clear()
        service.clear_service()
        logging.debug('Successfully signed out.')
        signals.authStateChanged.emit('')


auth_manager = AuthManager()
