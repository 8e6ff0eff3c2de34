"""Remote store client and background worker.

Provides :class:`RemoteAPI`, a small client for the PostgREST-style REST endpoint of the
remote store, and :class:`AsyncWorker`, a QThread that runs blocking calls with retries.

Every row-level request is scoped by ``user_id`` and authorised with the bearer token of
the current session, so the remote store's row-level security applies.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from PySide6 import QtCore

from .auth import auth_manager, AuthExpiredError, remote_endpoint
from ..status import status

# Cached client to reuse one HTTP session per run
_cached_service: Optional['RemoteAPI'] = None

MAX_RETRIES: int = 3

# PostgREST error code for "no rows returned" when a single object was requested
NOT_FOUND_CODE = 'PGRST116'


class AsyncWorker(QtCore.QThread):
    """
    Generic worker thread with retry logic for blocking functions.

    Signals:
        resultReady (object): Emitted with the function's result on success.
        errorOccurred (object): Emitted with the exception on failure.
    """
    resultReady = QtCore.Signal(object)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.func = func
        self.args = args

        self.max_attempts = kwargs.pop('max_attempts', MAX_RETRIES)
        self.wait_seconds = kwargs.pop('wait_seconds', 2.0)
        self.kwargs = kwargs

    def run(self) -> None:
        attempts = 0
        last_exception = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                result = self.func(*self.args, **self.kwargs)
                self.resultReady.emit(result)
                return
            except AuthExpiredError as ex:
                # Notify the UI that an interactive sign-in is required
                from ..ui.actions import signals
                signals.authenticationRequested.emit()
                self.errorOccurred.emit(ex)
                return
            except (
                    status.AuthenticationException,
                    status.CredsNotFoundException,
                    status.CredsInvalidException,
                    status.RemoteNotConfiguredException,
                    status.RemoteAuthException,
                    status.StoreInvalidException,
            ) as ex:
                self.errorOccurred.emit(ex)
                return
            except Exception as ex:
                logging.debug(f'Attempt {attempts}/{self.max_attempts} failed: {ex}')
                last_exception = ex
                if attempts < self.max_attempts:
                    time.sleep(self.wait_seconds)
        # All retries exhausted
        self.errorOccurred.emit(last_exception)


class RemoteAPI:
    """Client for the remote store's REST endpoint.

    Args:
        url: Base url of the remote project, for example ``https://xyz.supabase.co``.
        api_key: The project's public api key.
        timeout: Request timeout in seconds, or None for no timeout.
        token_provider: Callable returning the current access token. Defaults to the
            shared :data:`~ExpenseSync.core.auth.auth_manager`.
    """

    def __init__(
            self,
            url: str,
            api_key: str,
            timeout: Optional[int] = None,
            token_provider: Optional[Callable[[], str]] = None
    ) -> None:
        self.url = url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.token_provider = token_provider or auth_manager.access_token
        self.session = requests.Session()

    def close(self) -> None:
        self.session.close()

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {
            'apikey': self.api_key,
            'Authorization': f'Bearer {self.token_provider()}',
            'Content-Type': 'application/json',
        }
        headers.update(extra)
        return headers

    def _request(
            self,
            method: str,
            table: str,
            params: Optional[Dict[str, str]] = None,
            json: Any = None,
            headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        """Send a request and map failures onto status exceptions.

        Raises:
            status.RemoteUnavailableException: On network failures and 5xx responses.
            status.RemoteAuthException: On 401 and 403 responses.
            status.RemoteRequestException: On any other error response.
        """
        endpoint = f'{self.url}/rest/v1/{table}'
        logging.debug(
            f'[Thread-{threading.get_ident()}] {method} {endpoint} params={params}'
        )
        try:
            response = self.session.request(
                method, endpoint, params=params, json=json, headers=headers or self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as ex:
            raise status.RemoteUnavailableException(f'{method} {table} failed: {ex}') from ex

        if response.status_code >= 500:
            raise status.RemoteUnavailableException(f'{method} {table}: HTTP {response.status_code}')
        if response.status_code in (401, 403):
            raise status.RemoteAuthException(f'{method} {table}: HTTP {response.status_code}')
        return response

    @staticmethod
    def _error_code(response: requests.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        return body.get('code') if isinstance(body, dict) else None

    @staticmethod
    def _raise_for_status(response: requests.Response, context: str) -> None:
        if response.ok:
            return
        raise status.RemoteRequestException(
            f'{context}: HTTP {response.status_code} {response.text[:200]}'
        )

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        """Insert a row, or merge it into the row matching the ``on_conflict`` unique key.

        Returns:
            The stored row, including server-maintained fields.
        """
        response = self._request(
            'POST', table,
            params={'on_conflict': on_conflict},
            json=row,
            headers=self._headers(Prefer='resolution=merge-duplicates,return=representation'),
        )
        self._raise_for_status(response, f'upsert {table}')
        rows = response.json()
        if not rows:
            raise status.RemoteRequestException(f'upsert {table}: no row returned')
        return rows[0] if isinstance(rows, list) else rows

    def update(self, table: str, values: Dict[str, Any], filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Update the rows matching every ``column = value`` filter.

        Returns:
            The updated rows. Empty when nothing matched.
        """
        response = self._request(
            'PATCH', table,
            params={k: f'eq.{v}' for k, v in filters.items()},
            json=values,
            headers=self._headers(Prefer='return=representation'),
        )
        self._raise_for_status(response, f'update {table}')
        return response.json() or []

    def select(
            self,
            table: str,
            filters: Dict[str, Any],
            updated_after: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Fetch the rows matching the filters, oldest ``updated_at`` first.

        Args:
            table: Remote table name.
            filters: ``column = value`` equality filters.
            updated_after: When set, only rows with ``updated_at`` strictly greater are returned.
        """
        params = {'select': '*', 'order': 'updated_at.asc'}
        params.update({k: f'eq.{v}' for k, v in filters.items()})
        if updated_after:
            params['updated_at'] = f'gt.{updated_after}'
        response = self._request('GET', table, params=params)
        self._raise_for_status(response, f'select {table}')
        rows = response.json()
        if not isinstance(rows, list):
            raise status.RemoteRequestException(f'select {table}: expected a list of rows')
        return rows

    def select_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Fetch the single row matching the filters.

        Returns:
            The row, or None when no row matches.
        """
        params = {'select': '*'}
        params.update({k: f'eq.{v}' for k, v in filters.items()})
        response = self._request(
            'GET', table, params=params,
            headers=self._headers(Accept='application/vnd.pgrst.object+json'),
        )
        if not response.ok and self._error_code(response) == NOT_FOUND_CODE:
            logging.debug(f'select_one {table}: no row found')
            return None
        self._raise_for_status(response, f'select_one {table}')
        return response.json()


def clear_service() -> None:
    """
    Clears the cached remote client.
    """
    global _cached_service

    if _cached_service is not None:
        try:
            _cached_service.close()
        except requests.exceptions.RequestException as ex:
            logging.debug(f'Failed closing cached remote client: {ex}')

    _cached_service = None


def get_service() -> RemoteAPI:
    """
    Builds (or returns cached) remote client.

    Raises:
        status.RemoteNotConfiguredException: If the remote section of the config is incomplete.
    """
    global _cached_service
    if _cached_service is not None:
        return _cached_service

    url, api_key, timeout = remote_endpoint()
    _cached_service = RemoteAPI(url, api_key, timeout=timeout)
    logging.debug(f'Remote client created for {url}.')
    return _cached_service
