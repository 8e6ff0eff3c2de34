"""Status definitions and exceptions for ExpenseSync.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., RemoteUnavailableException) for error handling in services
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SyncConfigNotFound = enum.auto()
    SyncConfigInvalid = enum.auto()

    # Authentication status
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Remote store status
    RemoteNotConfigured = enum.auto()
    RemoteUnavailable = enum.auto()
    RemoteAuthRejected = enum.auto()
    RemoteRequestRejected = enum.auto()

    # Data status
    PayloadInvalid = enum.auto()
    StoreInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SyncConfigNotFound: 'Could not find the sync config.',
    Status.SyncConfigInvalid: 'The sync config seems to be incomplete, or contains invalid values.',

    Status.CredsNotFound: 'Could not find a saved session. Please sign in to your account.',
    Status.CredsInvalid: 'Could not read the saved session. Please sign in again.',
    Status.NotAuthenticated: 'Authentication error. Try signing in to your account again.',

    Status.RemoteNotConfigured: 'The sync server is not configured. Have you set the server url and api key in the settings?',
    Status.RemoteUnavailable: 'The sync server is unavailable. Please check your connection.',
    Status.RemoteAuthRejected: 'The sync server rejected the credentials. Please sign in again.',
    Status.RemoteRequestRejected: 'The sync server rejected the request.',

    Status.PayloadInvalid: 'A record could not be converted for syncing.',
    Status.StoreInvalid: 'The local database is invalid.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in ExpenseSync.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.detail = message
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..ui.actions import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SyncConfigNotFoundException(BaseStatusException):
    """Exception raised when the sync configuration file cannot be found."""
    status = Status.SyncConfigNotFound


class SyncConfigInvalidException(BaseStatusException):
    """Exception raised when the sync configuration is invalid or malformed."""
    status = Status.SyncConfigInvalid


class CredsNotFoundException(BaseStatusException):
    """Exception raised when no stored session can be found."""
    status = Status.CredsNotFound


class CredsInvalidException(BaseStatusException):
    """Exception raised when the stored session is corrupt."""
    status = Status.CredsInvalid


class AuthenticationException(BaseStatusException):
    """Exception raised when signing in or refreshing the session fails."""
    status = Status.NotAuthenticated


class RemoteNotConfiguredException(BaseStatusException):
    """Exception raised when the remote url or api key is missing."""
    status = Status.RemoteNotConfigured


class RemoteUnavailableException(BaseStatusException):
    """Exception raised on network failures and server-side (5xx) errors."""
    status = Status.RemoteUnavailable


class RemoteAuthException(BaseStatusException):
    """Exception raised when the remote store rejects the credentials (401/403)."""
    status = Status.RemoteAuthRejected


class RemoteRequestException(BaseStatusException):
    """Exception raised when the remote store rejects a request for any other reason."""
    status = Status.RemoteRequestRejected


class PayloadInvalidException(BaseStatusException):
    """Exception raised when a row fails schema validation on either sync boundary."""
    status = Status.PayloadInvalid


class StoreInvalidException(BaseStatusException):
    """Exception raised when the local store cannot be opened or repaired."""
    status = Status.StoreInvalid
