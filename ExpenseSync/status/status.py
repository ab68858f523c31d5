"""Status definitions and exceptions for ExpenseSync.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions for settings, authentication, local persistence and remote errors

Remote exceptions are split in two families. :class:`RemoteTransientException`
subclasses are retried through the pending-change queue,
:class:`RemotePermanentException` subclasses are moved to the failed list.
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Authentication status
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Local store status
    LocalStoreInvalid = enum.auto()
    LocalApplyFailed = enum.auto()
    RecordNotFound = enum.auto()

    # Remote status
    RemoteNotConfigured = enum.auto()
    RemoteUnavailable = enum.auto()
    RemotePermissionDenied = enum.auto()
    RemotePayloadInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the sync settings.',
    Status.SettingsInvalid: 'The sync settings seem to be incomplete, or contain invalid values.',

    Status.CredsNotFound: 'Could not find the credentials. Please sign in.',
    Status.CredsInvalid: 'Could not verify the credentials. Please sign in again.',
    Status.NotAuthenticated: 'Authentication error. Try signing in again.',

    Status.LocalStoreInvalid: 'The local store could not be read or written.',
    Status.LocalApplyFailed: 'The change could not be applied locally.',
    Status.RecordNotFound: 'The record does not exist.',

    Status.RemoteNotConfigured: 'The remote store is not configured. Have you set a project id in the settings?',
    Status.RemoteUnavailable: 'The remote store is unavailable. Changes will be synced later.',
    Status.RemotePermissionDenied: 'The remote store rejected the change (permission denied).',
    Status.RemotePayloadInvalid: 'The remote store rejected the change (invalid data).',
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
        log_level (int): Level used when the exception logs itself.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus
    log_level = logging.ERROR

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.log(self.log_level, exception_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the settings file is invalid or malformed."""
    status = Status.SettingsInvalid


class CredsNotFoundException(BaseStatusException):
    """Exception raised when stored credentials cannot be found."""
    status = Status.CredsNotFound


class CredsInvalidException(BaseStatusException):
    """Exception raised when stored credentials are invalid or expired."""
    status = Status.CredsInvalid


class AuthenticationException(BaseStatusException):
    """Exception raised when the user is not authenticated."""
    status = Status.NotAuthenticated


class LocalStoreInvalidException(BaseStatusException):
    """Exception raised when the on-device store cannot be opened or recovered."""
    status = Status.LocalStoreInvalid


class LocalApplyException(BaseStatusException):
    """Exception raised when a mutation cannot be applied to the local snapshot."""
    status = Status.LocalApplyFailed


class RecordNotFoundException(LocalApplyException):
    """Exception raised when a mutation targets a record id that does not exist."""
    status = Status.RecordNotFound


class RemoteException(BaseStatusException):
    """Base class of all remote store failures."""
    status = Status.RemoteUnavailable
    log_level = logging.WARNING
    retriable = True


class RemoteTransientException(RemoteException):
    """Remote failure that is expected to succeed on a later attempt."""
    pass


class RemoteNotConfiguredException(RemoteTransientException):
    """Exception raised when the remote project is not configured in settings."""
    status = Status.RemoteNotConfigured


class RemoteUnavailableException(RemoteTransientException):
    """Exception raised when the network or the remote service is unreachable."""
    status = Status.RemoteUnavailable


class RemotePermanentException(RemoteException):
    """Remote failure that will not succeed by retrying the same change."""
    retriable = False


class RemotePermissionException(RemotePermanentException):
    """Exception raised when the remote store denies access to a document."""
    status = Status.RemotePermissionDenied


class RemotePayloadInvalidException(RemotePermanentException):
    """Exception raised when the remote store rejects a malformed payload."""
    status = Status.RemotePayloadInvalid
