"""Status codes and the exception hierarchy of SpendTracker.

Every error that can reach the user is a :class:`BaseStatusException`. Its class names
a :class:`Status`, and the status maps to the message shown in notifications. The
exception text adds the technical detail for the logs.

The hierarchy follows where an error comes from:

    BaseStatusException
    ├── ConfigException: settings.json and client_secret.json
    ├── AuthException: sign-in and access token refusals
    ├── RemoteStoreException: the spreadsheet and the Google services
    ├── ValidationException: a new record that cannot be saved
    └── CacheInvalidException: the local session database

:class:`SilentAuthError` sits outside the hierarchy on purpose.
"""
import enum
import logging
from typing import Dict, Optional


class Status(enum.StrEnum):
    UnknownStatus = enum.auto()

    ConfigInvalid = enum.auto()
    ClientSecretNotFound = enum.auto()
    ClientSecretInvalid = enum.auto()

    NotAuthenticated = enum.auto()
    NotAuthorized = enum.auto()

    SpreadsheetNotFound = enum.auto()
    ServiceUnavailable = enum.auto()

    AmountInvalid = enum.auto()
    CategoryMissing = enum.auto()

    CacheInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Something went wrong. Check the logs for details.',
    Status.ConfigInvalid: 'The settings file is incomplete or holds invalid values.',
    Status.ClientSecretNotFound: 'No Google OAuth client is configured. Add your client_secret.json.',
    Status.ClientSecretInvalid: 'The Google OAuth client configuration is not valid. Check client_secret.json.',
    Status.NotAuthenticated: 'Authentication error. Try signing in again to your Google account.',
    Status.NotAuthorized: 'Google refused access to your spreadsheet. Your session may have expired.',
    Status.SpreadsheetNotFound: 'Your expense spreadsheet could not be found. It may have been deleted.',
    Status.ServiceUnavailable: 'Google Sheets could not be reached. Check your connection.',
    Status.AmountInvalid: 'Enter an amount greater than zero.',
    Status.CategoryMissing: 'Select a category.',
    Status.CacheInvalid: 'The local cache could not be opened. Try signing in again.',
}


def get_message(status: Status) -> str:
    """Return the user-facing message of a status."""
    return STATUS_MESSAGE.get(status, STATUS_MESSAGE[Status.UnknownStatus])


class BaseStatusException(Exception):
    """An error with a user-facing status.

    Attributes:
        status (Status): Set by each subclass.
        status_message (str): The user-facing message of ``status``.
        detail (str | None): Technical context passed by the raiser.
    """
    status = Status.UnknownStatus

    def __init__(self, detail: Optional[str] = None):
        self.status_message = get_message(self.status)
        self.detail = detail
        text = f'{self.status_message} {detail}' if detail else self.status_message
        super().__init__(text)

        logging.debug(f'{self.__class__.__name__}: {text}')


class UnknownException(BaseStatusException):
    pass


class ConfigException(BaseStatusException):
    status = Status.ConfigInvalid


class ConfigInvalidException(ConfigException):
    """settings.json is missing, unparsable or fails the schema."""


class ClientSecretNotFoundException(ConfigException):
    status = Status.ClientSecretNotFound


class ClientSecretInvalidException(ConfigException):
    status = Status.ClientSecretInvalid


class AuthException(BaseStatusException):
    status = Status.NotAuthenticated


class AuthenticationExceptionException(AuthException):
    """An interactive sign-in failed, or the user signed out while waiting for a token."""


class NotAuthorizedException(AuthException):
    """Google answered with 401 or 403, or the access token could not be used.

    Attributes:
        status_code (int): The HTTP status of the refused request.
    """
    status = Status.NotAuthorized

    def __init__(self, detail: Optional[str] = None, status_code: int = 401):
        self.status_code = status_code
        super().__init__(detail)


class RemoteStoreException(BaseStatusException):
    status = Status.ServiceUnavailable


class SpreadsheetNotFoundException(RemoteStoreException):
    status = Status.SpreadsheetNotFound


class ServiceUnavailableException(RemoteStoreException):
    """An HTTP error other than 401, 403 and 404, or a network, timeout or SSL failure."""


class ValidationException(BaseStatusException):
    pass


class AmountInvalidException(ValidationException):
    status = Status.AmountInvalid


class CategoryMissingException(ValidationException):
    status = Status.CategoryMissing


class CacheInvalidException(BaseStatusException):
    status = Status.CacheInvalid


class SilentAuthError(Exception):
    """Rejects token waiters when a background authorization attempt fails.

    An inactive provider session makes silent attempts fail as a matter of course,
    so this never reaches the user.
    """
