"""Typed failures raised by the lending ledger and the catalog store.

Every error carries the HTTP status the API answers with, so the
presentation layer never has to match on message strings.
"""


class LibraryError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(LibraryError):
    status_code = 404


class Unavailable(LibraryError):
    status_code = 400


class AlreadyReturned(LibraryError):
    status_code = 409


class DuplicateUsername(LibraryError):
    status_code = 400


class ValidationError(LibraryError):
    status_code = 400


class AuthenticationError(LibraryError):
    status_code = 401


class StorageError(LibraryError):
    status_code = 500
