"""Error taxonomy shared by the client engine and the remote layer."""
from __future__ import annotations


class MessagingError(Exception):
    pass


class NotAuthenticated(MessagingError):
    """A command was issued without a current user id."""


class RemoteError(MessagingError):
    """A remote call failed.

    ``code`` is the HTTP status as a string, or ``"transport"`` when the
    request never produced a response.
    """

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message


class PermissionRace(RemoteError):
    """A write was rejected because the row already exists.

    Raised only for duplicate-row conflicts, so callers may treat it as
    "already applied".
    """


class FetchError(MessagingError):
    def __init__(self, message: str, cause: RemoteError | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class EditDenied(MessagingError):
    pass


class NotReady(MessagingError):
    pass


class UploadFailed(MessagingError):
    pass
