"""Errors raised by the lending services.

Every error carries a message that can be shown to the user as-is. The HTTP
layer maps each class to a status code; services never raise HTTPException.
"""


class LendingError(Exception):
    pass


class ValidationError(LendingError):
    """Input is malformed or out of range. Raised before any write."""


class InvalidTransitionError(ValidationError):
    pass


class NotFoundError(LendingError):
    pass


class UnavailableError(LendingError):
    """The material has no loanable units left."""


class AuthenticationError(LendingError):
    pass


class StoreError(LendingError):
    """The database call failed."""


class IndexUnavailableError(StoreError):
    pass


class ConflictError(StoreError):
    """Another writer changed the document after it was read."""
