"""Exception types shared by the encryption helpers and the user service."""
from __future__ import annotations

from typing import Iterable, Optional


class EncryptionError(Exception):
    """Base class for failures raised by :mod:`bizmetrics.encryption`."""

    kind = "encryption_error"


class InvalidParameter(EncryptionError, ValueError):
    """An argument had the wrong shape, type or range."""

    kind = "invalid_parameter"


class InsufficientEntropy(EncryptionError):
    """The randomness source returned degenerate output."""

    kind = "insufficient_entropy"


class KeyLengthError(EncryptionError, ValueError):
    """A key did not match the length mandated by the cipher suite."""

    kind = "key_length"


class MissingParameter(EncryptionError, ValueError):
    """A required argument was absent."""

    kind = "missing_parameter"


class DecryptionFailed(EncryptionError):
    """The envelope could not be authenticated or decrypted."""

    kind = "decryption_failed"

    def __init__(self, message: str = "Decryption failed") -> None:
        super().__init__(message)


class EmptyInput(EncryptionError, ValueError):
    """Hashing was requested for empty data."""

    kind = "empty_input"


class UserServiceError(Exception):
    """Base class for failures raised by :class:`bizmetrics.users.UserService`."""

    kind = "user_service_error"


class MissingRequiredField(UserServiceError, ValueError):
    """A user payload lacked one or more required fields."""

    kind = "missing_required_field"

    def __init__(self, fields: Iterable[str]) -> None:
        self.fields = tuple(fields)
        super().__init__(f"Missing required field(s): {', '.join(self.fields)}")


class DuplicateUser(UserServiceError):
    """A user with the same email or external identity already exists."""

    kind = "duplicate_user"


class VersionConflict(UserServiceError):
    """The caller's expected version no longer matches the stored record."""

    kind = "version_conflict"

    def __init__(self, user_id: str, expected: int, actual: Optional[int] = None) -> None:
        self.user_id = user_id
        self.expected = expected
        self.actual = actual
        if actual is None:
            message = f"Version conflict for user {user_id}: expected version {expected}"
        else:
            message = (
                f"Version conflict for user {user_id}: expected version {expected}, "
                f"found {actual}"
            )
        super().__init__(message)


class InvalidOrInactiveUser(UserServiceError):
    """Role checks were requested for a missing or deactivated user."""

    kind = "invalid_or_inactive_user"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("Invalid or inactive user")


class UserNotFound(UserServiceError, LookupError):
    """A mutation targeted a user that does not exist."""

    kind = "user_not_found"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


__all__ = [
    "DecryptionFailed",
    "DuplicateUser",
    "EmptyInput",
    "EncryptionError",
    "InsufficientEntropy",
    "InvalidOrInactiveUser",
    "InvalidParameter",
    "KeyLengthError",
    "MissingParameter",
    "MissingRequiredField",
    "UserNotFound",
    "UserServiceError",
    "VersionConflict",
]
