"""GUARD API ERRORS"""


class Error(Exception):
    def __init__(self, message):
        self.message = message
        super().__init__(message)

    @property
    def serialize(self):
        return {"message": self.message}


class ValidationError(Error):
    """Raised for malformed input before any store access."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    @property
    def serialize(self):
        data = {"message": self.message, "error_code": "validation_error"}
        if self.field:
            data["field"] = self.field
        return data


class UserNotFound(Error):
    pass


class AuthError(Error):
    pass


class NotAllowed(Error):
    pass


class EmailError(Error):
    pass


class NotificationError(Error):
    pass


class CounterStoreError(Error):
    """Raised by counter store backends when the store cannot be reached."""

    pass


class ImmutableEventError(Error):
    """Raised when code attempts to modify a persisted security event."""

    pass


class AccountLockedError(Error):
    """Raised when a login is refused because of an active lockout.

    User and IP lockouts, temporary or permanent, serialize identically.
    """

    GENERIC_MESSAGE = "Too many failed login attempts. Please try again later."

    def __init__(self, message: str = GENERIC_MESSAGE, scope: str = "account"):
        super().__init__(message)
        self.scope = scope

    @property
    def serialize(self):
        return {
            "message": self.GENERIC_MESSAGE,
            "error_code": "too_many_attempts",
        }


class UserDuplicated(Error):
    pass
