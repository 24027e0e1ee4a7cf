"""Domain errors raised by the services.

Each error carries the HTTP status the API answers with. The app-level
handler in create_app() renders them as {"error": ..., "code": ...}.
"""

import re


class DomainError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.default_message())
        self.message = message or self.default_message()

    @classmethod
    def default_message(cls):
        return cls.__doc__.strip().splitlines()[0] if cls.__doc__ else cls.__name__

    @property
    def code(self):
        """Snake-case error name, e.g. CapacityExceededError -> capacity_exceeded."""
        name = type(self).__name__
        if name.endswith("Error"):
            name = name[: -len("Error")]
        return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class ValidationError(DomainError):
    """Invalid request."""

    status_code = 400


class GiftExpiredError(ValidationError):
    """Gift code has expired."""


class NotFoundError(DomainError):
    """Not found."""

    status_code = 404


class ForbiddenError(DomainError):
    """Not authorized."""

    status_code = 403


class ConflictError(DomainError):
    """Conflicting value for an immutable field."""

    status_code = 409


class InvalidTransitionError(ConflictError):
    """Order status cannot change this way."""


class CapacityExceededError(ConflictError):
    """Event is full."""


class DuplicateRegistrationError(ConflictError):
    """Already registered for this event."""


class SignatureError(DomainError):
    """Invalid webhook signature."""

    status_code = 400


class RetryableError(DomainError):
    """Temporary failure, please try again."""

    status_code = 503
