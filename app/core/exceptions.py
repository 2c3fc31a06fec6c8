"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class PreconditionFailedException(ConflictException):
    """The appointment is not in a status that allows the requested transition.

    The caller should refresh the appointment and decide again rather than
    retry blindly.
    """

    def __init__(self, message: str = "Appointment status does not allow this action"):
        super().__init__(message)


class AlreadyTerminalException(ConflictException):
    """The appointment is already validated or cancelled."""

    def __init__(self, message: str = "Appointment is already closed"):
        super().__init__(message)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class EmptyDescriptionException(ValidationException):
    """A problem report was submitted without a description."""

    def __init__(self, message: str = "A problem description is required"):
        super().__init__(message)


class PriceBelowFloorException(ValidationException):
    """A custom price is lower than the service list price."""

    def __init__(self, message: str = "Custom price cannot be below the service price"):
        super().__init__(message)


class PaymentReleaseFailedException(AppException):
    """Payment could not be released; the appointment was not validated."""

    def __init__(self, message: str = "Payment release failed, appointment was not validated"):
        """Initialize with 402 status code."""
        super().__init__(message, status_code=402)


class TransientStoreException(AppException):
    """The data store is unavailable; the request can be retried with backoff."""

    def __init__(self, message: str = "Data store temporarily unavailable, please retry"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)
