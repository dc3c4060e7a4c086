"""
Error taxonomy for the check-in service.

Every error carries a human-readable message, a stable error code for
programmatic handling and the HTTP status it maps to at the API boundary.
"""


class CheckinError(Exception):
    """Base class for all service errors."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class NotFoundError(CheckinError):
    """Raised when an event, attendee or scan token does not resolve."""

    status_code = 404
    default_code = "NOT_FOUND"


class ValidationError(CheckinError):
    """Raised when a required field is missing or malformed."""

    status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(self, field_name: str, message: str):
        super().__init__(message)
        self.field_name = field_name


class CapacityExceededError(CheckinError):
    """Raised when registering for an event that is already full."""

    status_code = 409
    default_code = "CAPACITY_EXCEEDED"

    def __init__(self, event_id: str, capacity: int):
        super().__init__("Event is at full capacity")
        self.event_id = event_id
        self.capacity = capacity


class ForbiddenError(CheckinError):
    """Raised when a scan token is presented at the wrong event."""

    status_code = 403
    default_code = "FORBIDDEN"


class InternalError(CheckinError):
    """Unexpected store failure. The message is never shown to users."""


class MigrationError(CheckinError):
    """
    Fatal migration failure.

    The pipeline never recovers from these; the stage name is kept so the
    log shows how far the run got.
    """

    default_code = "MIGRATION_FAILED"

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
