"""Domain errors raised by the rental services.

Routes translate these into HTTP responses; the sweeper logs them per item.
"""


class RentalError(Exception):
    """Base error for rental service failures."""

    error_kind = "RentalError"
    status_code = 400

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class NotFoundError(RentalError):
    """Referenced equipment, reservation, maintenance or user does not exist."""

    error_kind = "NotFoundError"
    status_code = 404


class InvalidStateError(RentalError):
    """Requested transition is not legal from the current status."""

    error_kind = "InvalidStateError"
    status_code = 409


class ConflictError(RentalError):
    """Interval overlaps a blocking reservation, or the equipment is unavailable."""

    error_kind = "ConflictError"
    status_code = 409


class ValidationError(RentalError):
    """Malformed interval or missing required input."""

    error_kind = "ValidationError"
    status_code = 400
