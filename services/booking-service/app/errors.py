class BookingError(Exception):
    """Base for failures the HTTP layer maps to a status code."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(BookingError):
    status_code = 404


class InvalidState(BookingError):
    status_code = 400


class InventoryUnavailable(BookingError):
    status_code = 400


class InvalidRequest(BookingError):
    status_code = 400


class Unauthorized(BookingError):
    status_code = 403


class PersistenceFailure(BookingError):
    status_code = 500
