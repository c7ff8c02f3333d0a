"""Error taxonomy surfaced by the booking core to the boundary layer."""


class BookingEngineError(Exception):
    """Base exception for booking engine failures."""

    code = "booking_error"
    status_code = 400

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class BookingRejected(BookingEngineError):
    """A booking request was refused; the user may pick another date or slot."""

    status_code = 422


class DailyLimitReached(BookingRejected):
    code = "daily_limit_reached"


class SlotFull(BookingRejected):
    code = "slot_full"


class BlackoutDate(BookingRejected):
    code = "blackout_date"


class InvalidBookingRequest(BookingEngineError):
    code = "invalid_booking_request"
    status_code = 422


class InvalidPolicy(BookingEngineError):
    code = "invalid_policy"
    status_code = 422


class InvalidTransition(BookingEngineError):
    code = "invalid_transition"
    status_code = 422

    def __init__(self, message: str, *, current_status: str | None = None, target_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status
        self.target_status = target_status


class AlreadyCompleted(InvalidTransition):
    code = "already_completed"


class AppointmentNotFound(BookingEngineError):
    code = "appointment_not_found"
    status_code = 404


class BatchTooLarge(BookingEngineError):
    code = "batch_too_large"
    status_code = 422


class RateLimited(BookingEngineError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, *, tier: str, retry_after: int):
        super().__init__(message)
        self.tier = tier
        self.retry_after = retry_after


class ConcurrencyConflict(BookingEngineError):
    """Transient lock or serialization failure; the whole attempt may be retried."""

    code = "concurrency_conflict"
    status_code = 409


class PersistenceUnavailable(BookingEngineError):
    code = "persistence_unavailable"
    status_code = 503
