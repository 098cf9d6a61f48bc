"""
Error taxonomy for the ride core.

Every kind carries a stable ``code`` and the HTTP status it renders as;
``app.main`` turns any ``RideError`` into ``{"code": ..., "detail": ...}``.
"""
from fastapi import status


class RideError(Exception):
    code = "ride_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Ride operation failed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(RideError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Ride not found"


class Forbidden(RideError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not permitted for this ride"


class InvalidState(RideError):
    code = "invalid_state"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Transition not allowed from the current status"


class InvalidOTP(RideError):
    code = "invalid_otp"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid OTP"


class NoDriversAvailable(RideError):
    code = "no_drivers_available"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "No available drivers found"


class ConcurrencyConflict(RideError):
    """Atomic assignment lost the race; recovered inside dispatch."""

    code = "concurrency_conflict"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Ride was already assigned or is no longer searching"


class UpstreamFailure(RideError):
    code = "upstream_failure"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Upstream dependency failed"
