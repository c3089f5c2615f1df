from fastapi import Request
from fastapi.responses import JSONResponse


class BookingError(Exception):
    status_code = 500
    detail = "Booking operation failed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.detail
        super().__init__(self.detail)


class NotFound(BookingError):
    status_code = 404
    detail = "Booking not found"


class Forbidden(BookingError):
    status_code = 403
    detail = "Unauthorized"


class BadRequest(BookingError):
    status_code = 400
    detail = "Invalid request"


class AmountTooSmall(BadRequest):
    detail = "Amount too small"


class InvalidSignature(BadRequest):
    detail = "Invalid webhook signature"


class InvalidTransition(BookingError):
    status_code = 409
    detail = "Invalid status transition"


class PreconditionFailed(BookingError):
    status_code = 409
    detail = "Booking is not in the required state"


class PaymentIncomplete(PreconditionFailed):
    detail = "Payment not completed"


class AlreadyReviewed(PreconditionFailed):
    detail = "Booking has already been reviewed"


class UpstreamUnavailable(BookingError):
    status_code = 502
    detail = "Upstream service unavailable"


class WriteConflict(BookingError):
    status_code = 409
    detail = "Booking was modified concurrently, retry the request"


class AlreadySettled(BookingError):
    """Short-circuit for bookings whose payment is already completed.

    Not a failure for the caller: rendered as a 200 carrying the settled state.
    """

    status_code = 200
    detail = "Payment already completed for this booking"

    def __init__(self, booking_id: str, payment: dict | None = None):
        super().__init__()
        self.booking_id = booking_id
        self.payment = payment


async def booking_error_handler(request: Request, exc: BookingError):
    if isinstance(exc, AlreadySettled):
        return JSONResponse(
            status_code=200,
            content={
                "status": "already_settled",
                "booking_id": exc.booking_id,
                "payment_completed": True,
                "payment": exc.payment,
            },
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
