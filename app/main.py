import logging

from fastapi import FastAPI

from .config import LOG_LEVEL
from .errors import BookingError, booking_error_handler
from .middleware import RequestLoggingMiddleware
from .rabbitmq import publisher
from .routes import bookings_router, payments_router, tracking_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Operational endpoints."},
    {"name": "Bookings", "description": "Booking creation, lifecycle transitions, cancellation and reviews."},
    {"name": "Payments", "description": "Payment intents, confirmation and processor webhooks."},
    {"name": "Tracking", "description": "Live provider location and ETA."},
]

app = FastAPI(title="Booking Service", openapi_tags=OPENAPI_TAGS)

app.add_middleware(RequestLoggingMiddleware)
app.add_exception_handler(BookingError, booking_error_handler)

app.include_router(bookings_router)
app.include_router(payments_router)
app.include_router(tracking_router)


@app.get("/health", tags=["System"])
async def health():
    return {
        "status": "ok",
        "service": "booking-service",
        "events_enabled": publisher.enabled,
    }


@app.on_event("startup")
async def startup():
    # a broker outage must not keep the service from starting
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing without events: %s", e)


@app.on_event("shutdown")
async def shutdown():
    try:
        await publisher.close()
    except Exception as e:
        logger.warning("RabbitMQ close failed: %s", e)
