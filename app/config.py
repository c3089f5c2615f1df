import os

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is not set")

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    raise RuntimeError("REDIS_URL environment variable is not set")

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY") or "lkr"
PAYMENT_MIN_AMOUNT_MINOR = int(os.getenv("PAYMENT_MIN_AMOUNT_MINOR") or "100")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS") or "10")

DISTANCE_API_URL = (
    os.getenv("DISTANCE_API_URL")
    or "https://maps.googleapis.com/maps/api/distancematrix/json"
)
DISTANCE_API_KEY = os.getenv("DISTANCE_API_KEY") or ""
DISTANCE_TIMEOUT_SECONDS = float(os.getenv("DISTANCE_TIMEOUT_SECONDS") or "3")

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"
