"""
Order Service — configuration

Everything comes from environment variables, read once at import time.
DATABASE_URL is mandatory; the rest have working defaults.

The FREE_SHIPPING_* / SHIPPING_* / TAX_* / STRICT_* values only seed the
store settings document the first time it is created. After that the
document is the source of truth (see settings_store.py).
"""

import os

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_EVENTS_CHANNEL = os.environ.get("ORDER_EVENTS_CHANNEL", "order_events")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("LOG_FILE")

# Conflict retries for order placement and status transitions
ORDER_MAX_ATTEMPTS = int(os.environ.get("ORDER_MAX_ATTEMPTS", "5"))
ORDER_RETRY_BASE_DELAY = float(os.environ.get("ORDER_RETRY_BASE_DELAY", "0.05"))
ORDER_NUMBER_ATTEMPTS = int(os.environ.get("ORDER_NUMBER_ATTEMPTS", "5"))

# Store settings seed values
STORE_NAME = os.environ.get("STORE_NAME", "BAGVO")
STORE_CURRENCY = os.environ.get("STORE_CURRENCY", "INR")
FREE_SHIPPING_THRESHOLD = float(os.environ.get("FREE_SHIPPING_THRESHOLD", "500"))
SHIPPING_CHARGE = float(os.environ.get("SHIPPING_CHARGE", "50"))
TAX_PERCENTAGE = float(os.environ.get("TAX_PERCENTAGE", "18"))
STRICT_VARIANT_VALIDATION = os.environ.get("STRICT_VARIANT_VALIDATION", "false").lower() in (
    "1",
    "true",
    "yes",
)

# uvicorn bind address for `python -m bagvo_orders serve`
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
