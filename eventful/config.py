import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)
# postgres pool; the DB gate defaults to DB_POOL_SIZE
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", str(DB_POOL_SIZE)))

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "512"))

# 'paystack' | 'mock'
GATEWAY_BACKEND = os.getenv("GATEWAY_BACKEND", "paystack").lower()
PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")
PAYSTACK_BASE_URL = os.environ.get(
    "PAYSTACK_BASE_URL", "https://api.paystack.co"
)
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
GATEWAY_TIMEOUT = float(os.getenv("GATEWAY_TIMEOUT", "10.0"))

FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")
CALLBACK_URL = os.environ.get(
    "CALLBACK_URL", f"{FRONTEND_URL}/payment/callback"
)

# staff may still scan for a day after the event ends
REDEMPTION_GRACE_SECONDS = int(os.getenv("REDEMPTION_GRACE_SECONDS", "86400"))
WEBHOOK_DEDUP_TTL = int(os.getenv("WEBHOOK_DEDUP_TTL", "3600"))

# rounding slack when comparing submitted amounts with the event price
AMOUNT_TOLERANCE = 1

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
