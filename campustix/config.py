import base64
import hashlib
import os


def _bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes", "on")


# ----------------------------
# Storage
# ----------------------------
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "sqlite+aiosqlite:///./campustix.db"
)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
# unset: 1 on sqlite (single writer), DB_POOL_SIZE on postgres
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0")) or None

# 'pg' = SQL counters in ticket_tiers, 'tb' = TigerBeetle accounts
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "pg").lower()
TB_ADDRESS = os.getenv("TB_ADDRESS", "3000")
TB_CLUSTER_ID = int(os.getenv("TB_CLUSTER_ID", "0"))

# 'redis' | 'memory'
STATS_CACHE_BACKEND = os.getenv("STATS_CACHE_BACKEND", "memory").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))
STATS_CACHE_TTL_SECONDS = int(os.getenv("STATS_CACHE_TTL_SECONDS", "300"))

# ----------------------------
# Payments
# ----------------------------
PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "mock").lower()
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL", "http://localhost:8000/api/payments/webhook"
)
SNAP_SERVER_KEY = os.environ.get("SNAP_SERVER_KEY", "")
SNAP_IS_PRODUCTION = _bool("SNAP_IS_PRODUCTION")
CLIENT_URL = os.environ.get("CLIENT_URL", "http://localhost:3000")
CURRENCY = os.environ.get("CURRENCY", "IDR")

PAYMENT_EXPIRY_HOURS = float(os.getenv("PAYMENT_EXPIRY_HOURS", "24"))
ADMIN_FEE = int(os.getenv("ADMIN_FEE", "0"))
MAX_TICKETS_PER_REGISTRATION = int(
    os.getenv("MAX_TICKETS_PER_REGISTRATION", "5")
)

# ----------------------------
# Tickets
# ----------------------------
_DEV_KEY_SEED = os.environ.get("CREDENTIAL_SECRET", "dev-secret-change-me")
CREDENTIAL_KEY = os.environ.get(
    "CREDENTIAL_KEY",
    base64.urlsafe_b64encode(
        hashlib.sha256(_DEV_KEY_SEED.encode()).digest()
    ).decode(),
)

BLOB_DIR = os.environ.get("BLOB_DIR", "./blobs")
BLOB_BASE_URL = os.environ.get("BLOB_BASE_URL", "/blobs")

# ----------------------------
# Notifications
# ----------------------------
NOTIFIER = os.getenv("NOTIFIER", "log").lower()  # 'log' | 'webhook'
NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL", "")
ADMIN_RECIPIENTS = [
    a.strip() for a in os.environ.get("ADMIN_RECIPIENTS", "").split(",")
    if a.strip()
]

# ----------------------------
# Background work
# ----------------------------
# 0 disables the periodic sweep
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))
REMINDER_WINDOW_HOURS = float(os.getenv("REMINDER_WINDOW_HOURS", "6"))
THANK_YOU_WINDOW_HOURS = float(os.getenv("THANK_YOU_WINDOW_HOURS", "48"))
SIDE_EFFECT_MAX_ATTEMPTS = int(os.getenv("SIDE_EFFECT_MAX_ATTEMPTS", "5"))
SIDE_EFFECT_BACKOFF_SECONDS = float(
    os.getenv("SIDE_EFFECT_BACKOFF_SECONDS", "0.5")
)

# ----------------------------
# Logging
# ----------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = _bool("LOG_JSON")
