import os


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


# ----------------------------
# Config & Constants
# ----------------------------
APP_ENV = os.environ.get("APP_ENV", "development").lower()
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./festix.db")

FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000").rstrip("/")
API_URL = os.environ.get("API_URL", "http://localhost:8000").rstrip("/")

CURRENCY = "MDL"

# MAIB payment gateway (REST API)
MAIB_MOCK_MODE = _flag("MAIB_MOCK_MODE")
MAIB_PROJECT_ID = os.environ.get("MAIB_PROJECT_ID", "")
MAIB_PROJECT_SECRET = os.environ.get("MAIB_PROJECT_SECRET", "")
MAIB_SIGNATURE_KEY = os.environ.get("MAIB_SIGNATURE_KEY", "mock-signature-key")
MAIB_BASE_URL = os.environ.get(
    "MAIB_BASE_URL", "https://api.maibmerchants.md/v1"
).rstrip("/")
MAIB_TIMEOUT = float(os.environ.get("MAIB_TIMEOUT", "10.0"))

# reminder / expiry sweep
ENABLE_CRON_JOBS = _flag("ENABLE_CRON_JOBS")
FIRST_REMINDER_HOURS = int(os.environ.get("FIRST_REMINDER_HOURS", "1"))
SECOND_REMINDER_HOURS = int(os.environ.get("SECOND_REMINDER_HOURS", "24"))
PENDING_ORDER_EXPIRE_HOURS = int(
    os.environ.get("PENDING_ORDER_EXPIRE_HOURS", "72")
)

# post-payment outbox
FULFILLMENT_CONCURRENCY = int(os.environ.get("FULFILLMENT_CONCURRENCY", "4"))
FULFILLMENT_MAX_ATTEMPTS = int(os.environ.get("FULFILLMENT_MAX_ATTEMPTS", "5"))
FULFILLMENT_LEASE_SECONDS = int(
    os.environ.get("FULFILLMENT_LEASE_SECONDS", "600")
)

# external render / mail services; empty -> log-only stand-ins
ARTIFACTS_URL = os.environ.get("ARTIFACTS_URL", "")
NOTIFIER_URL = os.environ.get("NOTIFIER_URL", "")
COLLABORATOR_TIMEOUT = float(os.environ.get("COLLABORATOR_TIMEOUT", "30.0"))

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "")

_REQUIRED_IN_PRODUCTION = (
    "MAIB_PROJECT_ID",
    "MAIB_PROJECT_SECRET",
    "MAIB_SIGNATURE_KEY",
    "SESSION_SECRET",
)


def validate_config() -> None:
    if APP_ENV != "production" or MAIB_MOCK_MODE:
        return
    missing = [k for k in _REQUIRED_IN_PRODUCTION if not os.environ.get(k)]
    if missing:
        raise RuntimeError(
            "Missing required environment variables: " + ", ".join(missing)
        )
