import os


def _flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    # --- PayPal ---
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")
    PAYPAL_WEBHOOK_ID = os.environ.get("PAYPAL_WEBHOOK_ID")
    PAYPAL_MODE = os.environ.get("PAYPAL_MODE", "sandbox")  # sandbox | live

    # --- Signing keys (PEM, ES256 / P-256) ---
    # Daily meal tokens. QR_PREVIOUS_PUBLIC_KEYS holds "kid=PEM" entries
    # separated by ";;" and stays populated only for the rotation grace window.
    QR_PRIVATE_KEY = os.environ.get("QR_PRIVATE_KEY")
    QR_PUBLIC_KEY = os.environ.get("QR_PUBLIC_KEY")
    QR_KEY_ID = os.environ.get("QR_KEY_ID", "qr-1")
    QR_PREVIOUS_PUBLIC_KEYS = os.environ.get("QR_PREVIOUS_PUBLIC_KEYS", "")
    QR_TOKEN_ISSUER = os.environ.get("QR_TOKEN_ISSUER", "mealpass-kiosk")

    # Kiosk (point-of-sale device) session assertions.
    KIOSK_PRIVATE_KEY = os.environ.get("KIOSK_PRIVATE_KEY")
    KIOSK_PUBLIC_KEY = os.environ.get("KIOSK_PUBLIC_KEY")
    KIOSK_KEY_ID = os.environ.get("KIOSK_KEY_ID", "kiosk-1")
    KIOSK_PREVIOUS_PUBLIC_KEYS = os.environ.get("KIOSK_PREVIOUS_PUBLIC_KEYS", "")
    KIOSK_TOKEN_ISSUER = os.environ.get("KIOSK_TOKEN_ISSUER", "mealpass-admin")
    KIOSK_SESSION_HOURS = int(os.environ.get("KIOSK_SESSION_HOURS", 8))

    # --- Service calendar ---
    SERVICE_TIMEZONE = os.environ.get("SERVICE_TIMEZONE", "America/Los_Angeles")
    # ISO weekdays (1=Monday ... 7=Sunday)
    SERVICE_WEEKDAYS = [
        int(d) for d in os.environ.get("SERVICE_WEEKDAYS", "1,2,3,4,5").split(",") if d.strip()
    ]

    # --- Webhooks / reconciliation ---
    WEBHOOK_MAX_ATTEMPTS = int(os.environ.get("WEBHOOK_MAX_ATTEMPTS", 3))
    WEBHOOK_RATE_LIMIT = os.environ.get("WEBHOOK_RATE_LIMIT", "120 per minute")
    EXTERNAL_CALL_TIMEOUT = float(os.environ.get("EXTERNAL_CALL_TIMEOUT", 10))
    MIN_BILLING_PERIOD_HOURS = int(os.environ.get("MIN_BILLING_PERIOD_HOURS", 24))

    # --- Kiosk ---
    KIOSK_RATE_LIMIT = os.environ.get("KIOSK_RATE_LIMIT", "10 per minute")

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Mealpass")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS", 4))
    NOTIFICATION_SEND_LEASE_MINUTES = int(os.environ.get("NOTIFICATION_SEND_LEASE_MINUTES", 10))

    # --- Operator alerts (Telegram) ---
    TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")
    OPERATOR_ALERT_CHAT_ID = os.environ.get("OPERATOR_ALERT_CHAT_ID")
    OPERATOR_ALERTS_ENABLED = not _flag("OPERATOR_ALERTS_DISABLED")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Rate limiting ---
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "PAYPAL_CLIENT_ID",
            "PAYPAL_CLIENT_SECRET",
            "PAYPAL_WEBHOOK_ID",
            "QR_PRIVATE_KEY",
            "QR_PUBLIC_KEY",
            "KIOSK_PRIVATE_KEY",
            "KIOSK_PUBLIC_KEY",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, rate limiting off, alerts off."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    PAYPAL_CLIENT_ID = "paypal_client_test"
    PAYPAL_CLIENT_SECRET = "paypal_secret_test"
    PAYPAL_WEBHOOK_ID = "WH-TEST"
    PAYPAL_MODE = "sandbox"
    # Keys are generated per test session and injected by conftest.
    QR_PRIVATE_KEY = None
    QR_PUBLIC_KEY = None
    QR_PREVIOUS_PUBLIC_KEYS = ""
    KIOSK_PRIVATE_KEY = None
    KIOSK_PUBLIC_KEY = None
    KIOSK_PREVIOUS_PUBLIC_KEYS = ""
    SERVICE_TIMEZONE = "America/Los_Angeles"
    SERVICE_WEEKDAYS = [1, 2, 3, 4, 5, 6, 7]
    EXTERNAL_CALL_TIMEOUT = 2
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    TELEGRAM_BOT_TOKEN = "test-bot-token"
    OPERATOR_ALERT_CHAT_ID = "1000"
    OPERATOR_ALERTS_ENABLED = False  # alert tests switch this on explicitly
    MAIL_USERNAME = "meals@example.com"
    MAIL_PASSWORD = "test-password"
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
