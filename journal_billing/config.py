import os
from dotenv import dotenv_values

class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY
    WTF_CSRF_TIME_LIMIT = None

    # Database (env in prod; dev/test may use default)
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Cookies: secure-by-default
    SESSION_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Mail ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = (os.getenv("MAIL_USE_TLS", "true").lower() == "true")
    MAIL_USE_SSL = (os.getenv("MAIL_USE_SSL", "false").lower() == "true")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "Trading Journal <no-reply@local.test>")
    MAIL_SUPPRESS_SEND = (os.getenv("MAIL_SUPPRESS_SEND", "false").lower() == "true")

    # Used for redirect/webhook URLs handed to the gateway (must be https in prod)
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Trading Journal")
    SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@local.test")

    # --- CardCom (payment gateway) ---
    CARDCOM_BASE_URL = os.getenv("CARDCOM_BASE_URL", "https://secure.cardcom.solutions")
    CARDCOM_TERMINAL_NUMBER = os.getenv("CARDCOM_TERMINAL_NUMBER")
    CARDCOM_API_NAME = os.getenv("CARDCOM_API_NAME")
    CARDCOM_API_PASSWORD = os.getenv("CARDCOM_API_PASSWORD")
    CARDCOM_TIMEOUT_SECONDS = float(os.getenv("CARDCOM_TIMEOUT_SECONDS", "10"))
    CARDCOM_LANGUAGE = os.getenv("CARDCOM_LANGUAGE", "he")

    # --- Reconciliation ---
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "ILS")
    PAYMENT_SESSION_TTL_MINUTES = int(os.getenv("PAYMENT_SESSION_TTL_MINUTES", "30"))
    WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "3"))
    WEBHOOK_MAX_AGE_HOURS = int(os.getenv("WEBHOOK_MAX_AGE_HOURS", "48"))
    WEBHOOK_SWEEP_LIMIT = int(os.getenv("WEBHOOK_SWEEP_LIMIT", "20"))
    # next attempt = attempts * base
    WEBHOOK_RETRY_BASE_SECONDS = int(os.getenv("WEBHOOK_RETRY_BASE_SECONDS", "300"))
    RENEWAL_MAX_FAILURES = int(os.getenv("RENEWAL_MAX_FAILURES", "3"))
    # reminder lead times, in days before the charge
    REMINDER_TRIAL_DAYS = int(os.getenv("REMINDER_TRIAL_DAYS", "3"))
    REMINDER_ANNUAL_DAYS = int(os.getenv("REMINDER_ANNUAL_DAYS", "14"))

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    MAIL_SUPPRESS_SEND = False

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True
    CARDCOM_TERMINAL_NUMBER = "1000"
    CARDCOM_API_NAME = "test-api"
    CARDCOM_API_PASSWORD = "test-password"
    RATELIMIT_ENABLED = False

_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
