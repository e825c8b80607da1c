import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def jwt_secret() -> str | None:
    return os.getenv("JWT_SECRET")


def stripe_secret_key() -> str | None:
    return os.getenv("STRIPE_SECRET_KEY")


def stripe_webhook_secret() -> str | None:
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def stripe_connect_client_id() -> str | None:
    return os.getenv("STRIPE_CONNECT_CLIENT_ID")


def stripe_max_network_retries() -> int:
    # Refunds must never be replayed blindly by the SDK
    return int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "0"))


def frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


def platform_fee_percent() -> Decimal:
    return Decimal(os.getenv("PLATFORM_FEE_PERCENT", "2.5"))


def default_currency() -> str:
    return os.getenv("DEFAULT_CURRENCY", "nok").lower()


def log_format() -> str:
    return os.getenv("LOG_FORMAT", "console")


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


def server_host() -> str:
    return os.getenv("HOST", "127.0.0.1")


def server_port() -> int:
    return int(os.getenv("PORT", "8000"))
