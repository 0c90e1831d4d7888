import os
from pathlib import Path
from dotenv import load_dotenv

from payment_service.errors import ConfigurationError

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


class Settings:
    """Runtime configuration read from the environment.

    Keyword arguments override individual values, which is how tests build
    a settings object without touching the process environment.
    """

    def __init__(self, **overrides):
        self.JWT_SECRET = os.getenv("JWT_SECRET")
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.CLIENT_URL = os.getenv("CLIENT_URL")
        self.DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "VND")

        # Lifecycle
        self.PENDING_TIMEOUT_MINUTES = _env_int("PENDING_TIMEOUT_MINUTES", 30)
        self.SWEEP_INTERVAL_SECONDS = _env_int("SWEEP_INTERVAL_SECONDS", 0)

        # Outbound calls
        self.GATEWAY_TIMEOUT_SECONDS = _env_float("GATEWAY_TIMEOUT_SECONDS", 15.0)
        self.TOKEN_TIMEOUT_SECONDS = _env_float("TOKEN_TIMEOUT_SECONDS", 10.0)
        self.RETRY_MAX_ATTEMPTS = _env_int("RETRY_MAX_ATTEMPTS", 3)
        self.RETRY_BASE_DELAY = _env_float("RETRY_BASE_DELAY", 1.0)

        # Redirect-signed bank gateway
        self.REDIRECT_TMN_CODE = os.getenv("REDIRECT_TMN_CODE")
        self.REDIRECT_HASH_SECRET = os.getenv("REDIRECT_HASH_SECRET")
        self.REDIRECT_PAY_URL = os.getenv("REDIRECT_PAY_URL")
        self.REDIRECT_RETURN_URL = os.getenv("REDIRECT_RETURN_URL")
        self.REDIRECT_BANK_LIST_URL = os.getenv("REDIRECT_BANK_LIST_URL")
        self.REDIRECT_LOCALE = os.getenv("REDIRECT_LOCALE", "vn")

        # OAuth order/capture wallet
        self.OAUTH_CLIENT_ID = os.getenv("OAUTH_CLIENT_ID")
        self.OAUTH_CLIENT_SECRET = os.getenv("OAUTH_CLIENT_SECRET")
        self.OAUTH_BASE_URL = os.getenv("OAUTH_BASE_URL", "https://api-m.sandbox.paypal.com")
        self.OAUTH_RETURN_URL = os.getenv("OAUTH_RETURN_URL")
        self.OAUTH_CANCEL_URL = os.getenv("OAUTH_CANCEL_URL")
        self.OAUTH_BRAND_NAME = os.getenv("OAUTH_BRAND_NAME", "CampusLearning")

        # Manual bank transfer
        self.MANUAL_ACCOUNT_NUMBER = os.getenv("MANUAL_ACCOUNT_NUMBER")
        self.MANUAL_BANK_NAME = os.getenv("MANUAL_BANK_NAME", "MBBANK")
        self.MANUAL_ACCOUNT_NAME = os.getenv("MANUAL_ACCOUNT_NAME", "CampusLearning EDUCATION")
        self.MANUAL_BANK_CODE = os.getenv("MANUAL_BANK_CODE", "MB")
        self.MANUAL_REFERENCE_PREFIX = os.getenv("MANUAL_REFERENCE_PREFIX", "CampusLearning")
        self.MANUAL_QR_BASE_URL = os.getenv("MANUAL_QR_BASE_URL", "https://img.vietqr.io/image")
        self.MANUAL_RECONCILIATION_KEY = os.getenv("MANUAL_RECONCILIATION_KEY")

        for name, value in overrides.items():
            if not hasattr(self, name):
                raise AttributeError(f"Unknown setting: {name}")
            setattr(self, name, value)

    def require(self, *names: str) -> None:
        """Raise ConfigurationError naming every unset credential."""
        missing = [name for name in names if not getattr(self, name, None)]
        if missing:
            raise ConfigurationError(
                f"Missing payment configuration: {', '.join(missing)}"
            )
