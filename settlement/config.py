import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings:
    @staticmethod
    def _get_int(name: str, default: int) -> int:
        return int(os.getenv(name, str(default)))

    @staticmethod
    def _get_decimal(name: str, default: str) -> Decimal:
        return Decimal(os.getenv(name, default))

    @property
    def APP_ENV(self) -> str:
        return os.getenv("APP_ENV", "development").strip().lower()

    @property
    def IS_PRODUCTION(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def BASE_URL(self) -> str:
        return os.getenv("BASE_URL", "http://localhost:8000")

    @property
    def DATABASE_URL(self) -> str:
        database_url = os.getenv("DATABASE_URL", "").strip()
        if not database_url:
            raise ValueError("DATABASE_URL is required")
        return database_url

    @property
    def DB_CONNECT_RETRIES(self) -> int:
        return self._get_int("DB_CONNECT_RETRIES", 5)

    @property
    def DB_CONNECT_RETRY_DELAY_SECONDS(self) -> int:
        return self._get_int("DB_CONNECT_RETRY_DELAY_SECONDS", 2)

    @property
    def DB_AUTO_MIGRATE(self) -> bool:
        return os.getenv("DB_AUTO_MIGRATE", "true").strip().lower() in {"1", "true", "yes"}

    @property
    def JWT_SECRET(self) -> str:
        return os.getenv("JWT_SECRET", "change-me-in-production")

    @property
    def JWT_ALGORITHM(self) -> str:
        return os.getenv("JWT_ALGORITHM", "HS256")

    @property
    def STRIPE_SECRET_KEY(self) -> str:
        return os.getenv("STRIPE_SECRET_KEY", "")

    @property
    def STRIPE_WEBHOOK_SECRET(self) -> str:
        return os.getenv("STRIPE_WEBHOOK_SECRET", "")

    @property
    def DEFAULT_CURRENCY(self) -> str:
        return os.getenv("DEFAULT_CURRENCY", "GBP").upper()

    @property
    def DEFAULT_FEE_PERCENT(self) -> Decimal:
        return self._get_decimal("DEFAULT_FEE_PERCENT", "8")

    @property
    def VAT_RATE(self) -> Decimal:
        return self._get_decimal("VAT_RATE", "0.20")

    @property
    def APPROVAL_REQUIRED_ORDER_TYPES(self) -> set[str]:
        raw = os.getenv("APPROVAL_REQUIRED_ORDER_TYPES", "service")
        return {item.strip() for item in raw.split(",") if item.strip()}

    @property
    def TOP_UP_MIN_AMOUNT(self) -> int:
        return self._get_int("TOP_UP_MIN_AMOUNT", 500)

    @property
    def TOP_UP_MAX_AMOUNT(self) -> int:
        return self._get_int("TOP_UP_MAX_AMOUNT", 10_000_000)

    @property
    def PAYOUT_MIN_AMOUNT(self) -> int:
        return self._get_int("PAYOUT_MIN_AMOUNT", 100)

    @property
    def FAILED_PAYMENT_MAX_RETRIES(self) -> int:
        return self._get_int("FAILED_PAYMENT_MAX_RETRIES", 3)

    @property
    def CORS_ORIGINS(self) -> str:
        return os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001")


settings = Settings()

# Validate critical settings
if settings.JWT_SECRET == "change-me-in-production":
    import warnings
    warnings.warn("JWT_SECRET is using default value. Change it in production!", UserWarning)
