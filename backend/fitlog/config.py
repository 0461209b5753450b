"""Application configuration and settings."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Settings:
    """Application settings loaded from environment variables."""

    # Strava API Configuration
    STRAVA_API_BASE: str = os.getenv("STRAVA_API_BASE", "https://www.strava.com/api/v3")
    STRAVA_REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("STRAVA_REQUEST_TIMEOUT_SECONDS", "5"))
    STRAVA_MAX_RETRIES: int = _int("STRAVA_MAX_RETRIES", 3)
    STRAVA_BACKOFF_BASE_MS: int = _int("STRAVA_BACKOFF_BASE_MS", 1000)
    STRAVA_BACKOFF_MAX_MS: int = _int("STRAVA_BACKOFF_MAX_MS", 30000)
    # Query parameter carrying the last-seen activity id. Empty means the
    # provider only paginates by page number.
    STRAVA_KEYSET_PARAM: str = os.getenv("STRAVA_KEYSET_PARAM", "")

    # Import run limits
    IMPORT_TIME_BUDGET_SECONDS: float = float(os.getenv("IMPORT_TIME_BUDGET_SECONDS", "9"))
    IMPORT_DEFAULT_PER_PAGE: int = _int("IMPORT_DEFAULT_PER_PAGE", 30)
    IMPORT_MAX_PER_PAGE: int = _int("IMPORT_MAX_PER_PAGE", 100)
    IMPORT_MAX_PAGES: int = _int("IMPORT_MAX_PAGES", 20)
    IMPORT_MAX_ACTIVITIES: int = _int("IMPORT_MAX_ACTIVITIES", 1000)
    IMPORT_LOCK_SECONDS: int = _int("IMPORT_LOCK_SECONDS", 60)

    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./db/fitlog.db")

    # Application Configuration
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    CURSOR_SECRET: str = os.getenv("CURSOR_SECRET", "") or SECRET_KEY
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "text")

    # API Configuration
    API_PREFIX: str = "/api"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"


settings = Settings()
