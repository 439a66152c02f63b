"""
Configuration management for the application.
Loads settings from environment variables using Pydantic Settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./pos.sqlite"
    SQL_ECHO: bool = False

    @property
    def database_url_async(self) -> str:
        """
        Transform DATABASE_URL to use the appropriate async driver.
        - PostgreSQL: postgresql+asyncpg://...
        - SQLite: sqlite+aiosqlite:///...
        """
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("sqlite://"):
            return self.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self.DATABASE_URL

    # Security
    SECRET_KEY: str = "mixpos-dev-secret-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 24 hours

    # Application
    APP_NAME: str = "MixPOS API"
    DEBUG: bool = False
    CORS_ORIGINS: str = ",".join(f"http://localhost:{port}" for port in range(3000, 3006))
    STORE_TIMEZONE: str = "America/Sao_Paulo"
    SEED_DEFAULT_DATA: bool = True

    # Rate limiting (per client IP)
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    LOGIN_RATE_LIMIT_REQUESTS: int = 5
    TRUST_PROXY: bool = False  # Key clients on X-Forwarded-For (only behind a reverse proxy)

    # Uploads
    MAX_UPLOAD_SIZE_MB: int = 100  # Spreadsheets with 25k+ rows
    UPLOAD_DIR: str = "uploads"

    # Bulk import
    IMPORT_BATCH_SIZE: int = 100
    IMPORT_MAX_ERROR_MESSAGES: int = 10

    # Stock / membership rules
    LOW_STOCK_THRESHOLD: int = 10
    HIGH_STOCK_THRESHOLD: int = 50
    MEMBERSHIP_DAYS: int = 365

    @property
    def cors_origins_list(self) -> list[str]:
        # Strip whitespace from each origin to prevent configuration errors
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def max_upload_size_bytes(self) -> int:
        return self.MAX_UPLOAD_SIZE_MB * 1024 * 1024

    class Config:
        env_file = ".env"
        case_sensitive = True


# Singleton instance - import this in other modules
settings = Settings()
