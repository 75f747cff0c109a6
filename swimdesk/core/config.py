# swimdesk/core/config.py - Environment-driven settings for the billing API
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from typing import List, Optional

ENVIRONMENTS = ("dev", "development", "test", "staging", "prod", "production")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DATABASE_SCHEMES = ("postgresql://", "postgresql+psycopg://", "postgresql+psycopg2://", "sqlite://")

# Front-desk app and the Vite dev server
LOCAL_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


class Settings(BaseSettings):
    """Read from the process environment, then `.env`."""

    ENV: str = "dev"
    DEBUG: bool = False
    API_TITLE: str = "SwimDesk Billing API"
    API_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = Field(default="sqlite:///./swimdesk.db")
    DATABASE_ECHO: bool = False
    DATABASE_POOL_SIZE: int = Field(default=5, ge=1, le=100)
    DATABASE_MAX_OVERFLOW: int = Field(default=10, ge=0, le=100)
    DATABASE_POOL_TIMEOUT: int = Field(default=30, ge=1, le=300)
    DATABASE_POOL_RECYCLE: int = Field(default=3600, ge=300)

    CORS_ORIGINS: List[str] = Field(default_factory=lambda: list(LOCAL_ORIGINS))
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: List[str] = Field(default_factory=lambda: ["*"])
    CORS_ALLOW_HEADERS: List[str] = Field(default_factory=lambda: ["*"])

    # Billing rules
    INVOICE_DUE_DAYS: int = Field(
        default=7, ge=0, le=365,
        description="Days after issue that pay-ahead and counter invoices fall due",
    )
    PAY_AHEAD_MAX_QUANTITY: int = Field(
        default=24, ge=1, le=520,
        description="Upper bound on periods or class blocks bought in one line",
    )
    COUNTER_SALE_FAMILY_ID: Optional[str] = Field(
        default=None,
        description="Family that owns walk-in counter sales; looked up by name when unset",
    )
    COUNTER_SALE_FAMILY_NAME: str = "Counter Sale"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    @field_validator("ENV")
    @classmethod
    def check_env(cls, v: str) -> str:
        if v.lower() not in ENVIRONMENTS:
            raise ValueError(f"ENV must be one of {', '.join(ENVIRONMENTS)}")
        return v.lower()

    @field_validator("LOG_LEVEL")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        if v.upper() not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return v.upper()

    @field_validator("DATABASE_URL")
    @classmethod
    def check_database_url(cls, v: str) -> str:
        if not v.startswith(DATABASE_SCHEMES):
            raise ValueError("DATABASE_URL must point at PostgreSQL or SQLite")
        return v

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, v):
        # Comma-separated in .env; blank means the local defaults
        if isinstance(v, str):
            origins = [o.strip() for o in v.split(",") if o.strip()]
            return origins or list(LOCAL_ORIGINS)
        return v

    @property
    def is_development(self) -> bool:
        return self.ENV in ("dev", "development")

    @property
    def is_production(self) -> bool:
        return self.ENV in ("prod", "production")

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    def get_cors_config(self) -> dict:
        """Keyword arguments for CORSMiddleware."""
        return {
            "allow_origins": self.CORS_ORIGINS,
            "allow_credentials": self.CORS_ALLOW_CREDENTIALS,
            "allow_methods": self.CORS_ALLOW_METHODS,
            "allow_headers": self.CORS_ALLOW_HEADERS,
        }


try:
    settings = Settings()
except Exception as e:
    print(f"Invalid configuration: {e}")
    print("Check .env and the SWIMDESK environment variables")
    raise

__all__ = ["settings", "Settings"]
