"""
Application configuration with environment variables.
"""
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field, field_validator
from typing import Optional, List


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "FleetDesk Sourcing"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str = "your-secret-key-change-in-production"

    # Database
    POSTGRES_USER: str = "fleetdesk"
    POSTGRES_PASSWORD: str = "fleetdesk"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "fleetdesk"
    DATABASE_URL: Optional[str] = Field(default=None, validate_default=True)

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # JWT Settings (tokens are issued by the identity service)
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # =========================================
    # Sourcing engine
    # =========================================

    # Escalation queue shows the N most overdue RFQs
    ESCALATION_QUEUE_LIMIT: int = 20
    # Newest N open RFQs per tier used by policy preview / simulation
    POLICY_SAMPLE_LIMIT: int = 500

    # Scheduled jobs (seconds)
    ESCALATION_SCAN_INTERVAL_SECONDS: int = 900
    OFFER_EXPIRY_INTERVAL_SECONDS: int = 3600
    SLA_REMINDER_INTERVAL_SECONDS: int = 3600

    # Currency applied to priced offers that omit one
    DEFAULT_CURRENCY: str = "USD"

    # Demo seeding - MUST be false in production
    SEED_DEMO: bool = False

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def assemble_db_url(cls, v: Optional[str], info) -> str:
        if isinstance(v, str) and v:
            return v

        data = info.data
        user = data.get("POSTGRES_USER", "fleetdesk")
        password = data.get("POSTGRES_PASSWORD", "fleetdesk")
        host = data.get("POSTGRES_HOST", "postgres")
        port = data.get("POSTGRES_PORT", "5432")
        db = data.get("POSTGRES_DB", "fleetdesk")

        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @field_validator('SECRET_KEY')
    @classmethod
    def validate_secret_key(cls, v: str, info) -> str:
        """Reject weak SECRET_KEY in production, warn in development."""
        weak_keys = {
            "your-secret-key-change-in-production",
            "change-me-in-production",
            "secret",
            "changeme",
        }
        is_weak = v in weak_keys or len(v) < 32
        if is_weak:
            debug = info.data.get("DEBUG", False)
            if not debug:
                raise ValueError(
                    "SECRET_KEY is weak or default. "
                    "Generate a strong key with: openssl rand -hex 32"
                )
            import warnings
            warnings.warn(
                "SECRET_KEY is weak or default! Set a strong key before deploying.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator('POSTGRES_PASSWORD')
    @classmethod
    def validate_postgres_password(cls, v: str, info) -> str:
        """Reject default database password in production."""
        weak = {"fleetdesk", "postgres", "password", "changeme", ""}
        if v in weak and not info.data.get("DEBUG", False):
            raise ValueError(
                "POSTGRES_PASSWORD is set to a default value. "
                "Set a strong database password for production."
            )
        return v

    @field_validator('ESCALATION_QUEUE_LIMIT', 'POLICY_SAMPLE_LIMIT')
    @classmethod
    def validate_positive_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Queue and sample limits must be at least 1")
        return v

    @field_validator('SEED_DEMO')
    @classmethod
    def validate_seed_demo(cls, v: bool, info) -> bool:
        """Prevent demo seeding in production."""
        if v and not info.data.get("DEBUG", False):
            raise ValueError(
                "SEED_DEMO=true is not allowed when DEBUG=false. "
                "Demo seeding creates predictable accounts."
            )
        return v


settings = Settings()
