from functools import lru_cache
from typing import Dict, List, Optional, Union
from pathlib import Path

from pydantic import (
    BaseModel,
    Field,
    field_validator,
    model_validator
)
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Database configuration settings"""
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_USER: str = Field(default="scheduler_user")
    POSTGRES_PASSWORD: str = Field(default="scheduler_password")
    POSTGRES_DB: str = Field(default="clinic_ops")
    DATABASE_URL: Optional[str] = Field(default=None)

    # Connection pool settings
    DB_POOL_SIZE: int = Field(default=10, ge=1, le=100)
    DB_MAX_OVERFLOW: int = Field(default=20, ge=0, le=100)
    DB_POOL_TIMEOUT: int = Field(default=30, ge=1, le=300)
    DB_POOL_RECYCLE: int = Field(default=3600, ge=300, le=86400)

    @model_validator(mode="after")
    def assemble_db_connection(self):
        if self.DATABASE_URL:
            return self
        self.DATABASE_URL = (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )
        return self


class SchedulerSettings(BaseModel):
    """Schedule read path and insight settings"""
    AUTO_REFRESH_INTERVAL_SECONDS: int = Field(default=5 * 60, ge=10, le=3600)
    UI_POLL_INTERVAL_SECONDS: int = Field(default=6 * 60, ge=10, le=3600)
    LATE_THRESHOLD_MINUTES: int = Field(default=5, ge=0, le=120)

    # Risk assigned to appointments the system of record has flagged as no-show
    NO_SHOW_FLAGGED_RISK: float = Field(default=95.0, ge=0.0, le=100.0)

    # Working day used to derive provider utilization
    WORKDAY_MINUTES: int = Field(default=8 * 60, ge=60, le=24 * 60)
    SNOOZE_OPTIONS_MINUTES: List[int] = Field(default=[60, 240, 1440])


class WriteBackSettings(BaseModel):
    """Write-back recommendation and approval settings"""
    RECOMMENDATION_TTL_HOURS: int = Field(default=24, ge=1, le=24 * 30)
    ENFORCE_EXPIRY_FRESHNESS: bool = Field(default=False)
    BLOCK_FAILED_CHECK_APPROVALS: bool = Field(default=False)
    HISTORY_DEFAULT_LIMIT: int = Field(default=50, ge=1, le=1000)
    EXTERNAL_ACTION_PREFIX: str = Field(default="pp", pattern=r"^[a-z][a-z0-9_]{0,15}$")


class FeatureFlagSettings(BaseModel):
    """Feature flag override sources"""
    OVERRIDE_FILE: Optional[Path] = Field(default=None)
    OVERRIDES: Dict[str, bool] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Main application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=True,
        validate_assignment=True,
        extra="ignore"
    )

    # Basic application settings
    ENVIRONMENT: str = Field(default="development", pattern="^(development|staging|production)$")
    DEBUG: bool = Field(default=False)
    API_VERSION: str = Field(default="v1")
    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    LOG_FORMAT: str = Field(default="console", pattern="^(console|json)$")

    # Server settings
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000, ge=1000, le=65535)
    WORKERS: int = Field(default=1, ge=1, le=32)

    # CORS settings
    CORS_ORIGINS: Union[List[str], str] = Field(default=["http://localhost:5173"])
    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)
    ALLOWED_HOSTS: List[str] = Field(default=["*"])

    # Monitoring settings
    PROMETHEUS_ENABLED: bool = Field(default=True)

    # Nested configuration objects
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    writeback: WriteBackSettings = Field(default_factory=WriteBackSettings)
    feature_flags: FeatureFlagSettings = Field(default_factory=FeatureFlagSettings)

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @model_validator(mode="after")
    def validate_production_settings(self):
        """Validate critical settings for production environment"""
        if self.ENVIRONMENT == "production":
            if self.DEBUG:
                raise ValueError("DEBUG must be False in production")

            if "*" in self.CORS_ORIGINS:
                raise ValueError("CORS_ORIGINS must not include a wildcard in production")

        return self


# Global settings instance cache
@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Convenience function to get database URL
def get_database_url() -> str:
    """Get database connection URL"""
    settings = get_settings()
    return str(settings.database.DATABASE_URL)


# Application constants
class AppConstants:
    """Application-wide constants"""

    SERVICE_NAME = "scheduling-intelligence-api"
    API_TITLE = "Scheduling Intelligence API"

    # Feature flag names
    FLAG_SCHEDULER_ENABLED = "aim_scheduler_enabled"
    FLAG_WRITEBACK_PHASE2 = "aim_scheduler_writeback_phase2"

    # Roles with a narrowed insight view
    ROLE_FRONT_DESK = "front_desk_staff"
    ROLE_CLINICIAN = "clinician"
    DEFAULT_ROLE = "staff"

    # Insight thresholds
    NO_SHOW_RISK_THRESHOLD = 70
    OVERBOOKING_PER_HOUR_LIMIT = 4
    UNDERUTILIZATION_HOURS = 4
    CAPACITY_GAP_MINUTES = 90

    # Health Check Constants
    HEALTH_CHECK_TIMEOUT = 5
    CRITICAL_SERVICES = ["database"]


# Export settings and constants
__all__ = [
    "Settings",
    "DatabaseSettings",
    "SchedulerSettings",
    "WriteBackSettings",
    "FeatureFlagSettings",
    "get_settings",
    "get_database_url",
    "AppConstants"
]
