"""
Application settings and configuration management.
"""
from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase Configuration
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""
    supabase_jwt_secret: str = ""

    # Database
    database_url: str = "sqlite:///./predictvip.db"

    # Record store backend: "sql" (SQLModel engine) or "supabase" (PostgREST)
    record_store: str = "sql"

    # JWT Configuration (Supabase)
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "authenticated"

    # Redis Configuration (Celery broker)
    redis_url: str = "redis://localhost:6379"

    # Payment Configuration
    paystack_secret_key: str = ""

    # Admin Configuration
    super_operator_email: str = ""

    # Notification Configuration
    notification_email_url: str = ""
    notification_timeout_seconds: float = 10.0

    # Subscription lifecycle
    expiry_warning_days: int = 3
    sweep_hour_utc: int = 6
    cron_secret: str = ""
    max_bulk_activation: int = 200

    # Application Settings
    environment: str = "development"

    # CORS Settings
    allowed_origins: str = "http://localhost:3000,http://localhost:5173"

    # Logging
    log_level: str = "INFO"

    # Monitoring & Observability
    sentry_dsn: str = ""
    sentry_traces_sample_rate: float = 0.1
    sentry_profiles_sample_rate: float = 0.1
    release_version: str = "v1.0.0"

    # Prometheus Metrics
    enable_metrics: bool = True

    # Application Version
    app_version: str = "1.0.0"

    # Production Security Configuration
    enable_docs: bool = True
    force_https: bool = False

    # Rate Limiting
    enable_rate_limiting: bool = False
    global_rate_limit: str = "1000/hour"

    @field_validator("allowed_origins")
    def validate_origins(cls, v):
        """Convert comma-separated origins string to list."""
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("record_store")
    def validate_record_store(cls, v):
        """Only the SQL and Supabase record stores exist."""
        v = v.lower().strip()
        if v not in ("sql", "supabase"):
            raise ValueError("record_store must be 'sql' or 'supabase'")
        return v

    @field_validator("super_operator_email")
    def normalize_super_operator_email(cls, v):
        return v.strip().lower()

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def validate_production_config(self) -> List[str]:
        """Validate production configuration and return list of issues."""
        issues = []

        if self.is_production:
            if self.enable_docs:
                issues.append("API documentation should be disabled in production")

            if not self.force_https:
                issues.append("HTTPS should be enforced in production")

            if not self.paystack_secret_key:
                issues.append("Paystack secret key is required to verify webhooks")

            if not self.cron_secret:
                issues.append("Cron secret should protect the expiry sweep endpoint")

            if "localhost" in str(self.allowed_origins):
                issues.append("Localhost origins should be removed in production")

            if self.record_store == "supabase" and not self.supabase_service_role_key:
                issues.append("Supabase service role key is required for the supabase record store")

            if len(self.supabase_jwt_secret) < 32:
                issues.append("Supabase JWT secret should be at least 32 characters long")

        return issues

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
