"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.01.00"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str

    # Provider session token (issued by the auth collaborator, supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Field-level PHI encryption (Fernet key) and HMAC key for link token hashes
    DATA_ENCRYPTION_KEY: str = ""
    TOKEN_HASH_KEY: str = ""

    # Intake links
    INTAKE_FORM_URL: str = "http://localhost:3000"
    INTAKE_LINK_MIN_TTL_HOURS: int = 1
    INTAKE_LINK_MAX_TTL_HOURS: int = 168
    INTAKE_LINK_DEFAULT_TTL_HOURS: int = 168
    DOB_MAX_ATTEMPTS: int = 5

    # Generative AI
    AI_PROVIDER: str = "gemini"  # gemini | openai
    AI_API_KEY: str = ""
    AI_MODEL: str = ""  # Empty = provider default
    AI_REQUEST_DEADLINE_SECONDS: float = 30.0
    AI_MAX_RETRIES: int = 2
    AI_RETRY_BACKOFF_SECONDS: float = 0.5
    AI_TEMPERATURE: float = 0.2
    AI_MAX_TOKENS: int = 2000
    SUMMARY_LEASE_SECONDS: int = 120

    # Red flag alert hand-off (empty = log only)
    ALERT_WEBHOOK_URL: str = ""
    ALERT_WEBHOOK_TIMEOUT_SECONDS: float = 5.0

    # Rate Limiting (requests per minute)
    RATE_LIMIT_API: int = 60
    RATE_LIMIT_PUBLIC_READ: int = 30
    RATE_LIMIT_VERIFY: int = 10
    RATE_LIMIT_SUBMIT: int = 10
    RATE_LIMIT_STORAGE_URI: str = "memory://"  # e.g. redis://localhost:6379/0

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets


settings = Settings()
