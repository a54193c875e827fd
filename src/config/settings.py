"""Application configuration loaded from environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the scheduling orchestrator.

    Args loaded from .env file and environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Postgres
    database_password: str = ""
    database_name: str = "scheduling_dev"
    database_user: str = "postgres"
    database_host: str = "127.0.0.1"
    database_port: int = 5432
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_echo: bool = False

    # "postgres" for the durable store, "memory" for local demos and tests
    workflow_store_backend: str = "postgres"

    # OTP coordination
    otp_timeout_seconds: float = 120.0
    otp_wait_before_prompt_seconds: float = 30.0
    otp_max_attempts: int = 2

    # Operator override
    operator_pause_timeout_seconds: float = 300.0
    pause_poll_interval_seconds: float = 2.0

    # Audit
    screenshot_retention: int = 25

    # Intake form
    intake_form_url: str = ""
    manual_scheduling_url: str = ""
    insurance_fallback: str = "Not Listed"

    # Dashboard / CORS
    cors_allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    @property
    def database_url(self) -> str:
        """Build async Postgres connection URL."""
        return (
            f"postgresql+asyncpg://{self.database_user}"
            f":{self.database_password}"
            f"@{self.database_host}:{self.database_port}"
            f"/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Build sync Postgres connection URL (for Alembic migrations)."""
        return (
            f"postgresql://{self.database_user}"
            f":{self.database_password}"
            f"@{self.database_host}:{self.database_port}"
            f"/{self.database_name}"
        )


def get_settings() -> Settings:
    """Return a Settings instance.

    Returns:
        Application settings loaded from env.
    """
    return Settings()
