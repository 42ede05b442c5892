from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL (ontology store)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "ontology"
    postgres_password: str = "changeme"
    postgres_db: str = "ontology_engine"

    # Full SQLAlchemy URL override, e.g. "sqlite+aiosqlite://" in tests
    database_url: str = ""

    @property
    def postgres_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def postgres_url_sync(self) -> str:
        """For Alembic migrations (sync driver)."""
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker)
    redis_url: str = "redis://localhost:6379/0"

    # Datasource being modelled (read-only). Sync SQLAlchemy URL.
    datasource_url: str = ""
    datasource_schemas: str = "public"  # comma-separated

    # Generation (OpenAI-compatible chat completions)
    openai_api_key: str = ""
    openai_api_url: str = "https://api.openai.com/v1/chat/completions"
    generation_model: str = "gpt-4o-mini"
    generation_temperature: float = 0.0
    generation_max_tokens: int = 2048
    generation_timeout_seconds: float = 60.0
    generation_max_concurrent: int = 5

    # Pipeline
    glossary_max_attempts: int = 3
    question_confidence_threshold: float = 0.8
    run_lease_seconds: int = 900  # abandoned run claims older than this may be taken over
    schema_mismatch_refresh_threshold: int = 3

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    @property
    def datasource_schema_list(self) -> list[str]:
        return [s.strip() for s in self.datasource_schemas.split(",") if s.strip()]


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.glossary_max_attempts < 1:
        errors.append("GLOSSARY_MAX_ATTEMPTS must be at least 1")

    if settings.generation_max_concurrent < 1:
        errors.append("GENERATION_MAX_CONCURRENT must be at least 1")

    if not 0.0 <= settings.question_confidence_threshold <= 1.0:
        errors.append("QUESTION_CONFIDENCE_THRESHOLD must be between 0 and 1")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if not settings.openai_api_key:
            errors.append("OPENAI_API_KEY must be set in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
