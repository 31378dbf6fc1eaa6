from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Habit Repeat Job"
    DATABASE_URL: str = "sqlite:///data/habits.db"
    DATA_DIR: Path = Path("data")
    LOG_LEVEL: str = "INFO"
    JOB_TIMEZONE: str = "UTC"
    WRITE_BATCH_LIMIT: int = 500
    NOTIFICATION_BATCH_LIMIT: int = 500
    COMPLETION_WINDOW_SECONDS: int = 60
    REMINDER_LOOKAHEAD_HOURS: int = 24
    PUSH_MODE: str = "stub"  # stub | http
    PUSH_GATEWAY_URL: str | None = None
    PUSH_GATEWAY_TOKEN: str | None = None
    PUSH_TIMEOUT_SECONDS: int = 12

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_runtime_configuration(self) -> None:
        errors: list[str] = []
        if self.WRITE_BATCH_LIMIT < 1 or self.WRITE_BATCH_LIMIT > 500:
            errors.append("WRITE_BATCH_LIMIT must be between 1 and 500")
        if self.NOTIFICATION_BATCH_LIMIT < 1 or self.NOTIFICATION_BATCH_LIMIT > 500:
            errors.append("NOTIFICATION_BATCH_LIMIT must be between 1 and 500")

        if self.is_production_like:
            mode = (self.PUSH_MODE or "").strip().lower()
            if mode != "http":
                errors.append("PUSH_MODE must be 'http' in production-like environments")
            if not (self.PUSH_GATEWAY_URL or "").strip():
                errors.append("PUSH_GATEWAY_URL must be set")
            if not (self.PUSH_GATEWAY_TOKEN or "").strip():
                errors.append("PUSH_GATEWAY_TOKEN must be set")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Invalid runtime configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
