from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Fitness Coach"
    SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_HOURS: int = 72
    JWT_ISSUER: str = "fitness-coach"
    DATABASE_URL: str = "sqlite:///data/coach.db"
    DATA_DIR: Path = Path("data")
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "https://localhost:3000",
    ]
    LOG_LEVEL: str = "INFO"

    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    AI_PROVIDER: str = "openai"
    AI_MODEL: str = "gpt-4.1"
    AI_SUMMARY_MODEL: str = "gpt-4o-mini"
    AI_MAX_OUTPUT_TOKENS: int = 4096
    PROVIDER_TIMEOUT_SECONDS: int = 120

    AI_MAX_ROUND_TRIPS: int = 6
    AI_MAX_MESSAGE_LENGTH: int = 2000
    AI_MIN_MESSAGE_LENGTH: int = 1
    TRANSPORT_QUEUE_SIZE: int = 256
    PROGRESS_SNAP_PERCENT: int = 5
    SUMMARIZATION_THRESHOLD: int = 15

    RATE_LIMIT_AI_MESSAGES: int = 20
    RATE_LIMIT_AI_WINDOW_SECONDS: int = 60

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.SECRET_KEY == "change-me-in-production":
            errors.append("SECRET_KEY must be changed from the default value")
        if len((self.SECRET_KEY or "").strip()) < 16:
            errors.append("SECRET_KEY must be at least 16 characters")
        if not (self.OPENAI_API_KEY or "").strip():
            errors.append("OPENAI_API_KEY must be configured")
        if self.AI_MAX_ROUND_TRIPS < 1:
            errors.append("AI_MAX_ROUND_TRIPS must be at least 1")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
