from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    API_KEY: str
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"
    API_PREFIX: str = ""
    CORS_ORIGINS: List[str] = ["*"]

    # Per-record retry policy for transient store errors
    INGEST_MAX_RETRIES: int = 2
    INGEST_RETRY_BACKOFF_SECONDS: float = 0.05

    DEFAULT_HEART_RATE_LIMIT: int = 100
    DEFAULT_ECG_LIMIT: int = 20
    MAX_QUERY_LIMIT: int = 1000

    model_config = SettingsConfigDict(env_file=".env")

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"


settings = Settings()
