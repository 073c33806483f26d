from functools import lru_cache
from typing import List, Optional
from urllib.parse import quote_plus

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="pointledger/.env",
        env_file_encoding="utf-8",
        extra="allow",
    )
    # Application
    APP_NAME: str = "Point Ledger API"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    ALLOWED_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "simple"  # simple | json

    # Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USERNAME: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DATABASE: str = "postgres"

    # DATABASE_URL이 있으면 POSTGRES_* 보다 우선
    DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def database_url(self) -> str:
        """Construct database URL from individual components"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # URL encode the password to handle special characters
        encoded_password = quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql+psycopg2://{self.POSTGRES_USERNAME}:{encoded_password}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DATABASE}"

    # Ledger
    LEDGER_MAX_RETRIES: int = 3  # 동시성 충돌 시 최대 시도 횟수
    LEDGER_RETRY_BACKOFF_SECONDS: float = 0.05  # 재시도 기본 대기 (지수 증가)
    LEDGER_OPERATION_TIMEOUT_SECONDS: float = 10.0
    LEDGER_REJECT_PAST_EXPIRY: bool = True  # 이미 만료된 적립 요청 거부 여부

    # Expiration sweep
    SWEEP_BATCH_SIZE: int = 1000

    # Internal callers (sweep timer, repair jobs)
    AUTH_TOKEN: str = ""


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""

    return Settings()


settings = get_settings()
