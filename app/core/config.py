from pydantic_settings import BaseSettings
from typing import List, Union
from pydantic import field_validator
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Naggery Journal API"
    APP_BASE_URL: str = "http://localhost:3000"

    # Database Settings
    POSTGRES_USER: str = "user"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "naggery_db"

    @property
    def DATABASE_URL(self) -> str:
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Redis Settings (Celery broker and rate limit counters)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # "redis" for multi-instance deployments, "memory" for a single process
    RATE_LIMIT_BACKEND: str = "redis"

    # JWT Settings
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    TWO_FA_CHALLENGE_EXPIRE_MINUTES: int = 5

    # Secret protection
    ENCRYPTION_KEY: str = ""
    PASSWORD_HASH_ITERATIONS: int = 210_000

    # Two-factor authentication
    TOTP_ISSUER: str = "Naggery"

    # AWS SES / SNS Settings
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_SES_FROM_EMAIL: str = "noreply@naggery.app"
    AWS_SES_FROM_NAME: str = "Naggery"
    AWS_SNS_SENDER_ID: str = "Naggery"

    # "ses"/"sns" send for real, "log" only records that a message was produced
    EMAIL_DELIVERY_MODE: str = "ses"
    SMS_DELIVERY_MODE: str = "sns"

    # Logging
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    # CORS Settings - can be set as JSON string in .env
    BACKEND_CORS_ORIGINS: Union[List[str], str] = ["http://localhost:3000", "http://localhost:8000"]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Union[List[str], str]) -> List[str]:
        """Parse CORS origins from JSON string or list"""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not valid JSON, split by comma
                return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("RATE_LIMIT_BACKEND")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        if v not in ("redis", "memory"):
            raise ValueError("RATE_LIMIT_BACKEND must be 'redis' or 'memory'")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
