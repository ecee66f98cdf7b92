from functools import lru_cache
from typing import List, Optional
from urllib.parse import quote_plus

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="marksapi/.env",
        env_file_encoding="utf-8",
        extra="allow",
    )
    # Application
    APP_NAME: str = "Marks API"
    PROJECT_NAME: str = "Survey Marks API"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # Database
    POSTGRES_HOST: str = ""
    POSTGRES_PORT: int = 5432
    POSTGRES_USERNAME: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DATABASE: str = ""
    POSTGRES_SCHEMA: str = "marks"

    # 직접 지정하면 POSTGRES_* 값보다 우선
    DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 3
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 15
    DB_POOL_RECYCLE_SECONDS: int = 3600

    @property
    def database_url(self) -> str:
        """Construct database URL from individual components"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # URL encode the password to handle special characters
        encoded_password = quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql+psycopg2://{self.POSTGRES_USERNAME}:{encoded_password}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DATABASE}"

    # Security
    SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7
    INTERNAL_AUTH_TOKEN: str = ""  # 설문 서비스 -> 마크 지급 호출용

    # Marks policy
    MARKS_TO_WLD_RATE: int = 100  # 100 marks = 1 WLD
    PLATFORM_FEE_PERCENT: int = 20  # 출금 시 플랫폼 수수료 (%)
    MIN_WITHDRAWAL_MARKS: int = 500
    WITHDRAWAL_MULTIPLE: int = 500
    MAX_MARKS_CAP: int = 500  # 사용자 보유 한도
    SURVEY_COMMISSION_RATE: str = "0.04"  # 부스트 풀에서 플랫폼 몫
    SURVEY_MAX_BOOST_MARKS: int = 3000
    WLD_DECIMALS: int = 18

    # Withdrawal settlement
    WITHDRAWAL_DEADLINE_MINUTES: int = 30  # 이 시간이 지나도 미확정이면 정산 대상
    RECONCILE_AFTER_SECONDS: int = 120
    RECONCILE_BATCH_SIZE: int = 50

    # Treasury relay (World Chain ERC-20 transfer)
    TREASURY_API_BASE_URL: str = "http://localhost:8080"
    TREASURY_API_KEY: str = ""
    TREASURY_TIMEOUT_SECONDS: float = 20.0
    WORLDCHAIN_CHAIN_ID: int = 480
    WLD_TOKEN_ADDRESS: str = "0x2cFc85d8E48F8EAB294be644d9E25C3030863003"

    # World ID
    WORLD_ID_APP_ID: str = ""
    WORLD_ID_ACTION: str = "complete-survey"
    WORLD_ID_VERIFY_URL: str = "https://developer.worldcoin.org/api/v2/verify"
    WORLD_ID_TIMEOUT_SECONDS: float = 10.0


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""

    return Settings()


settings = get_settings()
